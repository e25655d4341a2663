import hmac
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import CurrentUser, check_access, get_current_user, require_admin
from .config import ADMIN_PASS, API_PREFIX, CORS_ORIGINS, VERSION
from .db import Board, Card, ColumnModel, User, init_db
from .ordering import OrderingError, RankOutOfRange
from .schemas import (
    BoardCreate,
    BoardDelete,
    BoardOut,
    BoardUpdate,
    CardCreate,
    CardCreated,
    CardDelete,
    CardModify,
    CardMove,
    CardOut,
    ColumnCreate,
    ColumnDelete,
    ColumnModify,
    ColumnOut,
    Message,
    TokenOut,
    UserDelete,
    UserEnvelope,
    UserLogin,
    UserOut,
    UserRegister,
    UsersPage,
    UserUpdate,
)
from .security import create_access_token, verify_password
from .storage import DuplicateEmail, Storage, StoreError, get_storage
from .utils import is_hex_color

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Kanban API", version=VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
api = APIRouter(prefix=API_PREFIX)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s %d %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# === Error envelope ===


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    cause = first.get("ctx", {}).get("error")
    message = str(cause) if cause else first.get("msg", "Invalid request")
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, message)
    return error_response(400, message)


@app.exception_handler(OrderingError)
async def ordering_error(request: Request, exc: OrderingError) -> JSONResponse:
    status_code = 400 if isinstance(exc, RankOutOfRange) else 409
    logger.warning("Ordering rejected %s %s: %s", request.method, request.url.path, exc.message)
    return error_response(status_code, exc.message)


@app.exception_handler(StoreError)
async def store_error(request: Request, exc: StoreError) -> JSONResponse:
    return error_response(500, "Internal server error")


# === Helpers ===


def user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        username=user.username,
        isAdmin=user.is_admin,
        createdAt=user.created_at,
        updatedAt=user.updated_at,
    )


def board_out(board: Board) -> BoardOut:
    return BoardOut(
        id=board.id,
        userId=board.user_id,
        title=board.title,
        createdAt=board.created_at,
        updatedAt=board.updated_at,
    )


def column_out(column: ColumnModel) -> ColumnOut:
    return ColumnOut(
        id=column.id,
        boardId=column.board_id,
        title=column.title,
        order=column.order,
        createdAt=column.created_at,
        updatedAt=column.updated_at,
    )


def card_out(card: Card) -> CardOut:
    return CardOut(
        id=card.id,
        columnId=card.column_id,
        title=card.title,
        description=card.description,
        color=card.color,
        order=card.order,
        createdAt=card.created_at,
        updatedAt=card.updated_at,
    )


def load_board(storage: Storage, board_id: str, user: CurrentUser) -> Board:
    board = storage.get_board(board_id)
    if board is None:
        raise HTTPException(status_code=404, detail="Board not found")
    check_access(user, board.user_id)
    return board


def load_column(storage: Storage, column_id: str, user: CurrentUser) -> ColumnModel:
    column = storage.get_column(column_id)
    if column is None:
        raise HTTPException(status_code=404, detail="Column not found")
    check_access(user, column.board.user_id)
    return column


def load_card(storage: Storage, card_id: str, user: CurrentUser) -> Card:
    card = storage.get_card(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail="Card not found")
    check_access(user, card.column.board.user_id)
    return card


def load_target_user(storage: Storage, user_id: Optional[str], user: CurrentUser) -> User:
    target_id = user_id or user.id
    if target_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied")
    target = storage.get_user(target_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    return target


# === Health & metadata ===


@app.get("/v1/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/v1/version")
def version() -> dict:
    return {"version": VERSION}


# === User endpoints ===


@api.post("/user/register", status_code=201)
def register(payload: UserRegister, storage: Storage = Depends(get_storage)):
    is_admin = payload.adminPass is not None
    if is_admin and not (ADMIN_PASS and hmac.compare_digest(payload.adminPass.encode(), ADMIN_PASS.encode())):
        raise HTTPException(status_code=400, detail="Incorrect admin password")
    if storage.get_user_by_email(payload.email) is not None:
        raise HTTPException(status_code=403, detail="Email already in use")
    try:
        storage.create_user(payload.email, payload.username, payload.password, is_admin)
    except DuplicateEmail:
        raise HTTPException(status_code=403, detail="Email already in use")
    return Response(status_code=201)


@api.post("/user/login", response_model=TokenOut)
def login(payload: UserLogin, storage: Storage = Depends(get_storage)):
    user = storage.get_user_by_email(payload.email)
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    token = create_access_token(user.id, user.username, user.email, user.is_admin)
    return TokenOut(token=token)


@api.get("/user", response_model=UserEnvelope)
def get_me(user: CurrentUser = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    me = storage.get_user(user.id)
    if me is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserEnvelope(user=user_out(me))


@api.get("/user/all", response_model=UsersPage)
def list_users(user: CurrentUser = Depends(require_admin), storage: Storage = Depends(get_storage)):
    users = storage.list_users()
    if not users:
        raise HTTPException(status_code=404, detail="No users found")
    return UsersPage(users=[user_out(u) for u in users])


@api.put("/user", response_model=UserEnvelope)
def update_user(
    payload: UserUpdate,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    target = load_target_user(storage, payload.user_id, user)
    target = storage.update_user(target, payload.username, payload.password)
    return UserEnvelope(user=user_out(target))


@api.delete("/user", response_model=Message)
def delete_user(
    payload: Optional[UserDelete] = Body(default=None),
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    target = load_target_user(storage, payload.user_id if payload else None, user)
    storage.delete_user(target)
    return Message(message="User deleted successfully")


# === Board endpoints ===


@api.get("/board", response_model=list[BoardOut])
def list_boards(
    email: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    owner_id = user.id
    if email and email.strip().lower() != user.email:
        if not user.is_admin:
            raise HTTPException(status_code=403, detail="Access denied")
        owner = storage.get_user_by_email(email.strip().lower())
        if owner is None:
            raise HTTPException(status_code=404, detail="User not found")
        owner_id = owner.id
    return [board_out(b) for b in storage.list_boards_for_user(owner_id)]


@api.post("/board", response_model=BoardOut, status_code=201)
def create_board(
    payload: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    if storage.get_user(user.id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    board = storage.create_board(user.id, payload.title)
    return board_out(board)


@api.put("/board", response_model=BoardOut)
def rename_board(
    payload: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = load_board(storage, payload.board_id, user)
    board = storage.rename_board(board, payload.title)
    return board_out(board)


@api.delete("/board", response_model=Message)
def delete_board(
    payload: BoardDelete,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = load_board(storage, payload.board_id, user)
    storage.delete_board(board)
    return Message(message="Board and associated columns and cards deleted successfully")


# === Column endpoints ===


@api.get("/column", response_model=list[ColumnOut])
def list_columns(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = load_board(storage, board_id, user)
    return [column_out(c) for c in storage.list_columns(board.id)]


@api.post("/column", response_model=ColumnOut, status_code=201)
def create_column(
    payload: ColumnCreate,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    board = load_board(storage, payload.board_id, user)
    column = storage.create_column(board, payload.title, payload.order)
    return column_out(column)


@api.put("/column/modify", response_model=ColumnOut)
def modify_column(
    payload: ColumnModify,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    column = load_column(storage, payload.column_id, user)
    column = storage.modify_column(column, payload.title, payload.order)
    return column_out(column)


@api.delete("/column", response_model=Message)
def delete_column(
    payload: ColumnDelete,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    column = load_column(storage, payload.column_id, user)
    storage.delete_column(column)
    return Message(message="Column and associated cards deleted successfully")


# === Card endpoints ===


@api.get("/card", response_model=list[CardOut])
def list_cards(
    column_id: str,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    column = load_column(storage, column_id, user)
    cards = storage.list_cards(column.id)
    if not cards:
        raise HTTPException(status_code=404, detail="No cards found")
    return [card_out(c) for c in cards]


@api.post("/card", response_model=CardCreated, status_code=201)
def create_card(
    payload: CardCreate,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    column = load_column(storage, payload.column_id, user)
    color, warning = payload.color, None
    if color is not None and not is_hex_color(color):
        color, warning = None, "Invalid color format. Card created without color."
    card = storage.create_card(column, payload.title, payload.description, color, payload.order)
    return CardCreated(card=card_out(card), warning=warning)


@api.put("/card/modify", response_model=CardOut)
def modify_card(
    payload: CardModify,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = load_card(storage, payload.card_id, user)
    color = payload.color if is_hex_color(payload.color) else None
    card = storage.modify_card(card, payload.title, payload.description, color, payload.order)
    return card_out(card)


@api.put("/card/move", response_model=CardOut)
def move_card(
    payload: CardMove,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = load_card(storage, payload.card_id, user)
    to_column = storage.get_column(payload.column_id)
    if to_column is None:
        raise HTTPException(status_code=404, detail="New column not found")
    if to_column.board_id != card.column.board_id:
        raise HTTPException(status_code=400, detail="You can only move cards within the same board")
    card = storage.move_card(card, to_column)
    return card_out(card)


@api.delete("/card", response_model=Message)
def delete_card(
    payload: CardDelete,
    user: CurrentUser = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    card = load_card(storage, payload.card_id, user)
    storage.delete_card(card)
    return Message(message="Card deleted successfully")


app.include_router(api)
