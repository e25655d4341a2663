from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import ordering
from .db import Board, Card, ColumnModel, User, get_db
from .security import hash_password
from .utils import new_uuid

logger = logging.getLogger(__name__)

Scope = Tuple[str, str]
Orderable = Union[ColumnModel, Card]


class StoreError(Exception):
    """The record store could not complete a write; nothing was persisted."""


class DuplicateEmail(StoreError):
    pass


class ScopeLocks:
    """One lock per sibling scope, e.g. ``("board", board_id)``.

    Every read-compute-write of ranks inside a scope happens while holding
    that scope's lock. Several scopes are always acquired in sorted order.
    A lock lives only as long as some caller holds a reference to it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[Scope, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _lock_for(self, scope: Scope) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = threading.Lock()
                self._locks[scope] = lock
            return lock

    @contextmanager
    def hold(self, *scopes: Scope) -> Iterator[None]:
        locks = [self._lock_for(scope) for scope in sorted(set(scopes))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


scope_locks = ScopeLocks()


def snapshot(rows: Sequence[Orderable]) -> List[ordering.Sibling]:
    return [ordering.Sibling(id=row.id, order=row.order) for row in rows]


class Storage:
    """Record store for users, boards, columns and cards.

    Rank changes are computed by :mod:`kanban.ordering` against a snapshot
    taken under the scope lock and committed as a single transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _writing(self, *scopes: Scope) -> Iterator[None]:
        with scope_locks.hold(*scopes):
            try:
                yield
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Write to %s failed, rolled back", ", ".join(f"{k}:{v}" for k, v in scopes))
                raise StoreError("write failed") from exc
            except Exception:
                self.db.rollback()
                raise

    def _apply(self, rows: Sequence[Orderable], shifts: ordering.ShiftSet) -> None:
        for row in rows:
            if row.id in shifts:
                row.order = shifts[row.id]
        if shifts:
            logger.debug("Applied shift set %s", shifts)

    def _reconcile(self, rows: Sequence[Orderable], scope: Scope) -> None:
        siblings = snapshot(rows)
        if ordering.is_dense(siblings):
            return
        logger.warning("Ranks in %s:%s are not dense, compacting", *scope)
        self._apply(rows, ordering.compact(siblings))

    def _columns(self, board_id: str) -> List[ColumnModel]:
        stmt = (
            select(ColumnModel)
            .where(ColumnModel.board_id == board_id)
            .order_by(ColumnModel.order, ColumnModel.created_at)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    def _cards(self, column_id: str) -> List[Card]:
        stmt = (
            select(Card)
            .where(Card.column_id == column_id)
            .order_by(Card.order, Card.created_at)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    # === User operations ===
    def create_user(self, email: str, username: str, password: str, is_admin: bool = False) -> User:
        user = User(
            id=new_uuid(),
            email=email,
            username=username,
            password_hash=hash_password(password),
            is_admin=is_admin,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateEmail(email) from exc
        logger.info("Registered user %s", user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.scalars(select(User).where(User.email == email)).first()

    def list_users(self) -> List[User]:
        return list(self.db.scalars(select(User).order_by(User.created_at)))

    def update_user(self, user: User, username: Optional[str], password: Optional[str]) -> User:
        with self._writing():
            if username:
                user.username = username
            if password:
                user.password_hash = hash_password(password)
        return user

    def delete_user(self, user: User) -> None:
        user_id = user.id
        with self._writing():
            self.db.delete(user)
        logger.info("Deleted user %s and their boards", user_id)

    # === Board operations ===
    def list_boards_for_user(self, user_id: str) -> List[Board]:
        stmt = select(Board).where(Board.user_id == user_id).order_by(Board.created_at)
        return list(self.db.scalars(stmt))

    def get_board(self, board_id: str) -> Optional[Board]:
        return self.db.get(Board, board_id)

    def create_board(self, user_id: str, title: str) -> Board:
        board = Board(id=new_uuid(), user_id=user_id, title=title.strip())
        with self._writing():
            self.db.add(board)
        return board

    def rename_board(self, board: Board, title: str) -> Board:
        with self._writing(("board", board.id)):
            board.title = title.strip()
        return board

    def delete_board(self, board: Board) -> None:
        # The whole scope disappears, so nothing needs compacting.
        board_id = board.id
        with self._writing(("board", board_id)):
            self.db.delete(board)
        logger.info("Deleted board %s", board_id)

    # === Column operations ===
    def list_columns(self, board_id: str) -> List[ColumnModel]:
        return self._columns(board_id)

    def get_column(self, column_id: str) -> Optional[ColumnModel]:
        return self.db.get(ColumnModel, column_id)

    def create_column(self, board: Board, title: str, order: Optional[int] = None) -> ColumnModel:
        scope = ("board", board.id)
        with self._writing(scope):
            rows = self._columns(board.id)
            self._reconcile(rows, scope)
            siblings = snapshot(rows)
            if order is None:
                rank = ordering.append(siblings)
            else:
                self._apply(rows, ordering.insert(siblings, order))
                rank = order
            column = ColumnModel(id=new_uuid(), board_id=board.id, title=title.strip(), order=rank)
            self.db.add(column)
        logger.info("Created column %s at rank %d on board %s", column.id, rank, board.id)
        return column

    def modify_column(self, column: ColumnModel, title: Optional[str], order: Optional[int]) -> ColumnModel:
        scope = ("board", column.board_id)
        with self._writing(scope):
            rows = self._columns(column.board_id)
            self._reconcile(rows, scope)
            if title is not None:
                column.title = title.strip()
            if order is not None:
                shifts = ordering.reposition(snapshot(rows), column.id, column.order, order)
                self._apply(rows, shifts)
        return column

    def delete_column(self, column: ColumnModel) -> None:
        """Delete ``column`` with its cards and close the gap on the board."""
        column_id, board_id = column.id, column.board_id
        board_scope = ("board", board_id)
        with self._writing(board_scope, ("column", column_id)):
            rows = self._columns(board_id)
            self._reconcile(rows, board_scope)
            error = ordering.check_member(snapshot(rows), column_id)
            if error is not None:
                raise error
            remaining = [row for row in rows if row.id != column_id]
            self._apply(remaining, ordering.remove(snapshot(remaining), column.order))
            self.db.delete(column)
        logger.info("Deleted column %s from board %s", column_id, board_id)

    # === Card operations ===
    def list_cards(self, column_id: str) -> List[Card]:
        return self._cards(column_id)

    def get_card(self, card_id: str) -> Optional[Card]:
        return self.db.get(Card, card_id)

    def create_card(
        self,
        column: ColumnModel,
        title: str,
        description: str,
        color: Optional[str],
        order: Optional[int] = None,
    ) -> Card:
        scope = ("column", column.id)
        with self._writing(scope):
            rows = self._cards(column.id)
            self._reconcile(rows, scope)
            siblings = snapshot(rows)
            if order is None:
                rank = ordering.append(siblings)
            else:
                self._apply(rows, ordering.insert(siblings, order))
                rank = order
            card = Card(
                id=new_uuid(),
                column_id=column.id,
                title=title.strip(),
                description=description.strip(),
                order=rank,
            )
            if color is not None:
                card.color = color
            self.db.add(card)
        logger.info("Created card %s at rank %d in column %s", card.id, rank, column.id)
        return card

    def modify_card(
        self,
        card: Card,
        title: Optional[str],
        description: Optional[str],
        color: Optional[str],
        order: Optional[int],
    ) -> Card:
        scope = ("column", card.column_id)
        with self._writing(scope):
            rows = self._cards(card.column_id)
            self._reconcile(rows, scope)
            if title is not None:
                card.title = title.strip()
            if description is not None:
                card.description = description.strip()
            if color is not None:
                card.color = color
            if order is not None:
                shifts = ordering.reposition(snapshot(rows), card.id, card.order, order)
                self._apply(rows, shifts)
        return card

    def move_card(self, card: Card, to_column: ColumnModel) -> Card:
        """Transfer ``card`` to the end of ``to_column``."""
        old_column_id = card.column_id
        if old_column_id == to_column.id:
            scope = ("column", old_column_id)
            with self._writing(scope):
                rows = self._cards(old_column_id)
                self._reconcile(rows, scope)
                shifts = ordering.reposition(snapshot(rows), card.id, card.order, len(rows) - 1)
                self._apply(rows, shifts)
            return card

        old_scope = ("column", old_column_id)
        new_scope = ("column", to_column.id)
        with self._writing(old_scope, new_scope):
            old_rows = self._cards(old_column_id)
            self._reconcile(old_rows, old_scope)
            new_rows = self._cards(to_column.id)
            self._reconcile(new_rows, new_scope)
            shifts, rank = ordering.transfer(snapshot(old_rows), len(new_rows), card.id, card.order)
            self._apply(old_rows, shifts)
            card.column = to_column
            card.order = rank
        logger.info("Moved card %s from column %s to %s at rank %d", card.id, old_column_id, to_column.id, rank)
        return card

    def delete_card(self, card: Card) -> None:
        card_id, column_id = card.id, card.column_id
        scope = ("column", column_id)
        with self._writing(scope):
            rows = self._cards(column_id)
            self._reconcile(rows, scope)
            error = ordering.check_member(snapshot(rows), card_id)
            if error is not None:
                raise error
            remaining = [row for row in rows if row.id != card_id]
            self._apply(remaining, ordering.remove(snapshot(remaining), card.order))
            self.db.delete(card)
        logger.info("Deleted card %s from column %s", card_id, column_id)


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return Storage(db)
