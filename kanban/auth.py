from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .security import InvalidToken, decode_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    username: str
    is_admin: bool = False


def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    """Resolve the caller from an ``Authorization: Bearer <jwt>`` header."""
    token = None
    if authorization:
        parts = authorization.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Token not found")
    try:
        claims = decode_access_token(token)
    except InvalidToken as exc:
        logger.info("Rejected token: %s", exc)
        raise HTTPException(status_code=401, detail="Access denied, bad token") from exc
    return CurrentUser(
        id=claims["sub"],
        email=claims.get("email", ""),
        username=claims.get("username", ""),
        is_admin=bool(claims.get("isAdmin", False)),
    )


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied")
    return user


def check_access(user: CurrentUser, owner_id: Optional[str]) -> None:
    if user.is_admin or (owner_id is not None and owner_id == user.id):
        return
    raise HTTPException(status_code=403, detail="Access denied")
