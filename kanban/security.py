from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt

from .config import BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_SECRET, TOKEN_TTL_MINUTES


class InvalidToken(Exception):
    pass


def _prehash(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes.
    return hashlib.sha256(password.encode("utf-8")).hexdigest().encode("ascii")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(
    user_id: str,
    username: str,
    email: str,
    is_admin: bool,
    ttl_minutes: int = TOKEN_TTL_MINUTES,
) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)
    claims = {
        "sub": user_id,
        "username": username,
        "email": email,
        "isAdmin": is_admin,
        "exp": expires,
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify ``token`` and return its claims.

    Raises :class:`InvalidToken` for a bad signature, an expired token or a
    token without a subject.
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidToken(str(exc)) from exc
    if not claims.get("sub"):
        raise InvalidToken("missing subject")
    return claims
