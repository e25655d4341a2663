from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SPECIAL_CHARS = "#!&?@$%^*"


def _check_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one number")
    if not any(ch in SPECIAL_CHARS for ch in value):
        raise ValueError("Password must contain at least one special character")
    return value


def _check_username(value: str) -> str:
    value = value.strip()
    if not 3 <= len(value) <= 25:
        raise ValueError("Username must be between 3 and 25 characters.")
    return value


# === Users ===


class UserLogin(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def valid_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_RE.match(value):
            raise ValueError("Please enter a valid email address")
        return value

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return _check_password(value)


class UserRegister(UserLogin):
    username: str
    adminPass: Optional[str] = None

    @field_validator("username")
    @classmethod
    def valid_username(cls, value: str) -> str:
        return _check_username(value)


class UserUpdate(BaseModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("username")
    @classmethod
    def valid_username(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_username(value)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_password(value)

    @model_validator(mode="after")
    def something_to_change(self) -> "UserUpdate":
        if not self.username and not self.password:
            raise ValueError("Either username or password must be provided")
        return self


class UserDelete(BaseModel):
    user_id: Optional[str] = None


class UserOut(BaseModel):
    id: str
    email: str
    username: str
    isAdmin: bool
    createdAt: datetime
    updatedAt: datetime


class UserEnvelope(BaseModel):
    user: UserOut


class UsersPage(BaseModel):
    users: list[UserOut]


class TokenOut(BaseModel):
    token: str


class Message(BaseModel):
    message: str


# === Boards ===


class BoardCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=140)


class BoardUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    board_id: str
    title: str = Field(min_length=1, max_length=140)


class BoardDelete(BaseModel):
    board_id: str


class BoardOut(BaseModel):
    id: str
    userId: str
    title: str
    createdAt: datetime
    updatedAt: datetime


# === Columns ===


class ColumnCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    board_id: str
    title: str = Field(min_length=1, max_length=80)
    order: Optional[int] = None


class ColumnModify(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    column_id: str
    title: Optional[str] = Field(default=None, min_length=1, max_length=80)
    order: Optional[int] = None

    @model_validator(mode="after")
    def something_to_change(self) -> "ColumnModify":
        if self.title is None and self.order is None:
            raise ValueError("Nothing to modify")
        return self


class ColumnDelete(BaseModel):
    column_id: str


class ColumnOut(BaseModel):
    id: str
    boardId: str
    title: str
    order: int
    createdAt: datetime
    updatedAt: datetime


# === Cards ===


class CardCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    column_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=8000)
    color: Optional[str] = None
    order: Optional[int] = None


class CardModify(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    card_id: str
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=8000)
    color: Optional[str] = None
    order: Optional[int] = None

    @model_validator(mode="after")
    def something_to_change(self) -> "CardModify":
        if self.title is None and self.description is None and self.color is None and self.order is None:
            raise ValueError("Nothing to modify")
        return self


class CardMove(BaseModel):
    card_id: str
    column_id: str


class CardDelete(BaseModel):
    card_id: str


class CardOut(BaseModel):
    id: str
    columnId: str
    title: str
    description: str
    color: str
    order: int
    createdAt: datetime
    updatedAt: datetime


class CardCreated(BaseModel):
    card: CardOut
    warning: Optional[str] = None
