# enclave/schemas.py
"""Request payload schemas, validated at the HTTP boundary."""

from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from enclave.db import AccessLevel, EventType, NodeType, Role, TerminalType
from enclave.errors import ValidationError
from enclave.utils.security import validate_password, validate_username

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

M = TypeVar("M", bound=BaseModel)


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              str_strip_whitespace=True, extra="ignore")


def _check_password(value: str) -> str:
    ok, reason = validate_password(value)
    if not ok:
        raise ValueError(reason)
    return value


def _check_username(value: str) -> str:
    ok, reason = validate_username(value)
    if not ok:
        raise ValueError(reason)
    return value


# ---------- auth ----------

class RegisterRequest(Payload):
    username: str
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str
    role: Role = Role.RESEARCHER

    @field_validator("username")
    @classmethod
    def username_rules(cls, v):
        return _check_username(v)

    @field_validator("password")
    @classmethod
    def password_rules(cls, v):
        return _check_password(v)

    @field_validator("role", mode="before")
    @classmethod
    def upper_role(cls, v):
        return v.upper() if isinstance(v, str) else v


class LoginRequest(Payload):
    username: str = Field(min_length=1, max_length=30)
    password: str = Field(min_length=1)


class RefreshRequest(Payload):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(Payload):
    current_password: str = Field(min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_rules(cls, v):
        return _check_password(v)


# ---------- terminal / filesystem ----------

class CreateTerminalRequest(Payload):
    terminal_type: TerminalType

    @field_validator("terminal_type", mode="before")
    @classmethod
    def upper_type(cls, v):
        return v.upper() if isinstance(v, str) else v


class CommandRequest(Payload):
    command: str = Field(min_length=1, max_length=1000)


class CreateNodeRequest(Payload):
    path: str = Field(min_length=1, max_length=1024)
    type: NodeType = NodeType.FILE
    content: Optional[str] = None
    access_level: AccessLevel = AccessLevel.PUBLIC


class UpdateNodeRequest(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None
    access_level: Optional[AccessLevel] = None


class HistoryQuery(Payload):
    limit: int = Field(default=50, ge=1, le=100)
    session_id: Optional[str] = None


# ---------- security ----------

class SecurityLogQuery(Payload):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    event_type: Optional[EventType] = None
    user_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class AlertRequest(Payload):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=2000)
    level: str = Field(default="INFO", pattern=r"^(INFO|WARNING|ERROR|CRITICAL)$")
    user_id: Optional[str] = None

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class WebhookTestRequest(Payload):
    message: str = Field(min_length=1, max_length=500)


class BlockRequest(Payload):
    ip: str = Field(min_length=1, max_length=64)
    ttl: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = Field(default=None, max_length=200)


# ---------- users ----------

class UserListQuery(Payload):
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    search: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class CreateUserRequest(RegisterRequest):
    is_active: bool = True


class UpdateUserRequest(Payload):
    username: Optional[str] = None
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def username_rules(cls, v):
        return _check_username(v) if v is not None else v

    @field_validator("role", mode="before")
    @classmethod
    def upper_role(cls, v):
        return v.upper() if isinstance(v, str) else v


def parse(model: Type[M], data: Optional[Dict[str, Any]]) -> M:
    """Validate ``data`` against ``model``; failures become a 400 ValidationError."""
    try:
        return model.model_validate(data or {})
    except pydantic.ValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in e.errors()
        ]
        raise ValidationError("Validation failed", details=details)
