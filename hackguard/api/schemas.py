from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from hackguard.config import Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "locked_out",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"invalid error code '{value}'; must be one of {sorted(_VALID_ERROR_CODES)}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    role: Role = Role.PARTICIPANT


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str


class SessionResponse(BaseModel):
    user: UserResponse
    expires_at: datetime
    absolute_expires_at: datetime


class CSRFResponse(BaseModel):
    csrf_token: str


class LogoutAllResponse(BaseModel):
    revoked: int
