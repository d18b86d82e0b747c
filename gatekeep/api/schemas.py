from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "validation_error",
        "conflict",
        "locked",
        "service_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username", "email")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginRequest(BaseModel):
    """``identifier`` accepts either the email address or the username."""

    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class AccountResponse(BaseModel):
    id: str
    username: str
    email: str
    phone: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime
    last_login_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    account: AccountResponse


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)


class VerifyResetCodeRequest(BaseModel):
    email: str = Field(..., max_length=254)
    code: str = Field(..., max_length=16)


class ResetPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    current_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    new_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateResponse(BaseModel):
    account: AccountResponse
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


class DeactivateAccountRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=16)
