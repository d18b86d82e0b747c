from __future__ import annotations

import re
from typing import Optional

from gatekeep.service.errors import ValidationFailed, WeakPassword

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\d{10}$")
EMAIL_MAX_LENGTH = 254


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_username(username: str) -> str:
    value = (username or "").strip()
    if not USERNAME_RE.match(value):
        raise ValidationFailed(
            "username must be 3-30 characters of letters, digits or underscores",
            detail={"field": "username"},
        )
    return value


def validate_email(email: str) -> str:
    value = normalize_email(email)
    if len(value) > EMAIL_MAX_LENGTH or not EMAIL_RE.match(value):
        raise ValidationFailed("invalid email address", detail={"field": "email"})
    return value


def validate_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    value = re.sub(r"[\s\-()]", "", phone)
    if not value:
        return None
    if not PHONE_RE.match(value):
        raise ValidationFailed("phone must be 10 digits", detail={"field": "phone"})
    return value


def validate_password(password: str, min_length: int) -> str:
    if len(password or "") < min_length:
        raise WeakPassword(min_length)
    return password
