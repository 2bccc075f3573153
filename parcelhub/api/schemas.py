from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from parcelhub.service.auth import check_password_strength


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
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
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-]{6,18}[0-9]$")


def _validate_email(value: str) -> str:
    """Validate the address shape; case is preserved, normalization happens later."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = _normalize_unicode(value.strip())
    lowered = cleaned.lower()
    if len(lowered) > 254:
        raise ValueError("email address too long")
    if len(lowered) < 3:
        raise ValueError("email address too short")
    local, sep, domain = lowered.rpartition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return cleaned


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not 2 <= len(cleaned) <= 32:
        raise ValueError("name must be between 2 and 32 characters")
    return cleaned[0].upper() + cleaned[1:]


def _validate_password(value: str) -> str:
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    check_password_strength(value)
    return value


class SignupRequest(BaseModel):
    family_name: str
    given_name: str
    email: str
    phone: Optional[str] = None
    password: str
    password_confirm: str

    @field_validator("family_name", "given_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _PHONE_PATTERN.match(value.strip()):
            raise ValueError("invalid phone number")
        return value.strip()

    @field_validator("password")
    @classmethod
    def _validate_signup_password(cls, value: str) -> str:
        return _validate_password(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords do not match.")
        return self


class VerifyEmailRequest(BaseModel):
    # Any non-empty string; wrong codes are rejected by the OTP comparison, not here
    otp: str = Field(..., min_length=1, max_length=32)
    token: str = Field(..., min_length=1, max_length=4096)


class SigninRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember: bool = False

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email(value)


class EnableTwoFactorRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=16)
    secret: str = Field(..., min_length=16, max_length=128)


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password(value)
