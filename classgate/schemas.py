from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from classgate.storage.models import Role, Session, UserAccount

# Upper bound on raw password input; the policy enforces the real maximum
MAX_PASSWORD_INPUT = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
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
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def validate_username(value: Optional[str]) -> Optional[str]:
    """Alphanumeric plus underscore, dot and hyphen; 3 to 64 characters."""
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, dots, underscores, and hyphens"
        )
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class RequestContext(BaseModel):
    """Caller metadata attached to audit events and failed-attempt records."""

    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    username: Optional[str] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: Optional[str]) -> Optional[str]:
        return validate_username(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class LoginRequest(BaseModel):
    """Credentials; ``identifier`` is an email address or a username."""

    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)
    remember_me: bool = False

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        cleaned = _normalize_unicode(value.strip())
        if "@" in cleaned:
            return cleaned.lower()
        return cleaned

    @property
    def is_email(self) -> bool:
        return "@" in self.identifier


class RegisterResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: UserAccount
    verification_token: Optional[str] = None


class LoginResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    user: UserAccount
    session: Session
    token_type: str = "bearer"


class SessionValidation(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    valid: bool
    user: Optional[UserAccount] = None
    session: Optional[Session] = None
    reason: Optional[str] = None


class AccessResult(BaseModel):
    granted: bool
    reason: str
    role: Optional[Role] = None
    matched_permission: Optional[str] = None

