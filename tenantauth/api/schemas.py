from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "not_configured",
    "conflict",
    "server_error",
    "upstream_error",
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
    """JSON envelope for every non-OAuth response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    password: str = Field(..., max_length=1024)
    two_fa_code: Optional[str] = Field(default=None, max_length=32)
    two_factor_session_id: Optional[str] = Field(default=None, max_length=128)
    client_id: Optional[str] = Field(default=None, max_length=256)
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)
    code_challenge: Optional[str] = Field(default=None, max_length=256)
    code_challenge_method: Optional[str] = Field(default=None, max_length=16)
    state: Optional[str] = Field(default=None, max_length=1024)
    scope: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    qr_code_url: str
    qr_code_image: str = Field(..., description="Base64-encoded PNG of the otpauth URI")
    backup_codes: List[str]


class TwoFactorEnableRequest(BaseModel):
    code: str = Field(..., max_length=10)
    secret: str = Field(..., max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=32, description="Current TOTP or a backup code")


class TwoFactorVerifyRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=32)


class TwoFactorSessionVerifyRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=32)


class TwoFactorVerifyResponse(BaseModel):
    valid: bool
    message: str


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    has_backup_codes: bool
    backup_codes_remaining: int


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str = ""
    id_token: Optional[str] = None


class UserInfoResponse(BaseModel):
    sub: str
    tenant_id: str
    email: str
    given_name: str = ""
    family_name: str = ""
    groups: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=list)
