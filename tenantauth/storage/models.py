from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DIRECT_SOCIAL_LOGIN_CLIENT_ID = "direct-social-login"
DIRECT_LOGIN_CLIENT_ID = "direct-login-client"
PSEUDO_CLIENT_IDS = frozenset({DIRECT_SOCIAL_LOGIN_CLIENT_ID, DIRECT_LOGIN_CLIENT_ID})

CODE_ISSUED_BY_AUTHORIZE = "authorize"
CODE_ISSUED_BY_SOCIAL_DIRECT = "social_direct"


@dataclass
class Tenant:
    id: str
    name: str
    domain: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    tenant_id: str = ""
    first_name: str = ""
    last_name: str = ""
    scopes: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Client:
    client_id: str
    tenant_id: str = ""
    name: str = ""
    secret_hash: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_public(self) -> bool:
        return not self.secret_hash


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    user_id: str
    tenant_id: str
    redirect_uri: str
    scopes: List[str]
    expires_at: datetime
    code_challenge: str = ""
    code_challenge_method: str = ""
    used: bool = False
    issued_by: str = CODE_ISSUED_BY_AUTHORIZE
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RefreshToken:
    token_hash: str
    client_id: str
    user_id: str
    tenant_id: str
    scopes: List[str]
    expires_at: datetime
    access_jti: Optional[str] = None
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorEnrollment:
    user_id: str
    tenant_id: str = ""
    enabled: bool = False
    secret: Optional[str] = None
    pending_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    pending_backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    enabled_at: Optional[datetime] = None


@dataclass
class TwoFactorSession:
    session_id: str
    user_id: str
    expires_at: datetime
    tenant_id: str = ""
    client_id: str = ""
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
