from __future__ import annotations

import base64
import hashlib
import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from tenantauth.config import DEFAULT_TENANT_ID
from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    AuthorizationCode,
    Client,
    RefreshToken,
    Tenant,
    TwoFactorEnrollment,
    TwoFactorSession,
    User,
    utcnow,
)

T = TypeVar("T")

_TenantKey = Tuple[str, str]

# minimum spacing between expiry sweeps triggered by writes
SWEEP_INTERVAL_SECONDS = 300


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class MemoryStore:
    """Thread-safe in-memory store partitioned by tenant.

    Every lookup is keyed by ``(tenant_id, id)`` so a record from one tenant is
    unreachable with another tenant's identifier. Single-use transitions
    (authorization code ``used``, refresh token ``revoked``, backup code
    consumption) are conditional updates performed under ``_data_lock``.

    Two-factor secrets are Fernet-encrypted at rest. When ``persist`` is set,
    state is written to ``fs_root/state/store.json`` after every mutation and
    reloaded on construction.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        persist: bool = False,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        # RLock so helpers may re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[_TenantKey, User] = {}
        self.passwords: Dict[_TenantKey, str] = {}
        self.clients: Dict[_TenantKey, Client] = {}
        self.codes: Dict[_TenantKey, AuthorizationCode] = {}
        self.refresh_tokens: Dict[_TenantKey, RefreshToken] = {}
        self.two_factor: Dict[_TenantKey, TwoFactorEnrollment] = {}
        self.two_factor_sessions: Dict[_TenantKey, TwoFactorSession] = {}
        self.sweep_interval_seconds = SWEEP_INTERVAL_SECONDS
        self._last_sweep = utcnow()
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = bool(persist and self.fs_root)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

        if not (self.persist and self._load_state()):
            self.tenants[DEFAULT_TENANT_ID] = Tenant(id=DEFAULT_TENANT_ID, name="default")
            self._persist_state()

    # ------------------------------------------------------------------
    # encryption helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        if not key_material:
            if self.persist:
                raise RuntimeError("a persistent store needs an explicit MFA encryption key")
            return Fernet(Fernet.generate_key())
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._mfa_cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._mfa_cipher.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored two-factor secret cannot be decrypted") from exc

    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    def create_tenant(
        self, tenant_id: str, name: str, *, domain: Optional[str] = None, is_active: bool = True
    ) -> Tenant:
        with self._data_lock:
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tenant_id})
            tenant = Tenant(
                id=tenant_id,
                name=name,
                domain=domain.lower() if domain else None,
                is_active=is_active,
            )
            self.tenants[tenant_id] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        needle = (domain or "").lower()
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.domain and t.domain == needle),
                None,
            )

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str = DEFAULT_TENANT_ID,
        first_name: str = "",
        last_name: str = "",
        scopes: Optional[List[str]] = None,
        groups: Optional[List[str]] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = _normalize_email(email)
        if not normalized:
            raise ConstraintViolation("email is required", {"field": "email"})
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found", {"tenant_id": tenant_id})
            if self._find_user_by_email(normalized, tenant_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                scopes=list(scopes or []),
                groups=list(groups or []),
                is_active=is_active,
                meta=dict(meta) if meta else {},
            )
            self.users[(tenant_id, user.id)] = user
            self._persist_state()
            return replace(user)

    def _find_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        return next(
            (
                u
                for (tid, _), u in self.users.items()
                if tid == tenant_id and u.email == email
            ),
            None,
        )

    def get_user(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get((tenant_id, user_id))
            return replace(user) if user else None

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(_normalize_email(email), tenant_id)
            return replace(user) if user else None

    def save_password(self, user_id: str, tenant_id: str, password_hash: str) -> None:
        with self._data_lock:
            if (tenant_id, user_id) not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.passwords[(tenant_id, user_id)] = password_hash
            self._persist_state()

    def get_password_hash(self, user_id: str, tenant_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get((tenant_id, user_id))

    # ------------------------------------------------------------------
    # clients
    # ------------------------------------------------------------------
    def create_client(self, client: Client) -> Client:
        with self._data_lock:
            key = (client.tenant_id, client.client_id)
            if client.tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found", {"tenant_id": client.tenant_id})
            if key in self.clients:
                raise ConstraintViolation("client already exists", {"client_id": client.client_id})
            self.clients[key] = replace(client)
            self._persist_state()
            return replace(client)

    def get_client(self, client_id: str, tenant_id: str) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get((tenant_id, client_id))
            return replace(client) if client else None

    # ------------------------------------------------------------------
    # authorization codes
    # ------------------------------------------------------------------
    def save_authorization_code(self, record: AuthorizationCode) -> None:
        with self._data_lock:
            key = (record.tenant_id, record.code)
            if key in self.codes:
                raise ConstraintViolation("authorization code collision", {})
            self.codes[key] = replace(record)
            self.maybe_prune_expired()
            self._persist_state()

    def get_authorization_code(self, code: str, tenant_id: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            record = self.codes.get((tenant_id, code))
            return replace(record) if record else None

    def mark_authorization_code_used(self, code: str, tenant_id: str) -> bool:
        """Flip ``used`` from False to True; returns False if it was already set."""
        with self._data_lock:
            record = self.codes.get((tenant_id, code))
            if record is None or record.used:
                return False
            record.used = True
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------
    def save_refresh_token(self, record: RefreshToken) -> None:
        with self._data_lock:
            self.refresh_tokens[(record.tenant_id, record.token_hash)] = replace(record)
            self.maybe_prune_expired()
            self._persist_state()

    def get_refresh_token(self, token_hash: str, tenant_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get((tenant_id, token_hash))
            return replace(record) if record else None

    def revoke_refresh_token_if_active(
        self, token_hash: str, tenant_id: str
    ) -> Optional[RefreshToken]:
        """Flip ``revoked`` from False to True and return the record as it was.

        Returns None when the token is unknown or was already revoked, so two
        concurrent rotations of one refresh token cannot both succeed.
        """
        with self._data_lock:
            record = self.refresh_tokens.get((tenant_id, token_hash))
            if record is None or record.revoked:
                return None
            snapshot = replace(record)
            record.revoked = True
            self._persist_state()
            return snapshot

    # ------------------------------------------------------------------
    # two-factor enrollment
    # ------------------------------------------------------------------
    def get_two_factor(self, user_id: str, tenant_id: str) -> Optional[TwoFactorEnrollment]:
        with self._data_lock:
            record = self.two_factor.get((tenant_id, user_id))
            if record is None:
                return None
            return replace(
                record,
                secret=self._decrypt(record.secret),
                pending_secret=self._decrypt(record.pending_secret),
                backup_code_hashes=list(record.backup_code_hashes),
                pending_backup_code_hashes=list(record.pending_backup_code_hashes),
            )

    def save_two_factor(self, enrollment: TwoFactorEnrollment) -> None:
        with self._data_lock:
            if (enrollment.tenant_id, enrollment.user_id) not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"user_id": enrollment.user_id})
            self.two_factor[(enrollment.tenant_id, enrollment.user_id)] = replace(
                enrollment,
                secret=self._encrypt(enrollment.secret),
                pending_secret=self._encrypt(enrollment.pending_secret),
                backup_code_hashes=list(enrollment.backup_code_hashes),
                pending_backup_code_hashes=list(enrollment.pending_backup_code_hashes),
            )
            self._persist_state()

    def activate_two_factor(self, user_id: str, tenant_id: str, secret: str) -> bool:
        """Promote the pending enrollment to active if ``secret`` is still the pending one."""
        with self._data_lock:
            record = self.two_factor.get((tenant_id, user_id))
            if record is None or record.enabled:
                return False
            if self._decrypt(record.pending_secret) != secret:
                return False
            record.secret = self._encrypt(secret)
            record.pending_secret = None
            record.backup_code_hashes = list(record.pending_backup_code_hashes)
            record.pending_backup_code_hashes = []
            record.enabled = True
            record.enabled_at = utcnow()
            self._persist_state()
            return True

    def delete_two_factor(self, user_id: str, tenant_id: str) -> bool:
        with self._data_lock:
            removed = self.two_factor.pop((tenant_id, user_id), None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def consume_backup_code(self, user_id: str, tenant_id: str, code_hash: str) -> bool:
        """Remove ``code_hash`` from the active backup codes if present."""
        with self._data_lock:
            record = self.two_factor.get((tenant_id, user_id))
            if record is None or not record.enabled:
                return False
            if code_hash not in record.backup_code_hashes:
                return False
            record.backup_code_hashes.remove(code_hash)
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # two-factor step-up sessions
    # ------------------------------------------------------------------
    def create_two_factor_session(self, session: TwoFactorSession) -> None:
        with self._data_lock:
            key = (session.tenant_id, session.session_id)
            if key in self.two_factor_sessions:
                raise ConstraintViolation("two-factor session collision", {})
            self.two_factor_sessions[key] = replace(session)
            self.maybe_prune_expired()
            self._persist_state()

    def get_two_factor_session(self, session_id: str, tenant_id: str) -> Optional[TwoFactorSession]:
        with self._data_lock:
            session = self.two_factor_sessions.get((tenant_id, session_id))
            return replace(session) if session else None

    def mark_two_factor_session_verified(self, session_id: str, tenant_id: str) -> bool:
        """Set ``verified`` on an unexpired session; never clears it."""
        with self._data_lock:
            session = self.two_factor_sessions.get((tenant_id, session_id))
            if session is None or session.is_expired():
                return False
            if not session.verified:
                session.verified = True
                self._persist_state()
            return True

    # ------------------------------------------------------------------
    # expiry sweep
    # ------------------------------------------------------------------
    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Drop dead authorization codes, refresh tokens and step-up sessions.

        Used or expired codes and revoked or expired refresh tokens are
        rejected the same way as unknown ones, so nothing reads them again.
        Returns the number of records removed.
        """
        now = now or utcnow()
        with self._data_lock:
            dead_codes = [k for k, c in self.codes.items() if c.used or c.is_expired(now)]
            dead_tokens = [
                k for k, r in self.refresh_tokens.items() if r.revoked or r.expires_at <= now
            ]
            dead_sessions = [
                k for k, s in self.two_factor_sessions.items() if s.is_expired(now)
            ]
            for key in dead_codes:
                self.codes.pop(key, None)
            for key in dead_tokens:
                self.refresh_tokens.pop(key, None)
            for key in dead_sessions:
                self.two_factor_sessions.pop(key, None)
            self._last_sweep = now
            removed = len(dead_codes) + len(dead_tokens) + len(dead_sessions)
            if removed:
                self.logger.info(
                    "store_dead_records_pruned",
                    codes=len(dead_codes),
                    refresh_tokens=len(dead_tokens),
                    two_factor_sessions=len(dead_sessions),
                )
                self._persist_state()
            return removed

    def maybe_prune_expired(self) -> int:
        """Run :meth:`prune_expired` if ``sweep_interval_seconds`` has elapsed."""
        now = utcnow()
        if (now - self._last_sweep).total_seconds() >= self.sweep_interval_seconds:
            return self.prune_expired(now)
        return 0

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def verify_connection(self) -> None:
        if self.persist and self.fs_root is not None:
            self._state_path()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model: Type[T], data: dict) -> T:
        kwargs = {}
        for f in fields(model):  # type: ignore[arg-type]
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith("_at"):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return model(**kwargs)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "users": [self._serialize(u) for u in self.users.values()],
            "passwords": [
                {"tenant_id": tid, "user_id": uid, "password_hash": digest}
                for (tid, uid), digest in self.passwords.items()
            ],
            "clients": [self._serialize(c) for c in self.clients.values()],
            "codes": [self._serialize(c) for c in self.codes.values()],
            "refresh_tokens": [self._serialize(r) for r in self.refresh_tokens.values()],
            "two_factor": [self._serialize(e) for e in self.two_factor.values()],
            "two_factor_sessions": [
                self._serialize(s) for s in self.two_factor_sessions.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize(Tenant, t) for t in data.get("tenants", [])
        }
        self.tenants.setdefault(DEFAULT_TENANT_ID, Tenant(id=DEFAULT_TENANT_ID, name="default"))
        users = [self._deserialize(User, u) for u in data.get("users", [])]
        self.users = {(u.tenant_id, u.id): u for u in users}
        self.passwords = {
            (entry["tenant_id"], entry["user_id"]): entry["password_hash"]
            for entry in data.get("passwords", [])
        }
        clients = [self._deserialize(Client, c) for c in data.get("clients", [])]
        self.clients = {(c.tenant_id, c.client_id): c for c in clients}
        codes = [self._deserialize(AuthorizationCode, c) for c in data.get("codes", [])]
        self.codes = {(c.tenant_id, c.code): c for c in codes}
        tokens = [self._deserialize(RefreshToken, r) for r in data.get("refresh_tokens", [])]
        self.refresh_tokens = {(r.tenant_id, r.token_hash): r for r in tokens}
        enrollments = [
            self._deserialize(TwoFactorEnrollment, e) for e in data.get("two_factor", [])
        ]
        self.two_factor = {(e.tenant_id, e.user_id): e for e in enrollments}
        sessions = [
            self._deserialize(TwoFactorSession, s)
            for s in data.get("two_factor_sessions", [])
        ]
        self.two_factor_sessions = {(s.tenant_id, s.session_id): s for s in sessions}
        return True


__all__ = ["MemoryStore"]
