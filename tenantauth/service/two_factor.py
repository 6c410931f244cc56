from __future__ import annotations

import base64
import hashlib
import hmac
import io
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import quote, urlencode

import qrcode

from tenantauth.config import DEFAULT_TENANT_ID, Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthenticationError, ConflictError, ValidationError
from tenantauth.service.randomness import RandomSource
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import TwoFactorEnrollment, TwoFactorSession, User, utcnow
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

SECRET_BYTES = 20
BACKUP_CODE_COUNT = 10
BACKUP_CODE_BYTES = 4
TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
SESSION_ID_LENGTH = 32


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 TOTP with HMAC-SHA1, the algorithm authenticator apps default to."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    now: float,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not secret or not code or len(code) != TOTP_DIGITS:
        return False
    # str.isdigit also accepts non-ASCII digits
    if not (code.isascii() and code.isdigit()):
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().lower().encode()).hexdigest()


def build_otpauth_uri(issuer: str, account: str, secret: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    return f"otpauth://totp/{label}?{urlencode({'secret': secret, 'issuer': issuer})}"


def render_qr_png(data: str) -> str:
    """Render ``data`` as a base64-encoded PNG QR code."""
    img = qrcode.make(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class TwoFactorEngine:
    """TOTP enrollment, challenge verification and step-up sessions.

    Per user the enrollment moves ``disabled -> enrolling -> enabled``; the
    pending secret and backup codes generated at setup only become active on
    a confirmed code. Failed challenges count toward a lockout that uses the
    Redis Lua script when a cache is configured and an in-process table
    otherwise.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        random_source: RandomSource,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.random = random_source
        self.clock = clock
        self._state_lock = threading.Lock()
        # (tenant_id, user_id) -> (count, window_start)
        self._mfa_attempts: Dict[Tuple[str, str], Tuple[int, float]] = {}
        # (tenant_id, user_id) -> locked_until
        self._mfa_lockouts: Dict[Tuple[str, str], float] = {}

    # ------------------------------------------------------------------
    # enrollment
    # ------------------------------------------------------------------
    def begin_enrollment(self, user: User) -> dict:
        existing = self.store.get_two_factor(user.id, user.tenant_id)
        if existing and existing.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self.random.base32(SECRET_BYTES)
        backup_codes = [self.random.hex(BACKUP_CODE_BYTES) for _ in range(BACKUP_CODE_COUNT)]
        self.store.save_two_factor(
            TwoFactorEnrollment(
                user_id=user.id,
                tenant_id=user.tenant_id,
                enabled=False,
                pending_secret=secret,
                pending_backup_code_hashes=[hash_backup_code(c) for c in backup_codes],
            )
        )
        uri = build_otpauth_uri(self.settings.totp_issuer, user.email, secret)
        logger.info("two_factor_enrollment_started", user_id=user.id, tenant_id=user.tenant_id)
        return {
            "secret": secret,
            "qr_code_url": uri,
            "qr_code_image": render_qr_png(uri),
            "backup_codes": backup_codes,
        }

    def confirm_enrollment(self, user_id: str, tenant_id: str, code: str, secret: str) -> None:
        enrollment = self.store.get_two_factor(user_id, tenant_id)
        if enrollment and enrollment.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if enrollment is None or not enrollment.pending_secret:
            raise ValidationError("two-factor setup has not been started")
        if not secret or not hmac.compare_digest(
            enrollment.pending_secret.encode(), secret.encode()
        ):
            raise ValidationError("invalid two-factor code")
        if not verify_totp(secret, (code or "").strip(), self.clock()):
            logger.info("two_factor_enable_rejected", user_id=user_id, tenant_id=tenant_id)
            raise ValidationError("invalid two-factor code")
        if not self.store.activate_two_factor(user_id, tenant_id, secret):
            raise ConflictError("two-factor enrollment changed concurrently")
        logger.info("two_factor_enabled", user_id=user_id, tenant_id=tenant_id)

    async def disable(self, user_id: str, tenant_id: str, code: str) -> None:
        enrollment = self.store.get_two_factor(user_id, tenant_id)
        if enrollment is None or not enrollment.enabled:
            raise ValidationError("two-factor authentication is not enabled")
        if not await self.verify_challenge(user_id, tenant_id, code):
            raise AuthenticationError("invalid two-factor code")
        self.store.delete_two_factor(user_id, tenant_id)
        logger.info("two_factor_disabled", user_id=user_id, tenant_id=tenant_id)

    def is_enabled(self, user_id: str, tenant_id: str) -> bool:
        enrollment = self.store.get_two_factor(user_id, tenant_id)
        return bool(enrollment and enrollment.enabled)

    def status(self, user_id: str, tenant_id: str) -> dict:
        enrollment = self.store.get_two_factor(user_id, tenant_id)
        enabled = bool(enrollment and enrollment.enabled)
        remaining = len(enrollment.backup_code_hashes) if enabled and enrollment else 0
        return {
            "enabled": enabled,
            "has_backup_codes": remaining > 0,
            "backup_codes_remaining": remaining,
        }

    # ------------------------------------------------------------------
    # challenges
    # ------------------------------------------------------------------
    async def verify_challenge(self, user_id: str, tenant_id: str, code: str) -> bool:
        """Accept a current TOTP code or consume one backup code.

        Returns False, without raising, when 2FA is not enabled for the user
        or the user is locked out.
        """
        enrollment = self.store.get_two_factor(user_id, tenant_id)
        if enrollment is None or not enrollment.enabled or not enrollment.secret:
            return False
        if await self._is_locked_out(user_id, tenant_id):
            logger.warning("mfa_locked_out", user_id=user_id, tenant_id=tenant_id)
            return False

        candidate = (code or "").strip()
        method = None
        if verify_totp(enrollment.secret, candidate, self.clock()):
            method = "totp"
        elif candidate and self.store.consume_backup_code(
            user_id, tenant_id, hash_backup_code(candidate)
        ):
            method = "backup_code"

        if method is None:
            await self._record_failure(user_id, tenant_id)
            return False
        await self._clear_failures(user_id, tenant_id)
        logger.info("mfa_verified", user_id=user_id, tenant_id=tenant_id, method=method)
        return True

    async def _is_locked_out(self, user_id: str, tenant_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(tenant_id, user_id)
        now = self.clock()
        with self._state_lock:
            locked_until = self._mfa_lockouts.get((tenant_id, user_id))
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._mfa_lockouts.pop((tenant_id, user_id), None)
        return False

    async def _record_failure(self, user_id: str, tenant_id: str) -> None:
        max_attempts = self.settings.mfa_max_attempts
        lockout_seconds = self.settings.mfa_lockout_seconds
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                tenant_id, user_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = self.clock()
        key = (tenant_id, user_id)
        with self._state_lock:
            attempts = 1
            window_start = now
            current = self._mfa_attempts.get(key)
            if current:
                count, prev_window_start = current
                if now - prev_window_start < lockout_seconds:
                    attempts = count + 1
                    window_start = prev_window_start
            self._mfa_attempts[key] = (attempts, window_start)
            if attempts >= max_attempts:
                self._mfa_lockouts[key] = now + lockout_seconds
                self._mfa_attempts.pop(key, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str, tenant_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(tenant_id, user_id)
            return
        with self._state_lock:
            self._mfa_attempts.pop((tenant_id, user_id), None)

    # ------------------------------------------------------------------
    # step-up sessions
    # ------------------------------------------------------------------
    def create_step_up_session(self, user_id: str, tenant_id: str, client_id: str = "") -> str:
        now = utcnow()
        session_id = self.random.urlsafe(SESSION_ID_LENGTH)
        self.store.create_two_factor_session(
            TwoFactorSession(
                session_id=session_id,
                user_id=user_id,
                tenant_id=tenant_id,
                client_id=client_id,
                expires_at=now + timedelta(minutes=self.settings.two_factor_session_ttl_minutes),
                created_at=now,
            )
        )
        return session_id

    async def verify_session(self, session_id: str, tenant_id: str, code: str) -> bool:
        session = self.store.get_two_factor_session(session_id, tenant_id)
        if session is None or session.is_expired():
            return False
        if session.verified:
            return True
        if not await self.verify_challenge(session.user_id, tenant_id, code):
            return False
        return self.store.mark_two_factor_session_verified(session_id, tenant_id)

    def is_session_verified(
        self, session_id: str, *, user_id: str, tenant_id: str = DEFAULT_TENANT_ID
    ) -> bool:
        session = self.store.get_two_factor_session(session_id, tenant_id)
        if session is None or session.is_expired() or not session.verified:
            return False
        return session.user_id == user_id


__all__ = [
    "TwoFactorEngine",
    "generate_totp",
    "verify_totp",
    "hash_backup_code",
    "build_otpauth_uri",
    "render_qr_png",
]
