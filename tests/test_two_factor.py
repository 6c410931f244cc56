"""Tests for TOTP, backup codes, lockout and step-up sessions."""

import base64
from datetime import timedelta

import pytest

from tenantauth.service.errors import AuthenticationError, ConflictError, ValidationError
from tenantauth.service.two_factor import (
    TwoFactorEngine,
    build_otpauth_uri,
    generate_totp,
    hash_backup_code,
    verify_totp,
)
from tenantauth.storage.models import utcnow

# RFC 6238 appendix B seed, base32 encoded
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
NOW = 1_700_000_000.0


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _Clock(NOW)


@pytest.fixture
def engine(runtime, clock):
    return TwoFactorEngine(runtime.store, None, runtime.settings, runtime.random, clock=clock)


def _enable(engine, user, clock):
    setup = engine.begin_enrollment(user)
    code = generate_totp(setup["secret"], clock.now)
    engine.confirm_enrollment(user.id, user.tenant_id, code, setup["secret"])
    return setup


class TestTotp:
    def test_rfc6238_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_accepts_adjacent_steps(self):
        code = generate_totp(RFC_SECRET, NOW)
        assert verify_totp(RFC_SECRET, code, NOW)
        assert verify_totp(RFC_SECRET, code, NOW + 30)
        assert verify_totp(RFC_SECRET, code, NOW - 30)

    def test_rejects_two_steps_away(self):
        code = generate_totp(RFC_SECRET, NOW)
        assert not verify_totp(RFC_SECRET, code, NOW + 90)

    def test_rejects_malformed_codes(self):
        assert not verify_totp(RFC_SECRET, "", NOW)
        assert not verify_totp(RFC_SECRET, "12345", NOW)
        assert not verify_totp(RFC_SECRET, "abcdef", NOW)

    def test_rejects_non_ascii_digits(self):
        """Arabic-Indic digits pass str.isdigit but are not a TOTP code."""
        assert not verify_totp(RFC_SECRET, "١٢٣٤٥٦", NOW)
        assert not verify_totp(RFC_SECRET, "１２３４５６", NOW)

    def test_invalid_secret_never_verifies(self):
        assert generate_totp("not base32!", NOW) == ""
        assert not verify_totp("not base32!", "000000", NOW)

    def test_otpauth_uri(self):
        uri = build_otpauth_uri("OAuth2 Server", "alice@example.com", "ABC")
        assert uri == (
            "otpauth://totp/OAuth2%20Server:alice@example.com?secret=ABC&issuer=OAuth2+Server"
        )


class TestEnrollment:
    def test_setup_returns_secret_qr_and_backup_codes(self, engine, seeded_user):
        setup = engine.begin_enrollment(seeded_user)
        assert len(base64.b32decode(setup["secret"])) == 20
        assert setup["qr_code_url"].startswith("otpauth://totp/")
        assert base64.b64decode(setup["qr_code_image"]).startswith(b"\x89PNG")
        assert len(setup["backup_codes"]) == 10
        assert not engine.is_enabled(seeded_user.id, "")

    def test_confirm_enables(self, engine, seeded_user, clock):
        _enable(engine, seeded_user, clock)
        assert engine.status(seeded_user.id, "") == {
            "enabled": True,
            "has_backup_codes": True,
            "backup_codes_remaining": 10,
        }

    def test_confirm_without_setup(self, engine, seeded_user):
        with pytest.raises(ValidationError):
            engine.confirm_enrollment(seeded_user.id, "", "123456", RFC_SECRET)

    def test_confirm_with_wrong_code(self, engine, seeded_user, clock):
        setup = engine.begin_enrollment(seeded_user)
        wrong = generate_totp(setup["secret"], clock.now + 300)
        with pytest.raises(ValidationError):
            engine.confirm_enrollment(seeded_user.id, "", wrong, setup["secret"])
        assert not engine.is_enabled(seeded_user.id, "")

    def test_confirm_with_other_secret(self, engine, seeded_user, clock):
        engine.begin_enrollment(seeded_user)
        with pytest.raises(ValidationError):
            engine.confirm_enrollment(
                seeded_user.id, "", generate_totp(RFC_SECRET, clock.now), RFC_SECRET
            )

    def test_confirm_with_non_ascii_secret(self, engine, seeded_user, clock):
        setup = engine.begin_enrollment(seeded_user)
        code = generate_totp(setup["secret"], clock.now)
        with pytest.raises(ValidationError):
            engine.confirm_enrollment(seeded_user.id, "", code, "ÄÖÜ" + setup["secret"][3:])
        assert not engine.is_enabled(seeded_user.id, "")

    def test_setup_when_enabled_conflicts(self, engine, seeded_user, clock):
        _enable(engine, seeded_user, clock)
        with pytest.raises(ConflictError):
            engine.begin_enrollment(seeded_user)

    def test_secret_is_encrypted_at_rest(self, runtime, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        raw = runtime.store.two_factor[("", seeded_user.id)]
        assert raw.secret != setup["secret"]
        assert runtime.store.get_two_factor(seeded_user.id, "").secret == setup["secret"]

    async def test_disable_requires_valid_code(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        with pytest.raises(AuthenticationError):
            await engine.disable(seeded_user.id, "", "000000")
        await engine.disable(seeded_user.id, "", generate_totp(setup["secret"], clock.now))
        assert not engine.is_enabled(seeded_user.id, "")

    async def test_disable_when_not_enabled(self, engine, seeded_user):
        with pytest.raises(ValidationError):
            await engine.disable(seeded_user.id, "", "123456")


class TestChallenge:
    async def test_totp_challenge(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        code = generate_totp(setup["secret"], clock.now)
        assert await engine.verify_challenge(seeded_user.id, "", code)

    async def test_backup_code_is_single_use(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        backup = setup["backup_codes"][0]
        assert await engine.verify_challenge(seeded_user.id, "", backup)
        assert not await engine.verify_challenge(seeded_user.id, "", backup)
        assert engine.status(seeded_user.id, "")["backup_codes_remaining"] == 9

    async def test_backup_code_matching_ignores_case(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        assert await engine.verify_challenge(
            seeded_user.id, "", f"  {setup['backup_codes'][1].upper()} "
        )

    async def test_not_enrolled_never_verifies(self, engine, seeded_user):
        assert not await engine.verify_challenge(seeded_user.id, "", "123456")

    async def test_non_ascii_digit_code_is_rejected(self, engine, seeded_user, clock):
        _enable(engine, seeded_user, clock)
        assert not await engine.verify_challenge(seeded_user.id, "", "١٢٣٤٥٦")

    async def test_lockout_after_repeated_failures(self, runtime, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        for _ in range(runtime.settings.mfa_max_attempts):
            assert not await engine.verify_challenge(seeded_user.id, "", "000000")
        good = generate_totp(setup["secret"], clock.now)
        assert not await engine.verify_challenge(seeded_user.id, "", good)

        clock.now += runtime.settings.mfa_lockout_seconds + 1
        good = generate_totp(setup["secret"], clock.now)
        assert await engine.verify_challenge(seeded_user.id, "", good)

    def test_backup_code_hash_normalises(self):
        assert hash_backup_code(" AbCd ") == hash_backup_code("abcd")


class TestStepUpSessions:
    """Step-up sessions bind a second-factor check to one user in one tenant."""

    async def test_session_verification(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        session_id = engine.create_step_up_session(seeded_user.id, "", "web-app")
        assert not engine.is_session_verified(session_id, user_id=seeded_user.id, tenant_id="")

        code = generate_totp(setup["secret"], clock.now)
        assert await engine.verify_session(session_id, "", code)
        assert engine.is_session_verified(session_id, user_id=seeded_user.id, tenant_id="")

    async def test_session_bound_to_user_and_tenant(self, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        session_id = engine.create_step_up_session(seeded_user.id, "")
        await engine.verify_session(session_id, "", generate_totp(setup["secret"], clock.now))
        assert not engine.is_session_verified(session_id, user_id="someone-else")
        assert not engine.is_session_verified(
            session_id, user_id=seeded_user.id, tenant_id="acme"
        )

    async def test_session_unreachable_from_other_tenant(
        self, runtime, engine, seeded_user, clock
    ):
        """A session id from one tenant cannot be verified through another."""
        setup = _enable(engine, seeded_user, clock)
        runtime.store.create_tenant("acme", "Acme")
        session_id = engine.create_step_up_session(seeded_user.id, "")
        code = generate_totp(setup["secret"], clock.now)

        assert runtime.store.get_two_factor_session(session_id, "acme") is None
        assert not await engine.verify_session(session_id, "acme", code)
        assert not runtime.store.two_factor_sessions[("", session_id)].verified

    async def test_wrong_code_leaves_session_unverified(self, engine, seeded_user, clock):
        _enable(engine, seeded_user, clock)
        session_id = engine.create_step_up_session(seeded_user.id, "")
        assert not await engine.verify_session(session_id, "", "000000")
        assert not engine.is_session_verified(session_id, user_id=seeded_user.id)

    async def test_expired_session_rejected(self, runtime, engine, seeded_user, clock):
        setup = _enable(engine, seeded_user, clock)
        session_id = engine.create_step_up_session(seeded_user.id, "")
        runtime.store.two_factor_sessions[("", session_id)].expires_at = utcnow() - timedelta(
            seconds=1
        )
        assert not await engine.verify_session(
            session_id, "", generate_totp(setup["secret"], clock.now)
        )

    async def test_verified_session_lapses_at_expiry(self, runtime, engine, seeded_user, clock):
        """Verification is sticky only until ``expires_at``."""
        setup = _enable(engine, seeded_user, clock)
        session_id = engine.create_step_up_session(seeded_user.id, "")
        assert await engine.verify_session(
            session_id, "", generate_totp(setup["secret"], clock.now)
        )
        assert engine.is_session_verified(session_id, user_id=seeded_user.id)

        runtime.store.two_factor_sessions[("", session_id)].expires_at = utcnow() - timedelta(
            seconds=1
        )
        assert not engine.is_session_verified(session_id, user_id=seeded_user.id)
        assert not await engine.verify_session(session_id, "", "")

    async def test_unknown_session(self, engine):
        assert not await engine.verify_session("missing", "", "123456")
