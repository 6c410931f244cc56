"""Tests for RFC 7636 code_challenge handling."""

import pytest

from tenantauth.service.pkce import (
    METHOD_PLAIN,
    METHOD_S256,
    compute_challenge,
    is_supported_method,
    normalize_method,
    validate_verifier_format,
    verify_pkce,
)

# RFC 7636 appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mJ92ZkvW1ee8xGOpZfeqWwvFHiTOl0"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestComputeChallenge:
    def test_s256_matches_rfc_example(self):
        assert compute_challenge(RFC_VERIFIER, METHOD_S256) == RFC_CHALLENGE

    def test_plain_is_identity(self):
        assert compute_challenge(RFC_VERIFIER, METHOD_PLAIN) == RFC_VERIFIER

    def test_unknown_method_raises(self):
        with pytest.raises(ValueError):
            compute_challenge(RFC_VERIFIER, "S512")


class TestNormalizeMethod:
    def test_no_challenge_means_no_method(self):
        assert normalize_method("S256", "") == ""
        assert normalize_method(None, None) == ""

    def test_challenge_without_method_defaults_to_plain(self):
        assert normalize_method("", "abc") == METHOD_PLAIN

    def test_case_is_canonicalised(self):
        assert normalize_method("s256", "abc") == METHOD_S256
        assert normalize_method("PLAIN", "abc") == METHOD_PLAIN

    def test_unknown_method_passes_through_for_rejection(self):
        assert normalize_method("S512", "abc") == "S512"
        assert not is_supported_method("S512")


class TestVerifierFormat:
    def test_rejects_short_verifier(self):
        assert not validate_verifier_format("a" * 42)

    def test_rejects_long_verifier(self):
        assert not validate_verifier_format("a" * 129)

    def test_rejects_reserved_characters(self):
        assert not validate_verifier_format("a" * 42 + "+")

    def test_accepts_unreserved_alphabet(self):
        assert validate_verifier_format("A-z0._~" * 7)


class TestVerifyPkce:
    def test_s256_round_trip(self):
        assert verify_pkce(RFC_VERIFIER, RFC_CHALLENGE, "S256")

    def test_plain_round_trip(self):
        verifier = "p" * 50
        assert verify_pkce(verifier, verifier, "plain")

    def test_missing_method_is_treated_as_plain(self):
        verifier = "q" * 43
        assert verify_pkce(verifier, verifier, None)
        assert not verify_pkce(RFC_VERIFIER, RFC_CHALLENGE, None)

    def test_wrong_verifier_fails(self):
        assert not verify_pkce("x" * 43, RFC_CHALLENGE, "S256")

    def test_missing_verifier_fails(self):
        assert not verify_pkce(None, RFC_CHALLENGE, "S256")
        assert not verify_pkce("", RFC_CHALLENGE, "S256")

    def test_unsupported_method_fails(self):
        assert not verify_pkce(RFC_VERIFIER, RFC_CHALLENGE, "S512")

    def test_empty_challenge_fails(self):
        assert not verify_pkce(RFC_VERIFIER, "", "S256")
