"""Tests for PKCE (Proof Key for Code Exchange) and state generation."""

import base64
import hashlib
import json
import re

import pytest

from integrate_sdk.oauth.pkce import (
    CODE_CHALLENGE_METHOD,
    DEFAULT_VERIFIER_LENGTH,
    MAX_VERIFIER_LENGTH,
    MIN_VERIFIER_LENGTH,
    VERIFIER_CHARS,
    PKCEPair,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
    generate_state_with_return_url,
    parse_state,
)


class TestGenerateCodeVerifier:
    """Tests for code verifier generation."""

    def test_default_length(self):
        """Test that default verifier length is 64 characters."""
        assert len(generate_code_verifier()) == DEFAULT_VERIFIER_LENGTH

    @pytest.mark.parametrize("length", [MIN_VERIFIER_LENGTH, 80, MAX_VERIFIER_LENGTH])
    def test_allowed_lengths(self, length):
        """Test generating verifiers across the allowed range."""
        assert len(generate_code_verifier(length=length)) == length

    @pytest.mark.parametrize("length", [MIN_VERIFIER_LENGTH - 1, MAX_VERIFIER_LENGTH + 1, 0])
    def test_out_of_range_raises_error(self, length):
        """Test that lengths outside 43-128 raise ValueError."""
        with pytest.raises(ValueError, match="must be between"):
            generate_code_verifier(length=length)

    def test_uses_only_unreserved_characters(self):
        """Test that verifier only contains RFC 7636 unreserved characters."""
        verifier = generate_code_verifier(length=MAX_VERIFIER_LENGTH)
        assert all(c in VERIFIER_CHARS for c in verifier)
        assert re.fullmatch(r"[A-Za-z0-9\-._~]+", verifier)

    def test_verifiers_are_unique(self):
        """Test that successive verifiers differ."""
        verifiers = {generate_code_verifier() for _ in range(50)}
        assert len(verifiers) == 50


class TestGenerateCodeChallenge:
    """Tests for S256 code challenge generation."""

    def test_rfc_7636_test_vector(self):
        """Test the example from RFC 7636 Appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_deterministic(self):
        """Test that the same verifier always yields the same challenge."""
        verifier = generate_code_verifier()
        assert generate_code_challenge(verifier) == generate_code_challenge(verifier)

    def test_matches_sha256_base64url(self):
        """Test challenge is unpadded base64url(SHA256(verifier))."""
        verifier = generate_code_verifier()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")

        challenge = generate_code_challenge(verifier)

        assert challenge == expected
        assert "=" not in challenge
        assert "+" not in challenge and "/" not in challenge


class TestGeneratePkcePair:
    """Tests for PKCE pair generation."""

    def test_pair_is_consistent(self):
        """Test that the challenge is derived from the verifier."""
        pair = generate_pkce_pair()

        assert isinstance(pair, PKCEPair)
        assert pair.challenge == generate_code_challenge(pair.verifier)
        assert pair.method == CODE_CHALLENGE_METHOD == "S256"

    def test_custom_length(self):
        """Test that length is passed through to the verifier."""
        assert len(generate_pkce_pair(length=100).verifier) == 100


class TestState:
    """Tests for state generation and parsing."""

    def test_round_trip_with_return_url(self):
        """Test that the return URL survives encoding."""
        state = generate_state("/dashboard?tab=integrations")
        parsed = parse_state(state)

        assert parsed.return_url == "/dashboard?tab=integrations"
        assert parsed.csrf
        assert not parsed.legacy

    def test_round_trip_without_return_url(self):
        """Test state without a return URL."""
        parsed = parse_state(generate_state())

        assert parsed.return_url is None
        assert not parsed.legacy

    def test_state_is_url_safe(self):
        """Test that state needs no URL encoding."""
        state = generate_state("https://app.example.com/a b?c=d&e=f")
        assert re.fullmatch(r"[A-Za-z0-9\-_]+", state)

    def test_states_are_unpredictable(self):
        """Test that the same return URL never yields the same state."""
        states = {generate_state("/dash") for _ in range(50)}
        assert len(states) == 50

    def test_state_with_return_url_alias(self):
        """Test the explicit return URL helper."""
        assert parse_state(generate_state_with_return_url("/dash")).return_url == "/dash"

    def test_legacy_bare_state(self):
        """Test that a bare random state is accepted without a return URL."""
        parsed = parse_state("plain-random-state!")

        assert parsed.legacy
        assert parsed.csrf == "plain-random-state!"
        assert parsed.return_url is None

    def test_json_without_csrf_is_legacy(self):
        """Test that a decodable document without csrf is treated as legacy."""
        encoded = base64.urlsafe_b64encode(json.dumps({"returnUrl": "/x"}).encode()).decode().rstrip("=")
        parsed = parse_state(encoded)

        assert parsed.legacy
        assert parsed.return_url is None

    def test_non_string_return_url_ignored(self):
        """Test that a malformed return URL is dropped."""
        encoded = base64.urlsafe_b64encode(json.dumps({"csrf": "abc", "returnUrl": 5}).encode()).decode()
        parsed = parse_state(encoded)

        assert parsed.csrf == "abc"
        assert parsed.return_url is None
