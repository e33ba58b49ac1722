"""Tests for state, nonce and PKCE generation."""

import base64
import hashlib
import re

import pytest

from oauthkit.pkce import (
    DEFAULT_VERIFIER_LENGTH,
    MAX_VERIFIER_LENGTH,
    MIN_VERIFIER_LENGTH,
    VERIFIER_CHARS,
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_pkce_pair,
    generate_state,
)


class TestGenerateCodeVerifier:
    """Tests for code verifier generation."""

    def test_default_length(self):
        assert len(generate_code_verifier()) == DEFAULT_VERIFIER_LENGTH

    @pytest.mark.parametrize("length", [MIN_VERIFIER_LENGTH - 1, MAX_VERIFIER_LENGTH + 1])
    def test_out_of_range_length_raises(self, length):
        """Test that lengths outside RFC 7636 bounds are rejected."""
        with pytest.raises(ValueError, match="must be between"):
            generate_code_verifier(length=length)

    def test_uses_unreserved_characters(self):
        assert all(char in VERIFIER_CHARS for char in generate_code_verifier())


class TestGenerateCodeChallenge:
    """Tests for the S256 challenge."""

    def test_rfc7636_appendix_b(self):
        """Test the RFC 7636 Appendix B example."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_no_padding(self):
        challenge = generate_code_challenge(generate_code_verifier())
        assert "=" not in challenge

    def test_matches_sha256(self):
        verifier = generate_code_verifier()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert generate_code_challenge(verifier) == expected


class TestRandomValues:
    """Tests for pairs, state and nonces."""

    def test_pkce_pair_is_consistent(self):
        pair = generate_pkce_pair()
        assert pair.method == "S256"
        assert pair.challenge == generate_code_challenge(pair.verifier)

    def test_state_is_hex(self):
        state = generate_state()
        assert re.fullmatch(r"[0-9a-f]{32}", state)

    def test_state_is_unique(self):
        assert len({generate_state() for _ in range(50)}) == 50

    def test_nonce_is_unique(self):
        assert len({generate_nonce() for _ in range(50)}) == 50
