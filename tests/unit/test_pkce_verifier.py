"""
Unit tests for PKCE S256 verification
"""

import pytest

from mcp_gcal.auth.pkce_verifier import PKCEError, PKCEVerifier, create_pkce_pair, verify_pkce

# RFC 7636 Appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestPKCEVerifier:
    """Test S256 challenge computation and verification"""

    def test_rfc_vector(self):
        assert PKCEVerifier.generate_code_challenge(RFC_VERIFIER) == RFC_CHALLENGE
        assert PKCEVerifier.verify(RFC_VERIFIER, RFC_CHALLENGE) is True

    def test_wrong_verifier_rejected(self):
        other = "x" * 43
        assert PKCEVerifier.verify(other, RFC_CHALLENGE) is False

    @pytest.mark.parametrize("position", range(len(RFC_VERIFIER)))
    def test_single_character_change_rejected(self, position):
        replacement = "A" if RFC_VERIFIER[position] != "A" else "B"
        mutated = RFC_VERIFIER[:position] + replacement + RFC_VERIFIER[position + 1:]

        assert mutated != RFC_VERIFIER
        assert PKCEVerifier.verify(mutated, RFC_CHALLENGE) is False

    def test_empty_challenge_rejected(self):
        assert PKCEVerifier.verify(RFC_VERIFIER, "") is False

    @pytest.mark.parametrize("verifier", [
        "",
        "a" * 42,
        "a" * 129,
        "a" * 42 + "!",
        "a" * 42 + " ",
    ])
    def test_malformed_verifier_rejected(self, verifier):
        assert PKCEVerifier.verify(verifier, RFC_CHALLENGE) is False

    def test_malformed_verifier_raises_on_challenge(self):
        with pytest.raises(PKCEError):
            PKCEVerifier.generate_code_challenge("too-short")

    def test_challenge_has_no_padding(self):
        pair = create_pkce_pair()
        assert "=" not in pair.code_challenge
        assert len(pair.code_challenge) == 43
        assert pair.code_challenge_method == "S256"

    def test_generated_pair_verifies(self):
        pair = create_pkce_pair()
        assert 43 <= len(pair.code_verifier) <= 128
        assert verify_pkce(pair.code_verifier, pair.code_challenge)

    def test_challenge_is_case_sensitive(self):
        assert PKCEVerifier.verify(RFC_VERIFIER, RFC_CHALLENGE.lower()) is False
