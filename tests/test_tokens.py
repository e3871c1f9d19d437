"""Unit tests for the token service.

Tests for:
- Access/refresh issuance and claim layout
- Fail-closed verification (signature, audience, expiry)
- Structural pre-checks and bearer extraction
"""

from datetime import timedelta

import pytest

from accesscore.service.errors import InvalidToken
from accesscore.service.tokens import (
    AUDIENCE_ACCESS,
    AUDIENCE_REFRESH,
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    TOKEN_TYPE_UNKNOWN,
    TokenService,
    decode_segment,
    encode_segment,
)


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


def _claims(**extra):
    claims = {"sub": "p-1", "email": "p1@example.com", "tenantId": "t1", "role": "Member"}
    claims.update(extra)
    return claims


class TestIssuance:
    """Tests for token issuance."""

    def test_access_token_carries_identity_claims(self, tokens, settings):
        """Access tokens carry subject, email, tenant, role and registered claims."""
        token = tokens.issue_access_token(_claims(sid="s-1"))
        payload = tokens.verify(token, AUDIENCE_ACCESS)

        assert payload["sub"] == "p-1"
        assert payload["email"] == "p1@example.com"
        assert payload["tenantId"] == "t1"
        assert payload["role"] == "Member"
        assert payload["sid"] == "s-1"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == f"{settings.jwt_issuer}-users"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_refresh_token_carries_only_subject_and_token_id(self, tokens):
        """Refresh tokens carry only the subject and the record id."""
        token = tokens.issue_refresh_token("p-1", "tok-1")
        payload = tokens.verify(token, AUDIENCE_REFRESH)

        assert payload["sub"] == "p-1"
        assert payload["tokenId"] == "tok-1"
        assert "email" not in payload
        assert "role" not in payload

    def test_access_token_requires_subject(self, tokens):
        """Issuing without a subject is a programming error."""
        with pytest.raises(ValueError):
            tokens.issue_access_token({"email": "x@example.com"})

    def test_token_pair_reports_configured_ttls(self, tokens):
        """expires_in is the TTL used to sign the access token."""
        refresh = tokens.issue_refresh_token("p-1", "tok-1")
        pair = tokens.issue_token_pair(_claims(), refresh)

        assert pair.expires_in == 15 * 60
        assert pair.refresh_expires_in == 24 * 60 * 60
        assert pair.token_type == "Bearer"
        assert pair.refresh_token == refresh


class TestVerification:
    """Tests for fail-closed verification."""

    def test_expired_access_token_rejected(self, tokens, clock):
        """A token past exp raises InvalidToken."""
        token = tokens.issue_access_token(_claims())
        clock.advance(minutes=16)

        with pytest.raises(InvalidToken):
            tokens.verify(token, AUDIENCE_ACCESS)
        assert tokens.is_expired(token)

    def test_verify_exp_can_be_skipped(self, tokens, clock):
        """Signature-only verification still succeeds after expiry."""
        token = tokens.issue_access_token(_claims())
        clock.advance(hours=1)

        assert tokens.verify(token, AUDIENCE_ACCESS, verify_exp=False)["sub"] == "p-1"

    def test_refresh_token_rejected_as_access(self, tokens):
        """Audiences use distinct secrets, so cross-use fails."""
        refresh = tokens.issue_refresh_token("p-1", "tok-1")
        access = tokens.issue_access_token(_claims())

        with pytest.raises(InvalidToken):
            tokens.verify(refresh, AUDIENCE_ACCESS)
        with pytest.raises(InvalidToken):
            tokens.verify(access, AUDIENCE_REFRESH)

    def test_tampered_payload_rejected(self, tokens):
        """Changing a claim invalidates the signature."""
        token = tokens.issue_access_token(_claims())
        header, payload, signature = token.split(".")
        forged = decode_segment(payload).replace(b'"Member"', b'"Admin"')
        tampered = ".".join([header, encode_segment(forged), signature])

        with pytest.raises(InvalidToken):
            tokens.verify(tampered, AUDIENCE_ACCESS)

    def test_other_issuer_rejected(self, tokens, settings, clock):
        """Tokens minted for another issuer do not verify."""
        other = TokenService(settings.model_copy(update={"jwt_issuer": "elsewhere"}), clock=clock)
        token = other.issue_access_token(_claims())

        with pytest.raises(InvalidToken):
            tokens.verify(token, AUDIENCE_ACCESS)

    def test_alg_none_rejected(self, tokens):
        """Only HS256 headers are accepted."""
        token = tokens.issue_access_token(_claims())
        _, payload, signature = token.split(".")
        header = encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(InvalidToken):
            tokens.verify(f"{header}.{payload}.{signature}", AUDIENCE_ACCESS)

    def test_clock_skew_leeway(self, settings, clock):
        """Leeway extends acceptance past exp by the configured seconds."""
        lenient = TokenService(
            settings.model_copy(update={"token_clock_skew_seconds": 120}), clock=clock
        )
        token = lenient.issue_access_token(_claims())
        clock.advance(minutes=16)

        assert lenient.verify(token, AUDIENCE_ACCESS)["sub"] == "p-1"

    def test_malformed_tokens_rejected(self, tokens):
        """Structural garbage never reaches signature checks."""
        for bad in ["", "abc", "a.b", "a.b.c.d", "a..c", "a.b!.c"]:
            with pytest.raises(InvalidToken):
                tokens.verify(bad, AUDIENCE_ACCESS)


class TestHelpers:
    """Tests for decode/format helpers."""

    def test_validate_token_format(self, tokens):
        token = tokens.issue_access_token(_claims())

        assert TokenService.validate_token_format(token)
        assert not TokenService.validate_token_format(None)
        assert not TokenService.validate_token_format("one.two")
        assert not TokenService.validate_token_format("a b.c.d")

    def test_decode_unsafe_ignores_signature(self, tokens):
        token = tokens.issue_access_token(_claims())
        header, payload, _ = token.split(".")

        assert tokens.decode_unsafe(f"{header}.{payload}.AAAA")["sub"] == "p-1"
        assert tokens.decode_unsafe("not-a-token") is None

    def test_token_type_by_audience(self, tokens):
        assert tokens.token_type(tokens.issue_access_token(_claims())) == TOKEN_TYPE_ACCESS
        assert tokens.token_type(tokens.issue_refresh_token("p-1", "t")) == TOKEN_TYPE_REFRESH
        assert tokens.token_type("x.y.z") == TOKEN_TYPE_UNKNOWN

    def test_extract_bearer(self):
        assert TokenService.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert TokenService.extract_bearer("bearer   abc") == "abc"
        assert TokenService.extract_bearer("Basic abc") is None
        assert TokenService.extract_bearer("Bearer ") is None
        assert TokenService.extract_bearer(None) is None

    def test_is_expired_for_fresh_token(self, tokens, clock):
        token = tokens.issue_refresh_token("p-1", "tok-1")

        assert not tokens.is_expired(token)
        clock.advance(timedelta(days=2))
        assert tokens.is_expired(token)
