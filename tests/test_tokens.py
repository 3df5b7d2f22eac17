"""Unit tests for token issuing and verification."""

import base64
import json

import pytest

from tenantauth.service.errors import (
    BadSignature,
    InvalidClaims,
    MalformedToken,
    TokenError,
    TokenExpired,
)
from tenantauth.service.tokens import TokenIssuer
from tenantauth.storage.models import TokenKind


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        access_secret="access-secret-for-tests",
        refresh_secret="refresh-secret-for-tests",
        access_ttl_seconds=900,
        refresh_ttl_seconds=7 * 24 * 3600,
        issuer="multi-tenant-crm",
        clock=clock,
    )


CLAIMS = {"userId": "user-1", "tenantId": "tenant-a", "role": "agent"}


class TestIssue:
    def test_issued_claims_round_trip(self, issuer, clock):
        token = issuer.issue(TokenKind.ACCESS, CLAIMS)
        claims = issuer.verify(token, TokenKind.ACCESS)

        assert claims["userId"] == "user-1"
        assert claims["tenantId"] == "tenant-a"
        assert claims["role"] == "agent"
        assert claims["kind"] == "access"
        assert claims["issuedAt"] == int(clock.now)
        assert claims["expiresAt"] == int(clock.now) + 900
        assert claims["tokenId"]

    def test_refresh_uses_refresh_duration(self, issuer, clock):
        claims = issuer.verify(issuer.issue(TokenKind.REFRESH, CLAIMS), TokenKind.REFRESH)
        assert claims["expiresAt"] - claims["issuedAt"] == 7 * 24 * 3600

    def test_each_token_gets_a_fresh_id(self, issuer):
        first = issuer.verify(issuer.issue(TokenKind.ACCESS, CLAIMS), TokenKind.ACCESS)
        second = issuer.verify(issuer.issue(TokenKind.ACCESS, CLAIMS), TokenKind.ACCESS)
        assert first["tokenId"] != second["tokenId"]

    def test_header_is_hs256_jwt(self, issuer):
        header_b64 = issuer.issue(TokenKind.ACCESS, CLAIMS).split(".")[0]
        padded = header_b64 + "=" * (-len(header_b64) % 4)
        assert json.loads(base64.urlsafe_b64decode(padded)) == {"alg": "HS256", "typ": "JWT"}

    @pytest.mark.parametrize("missing", ["userId", "tenantId"])
    def test_missing_required_claim_rejected(self, issuer, missing):
        claims = {k: v for k, v in CLAIMS.items() if k != missing}
        with pytest.raises(InvalidClaims):
            issuer.issue(TokenKind.ACCESS, claims)

    def test_empty_tenant_rejected(self, issuer):
        with pytest.raises(InvalidClaims):
            issuer.issue(TokenKind.ACCESS, {"userId": "u", "tenantId": ""})


class TestVerify:
    def test_expires_exactly_at_expiry(self, issuer, clock):
        token = issuer.issue(TokenKind.ACCESS, CLAIMS)
        clock.advance(899)
        issuer.verify(token, TokenKind.ACCESS)
        clock.advance(1)
        with pytest.raises(TokenExpired):
            issuer.verify(token, TokenKind.ACCESS)

    def test_leeway_extends_acceptance(self, clock):
        lenient = TokenIssuer(
            access_secret="a-secret",
            refresh_secret="r-secret",
            access_ttl_seconds=60,
            refresh_ttl_seconds=120,
            leeway_seconds=30,
            clock=clock,
        )
        token = lenient.issue(TokenKind.ACCESS, CLAIMS)
        clock.advance(75)
        assert lenient.verify(token, TokenKind.ACCESS)["userId"] == "user-1"

    def test_access_token_not_accepted_as_refresh(self, issuer):
        token = issuer.issue(TokenKind.ACCESS, CLAIMS)
        with pytest.raises(BadSignature):
            issuer.verify(token, TokenKind.REFRESH)

    def test_refresh_token_not_accepted_as_access(self, issuer):
        token = issuer.issue(TokenKind.REFRESH, CLAIMS)
        with pytest.raises(BadSignature):
            issuer.verify(token, TokenKind.ACCESS)

    def test_tampered_claims_fail_signature(self, issuer):
        header, _, signature = issuer.issue(TokenKind.ACCESS, CLAIMS).split(".")
        forged = _segment({**CLAIMS, "tenantId": "tenant-b", "tokenId": "x",
                           "issuedAt": 1, "expiresAt": 9_999_999_999, "kind": "access"})
        with pytest.raises(BadSignature):
            issuer.verify(f"{header}.{forged}.{signature}", TokenKind.ACCESS)

    def test_token_from_other_secret_rejected(self, issuer, clock):
        other = TokenIssuer(
            access_secret="different-access",
            refresh_secret="different-refresh",
            access_ttl_seconds=900,
            refresh_ttl_seconds=900,
            issuer="multi-tenant-crm",
            clock=clock,
        )
        with pytest.raises(BadSignature):
            issuer.verify(other.issue(TokenKind.ACCESS, CLAIMS), TokenKind.ACCESS)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "..", "!!!.@@@.###"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(MalformedToken):
            issuer.verify(token, TokenKind.ACCESS)

    def test_non_hs256_algorithm_rejected(self, issuer):
        _, payload, signature = issuer.issue(TokenKind.ACCESS, CLAIMS).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(MalformedToken):
            issuer.verify(f"{header}.{payload}.{signature}", TokenKind.ACCESS)

    def test_every_single_bit_flip_is_rejected(self, issuer):
        token = issuer.issue(TokenKind.ACCESS, CLAIMS)
        for index, char in enumerate(token):
            for bit in range(8):
                mutated = token[:index] + chr(ord(char) ^ (1 << bit)) + token[index + 1:]
                with pytest.raises(TokenError):
                    issuer.verify(mutated, TokenKind.ACCESS)

    def test_non_ascii_signature_is_malformed(self, issuer):
        token = issuer.issue(TokenKind.ACCESS, CLAIMS)
        with pytest.raises(MalformedToken):
            issuer.verify(token[:-1] + "é", TokenKind.ACCESS)


class TestConstruction:
    def test_equal_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(
                access_secret="same",
                refresh_secret="same",
                access_ttl_seconds=1,
                refresh_ttl_seconds=1,
            )

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(
                access_secret="",
                refresh_secret="x",
                access_ttl_seconds=1,
                refresh_ttl_seconds=1,
            )

    def test_from_settings(self, settings):
        issuer = TokenIssuer.from_settings(settings)
        assert issuer.ttl_for(TokenKind.ACCESS) == 900
        assert issuer.ttl_for(TokenKind.REFRESH) == 604800


def test_remaining_ttl_never_negative(issuer, clock):
    claims = issuer.verify(issuer.issue(TokenKind.ACCESS, CLAIMS), TokenKind.ACCESS)
    assert issuer.remaining_ttl(claims) == 900
    clock.advance(1000)
    assert issuer.remaining_ttl(claims) == 0
    assert issuer.remaining_ttl({}) == 0
