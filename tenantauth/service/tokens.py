from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    BadSignature,
    InvalidClaims,
    MalformedToken,
    TokenExpired,
)
from tenantauth.storage.models import TokenKind

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_REQUIRED_INPUT_CLAIMS = ("userId", "tenantId")
_REQUIRED_CLAIMS = ("userId", "tenantId", "tokenId", "issuedAt", "expiresAt", "kind")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str) -> Dict[str, Any]:
    try:
        value = json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("token segment is not valid base64url JSON") from exc
    if not isinstance(value, dict):
        raise MalformedToken("token segment is not a JSON object")
    return value


class TokenIssuer:
    """Issues and verifies HS256 access/refresh tokens.

    Each kind is signed with its own secret, so a refresh token presented as
    an access token fails signature verification rather than being accepted.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        issuer: Optional[str] = None,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token signing secrets must not be empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use independent secrets")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: int(access_ttl_seconds),
            TokenKind.REFRESH: int(refresh_ttl_seconds),
        }
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "TokenIssuer":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            issuer=settings.jwt_issuer,
            leeway_seconds=settings.token_leeway_seconds,
            clock=clock,
        )

    def ttl_for(self, kind: TokenKind) -> int:
        return self._ttls[TokenKind(kind)]

    def _sign(self, kind: TokenKind, signing_input: str) -> bytes:
        return hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()

    def issue(self, kind: TokenKind, claims: Mapping[str, Any]) -> str:
        kind = TokenKind(kind)
        for name in _REQUIRED_INPUT_CLAIMS:
            if not claims.get(name):
                raise InvalidClaims(f"missing required claim: {name}", detail={"claim": name})

        issued_at = int(self._clock())
        payload: Dict[str, Any] = dict(claims)
        payload["tokenId"] = payload.get("tokenId") or str(uuid.uuid4())
        payload["issuedAt"] = issued_at
        payload["expiresAt"] = issued_at + self._ttls[kind]
        payload["kind"] = kind.value
        if self.issuer:
            payload.setdefault("iss", self.issuer)

        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(kind, signing_input))}"

    def verify(self, token: str, kind: TokenKind) -> Dict[str, Any]:
        """Return the claims of a valid token or raise a TokenError subclass."""
        kind = TokenKind(kind)
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        if not token.isascii():
            raise MalformedToken("token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json_segment(header_b64)
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            raise MalformedToken("unsupported token algorithm")

        expected_sig = _encode_segment(self._sign(kind, f"{header_b64}.{payload_b64}"))
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            raise BadSignature("token signature mismatch")

        claims = _decode_json_segment(payload_b64)
        missing = [name for name in _REQUIRED_CLAIMS if claims.get(name) in (None, "")]
        if missing:
            raise MalformedToken("token is missing required claims", detail={"claims": missing})
        if claims.get("kind") != kind.value:
            raise BadSignature("token kind mismatch")
        if self.issuer and claims.get("iss", self.issuer) != self.issuer:
            raise BadSignature("token issuer mismatch")

        try:
            expires_at = float(claims["expiresAt"])
        except (TypeError, ValueError) as exc:
            raise MalformedToken("token expiry is not numeric") from exc
        if self._clock() >= expires_at + self.leeway_seconds:
            raise TokenExpired("token has expired")
        return claims

    def remaining_ttl(self, claims: Mapping[str, Any]) -> int:
        """Whole seconds until expiry, never negative."""
        try:
            expires_at = float(claims["expiresAt"])
        except (KeyError, TypeError, ValueError):
            return 0
        return max(0, math.ceil(expires_at - self._clock()))
