from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlencode

from tenantauth.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 10


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4) for _ in range(count)]


def otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer, "digits": TOTP_DIGITS, "period": TOTP_INTERVAL})
    return f"otpauth://totp/{label}?{query}"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp``; empty string for an undecodable secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


class TotpVerifier:
    """Checks TOTP codes within a symmetric window of adjacent steps."""

    def __init__(
        self,
        *,
        skew_steps: int = 1,
        interval: int = TOTP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.skew_steps = skew_steps
        self.interval = interval
        self._clock = clock

    def verify(self, secret: str, code: Optional[str]) -> bool:
        if not code:
            return False
        code = code.strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = self._clock()
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            generated = generate_totp(secret, now + offset * self.interval, interval=self.interval)
            # Constant-time comparison
            if generated and hmac.compare_digest(generated, code):
                return True
        return False


def consume_backup_code(codes: Sequence[str], candidate: Optional[str]) -> Tuple[bool, List[str]]:
    """Match ``candidate`` against unused codes; returns (matched, remaining)."""
    remaining = list(codes)
    if not candidate:
        return False, remaining
    normalized = candidate.strip().lower()
    for index, code in enumerate(remaining):
        if hmac.compare_digest(code.encode(), normalized.encode()):
            del remaining[index]
            return True, remaining
    return False, remaining


def backup_code_digest(candidate: str) -> str:
    """Stable SHA-256 of a normalized backup code, safe to use in cache keys."""
    return hashlib.sha256(candidate.strip().lower().encode()).hexdigest()
