"""Tests for TOTP generation/verification and backup codes."""

import base64

from tenantauth.service import mfa

# RFC 6238 appendix B SHA1 seed
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode().rstrip("=")


class TestTotp:
    def test_rfc6238_vectors(self):
        # 8-digit vectors truncated to the 6-digit codes we issue
        assert mfa.generate_totp(RFC_SECRET, 59) == "287082"
        assert mfa.generate_totp(RFC_SECRET, 1111111109) == "081804"
        assert mfa.generate_totp(RFC_SECRET, 1234567890) == "005924"

    def test_invalid_secret_yields_empty_code(self):
        assert mfa.generate_totp("not base32 !!", 59) == ""

    def test_verifier_accepts_current_and_adjacent_steps(self, clock):
        verifier = mfa.TotpVerifier(skew_steps=1, clock=clock)
        now = clock()
        assert verifier.verify(RFC_SECRET, mfa.generate_totp(RFC_SECRET, now))
        assert verifier.verify(RFC_SECRET, mfa.generate_totp(RFC_SECRET, now - 30))
        assert verifier.verify(RFC_SECRET, mfa.generate_totp(RFC_SECRET, now + 30))

    def test_verifier_rejects_outside_window(self, clock):
        verifier = mfa.TotpVerifier(skew_steps=1, clock=clock)
        stale = mfa.generate_totp(RFC_SECRET, clock() - 90)
        current = {
            mfa.generate_totp(RFC_SECRET, clock() + offset) for offset in (-30, 0, 30)
        }
        if stale not in current:
            assert not verifier.verify(RFC_SECRET, stale)

    def test_verifier_rejects_garbage(self, clock):
        verifier = mfa.TotpVerifier(clock=clock)
        assert not verifier.verify(RFC_SECRET, None)
        assert not verifier.verify(RFC_SECRET, "")
        assert not verifier.verify(RFC_SECRET, "12ab56")
        assert not verifier.verify(RFC_SECRET, "1234567")


class TestEnrolmentMaterial:
    def test_secret_is_base32(self):
        secret = mfa.generate_secret()
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        assert len(base64.b32decode(padded)) == 20

    def test_backup_codes(self):
        codes = mfa.generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(len(code) == 8 and int(code, 16) >= 0 for code in codes)

    def test_otpauth_uri(self):
        uri = mfa.otpauth_uri("SECRET", "a@example.com", "CRM")
        assert uri.startswith("otpauth://totp/CRM%3Aa%40example.com?")
        assert "secret=SECRET" in uri
        assert "issuer=CRM" in uri


class TestBackupCodes:
    def test_consume_once(self):
        matched, remaining = mfa.consume_backup_code(["aaaa1111", "bbbb2222"], "AAAA1111")
        assert matched is True
        assert remaining == ["bbbb2222"]
        matched, remaining = mfa.consume_backup_code(remaining, "aaaa1111")
        assert matched is False
        assert remaining == ["bbbb2222"]

    def test_empty_candidate(self):
        assert mfa.consume_backup_code(["aaaa1111"], None) == (False, ["aaaa1111"])
