"""Tests for webhook HMAC signatures."""

from __future__ import annotations

import pytest

from src.dealsmart.billing.signature import compute_signature, sign_payload, verify_signature
from src.dealsmart.core.errors import AuthError

SECRET = "whsec_test"
BODY = b'{"id": "evt_1"}'
NOW = 1_760_000_000


class TestVerifySignature:
    """verify_signature() accept / reject cases."""

    def test_valid_signature(self):
        header = sign_payload(BODY, SECRET, timestamp=NOW)
        assert verify_signature(BODY, header, SECRET, now=NOW) == NOW

    def test_rotated_secret_any_match_passes(self):
        good = compute_signature(BODY, SECRET, NOW)
        header = f"t={NOW},v1=deadbeef,v1={good}"
        assert verify_signature(BODY, header, SECRET, now=NOW) == NOW

    def test_tampered_body(self):
        header = sign_payload(BODY, SECRET, timestamp=NOW)
        with pytest.raises(AuthError, match="mismatch"):
            verify_signature(b'{"id": "evt_2"}', header, SECRET, now=NOW)

    def test_wrong_secret(self):
        header = sign_payload(BODY, "other", timestamp=NOW)
        with pytest.raises(AuthError):
            verify_signature(BODY, header, SECRET, now=NOW)

    def test_stale_timestamp(self):
        header = sign_payload(BODY, SECRET, timestamp=NOW - 301)
        with pytest.raises(AuthError, match="tolerance"):
            verify_signature(BODY, header, SECRET, now=NOW)

    def test_within_tolerance(self):
        header = sign_payload(BODY, SECRET, timestamp=NOW - 299)
        assert verify_signature(BODY, header, SECRET, now=NOW) == NOW - 299

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", f"t={NOW}", "v1=00"])
    def test_malformed_headers(self, header):
        with pytest.raises(AuthError):
            verify_signature(BODY, header, SECRET, now=NOW)

    def test_missing_secret(self):
        header = sign_payload(BODY, SECRET, timestamp=NOW)
        with pytest.raises(AuthError, match="not configured"):
            verify_signature(BODY, header, "", now=NOW)
