import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import hashlib
import hmac
import re

import pytest

from utils import security
from utils.errors import CertificatePinningError
from utils.logger import get_logger, mask_identifier


class _FakeSSLObject:
    def __init__(self, der: bytes):
        self._der = der

    def getpeercert(self, binary_form=False):
        return self._der


class TestSigning:
    def test_signatures_differ_for_identical_payload_and_key(self):
        payload = {"accounts": [{"accountId": "1", "balance": 100}]}

        first = security.sign_request(payload, "access-token")
        second = security.sign_request(payload, "access-token")

        assert first.nonce != second.nonce
        assert first.signature != second.signature

    def test_signature_covers_timestamp_and_nonce(self):
        signed = security.sign_request({"a": 1}, "secret")

        assert signed.payload["timestamp"] == signed.timestamp
        assert signed.payload["nonce"] == signed.nonce
        expected = hmac.new(
            b"secret",
            security.canonical_json(signed.payload).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        assert signed.signature == expected

    def test_headers(self):
        signed = security.sign_request({"a": 1}, "secret")
        headers = signed.headers()

        assert headers["X-Signature"] == signed.signature
        assert headers["X-Timestamp"] == str(signed.timestamp)
        assert re.fullmatch(r"[0-9a-f]{32}", headers["X-Nonce"])

    def test_signing_requires_secret(self):
        with pytest.raises(ValueError):
            security.sign_request({"a": 1}, "")

    def test_canonical_json_is_key_order_independent(self):
        assert security.canonical_json({"b": 1, "a": 2}) == security.canonical_json({"a": 2, "b": 1})
        assert security.canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'


class TestDeviceFingerprint:
    def test_is_stable_across_calls(self, monkeypatch):
        monkeypatch.setattr(security, "_read_machine_id", lambda: "machine-123")

        first = security.get_device_fingerprint()

        assert first == security.get_device_fingerprint()
        assert re.fullmatch(r"[0-9a-f]{64}", first)

    def test_falls_back_when_machine_id_unavailable(self, monkeypatch):
        def _unavailable():
            raise OSError("no machine id")

        monkeypatch.setattr(security, "_read_machine_id", _unavailable)
        monkeypatch.setattr(security.socket, "gethostname", lambda: "trading-desk")
        monkeypatch.setattr(security, "_platform_name", lambda: "linux")
        monkeypatch.setattr(security, "_architecture", lambda: "x86_64")

        fingerprint = security.get_device_fingerprint()

        expected = hashlib.sha256(b"linux-x86_64-trading-desk").hexdigest()
        assert fingerprint == expected

    def test_machine_id_changes_fingerprint(self, monkeypatch):
        monkeypatch.setattr(security, "_read_machine_id", lambda: "machine-a")
        a = security.get_device_fingerprint()
        monkeypatch.setattr(security, "_read_machine_id", lambda: "machine-b")
        b = security.get_device_fingerprint()

        assert a != b


class TestCertificatePinning:
    def test_matching_fingerprint_passes(self):
        der = b"certificate-bytes"
        expected = security.certificate_fingerprint(der)

        security.verify_pinned_certificate(_FakeSSLObject(der), expected)

    def test_mismatch_raises(self):
        expected = security.certificate_fingerprint(b"pinned")

        with pytest.raises(CertificatePinningError):
            security.verify_pinned_certificate(_FakeSSLObject(b"other"), expected)

    def test_missing_tls_session_raises(self):
        with pytest.raises(CertificatePinningError):
            security.verify_pinned_certificate(None, "abc")


def test_mask_identifier_hides_middle():
    masked = mask_identifier("trader@example.com")
    assert masked.startswith("tra")
    assert masked.endswith("com")
    assert "example" not in masked


def test_logger_redacts_secret_fields(caplog):
    log = get_logger("test.redaction").with_context(access_token="abc.def")
    with caplog.at_level("INFO", logger="test.redaction"):
        log.info("Token refreshed", api_key="k-123", account_id=7)

    data = caplog.records[-1].extra_data
    assert data == {"access_token": "***", "api_key": "***", "account_id": 7}
