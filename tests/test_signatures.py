import hashlib
import hmac

from fundledger.config import get_settings
from fundledger.services.signatures import (
    compute_signature,
    get_signature_header,
    secret_status,
    verify_signature,
)

BODY = b'{"eventType":"SUCCESSFUL_TRANSACTION","eventData":{"transactionReference":"MNFY|1"}}'


def test_compute_signature_is_hex_hmac_sha512():
    expected = hmac.new(b"secret", BODY, hashlib.sha512).hexdigest()
    assert compute_signature("secret", BODY) == expected
    assert len(expected) == 128


def test_verify_accepts_primary_secret():
    signature = compute_signature(get_settings().gateway_webhook_secret, BODY)
    check = verify_signature(BODY, signature)
    assert check.valid is True
    assert check.reason is None


def test_verify_accepts_prefixed_and_uppercase_signature():
    signature = compute_signature(get_settings().gateway_webhook_secret, BODY)
    assert verify_signature(BODY, f"monnify-signature: {signature.upper()}").valid


def test_verify_accepts_rotation_secret(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "gateway_webhook_secret_next", "rotated-secret")
    assert verify_signature(BODY, compute_signature("rotated-secret", BODY)).valid


def test_verify_rejects_tampered_body():
    signature = compute_signature(get_settings().gateway_webhook_secret, BODY)
    check = verify_signature(BODY + b" ", signature)
    assert check.valid is False
    assert check.reason == "signature_mismatch"


def test_verify_reports_missing_signature():
    check = verify_signature(BODY, None)
    assert check.valid is False
    assert check.reason == "signature_missing"


def test_verify_without_configured_secret(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "gateway_webhook_secret", None)
    monkeypatch.setattr(settings, "gateway_webhook_secret_next", None)
    check = verify_signature(BODY, "anything")
    assert check.valid is False
    assert check.reason == "secret_not_configured"


def test_signature_header_lookup_is_case_insensitive():
    assert get_signature_header({"Monnify-Signature": "abc"}) == "abc"
    assert get_signature_header({"X-GATEWAY-SIGNATURE": "def"}) == "def"
    assert get_signature_header({"Content-Type": "application/json"}) is None


def test_secret_status_never_exposes_raw_secret():
    status = secret_status()
    assert status["primary"].startswith("sha256:")
    assert get_settings().gateway_webhook_secret not in status["primary"]
    assert status["secondary"] is None
