from __future__ import annotations

from hotspot_relay.utils.jsonschema import validate_payload
from hotspot_relay.utils.masking import redact_sensitive_fields, sanitize_log_value
from hotspot_relay.utils.signing import sign_body, sign_request, verify_signature
from hotspot_relay.utils.time import ms_to_iso


def test_validate_payload():
    schema = {"type": "object", "properties": {"a": {"type": "integer"}}, "required": ["a"]}

    # Valid
    assert validate_payload(schema, {"a": 1}) == []

    # Invalid
    errors = validate_payload(schema, {"a": "bad"})
    assert errors == ["a: 'bad' is not of type 'integer'"]
    assert validate_payload(schema, {}) == ["'a' is a required property"]


def test_redact_sensitive_fields():
    payload = {
        "routerId": "r1",
        "password": "hunter2",
        "nested": [{"apiToken": "x", "ip": "10.0.0.1"}],
        "psk": "abc",
    }

    redacted = redact_sensitive_fields(payload)

    assert redacted == {
        "routerId": "r1",
        "password": "***",
        "nested": [{"apiToken": "***", "ip": "10.0.0.1"}],
        "psk": "***",
    }
    assert payload["password"] == "hunter2"


def test_redact_depth_limit():
    deep: dict = {}
    cursor = deep
    for _ in range(30):
        cursor["next"] = {}
        cursor = cursor["next"]

    assert "***" in str(redact_sensitive_fields(deep, max_depth=5))


def test_sanitize_log_value():
    assert sanitize_log_value("ok\nFAKE LINE\r\x00") == "ok_FAKE LINE__"


def test_signatures():
    signature = sign_body("secret", b'{"a":1}')

    assert len(signature) == 64
    assert verify_signature("secret", '{"a":1}', signature)
    assert verify_signature("secret", b'{"a":1}', signature.upper())
    assert not verify_signature("secret", b'{"a":2}', signature)
    assert not verify_signature("secret", b'{"a":1}', None)
    assert sign_request("secret", "1700000000000") == sign_body("secret", b"1700000000000.")


def test_ms_to_iso():
    assert ms_to_iso(0).startswith("1970-01-01T00:00:00")
