from accesscore.logging import (
    _add_request_context,
    _redact_credentials,
    _tag_audit_channel,
    bind_request_context,
    clear_request_context,
)


def test_credentials_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "someone@example.com",
            "password": "hunter22",
            "mfa_code": "123",
        },
    )

    assert event["email"] == "so***om"
    assert event["password"] == "hu***22"
    assert event["mfa_code"] == "***"
    assert event["event"] == "login_failed"


def test_raw_tokens_become_stable_digests():
    token = "eyJhbGciOiJIUzI1NiJ9.payload.sig"

    first = _redact_credentials(None, "warning", {"refresh_token": token})
    second = _redact_credentials(None, "warning", {"access_token": token})

    assert first["refresh_token"].startswith("sha256:")
    assert "payload" not in first["refresh_token"]
    assert first["refresh_token"] == second["access_token"]


def test_token_identifiers_are_kept():
    event = _redact_credentials(
        None,
        "warning",
        {"token_id": "0f6c2a9e-token", "replaced_by_token_id": "b7d1-next"},
    )

    assert event == {"token_id": "0f6c2a9e-token", "replaced_by_token_id": "b7d1-next"}


def test_addresses_keep_network_prefix():
    event = _redact_credentials(
        None, "info", {"ip_address": "203.0.113.77", "observed_ip": "2001:db8::1"}
    )

    assert event["ip_address"] == "203.0.113.x"
    assert event["observed_ip"] == "2001:db8::x"


def test_request_context_is_attached():
    cid = bind_request_context(correlation_id="req-123", principal_id="p-1", tenant_id="t-1")
    try:
        event = _add_request_context(None, "info", {"event": "x", "tenant_id": "t-2"})
    finally:
        clear_request_context()

    assert cid == "req-123"
    assert event["correlation_id"] == "req-123"
    assert event["principal_id"] == "p-1"
    assert event["tenant_id"] == "t-2"


def test_audit_entries_are_tagged():
    event = _tag_audit_channel(None, "critical", {"event": "refresh_token_reuse", "audit": True})

    assert event == {"event": "refresh_token_reuse", "channel": "security_audit"}
