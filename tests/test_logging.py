from turnkernel.logging import (
    _make_payload_clipper,
    _mask_secrets,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_correlation_id_uses_caller_value():
    assert set_correlation_id("req-42") == "req-42"
    assert get_correlation_id() == "req-42"


def test_correlation_id_minted_when_blank():
    cid = set_correlation_id("   ")
    assert len(cid) == 36


def test_secret_fields_masked():
    event = _mask_secrets(None, "info", {"admin_token": "abcdef123456", "authorization": "x", "stage": "gate"})
    assert event["admin_token"] == "***56"
    assert event["authorization"] == "***"
    assert event["stage"] == "gate"


def test_payload_fields_clipped():
    clip = _make_payload_clipper(5)
    event = clip(None, "info", {"delta": "abcdefghij", "event": "stream_chunk", "text": "abc"})
    assert event["delta"] == "abcde... [10 chars]"
    assert event["text"] == "abc"
    assert event["event"] == "stream_chunk"


def test_sanitize_scrubs_paths_credentials_and_markers():
    message = "failed reading /root/state/conv.json with Bearer abc123 near BEGIN_WRITEBACK_JSON"
    cleaned = sanitize_error_message(message)
    assert "/root/state" not in cleaned
    assert "abc123" not in cleaned
    assert "BEGIN_WRITEBACK_JSON" not in cleaned


def test_sanitize_bounds_length_and_handles_empty():
    assert len(sanitize_error_message("x" * 2000)) == 500
    assert sanitize_error_message("") == "An error occurred"
