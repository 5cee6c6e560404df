"""Tests for log redaction and request id binding."""

from farmgate.logging import (
    _redact_pii,
    get_correlation_id,
    redact_emails_in_text,
    set_correlation_id,
)


class TestRedactPii:
    def test_addresses_in_free_text_are_masked(self):
        event = _redact_pii(
            None,
            "warning",
            {
                "event": "security_event",
                "event_type": "FailedLogin",
                "details": "Failed attempt for: grower@farm.io",
            },
        )

        assert event["details"] == "Failed attempt for: gr***@farm.io"
        assert event["event_type"] == "FailedLogin"

    def test_secret_keys_keep_edges_only(self):
        event = _redact_pii(None, "info", {"event": "x", "password": "Harvest#2024"})
        assert event["password"] == "Ha***24"

    def test_masking_is_stable(self):
        once = redact_emails_in_text("to ada.field@farm.io and bo@x.io")
        assert once == "to ad***@farm.io and bo***@x.io"
        assert redact_emails_in_text(once) == once

    def test_non_strings_untouched(self):
        event = _redact_pii(None, "info", {"event": "x", "detail": {"email": "a@b.io"}})
        assert event["detail"] == {"email": "a@b.io"}


class TestCorrelationId:
    def test_supplied_id_is_bound(self):
        assert set_correlation_id("req-42") == "req-42"
        assert get_correlation_id() == "req-42"

    def test_missing_id_is_minted(self):
        minted = set_correlation_id(None)
        assert minted and get_correlation_id() == minted
