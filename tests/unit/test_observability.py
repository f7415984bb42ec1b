"""Tests for log redaction and Sentry helpers."""

from unittest.mock import patch

import pytest

from entitlement_engine.observability import (
    REDACTED,
    SentryConfig,
    _drop_health_transactions,
    _scrub_event,
    init_sentry,
    redact_sensitive_data,
)


@pytest.mark.unit
class TestRedaction:
    def test_sensitive_keys_are_masked(self) -> None:
        event = redact_sensitive_data(
            None,
            "info",
            {"event": "x", "webhook_secret": "whsec_abc", "subscriber_id": "u1"},
        )
        assert event["webhook_secret"] == REDACTED
        assert event["subscriber_id"] == "u1"

    def test_secret_values_are_masked(self) -> None:
        event = redact_sensitive_data(
            None,
            "info",
            {
                "event": "x",
                "error": "auth failed for Bearer abc123",
                "detail": "key sk_test_ABCDEFGHIJKLMNOP rejected",
            },
        )
        assert event["error"] == REDACTED
        assert event["detail"] == REDACTED

    def test_nested_dicts_are_masked(self) -> None:
        event = redact_sensitive_data(None, "info", {"event": "x", "ctx": {"password": "p"}})
        assert event["ctx"]["password"] == REDACTED


@pytest.mark.unit
class TestSentryHooks:
    def test_scrub_filters_signature_header(self) -> None:
        event = {"request": {"headers": {"Stripe-Signature": "t=1,v1=abc", "Accept": "*/*"}}}
        scrubbed = _scrub_event(event, {})  # type: ignore[arg-type]
        assert scrubbed is not None
        assert scrubbed["request"]["headers"]["Stripe-Signature"] == "[Filtered]"
        assert scrubbed["request"]["headers"]["Accept"] == "*/*"

    def test_health_transactions_dropped(self) -> None:
        assert _drop_health_transactions({"transaction": "/health"}, {}) is None  # type: ignore[arg-type]
        assert _drop_health_transactions({"transaction": "/api/v1/x"}, {}) is not None  # type: ignore[arg-type]

    def test_init_without_dsn_is_noop(self) -> None:
        with patch("entitlement_engine.observability.sentry_sdk.init") as sentry_init:
            assert init_sentry(SentryConfig(service_name="entitlement-engine")) is False
        sentry_init.assert_not_called()

    def test_init_with_dsn(self) -> None:
        config = SentryConfig(
            service_name="entitlement-engine",
            dsn="https://key@o0.ingest.sentry.io/0",
            environment="staging",
        )
        with (
            patch("entitlement_engine.observability.sentry_sdk.init") as sentry_init,
            patch("entitlement_engine.observability.sentry_sdk.set_tag"),
        ):
            assert init_sentry(config) is True

        kwargs = sentry_init.call_args.kwargs
        assert kwargs["environment"] == "staging"
        assert kwargs["traces_sample_rate"] == 1.0
        assert kwargs["send_default_pii"] is False
