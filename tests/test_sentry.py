"""Tests for Sentry event scrubbing and initialization."""

import pytest

from preview_gateway.sentry import (
    SentryConfig,
    init_sentry,
    scrub_event,
    scrub_query_string,
)


class TestScrubbing:
    def test_query_token_filtered(self):
        scrubbed = scrub_query_string("token=secret&path=%2Fabout")
        assert "secret" not in scrubbed
        assert "path=%2Fabout" in scrubbed

    def test_empty_query(self):
        assert scrub_query_string("") == ""

    def test_event_headers_query_and_extra(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer abc", "Accept": "text/html"},
                "query_string": "token=abc",
            },
            "extra": {"api_key": "k", "instance_id": "pv_1"},
        }

        scrub_event(event)

        assert event["request"]["headers"]["Authorization"] == "[Filtered]"
        assert event["request"]["headers"]["Accept"] == "text/html"
        assert "abc" not in event["request"]["query_string"]
        assert event["extra"]["api_key"] == "[Filtered]"
        assert event["extra"]["instance_id"] == "pv_1"

    def test_event_without_request(self):
        assert scrub_event({"message": "x"}) == {"message": "x"}


class TestInitSentry:
    def test_disabled_without_dsn(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SENTRY_DSN", raising=False)
        assert init_sentry("preview-gateway", SentryConfig(service_name="preview-gateway")) is False
