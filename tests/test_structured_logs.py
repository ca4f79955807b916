import json
import logging

from avatar_relay.observability.structured_logs import (
    get_recent_failure_event_ids,
    log_structured_event,
    redact_payload,
)


def test_redaction_masks_secrets_and_strips_signed_urls():
    redacted = redact_payload(
        {
            "api_key": "hg-123",
            "Authorization": "Bearer s3cret",
            "video_url": "https://cdn/v1.mp4?Expires=1&Signature=abc",
            "nested": {"bot_token": "123:abc", "avatar_id": "av1"},
        }
    )
    assert redacted["api_key"] == "***"
    assert redacted["Authorization"] == "***"
    assert redacted["video_url"] == "https://cdn/v1.mp4"
    assert redacted["nested"] == {"bot_token": "***", "avatar_id": "av1"}


def test_failure_events_get_an_error_id(caplog):
    caplog.set_level(logging.INFO, logger="avatar_relay.observability.structured_logs")

    log_structured_event(video_id="v1", action="deliver", stage="DELIVER", outcome="send_failed")

    line = next(r.getMessage() for r in caplog.records if r.getMessage().startswith("STRUCTURED_LOG "))
    event = json.loads(line[len("STRUCTURED_LOG "):])
    assert event["video_id"] == "v1"
    assert event["error_id"] in get_recent_failure_event_ids()
