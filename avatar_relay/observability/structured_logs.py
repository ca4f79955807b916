"""
Structured logging helpers for the dispatch/reconcile/deliver pipeline.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = {"token", "authorization", "api_key", "apikey", "secret", "signature"}
_FAILURE_OUTCOMES = {"failed", "error", "send_failed"}

_recent_failure_event_ids: deque[str] = deque(maxlen=5)


def get_recent_failure_event_ids() -> list[str]:
    """Return the last failure event ids for diagnostics."""
    return list(_recent_failure_event_ids)


def new_correlation_id(video_id: Optional[str] = None, telegram_id: Optional[int] = None) -> str:
    base = f"{video_id or 'na'}-{telegram_id or 'na'}"
    return f"corr-{base}-{uuid.uuid4().hex[:8]}"


def _strip_query(url: str) -> str:
    parsed = urlparse(url)
    return urlunparse(parsed._replace(query="", fragment=""))


def redact_payload(payload: Any, *, max_depth: int = 4) -> Any:
    """Return a redacted, size-limited snapshot of payload data."""
    if max_depth <= 0:
        return "<truncated>"
    if isinstance(payload, dict):
        redacted: Dict[str, Any] = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if any(token in lowered for token in _SENSITIVE_KEYS):
                redacted[key] = "***"
            else:
                redacted[key] = redact_payload(value, max_depth=max_depth - 1)
        return redacted
    if isinstance(payload, list):
        return [redact_payload(item, max_depth=max_depth - 1) for item in payload[:20]]
    if isinstance(payload, str):
        if payload.startswith(("http://", "https://")):
            return _strip_query(payload)
        if len(payload) > 500:
            return payload[:500] + "...<truncated>"
    return payload


def log_structured_event(**fields: Any) -> None:
    """Emit a structured log line as JSON."""
    outcome = fields.get("outcome")
    error_id = fields.get("error_id")
    if (outcome or "").lower() in _FAILURE_OUTCOMES:
        error_id = error_id or uuid.uuid4().hex[:8]
        _recent_failure_event_ids.append(error_id)

    payload = {
        "correlation_id": fields.get("correlation_id"),
        "timestamp_ms": int(time.time() * 1000),
        "user_id": fields.get("user_id"),
        "video_id": fields.get("video_id"),
        "action": fields.get("action"),
        "action_path": fields.get("action_path"),
        "stage": fields.get("stage"),
        "input_type": fields.get("input_type"),
        "provider_status": fields.get("provider_status"),
        "outcome": outcome,
        "duration_ms": fields.get("duration_ms"),
        "error_id": error_id,
        "error_code": fields.get("error_code"),
        "fix_hint": fields.get("fix_hint"),
        "param": redact_payload(fields.get("param")),
    }
    logger.info("STRUCTURED_LOG %s", json.dumps(payload, ensure_ascii=False, default=str))
