"""Delivery notifier: turns a finished job into a user message."""
from __future__ import annotations

import logging
import time
from typing import Optional, Protocol

from avatar_relay.generations.user_messages import build_failure_message, build_result_caption
from avatar_relay.observability.delivery_metrics import record_delivery_attempt
from avatar_relay.observability.structured_logs import log_structured_event
from avatar_relay.storage.records import JobRecord

logger = logging.getLogger(__name__)


class MessagingChannel(Protocol):
    async def send_asset(self, recipient_id: int, asset_url: str, caption: Optional[str] = None) -> bool:
        ...

    async def send_text(self, recipient_id: int, text: str) -> bool:
        ...


class DeliveryNotifier:
    """Sends results and failure notices. Never touches persistence."""

    def __init__(self, channel: MessagingChannel, *, lang: str = "ru"):
        self.channel = channel
        self.lang = lang

    async def send_result(self, job: JobRecord, video_url: str) -> bool:
        start = time.monotonic()
        ok = await self.channel.send_asset(job.telegram_id, video_url, build_result_caption(job, lang=self.lang))
        self._record(job, "send_result", ok, start)
        return ok

    async def send_failure(self, job: JobRecord, error: Optional[str]) -> bool:
        start = time.monotonic()
        ok = await self.channel.send_text(job.telegram_id, build_failure_message(job, error, lang=self.lang))
        self._record(job, "send_failure", ok, start)
        return ok

    @staticmethod
    def _record(job: JobRecord, action: str, ok: bool, start: float) -> None:
        record_delivery_attempt(ok)
        log_structured_event(
            user_id=job.telegram_id,
            video_id=job.video_id,
            action=action,
            action_path="delivery.notifier",
            stage="DELIVER",
            input_type=job.input_type,
            provider_status=job.status,
            outcome="sent" if ok else "send_failed",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
