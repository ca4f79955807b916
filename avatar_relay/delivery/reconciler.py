"""
Status reconciler: re-fetches provider status for undelivered jobs,
persists it, and hands finished jobs to the notifier.

Delivery is at-least-once: the flag is written only after a successful send,
so a crash between the two re-sends on the next pass. Overlapping passes in
one process are serialized per video by ``job_lock``; across processes the
store's conditional ``mark_delivered`` decides who records the delivery.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import asyncpg

from avatar_relay.delivery.notifier import DeliveryNotifier
from avatar_relay.generations.credits import estimate_credits
from avatar_relay.generations.state_machine import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    normalize_provider_status,
)
from avatar_relay.integrations.heygen_client import ProviderError, ProviderStatus, parse_status_payload
from avatar_relay.locking.job_lock import job_lock
from avatar_relay.observability.delivery_metrics import record_pass, record_pending_age
from avatar_relay.observability.structured_logs import log_structured_event, new_correlation_id
from avatar_relay.storage.base import JobStore, pending_query, unreported_failures_query
from avatar_relay.storage.records import JobQuery, JobRecord, utc_now_iso
from avatar_relay.utils.errors import JobNotFoundError, StorageError, ValidationError
from avatar_relay.utils.logging_config import get_logger

logger = get_logger(__name__)

_DB_DEGRADED_EXCEPTIONS = (asyncio.TimeoutError, TimeoutError, asyncpg.PostgresError, StorageError)

OUTCOME_SENT = "sent"
OUTCOME_SEND_FAILED = "send_failed"
OUTCOME_FAILED = "failed"
OUTCOME_ERROR = "error"
OUTCOME_SKIPPED = "skipped"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"

DEFAULT_FAILURE_REASON = "Unknown error"

# HeyGen callback event types -> provider status
_EVENT_TYPE_STATUS = {
    "avatar_video.success": STATUS_COMPLETED,
    "avatar_video.fail": STATUS_FAILED,
}


class StatusProvider(Protocol):
    async def get_job_status(self, video_id: str) -> ProviderStatus:
        ...


@dataclass
class JobOutcome:
    video_id: str
    telegram_id: Optional[int]
    status: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "videoId": self.video_id,
            "telegramId": self.telegram_id,
            "status": self.status,
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ReconcileReport:
    results: List[JobOutcome] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def processed(self) -> int:
        return len(self.results)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.results:
            counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "results": [item.to_dict() for item in self.results],
            "timestamp": self.timestamp,
        }


def _age_seconds(iso_value: Optional[str]) -> Optional[float]:
    if not iso_value:
        return None
    try:
        started = datetime.fromisoformat(iso_value)
    except ValueError:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - started).total_seconds()


def extract_event_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a provider callback: fields may sit at top level or under ``data``/``event_data``."""
    nested: Dict[str, Any] = {}
    for key in ("data", "event_data"):
        if isinstance(payload.get(key), dict):
            nested = payload[key]
            break

    def pick(*names: str) -> Any:
        for name in names:
            if payload.get(name):
                return payload[name]
            if nested.get(name):
                return nested[name]
        return None

    status = pick("status") or _EVENT_TYPE_STATUS.get(str(payload.get("event_type") or ""))
    return {
        "video_id": pick("video_id"),
        "status": status,
        "video_url": pick("video_url", "url"),
        "thumbnail_url": pick("thumbnail_url", "gif_download_url"),
        "duration": pick("duration"),
        "error": pick("error", "msg"),
    }


class StatusReconciler:
    def __init__(
        self,
        provider: StatusProvider,
        store: JobStore,
        notifier: DeliveryNotifier,
        *,
        concurrency: int = 1,
        lock_ttl_s: float = 300.0,
    ):
        self.provider = provider
        self.store = store
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.lock_ttl_s = lock_ttl_s
        self._owner = f"reconciler-{uuid.uuid4().hex[:8]}"

    async def select_candidates(self) -> List[JobRecord]:
        """Completed, undelivered jobs with a result URL, oldest completion first."""
        return await self.store.list_jobs(
            JobQuery(
                statuses=frozenset({STATUS_COMPLETED}),
                sent_to_telegram=False,
                has_video_url=True,
                order_by="completed_at",
            )
        )

    async def select_unreported_failures(self) -> List[JobRecord]:
        """Failed jobs still owed a failure notice; part of every pass."""
        return await self.store.list_jobs(unreported_failures_query())

    async def select_pending(self) -> List[JobRecord]:
        """Polling variant: pending and processing jobs."""
        return await self.store.list_jobs(pending_query())

    async def reconcile_all(self, *, include_pending: bool = False) -> ReconcileReport:
        """One pass over every candidate; a failing job never stops the rest."""
        jobs = await self.select_candidates()
        extra = await self.select_unreported_failures()
        if include_pending:
            extra += await self.select_pending()
        seen = {job.video_id for job in jobs}
        for job in extra:
            if job.video_id not in seen:
                seen.add(job.video_id)
                jobs.append(job)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(job: JobRecord) -> JobOutcome:
            async with semaphore:
                try:
                    return await self.reconcile_job(job)
                except Exception as exc:
                    logger.exception("RECONCILE_JOB_FAILED video_id=%s", job.video_id)
                    return JobOutcome(job.video_id, job.telegram_id, OUTCOME_ERROR, str(exc) or exc.__class__.__name__)

        report = ReconcileReport(results=list(await asyncio.gather(*(guarded(job) for job in jobs))))
        record_pass(report.counts(), finished_ts=time.time())
        logger.info("RECONCILE_PASS processed=%s outcomes=%s", report.processed, report.counts())
        return report

    async def reconcile_job(self, job: JobRecord) -> JobOutcome:
        if job.sent_to_telegram:
            return JobOutcome(job.video_id, job.telegram_id, OUTCOME_SKIPPED)
        async with job_lock(job.video_id, self._owner, self.lock_ttl_s) as acquired:
            if not acquired:
                return JobOutcome(job.video_id, job.telegram_id, OUTCOME_SKIPPED, "in progress")
            try:
                status = await self.provider.get_job_status(job.video_id)
            except ProviderError as exc:
                log_structured_event(
                    user_id=job.telegram_id,
                    video_id=job.video_id,
                    action="get_job_status",
                    action_path="delivery.reconciler",
                    stage="POLL",
                    outcome=OUTCOME_ERROR,
                    error_code=exc.code.value,
                    fix_hint=str(exc)[:200],
                )
                return JobOutcome(job.video_id, job.telegram_id, OUTCOME_ERROR, str(exc))
            return await self._apply_status(job, status, source="poll")

    async def reconcile_video(self, video_id: str) -> JobOutcome:
        """On-demand check of a single job."""
        job = await self.store.get_job(video_id)
        if job is None:
            raise JobNotFoundError(video_id)
        return await self.reconcile_job(job)

    async def apply_provider_event(self, payload: Dict[str, Any]) -> JobOutcome:
        """Handle a provider callback exactly like a fetched status."""
        fields = extract_event_fields(payload if isinstance(payload, dict) else {})
        video_id = fields["video_id"]
        if not video_id:
            raise ValidationError("video_id", "No video_id in webhook payload")
        job = await self.store.get_job(video_id)
        if job is None:
            raise JobNotFoundError(video_id)
        if job.sent_to_telegram:
            return JobOutcome(job.video_id, job.telegram_id, OUTCOME_SKIPPED)
        status = parse_status_payload(video_id, fields)
        async with job_lock(video_id, self._owner, self.lock_ttl_s) as acquired:
            if not acquired:
                return JobOutcome(job.video_id, job.telegram_id, OUTCOME_SKIPPED, "in progress")
            return await self._apply_status(job, status, source="webhook")

    async def _apply_status(self, job: JobRecord, status: ProviderStatus, *, source: str) -> JobOutcome:
        correlation_id = new_correlation_id(job.video_id, job.telegram_id)
        resolution = normalize_provider_status(status.status)
        changes: Dict[str, Any] = {}
        if not resolution.known:
            logger.warning(
                "PROVIDER_STATUS_UNKNOWN video_id=%s raw=%r source=%s kept=%s",
                job.video_id,
                status.status,
                source,
                job.status,
            )
        elif resolution.canonical_state == STATUS_COMPLETED and not status.video_url:
            logger.warning("PROVIDER_COMPLETED_WITHOUT_URL video_id=%s source=%s", job.video_id, source)
        else:
            changes["status"] = resolution.canonical_state
            if resolution.canonical_state == STATUS_COMPLETED:
                changes["video_url"] = status.video_url
                changes["thumbnail_url"] = status.thumbnail_url
                changes["credits_used"] = estimate_credits(status.duration, test_mode=job.test_mode)
            elif resolution.canonical_state == STATUS_FAILED:
                if status.error:
                    changes["error_message"] = status.error
                elif not job.error_message:
                    changes["error_message"] = DEFAULT_FAILURE_REASON

        if changes:
            await self.store.update_job(job.video_id, **changes)
        current = await self.store.get_job(job.video_id) or job

        log_structured_event(
            correlation_id=correlation_id,
            user_id=current.telegram_id,
            video_id=current.video_id,
            action="reconcile",
            action_path=f"delivery.reconciler.{source}",
            stage="PERSIST",
            input_type=current.input_type,
            provider_status=resolution.raw_state or None,
            outcome=current.status,
        )

        if current.sent_to_telegram:
            return JobOutcome(current.video_id, current.telegram_id, OUTCOME_SKIPPED)
        if current.status == STATUS_COMPLETED and current.video_url:
            age = _age_seconds(current.created_at)
            if age is not None:
                record_pending_age(age)
            sent = await self.notifier.send_result(current, current.video_url)
            if not sent:
                return JobOutcome(current.video_id, current.telegram_id, OUTCOME_SEND_FAILED, "delivery failed")
            await self._mark_delivered(current)
            return JobOutcome(current.video_id, current.telegram_id, OUTCOME_SENT)
        if current.status == STATUS_FAILED:
            sent = await self.notifier.send_failure(current, current.error_message)
            if not sent:
                return JobOutcome(current.video_id, current.telegram_id, OUTCOME_SEND_FAILED, "failure notice not sent")
            await self._mark_delivered(current)
            return JobOutcome(current.video_id, current.telegram_id, OUTCOME_FAILED, current.error_message)
        if current.status != job.status:
            return JobOutcome(current.video_id, current.telegram_id, OUTCOME_UPDATED)
        return JobOutcome(current.video_id, current.telegram_id, OUTCOME_UNCHANGED)

    async def _mark_delivered(self, job: JobRecord) -> None:
        """Record a delivery that already happened; failures here never undo the send."""
        try:
            changed = await self.store.mark_delivered(job.video_id)
        except StorageError as exc:
            logger.error("DELIVERY_MARK_FAILED video_id=%s error=%s (will resend next pass)", job.video_id, exc)
            return
        if not changed:
            logger.warning("DELIVERY_ALREADY_MARKED video_id=%s", job.video_id)


async def run_reconciler_loop(
    reconciler: StatusReconciler,
    *,
    interval_seconds: int,
    include_pending: bool = False,
) -> None:
    backoff_seconds = interval_seconds
    db_backoff_seconds = 0
    while True:
        try:
            await reconciler.reconcile_all(include_pending=include_pending)
            backoff_seconds = interval_seconds
            db_backoff_seconds = 0
        except _DB_DEGRADED_EXCEPTIONS as exc:
            db_backoff_seconds = 5 if db_backoff_seconds == 0 else min(60, db_backoff_seconds * 2)
            backoff_seconds = max(interval_seconds, db_backoff_seconds)
            logger.warning(
                "DB_DEGRADED_BACKOFF source=reconciler delay_s=%s error=%s",
                backoff_seconds,
                exc,
            )
        except Exception as exc:
            logger.error("reconciler_loop_failed: %s", exc, exc_info=True)
            backoff_seconds = max(interval_seconds, min(60, backoff_seconds * 2))
        await asyncio.sleep(backoff_seconds)
