"""Abstract job store and the update rules shared by every backend."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from avatar_relay.generations.state_machine import (
    CANONICAL_PENDING_STATES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    is_allowed_transition,
    is_terminal,
)
from avatar_relay.storage.records import (
    MUTABLE_FIELDS,
    CreditStats,
    JobQuery,
    JobRecord,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def apply_job_update(record: JobRecord, changes: Dict[str, Any]) -> Tuple[JobRecord, bool]:
    """Return ``(updated_record, changed)`` after applying ``changes``.

    - a status that would move backwards (or out of a terminal state) is dropped;
    - result urls are only written with a completed status, errors with failed;
    - ``credits_used`` is written once, on a completed job that has none yet;
    - ``completed_at`` is stamped on the first terminal status.
    """
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"update_job does not accept fields: {sorted(unknown)}")

    values = {key: value for key, value in changes.items() if value is not None}
    new_status = values.get("status")
    if new_status is not None and not is_allowed_transition(record.status, new_status):
        logger.warning(
            "JOB_TRANSITION_REJECTED video_id=%s current=%s requested=%s",
            record.video_id,
            record.status,
            new_status,
        )
        values.pop("status")
        new_status = None

    effective_status = new_status or record.status
    if effective_status != STATUS_COMPLETED:
        values.pop("video_url", None)
        values.pop("thumbnail_url", None)
    if effective_status != STATUS_FAILED:
        values.pop("error_message", None)
    if "credits_used" in values and (effective_status != STATUS_COMPLETED or record.credits_used):
        values.pop("credits_used")

    values = {key: value for key, value in values.items() if getattr(record, key) != value}
    if not values:
        return record, False

    now_iso = utc_now_iso()
    values["updated_at"] = now_iso
    if new_status and is_terminal(new_status) and not record.completed_at:
        values["completed_at"] = now_iso
    return replace(record, **values), True


def can_mark_delivered(record: JobRecord) -> bool:
    return not record.sent_to_telegram and is_terminal(record.status)


def pending_query() -> JobQuery:
    return JobQuery(statuses=frozenset(CANONICAL_PENDING_STATES), sent_to_telegram=False, order_by="created_at")


def unreported_failures_query() -> JobQuery:
    """Failed jobs whose failure notice has not been sent yet."""
    return JobQuery(statuses=frozenset({STATUS_FAILED}), sent_to_telegram=False, order_by="completed_at")


def build_credit_stats(records: List[JobRecord]) -> Optional[CreditStats]:
    if not records:
        return None
    return CreditStats(
        total_credits_used=sum(r.credits_used for r in records),
        total_generations=len(records),
        completed_generations=sum(1 for r in records if r.status == STATUS_COMPLETED),
        failed_generations=sum(1 for r in records if r.status == STATUS_FAILED),
    )


class JobStore(ABC):
    """Persistence contract for job records."""

    @abstractmethod
    async def create_job(self, record: JobRecord) -> Optional[JobRecord]:
        """Insert a new record; ``None`` when the video id already exists."""

    @abstractmethod
    async def update_job(self, video_id: str, **changes: Any) -> bool:
        """Apply ``changes`` under the update rules; ``False`` if the job is unknown."""

    @abstractmethod
    async def get_job(self, video_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def list_jobs(self, query: JobQuery) -> List[JobRecord]:
        ...

    @abstractmethod
    async def mark_delivered(self, video_id: str) -> bool:
        """Set the delivery flag where it is still false.

        Returns whether this call changed the row.
        """

    async def list_user_jobs(self, telegram_id: int, limit: int = 50) -> List[JobRecord]:
        return await self.list_jobs(JobQuery(telegram_id=telegram_id, order_by="created_at_desc", limit=limit))

    async def get_credit_stats(self, telegram_id: int) -> Optional[CreditStats]:
        records = await self.list_jobs(JobQuery(telegram_id=telegram_id, order_by="created_at"))
        return build_credit_stats(records)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def select_jobs(records: List[JobRecord], query: JobQuery) -> List[JobRecord]:
    matched = [record for record in records if query.matches(record)]
    matched.sort(key=query.sort_key, reverse=query.order_by == "created_at_desc")
    if query.limit is not None:
        matched = matched[: query.limit]
    return matched
