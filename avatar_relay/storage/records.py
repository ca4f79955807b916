"""Job record persisted for every dispatched video."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from avatar_relay.generations.state_machine import STATUS_PENDING

INPUT_TEXT = "text"
INPUT_AUDIO = "audio"

# Fields that update_job() may write. Identity and the delivery flag are
# excluded: the flag only moves through mark_delivered().
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "video_url",
        "thumbnail_url",
        "error_message",
        "credits_used",
        "avatar_name",
    }
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobRecord:
    video_id: str
    telegram_id: int
    input_type: str
    avatar_id: str
    status: str = STATUS_PENDING
    avatar_name: Optional[str] = None
    voice_id: Optional[str] = None
    input_text: Optional[str] = None
    audio_url: Optional[str] = None
    aspect_ratio: str = "16:9"
    avatar_style: str = "normal"
    background: Optional[Dict[str, Any]] = None
    test_mode: bool = False
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    credits_used: int = 0
    sent_to_telegram: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "telegram_id" in values and values["telegram_id"] is not None:
            values["telegram_id"] = int(values["telegram_id"])
        values["test_mode"] = bool(values.get("test_mode", False))
        values["sent_to_telegram"] = bool(values.get("sent_to_telegram", False))
        values["credits_used"] = int(values.get("credits_used") or 0)
        return cls(**values)

    @property
    def display_avatar(self) -> str:
        return self.avatar_name or self.avatar_id


@dataclass(frozen=True)
class JobQuery:
    """Filter for JobStore.list_jobs.

    ``statuses`` matches any of the given values; ``order_by`` sorts ascending
    except ``created_at_desc``.
    """

    statuses: Optional[frozenset] = None
    sent_to_telegram: Optional[bool] = None
    has_video_url: Optional[bool] = None
    telegram_id: Optional[int] = None
    order_by: str = "completed_at"
    limit: Optional[int] = None

    def matches(self, record: JobRecord) -> bool:
        if self.statuses is not None and record.status not in self.statuses:
            return False
        if self.sent_to_telegram is not None and record.sent_to_telegram != self.sent_to_telegram:
            return False
        if self.has_video_url is not None and bool(record.video_url) != self.has_video_url:
            return False
        if self.telegram_id is not None and record.telegram_id != self.telegram_id:
            return False
        return True

    def sort_key(self, record: JobRecord):
        if self.order_by in ("created_at", "created_at_desc"):
            return record.created_at or ""
        return record.completed_at or record.updated_at or ""


@dataclass(frozen=True)
class CreditStats:
    total_credits_used: int
    total_generations: int
    completed_generations: int
    failed_generations: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalCreditsUsed": self.total_credits_used,
            "totalGenerations": self.total_generations,
            "completedGenerations": self.completed_generations,
            "failedGenerations": self.failed_generations,
        }
