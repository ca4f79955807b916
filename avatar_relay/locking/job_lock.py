"""
In-memory TTL-based per-video lock.

Keeps two overlapping reconcile passes in the same process from handling
the same job at once. Cross-process races are closed by the store's
conditional mark_delivered.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class JobLock:
    """Job lock metadata."""
    video_id: str
    owner: str
    acquired_at: float
    ttl_s: float

    def is_expired(self) -> bool:
        return time.time() > (self.acquired_at + self.ttl_s)


_job_locks: Dict[str, JobLock] = {}


def acquire_job_lock(video_id: str, owner: str, ttl_s: float = 300.0) -> Tuple[bool, Optional[JobLock]]:
    """
    Try to acquire the lock for ``video_id``.

    Returns:
        (True, None) if acquired, (False, existing_lock) if held and not expired
    """
    now = time.time()
    existing = _job_locks.get(video_id)
    if existing is not None:
        if existing.is_expired():
            logger.info(
                "JOB_LOCK_EXPIRED video_id=%s owner=%s age=%.1fs",
                video_id,
                existing.owner,
                now - existing.acquired_at,
            )
            del _job_locks[video_id]
        else:
            logger.info(
                "JOB_LOCK_BUSY video_id=%s holder=%s requester=%s",
                video_id,
                existing.owner,
                owner,
            )
            return False, existing

    _job_locks[video_id] = JobLock(video_id=video_id, owner=owner, acquired_at=now, ttl_s=ttl_s)
    return True, None


def release_job_lock(video_id: str, owner: Optional[str] = None) -> bool:
    """Release the lock; an owner mismatch still releases to avoid stuck locks."""
    existing = _job_locks.pop(video_id, None)
    if existing is None:
        return False
    if owner and existing.owner != owner:
        logger.warning(
            "JOB_LOCK_OWNER_MISMATCH video_id=%s expected=%s got=%s",
            video_id,
            existing.owner,
            owner,
        )
    return True


@asynccontextmanager
async def job_lock(video_id: str, owner: str, ttl_s: float = 300.0) -> AsyncIterator[bool]:
    """Yield whether the lock was acquired; release on exit only if it was."""
    acquired, _ = acquire_job_lock(video_id, owner, ttl_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_job_lock(video_id, owner)


def get_lock_stats() -> Dict[str, float]:
    if not _job_locks:
        return {"active_locks": 0, "oldest_lock_age_s": 0}
    now = time.time()
    return {
        "active_locks": len(_job_locks),
        "oldest_lock_age_s": max(now - lock.acquired_at for lock in _job_locks.values()),
    }


def cleanup_all_locks() -> None:
    """Clear all locks (called on shutdown)."""
    _job_locks.clear()
