"""
JSON file job store.

Atomic writes (temp + rename) under a filelock so separate processes never
interleave a read-modify-write; an asyncio.Lock serializes coroutines inside
one process.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import aiofiles
from filelock import FileLock, Timeout

from avatar_relay.storage.base import JobStore, apply_job_update, can_mark_delivered, select_jobs
from avatar_relay.storage.records import JobQuery, JobRecord, utc_now_iso
from avatar_relay.utils.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonJobStore(JobStore):
    """Job records kept in a single ``video_generations.json`` keyed by video id."""

    def __init__(self, data_dir: str = "./data", lock_timeout: float = 5.0):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.data_dir / "video_generations.json"
        self._file_lock = FileLock(str(self.data_dir / f".{self.jobs_file.name}.lock"), timeout=lock_timeout)
        self._lock = asyncio.Lock()
        if not self.jobs_file.exists():
            self.jobs_file.write_text("{}", encoding="utf-8")

    async def _load_json(self) -> Dict[str, Any]:
        try:
            async with aiofiles.open(self.jobs_file, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return {}
        if not content.strip():
            return {}
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON in %s: %s", self.jobs_file, exc)
            raise StorageError(f"Corrupted job file {self.jobs_file}") from exc
        if not isinstance(payload, dict):
            logger.warning("STORAGE_JSON_TYPE_INVALID file=%s payload_type=%s", self.jobs_file, type(payload).__name__)
            return {}
        return payload

    async def _save_json(self, data: Dict[str, Any]) -> None:
        temp_file = self.jobs_file.with_suffix(".tmp")
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, ensure_ascii=False, indent=2))
        temp_file.replace(self.jobs_file)

    async def _transaction(self, fn: Callable[[Dict[str, Any], Callable[[], None]], T]) -> T:
        """Run ``fn`` on the loaded data and save it back if ``fn`` marked it dirty."""
        async with self._lock:
            try:
                with self._file_lock:
                    data = await self._load_json()
                    state = {"dirty": False}

                    def mark_dirty() -> None:
                        state["dirty"] = True

                    result = fn(data, mark_dirty)
                    if state["dirty"]:
                        await self._save_json(data)
                    return result
            except Timeout as exc:
                logger.error("Timeout acquiring lock for %s", self.jobs_file)
                raise StorageError(f"Lock timeout for {self.jobs_file}") from exc
            except OSError as exc:
                logger.error("Error writing %s: %s", self.jobs_file, exc)
                raise StorageError(str(exc)) from exc

    async def _read_all(self) -> List[JobRecord]:
        async with self._lock:
            data = await self._load_json()
        return [JobRecord.from_dict(item) for item in data.values() if isinstance(item, dict)]

    async def create_job(self, record: JobRecord) -> Optional[JobRecord]:
        def insert(data, mark_dirty):
            if record.video_id in data:
                logger.warning("JOB_CREATE_DUPLICATE video_id=%s", record.video_id)
                return None
            data[record.video_id] = record.to_dict()
            mark_dirty()
            return record

        return await self._transaction(insert)

    async def update_job(self, video_id: str, **changes: Any) -> bool:
        def update(data, mark_dirty):
            raw = data.get(video_id)
            if not isinstance(raw, dict):
                return False
            updated, changed = apply_job_update(JobRecord.from_dict(raw), changes)
            if changed:
                data[video_id] = updated.to_dict()
                mark_dirty()
            return True

        return await self._transaction(update)

    async def get_job(self, video_id: str) -> Optional[JobRecord]:
        async with self._lock:
            data = await self._load_json()
        raw = data.get(video_id)
        return JobRecord.from_dict(raw) if isinstance(raw, dict) else None

    async def list_jobs(self, query: JobQuery) -> List[JobRecord]:
        return select_jobs(await self._read_all(), query)

    async def mark_delivered(self, video_id: str) -> bool:
        def mark(data, mark_dirty):
            raw = data.get(video_id)
            if not isinstance(raw, dict):
                return False
            record = JobRecord.from_dict(raw)
            if not can_mark_delivered(record):
                return False
            raw["sent_to_telegram"] = True
            raw["updated_at"] = utc_now_iso()
            mark_dirty()
            return True

        return await self._transaction(mark)
