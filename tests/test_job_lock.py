import pytest

from avatar_relay.locking import job_lock as job_lock_module
from avatar_relay.locking.job_lock import (
    acquire_job_lock,
    cleanup_all_locks,
    get_lock_stats,
    job_lock,
    release_job_lock,
)


@pytest.fixture(autouse=True)
def _clean_locks():
    cleanup_all_locks()
    yield
    cleanup_all_locks()


def test_second_owner_is_refused():
    assert acquire_job_lock("v1", "pass-a") == (True, None)
    acquired, existing = acquire_job_lock("v1", "pass-b")
    assert acquired is False
    assert existing.owner == "pass-a"
    assert get_lock_stats()["active_locks"] == 1


def test_expired_lock_is_taken_over(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(job_lock_module.time, "time", lambda: now[0])
    acquire_job_lock("v1", "pass-a", ttl_s=10)

    now[0] += 11

    acquired, _ = acquire_job_lock("v1", "pass-b")
    assert acquired is True


def test_release_with_wrong_owner_still_releases():
    acquire_job_lock("v1", "pass-a")
    assert release_job_lock("v1", "pass-b") is True
    assert release_job_lock("v1") is False


@pytest.mark.asyncio
async def test_context_manager_releases_only_its_own_lock():
    async with job_lock("v1", "pass-a") as acquired:
        assert acquired is True
        async with job_lock("v1", "pass-b") as nested:
            assert nested is False
        assert get_lock_stats()["active_locks"] == 1
    assert get_lock_stats() == {"active_locks": 0, "oldest_lock_age_s": 0}
