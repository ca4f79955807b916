"""Shared fixtures: isolated env, JSON store in tmp_path, fake provider and channel."""
import pytest

from avatar_relay.config import reset_config
from avatar_relay.delivery.notifier import DeliveryNotifier
from avatar_relay.locking.job_lock import cleanup_all_locks
from avatar_relay.observability.delivery_metrics import reset_metrics
from avatar_relay.storage import reset_storage
from avatar_relay.storage.json_storage import JsonJobStore
from tests.fakes.fake_channel import FakeChannel
from tests.fakes.fake_heygen_api import FakeHeyGenProvider


@pytest.fixture
def test_env(monkeypatch, tmp_path):
    """Minimal valid environment; singletons and in-memory state reset around each test."""
    for key in (
        "CRON_SECRET",
        "DATABASE_URL",
        "DISPATCH_MODE",
        "RELAY_CHAT_ID",
        "STORAGE_MODE",
        "RECONCILE_INCLUDE_PENDING",
        "HEYGEN_API_BASE_URL",
        "HEYGEN_TIMEOUT_SECONDS",
        "HEYGEN_MAX_RETRIES",
        "RECONCILE_INTERVAL_SECONDS",
        "RECONCILE_CONCURRENCY",
        "BOT_LANGUAGE",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123456:TEST-token")
    monkeypatch.setenv("HEYGEN_API_KEY", "hg-test-key")
    monkeypatch.setenv("STORAGE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOG_DIR", "")
    reset_config()
    reset_storage()
    reset_metrics()
    cleanup_all_locks()
    yield
    reset_config()
    reset_storage()
    reset_metrics()
    cleanup_all_locks()


@pytest.fixture
def store(tmp_path):
    return JsonJobStore(str(tmp_path / "store"))


@pytest.fixture
def provider():
    return FakeHeyGenProvider()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def notifier(channel):
    return DeliveryNotifier(channel, lang="en")
