import pytest
from aiohttp.test_utils import TestClient, TestServer

from avatar_relay.config import get_config
from avatar_relay.delivery.reconciler import StatusReconciler
from avatar_relay.generations.dispatcher import Dispatcher
from avatar_relay.integrations.heygen_client import ProviderClientError
from avatar_relay.storage.records import JobRecord
from avatar_relay.web.server import create_app


def _build_app(provider, store, notifier, channel):
    config = get_config()
    dispatcher = Dispatcher(provider, store, channel=channel, relay_chat_id=config.relay_chat_id)
    reconciler = StatusReconciler(provider, store, notifier)
    return create_app(config, dispatcher=dispatcher, reconciler=reconciler, store=store, provider=provider)


@pytest.fixture
async def client(test_env, provider, store, notifier, channel):
    app = _build_app(provider, store, notifier, channel)
    async with TestServer(app) as server, TestClient(server) as test_client:
        yield test_client


async def _seed(store, video_id="v1", telegram_id=55, status="pending", video_url=None):
    await store.create_job(
        JobRecord(video_id=video_id, telegram_id=telegram_id, input_type="text", avatar_id="av1", voice_id="v1")
    )
    if status != "pending":
        await store.update_job(video_id, status=status, video_url=video_url)


@pytest.mark.asyncio
async def test_generate_direct(client, store):
    resp = await client.post(
        "/api/video/generate",
        json={"telegramId": 55, "avatarId": "av1", "inputType": "text", "text": "hello", "voiceId": "v1"},
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["data"]["tracked"] is True
    job = await store.get_job(body["data"]["videoId"])
    assert job.status == "pending"


@pytest.mark.asyncio
async def test_generate_validation_error(client, provider):
    resp = await client.post("/api/video/generate", json={"telegramId": 55, "inputType": "text", "text": "x"})
    assert resp.status == 400
    body = await resp.json()
    assert body == {"success": False, "error": "avatar_id is required", "field": "avatar_id"}
    assert provider.submissions == []


@pytest.mark.asyncio
async def test_generate_rejects_non_json(client):
    resp = await client.post("/api/video/generate", data="not json", headers={"Content-Type": "application/json"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_generate_provider_failure_is_502(client, provider):
    provider.submit_error = ProviderClientError("HTTP 401: bad key", 401)
    resp = await client.post(
        "/api/video/generate",
        json={"telegramId": 55, "avatarId": "av1", "text": "hello", "voiceId": "v1"},
    )
    assert resp.status == 502
    assert (await resp.json())["success"] is False


@pytest.mark.asyncio
async def test_generate_relay_mode(monkeypatch, test_env, provider, store, notifier, channel):
    monkeypatch.setenv("DISPATCH_MODE", "relay")
    monkeypatch.setenv("RELAY_CHAT_ID", "-1001")
    app = _build_app(provider, store, notifier, channel)
    async with TestServer(app) as server, TestClient(server) as client:
        resp = await client.post(
            "/api/video/generate",
            json={"telegramId": 55, "avatarId": "av1", "text": "hello", "voiceId": "v1"},
        )
    assert resp.status == 202
    assert channel.texts[0]["chat_id"] == -1001
    assert provider.submissions == []


@pytest.mark.asyncio
async def test_cron_requires_bearer_when_secret_set(monkeypatch, test_env, provider, store, notifier, channel):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    app = _build_app(provider, store, notifier, channel)
    async with TestServer(app) as server, TestClient(server) as client:
        denied = await client.get("/api/cron/check-videos")
        wrong = await client.get("/api/cron/check-videos", headers={"Authorization": "Bearer nope"})
        allowed = await client.get("/api/cron/check-videos", headers={"Authorization": "Bearer s3cret"})
        assert denied.status == 401
        assert wrong.status == 401
        assert allowed.status == 200


@pytest.mark.asyncio
async def test_cron_pass_reports_results(client, provider, store, channel):
    await _seed(store, "v1", status="completed", video_url="https://cdn/v1.mp4")
    provider.set_status("v1", "completed", video_url="https://cdn/v1.mp4")

    resp = await client.get("/api/cron/check-videos")

    body = await resp.json()
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["results"] == [{"videoId": "v1", "telegramId": 55, "status": "sent"}]
    assert "timestamp" in body
    assert len(channel.assets) == 1


@pytest.mark.asyncio
async def test_batch_check_and_send_with_pending(client, provider, store):
    await _seed(store, "v1")
    provider.set_status("v1", "processing")

    resp = await client.post("/api/video/check-and-send", json={"includePending": True})

    body = await resp.json()
    assert body["results"][0]["status"] == "updated"


@pytest.mark.asyncio
async def test_single_check_requires_id_and_known_job(client):
    missing = await client.get("/api/video/check-and-send")
    unknown = await client.get("/api/video/check-and-send", params={"videoId": "ghost"})
    assert missing.status == 400
    assert unknown.status == 404


@pytest.mark.asyncio
async def test_single_check_delivers(client, provider, store, channel):
    await _seed(store, "v1")
    provider.set_status("v1", "completed", video_url="https://cdn/v1.mp4")

    resp = await client.get("/api/video/check-and-send", params={"videoId": "v1"})

    body = await resp.json()
    assert body["success"] is True
    assert body["outcome"] == "sent"
    assert body["status"] == "completed"
    assert body["sent"] is True
    assert body["videoUrl"] == "https://cdn/v1.mp4"


@pytest.mark.asyncio
async def test_status_passthrough_does_not_persist(client, provider, store):
    await _seed(store, "v1")
    provider.set_status("v1", "completed", video_url="https://cdn/v1.mp4")

    resp = await client.get("/api/video/status/v1")

    body = await resp.json()
    assert body["data"]["status"] == "completed"
    assert (await store.get_job("v1")).status == "pending"


@pytest.mark.asyncio
async def test_webhook(client, store, channel):
    await _seed(store, "v1")

    missing = await client.post("/api/webhook/heygen", json={"status": "completed"})
    unknown = await client.post("/api/webhook/heygen", json={"video_id": "ghost", "status": "completed"})
    ok = await client.post(
        "/api/webhook/heygen",
        json={"data": {"video_id": "v1", "status": "completed", "video_url": "https://cdn/v1.mp4"}},
    )

    assert missing.status == 400
    assert unknown.status == 200
    assert (await unknown.json())["success"] is False
    assert (await ok.json())["data"]["status"] == "sent"
    assert len(channel.assets) == 1


@pytest.mark.asyncio
async def test_history_and_credits(client, store):
    await _seed(store, "v1", telegram_id=55, status="failed")

    history = await client.get("/api/video/history", params={"telegramId": "55"})
    credits = await client.get("/api/video/credits", params={"telegramId": "55"})
    no_user = await client.get("/api/video/credits", params={"telegramId": "56"})
    bad = await client.get("/api/video/history")

    assert [item["video_id"] for item in (await history.json())["data"]] == ["v1"]
    assert (await credits.json())["data"]["failedGenerations"] == 1
    assert no_user.status == 404
    assert bad.status == 400


@pytest.mark.asyncio
async def test_health_includes_metrics(client):
    resp = await client.get("/health")
    body = await resp.json()
    assert resp.status == 200
    assert body["ok"] is True
    assert body["storage"] == "json"
    assert "reconcile_passes" in body["metrics"]
