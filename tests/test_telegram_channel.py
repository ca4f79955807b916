from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from telegram.error import BadRequest, NetworkError, RetryAfter

from avatar_relay.delivery.notifier import DeliveryNotifier
from avatar_relay.generations.user_messages import CAPTION_LIMIT, build_result_caption
from avatar_relay.messaging.telegram_channel import TelegramChannel
from avatar_relay.observability.delivery_metrics import metrics_snapshot, reset_metrics
from avatar_relay.storage.records import JobRecord
from avatar_relay.utils.errors import ConfigurationError


def _bot():
    bot = MagicMock()
    bot.send_video = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


def _job(**overrides):
    values = dict(
        video_id="v1",
        telegram_id=777,
        input_type="audio",
        avatar_id="av1",
        avatar_name="Anna <b>",
        status="completed",
        aspect_ratio="9:16",
        credits_used=3,
    )
    values.update(overrides)
    return JobRecord(**values)


def test_missing_token_fails_fast():
    with pytest.raises(ConfigurationError):
        TelegramChannel("")


@pytest.mark.asyncio
async def test_send_asset_uses_send_video_with_streaming():
    bot = _bot()
    channel = TelegramChannel(bot=bot)

    assert await channel.send_asset(777, "https://cdn/v1.mp4", "caption") is True

    kwargs = bot.send_video.await_args.kwargs
    assert kwargs["chat_id"] == 777
    assert kwargs["video"] == "https://cdn/v1.mp4"
    assert kwargs["caption"] == "caption"
    assert kwargs["supports_streaming"] is True


@pytest.mark.asyncio
async def test_send_text_uses_html():
    bot = _bot()
    channel = TelegramChannel(bot=bot)

    assert await channel.send_text(777, "<b>hi</b>") is True
    assert bot.send_message.await_args.kwargs["parse_mode"] == "HTML"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [BadRequest("chat not found"), NetworkError("connection reset"), aiohttp.ClientError("boom")],
)
async def test_transport_failures_return_false(error):
    bot = _bot()
    bot.send_video.side_effect = error
    channel = TelegramChannel(bot=bot)

    assert await channel.send_asset(777, "https://cdn/v1.mp4", "c") is False


@pytest.mark.asyncio
async def test_retry_after_is_honoured_once(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("avatar_relay.messaging.telegram_channel.asyncio.sleep", fake_sleep)
    bot = _bot()
    bot.send_message.side_effect = [RetryAfter(3), None]
    channel = TelegramChannel(bot=bot)

    assert await channel.send_text(777, "hi") is True
    assert sleeps == [3.0]
    assert bot.send_message.await_count == 2


@pytest.mark.asyncio
async def test_result_caption_lists_metadata_and_credits():
    reset_metrics()
    bot = _bot()
    notifier = DeliveryNotifier(TelegramChannel(bot=bot), lang="en")

    assert await notifier.send_result(_job(), "https://cdn/v1.mp4") is True

    caption = bot.send_video.await_args.kwargs["caption"]
    assert "Anna &lt;b&gt;" in caption
    assert "audio" in caption
    assert "9:16" in caption
    assert "Credits used: 3" in caption
    assert metrics_snapshot()["deliver_success_rate"] == 1.0


@pytest.mark.asyncio
async def test_russian_caption_test_mode():
    bot = _bot()
    notifier = DeliveryNotifier(TelegramChannel(bot=bot), lang="ru")

    await notifier.send_result(_job(test_mode=True, credits_used=0), "https://cdn/v1.mp4")

    caption = bot.send_video.await_args.kwargs["caption"]
    assert "Ваше видео готово" in caption
    assert "Тестовый режим" in caption


@pytest.mark.asyncio
async def test_failure_notice_carries_reason():
    bot = _bot()
    notifier = DeliveryNotifier(TelegramChannel(bot=bot), lang="en")

    assert await notifier.send_failure(_job(status="failed"), "render error") is True

    kwargs = bot.send_message.await_args.kwargs
    assert kwargs["chat_id"] == 777
    assert "render error" in kwargs["text"]
    bot.send_video.assert_not_awaited()


def test_long_avatar_name_is_shortened_without_breaking_markup():
    job = _job(avatar_name="Tom & Jerry " * 200)

    caption = build_result_caption(job, lang="en")

    assert len(caption) <= CAPTION_LIMIT
    assert caption.count("<b>") == caption.count("</b>")
    assert caption.count("&") == caption.count("&amp;")
    assert "…" in caption
    assert caption.endswith("Credits used: 3")
