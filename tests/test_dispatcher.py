import html
import json
from unittest.mock import AsyncMock

import pytest

from avatar_relay.generations.dispatcher import Dispatcher, GenerationRequest, build_envelope
from avatar_relay.integrations.heygen_client import ProviderServerError
from avatar_relay.utils.errors import ConfigurationError, StorageError, ValidationError


def _text_request(**overrides):
    payload = {"telegramId": 501, "avatarId": "av1", "voiceId": "v1", "text": "hello"}
    payload.update(overrides)
    return GenerationRequest.from_payload(payload)


@pytest.mark.asyncio
async def test_dispatch_text_job_persists_pending_record(provider, store):
    dispatcher = Dispatcher(provider, store)

    result = await dispatcher.dispatch(_text_request())

    assert result.tracked is True
    job = await store.get_job(result.video_id)
    assert job.status == "pending"
    assert job.sent_to_telegram is False
    assert job.input_type == "text"
    assert job.input_text == "hello"
    assert job.telegram_id == 501
    assert provider.submissions[0]["voice_id"] == "v1"
    assert provider.submissions[0]["aspect_ratio"] == "16:9"


@pytest.mark.asyncio
async def test_dispatch_audio_job(provider, store):
    dispatcher = Dispatcher(provider, store)
    request = GenerationRequest.from_payload(
        {"telegram_id": 9, "avatar_id": "av2", "audio_url": "https://files/a.mp3", "aspect_ratio": "9:16", "test": True}
    )

    result = await dispatcher.dispatch(request)

    job = await store.get_job(result.video_id)
    assert job.input_type == "audio"
    assert job.audio_url == "https://files/a.mp3"
    assert job.voice_id is None
    assert job.test_mode is True
    assert provider.submissions[0]["type"] == "audio"
    assert provider.submissions[0]["test_mode"] is True


@pytest.mark.asyncio
async def test_text_wins_when_both_inputs_present(provider, store):
    dispatcher = Dispatcher(provider, store)
    result = await dispatcher.dispatch(_text_request(audioUrl="https://files/a.mp3"))
    assert (await store.get_job(result.video_id)).input_type == "text"


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"telegramId": None}, "telegram_id"),
        ({"telegramId": "abc"}, "telegram_id"),
        ({"avatarId": ""}, "avatar_id"),
        ({"voiceId": None}, "voice_id"),
        ({"inputType": "text", "text": "   "}, "text"),
        ({"inputType": "audio"}, "audio_url"),
        ({"inputType": "gif"}, "input_type"),
        ({"avatarStyle": "wide"}, "avatar_style"),
        ({"aspectRatio": "4:3"}, "aspect_ratio"),
        ({"background": {"type": "pattern", "value": "x"}}, "background"),
        ({"background": {"type": "color"}}, "background"),
    ],
)
def test_validation_names_the_bad_field(overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        _text_request(**overrides).validate()
    assert exc_info.value.field == field


def test_missing_all_inputs_is_rejected():
    request = GenerationRequest.from_payload({"telegramId": 1, "avatarId": "av1"})
    with pytest.raises(ValidationError) as exc_info:
        request.validate()
    assert exc_info.value.field == "input_type"


@pytest.mark.asyncio
async def test_validation_error_never_reaches_provider(provider, store):
    dispatcher = Dispatcher(provider, store)
    with pytest.raises(ValidationError):
        await dispatcher.dispatch(_text_request(avatarId=None))
    assert provider.submissions == []


@pytest.mark.asyncio
async def test_provider_error_propagates_and_nothing_is_stored(provider, store):
    provider.submit_error = ProviderServerError("HTTP 500: oops", 500)
    dispatcher = Dispatcher(provider, store)
    with pytest.raises(ProviderServerError):
        await dispatcher.dispatch(_text_request())
    assert await store.list_user_jobs(501) == []


@pytest.mark.asyncio
async def test_persistence_failure_after_submit_reports_untracked(provider):
    failing_store = AsyncMock()
    failing_store.create_job.side_effect = StorageError("disk full")
    dispatcher = Dispatcher(provider, failing_store)

    result = await dispatcher.dispatch(_text_request())

    assert result.tracked is False
    assert result.video_id == "fake_video_1"


def test_envelope_is_tagged_and_camel_cased():
    request = _text_request(avatarName="Anna")
    request.validate()
    envelope = build_envelope(request)
    assert envelope["kind"] == "generation_request"
    assert envelope["payload"]["telegramId"] == 501
    assert envelope["payload"]["inputType"] == "text"
    assert envelope["payload"]["avatarName"] == "Anna"
    assert "audioUrl" not in envelope["payload"]


@pytest.mark.asyncio
async def test_relay_hands_envelope_to_relay_chat(provider, store, channel):
    dispatcher = Dispatcher(provider, store, channel=channel, relay_chat_id=-100200)

    ok = await dispatcher.relay(_text_request())

    assert ok is True
    assert provider.submissions == []
    message = channel.texts[0]
    assert message["chat_id"] == -100200
    body = message["text"].split("<pre>", 1)[1].rsplit("</pre>", 1)[0]
    envelope = json.loads(html.unescape(body))
    assert envelope["kind"] == "generation_request"
    assert envelope["payload"]["text"] == "hello"


@pytest.mark.asyncio
async def test_relay_reports_failed_handoff(provider, store, channel):
    channel.ok = False
    dispatcher = Dispatcher(provider, store, channel=channel, relay_chat_id=1)
    assert await dispatcher.relay(_text_request()) is False


@pytest.mark.asyncio
async def test_relay_without_chat_is_a_configuration_error(provider, store):
    dispatcher = Dispatcher(provider, store)
    with pytest.raises(ConfigurationError):
        await dispatcher.relay(_text_request())
