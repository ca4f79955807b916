"""
Generation request dispatcher.

Direct mode submits to the provider and persists a pending job record.
Relay mode serializes the request into a ``{kind, payload}`` envelope and
hands it to a bot chat; the receiving side performs the direct dispatch.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from avatar_relay.generations.user_messages import build_relay_message
from avatar_relay.observability.structured_logs import log_structured_event, new_correlation_id
from avatar_relay.storage.base import JobStore
from avatar_relay.storage.records import INPUT_AUDIO, INPUT_TEXT, JobRecord
from avatar_relay.utils.errors import ConfigurationError, StorageError, ValidationError

logger = logging.getLogger(__name__)

ENVELOPE_KIND = "generation_request"
AVATAR_STYLES = ("normal", "circle", "closeUp")
ASPECT_RATIOS = ("16:9", "9:16", "1:1")
BACKGROUND_TYPES = ("color", "image", "video")

# camelCase request key -> dataclass attribute
_PAYLOAD_KEYS = {
    "telegramId": "telegram_id",
    "avatarId": "avatar_id",
    "inputType": "input_type",
    "text": "text",
    "voiceId": "voice_id",
    "audioUrl": "audio_url",
    "avatarName": "avatar_name",
    "avatarStyle": "avatar_style",
    "aspectRatio": "aspect_ratio",
    "background": "background",
    "test": "test_mode",
}


class VideoProvider(Protocol):
    async def submit_text_job(self, avatar_id: str, voice_id: str, text: str, **kwargs) -> str:
        ...

    async def submit_audio_job(self, avatar_id: str, audio_url: str, **kwargs) -> str:
        ...


class TextChannel(Protocol):
    async def send_text(self, recipient_id: int, text: str) -> bool:
        ...


@dataclass
class GenerationRequest:
    telegram_id: Optional[int]
    avatar_id: Optional[str]
    input_type: Optional[str] = None
    text: Optional[str] = None
    voice_id: Optional[str] = None
    audio_url: Optional[str] = None
    avatar_name: Optional[str] = None
    avatar_style: str = "normal"
    aspect_ratio: str = "16:9"
    background: Optional[Dict[str, Any]] = None
    test_mode: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GenerationRequest":
        """Build from a request body using camelCase or snake_case keys."""
        if not isinstance(payload, dict):
            raise ValidationError("body", "Request body must be a JSON object")
        values: Dict[str, Any] = {}
        for camel, attr in _PAYLOAD_KEYS.items():
            if camel in payload:
                values[attr] = payload[camel]
            elif attr in payload:
                values[attr] = payload[attr]
        if values.get("avatar_style") is None:
            values.pop("avatar_style", None)
        if values.get("aspect_ratio") is None:
            values.pop("aspect_ratio", None)
        values["test_mode"] = bool(values.get("test_mode", False))
        values.setdefault("telegram_id", None)
        values.setdefault("avatar_id", None)
        return cls(**values)

    def resolved_input_type(self) -> str:
        has_text = bool(self.text and self.voice_id)
        has_audio = bool(self.audio_url)
        if self.input_type:
            return self.input_type
        if has_text:
            return INPUT_TEXT
        if has_audio:
            return INPUT_AUDIO
        if self.text and not self.voice_id:
            raise ValidationError("voice_id", "voice_id is required for text input")
        raise ValidationError("input_type", "Provide text with voice_id, or audio_url")

    def validate(self) -> str:
        """Raise ``ValidationError`` on the first bad field; return the input type."""
        if self.telegram_id is None or self.telegram_id == "":
            raise ValidationError("telegram_id")
        try:
            self.telegram_id = int(self.telegram_id)
        except (TypeError, ValueError):
            raise ValidationError("telegram_id", "telegram_id must be an integer") from None
        if not self.avatar_id:
            raise ValidationError("avatar_id")

        input_type = self.resolved_input_type()
        if input_type == INPUT_TEXT:
            if not self.text or not str(self.text).strip():
                raise ValidationError("text", "text is required for text input")
            if not self.voice_id:
                raise ValidationError("voice_id", "voice_id is required for text input")
        elif input_type == INPUT_AUDIO:
            if not self.audio_url:
                raise ValidationError("audio_url", "audio_url is required for audio input")
        else:
            raise ValidationError("input_type", "Invalid input type. Must be 'text' or 'audio'")

        if self.avatar_style not in AVATAR_STYLES:
            raise ValidationError("avatar_style", f"avatar_style must be one of {', '.join(AVATAR_STYLES)}")
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValidationError("aspect_ratio", f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}")
        if self.background is not None:
            if not isinstance(self.background, dict) or self.background.get("type") not in BACKGROUND_TYPES:
                raise ValidationError("background", f"background.type must be one of {', '.join(BACKGROUND_TYPES)}")
            if not self.background.get("value"):
                raise ValidationError("background", "background.value is required")

        self.input_type = input_type
        return input_type

    def to_payload(self) -> Dict[str, Any]:
        """camelCase payload with unset fields omitted."""
        payload: Dict[str, Any] = {}
        for camel, attr in _PAYLOAD_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[camel] = value
        return payload


@dataclass
class DispatchResult:
    video_id: str
    tracked: bool
    record: Optional[JobRecord] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {"videoId": self.video_id, "tracked": self.tracked}


def build_envelope(request: GenerationRequest) -> Dict[str, Any]:
    return {"kind": ENVELOPE_KIND, "payload": request.to_payload()}


class Dispatcher:
    def __init__(
        self,
        provider: VideoProvider,
        store: JobStore,
        *,
        channel: Optional[TextChannel] = None,
        relay_chat_id: Optional[int] = None,
    ):
        self.provider = provider
        self.store = store
        self.channel = channel
        self.relay_chat_id = relay_chat_id

    async def dispatch(self, request: GenerationRequest) -> DispatchResult:
        """Submit to the provider, then persist a pending record.

        Provider errors propagate. A persistence failure after a successful
        submit is logged and reported as ``tracked=False``.
        """
        input_type = request.validate()
        correlation_id = new_correlation_id(telegram_id=request.telegram_id)
        start = time.monotonic()
        options = {
            "style": request.avatar_style,
            "aspect_ratio": request.aspect_ratio,
            "background": request.background,
            "test_mode": request.test_mode,
        }
        if input_type == INPUT_TEXT:
            video_id = await self.provider.submit_text_job(request.avatar_id, request.voice_id, request.text, **options)
        else:
            video_id = await self.provider.submit_audio_job(request.avatar_id, request.audio_url, **options)

        record = JobRecord(
            video_id=video_id,
            telegram_id=request.telegram_id,
            input_type=input_type,
            avatar_id=request.avatar_id,
            avatar_name=request.avatar_name,
            voice_id=request.voice_id if input_type == INPUT_TEXT else None,
            input_text=request.text if input_type == INPUT_TEXT else None,
            audio_url=request.audio_url if input_type == INPUT_AUDIO else None,
            aspect_ratio=request.aspect_ratio,
            avatar_style=request.avatar_style,
            background=request.background,
            test_mode=request.test_mode,
        )
        tracked = True
        try:
            created = await self.store.create_job(record)
            if created is None:
                created = await self.store.get_job(video_id)
        except StorageError as exc:
            logger.error("DISPATCH_UNTRACKED video_id=%s telegram_id=%s error=%s", video_id, request.telegram_id, exc)
            created = None
            tracked = False

        log_structured_event(
            correlation_id=correlation_id,
            user_id=request.telegram_id,
            video_id=video_id,
            action="dispatch",
            action_path="generations.dispatcher",
            stage="SUBMIT",
            input_type=input_type,
            outcome="accepted" if tracked else "untracked",
            duration_ms=int((time.monotonic() - start) * 1000),
            param={"avatar_id": request.avatar_id, "aspect_ratio": request.aspect_ratio, "test": request.test_mode},
        )
        return DispatchResult(video_id=video_id, tracked=tracked, record=created)

    async def relay(self, request: GenerationRequest) -> bool:
        """Hand the request to the relay chat as a tagged envelope."""
        if self.channel is None or self.relay_chat_id is None:
            raise ConfigurationError("relay mode requires a channel and RELAY_CHAT_ID")
        input_type = request.validate()
        envelope = build_envelope(request)
        ok = await self.channel.send_text(self.relay_chat_id, build_relay_message(envelope))
        log_structured_event(
            user_id=request.telegram_id,
            action="relay",
            action_path="generations.dispatcher",
            stage="RELAY",
            input_type=input_type,
            outcome="handed_off" if ok else "send_failed",
        )
        return ok
