"""
HeyGen API client - async aiohttp client with retry/backoff.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

import aiohttp

from avatar_relay.utils.errors import AvatarRelayError, ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.heygen.com"
GENERATE_PATH = "/v2/video/generate"
STATUS_PATH = "/v1/video_status.get"


class ProviderError(AvatarRelayError):
    """Base class for provider client errors."""

    code = ErrorCode.UPSTREAM

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ProviderNetworkError(ProviderError):
    """Network failure or timeout (retried)."""


class ProviderServerError(ProviderError):
    """5xx from the provider (retried)."""


class ProviderRateLimitError(ProviderError):
    """429 from the provider (retried with a longer delay)."""


class ProviderClientError(ProviderError):
    """4xx other than 429 (not retried)."""


class ProviderResponseError(ProviderError):
    """2xx with an error envelope or a missing field."""


@dataclass(frozen=True)
class ProviderStatus:
    video_id: str
    status: Optional[str]
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "status": self.status,
            "video_url": self.video_url,
            "thumbnail_url": self.thumbnail_url,
            "duration": self.duration,
            "error": self.error,
        }


def _error_text(value: Any) -> Optional[str]:
    """Provider errors arrive as a string or as ``{"code", "message", "detail"}``."""
    if not value:
        return None
    if isinstance(value, dict):
        return value.get("message") or value.get("detail") or value.get("code") or str(value)
    return str(value)


def parse_status_payload(video_id: str, data: Dict[str, Any]) -> ProviderStatus:
    duration = data.get("duration")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None
    return ProviderStatus(
        video_id=data.get("video_id") or data.get("id") or video_id,
        status=data.get("status"),
        video_url=data.get("video_url") or None,
        thumbnail_url=data.get("thumbnail_url") or None,
        duration=duration,
        error=_error_text(data.get("error")),
    )


class HeyGenClient:
    """Async client for the HeyGen video API with retry/backoff."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not api_key:
            raise ConfigurationError("HEYGEN_API_KEY not configured")
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HeyGenClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self, request_id: str, *, with_body: bool = False) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "x-api-key": self.api_key,
            "X-Request-ID": request_id,
        }
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def _should_retry(error: Exception) -> bool:
        if isinstance(error, (ProviderNetworkError, ProviderServerError, ProviderRateLimitError)):
            return True
        return False

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Single HTTP exchange mapped onto the provider error hierarchy."""
        request_id = uuid4().hex
        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(request_id, with_body=payload is not None),
                timeout=self.timeout,
            ) as resp:
                status = resp.status
                if status >= 400:
                    text = await resp.text()
                    message = f"HTTP {status}: {text[:300]}"
                    if status == 429:
                        raise ProviderRateLimitError(message, status)
                    if status >= 500:
                        raise ProviderServerError(message, status)
                    raise ProviderClientError(message, status)
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise ProviderResponseError(f"Invalid JSON from {path}: {exc}", status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderNetworkError(f"Network error: {exc.__class__.__name__}: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderResponseError(f"Unexpected response type from {path}: {type(data).__name__}")
        envelope_error = _error_text(data.get("error"))
        if envelope_error:
            raise ProviderResponseError(envelope_error)
        return data

    async def _retry_with_backoff(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Retry with exponential backoff and jitter for transient failures."""
        start_time = time.monotonic()
        last_error: Optional[ProviderError] = None
        for attempt in range(self.max_retries + 1):
            try:
                result = await self._request(method, path, **kwargs)
                logger.info(
                    "[HEYGEN] request_ok method=%s path=%s duration_ms=%s attempts=%s",
                    method,
                    path,
                    int((time.monotonic() - start_time) * 1000),
                    attempt + 1,
                )
                return result
            except ProviderError as exc:
                last_error = exc
                if attempt < self.max_retries and self._should_retry(exc):
                    delay = min(self.base_delay * (2 ** attempt) + random.uniform(0, 1), self.max_delay)
                    if isinstance(exc, ProviderRateLimitError):
                        delay *= 2
                    logger.warning(
                        "[HEYGEN] request_retry method=%s path=%s attempt=%s backoff_s=%.2f error_class=%s error=%s",
                        method,
                        path,
                        attempt + 1,
                        delay,
                        exc.__class__.__name__,
                        exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                break

        logger.error(
            "[HEYGEN] request_failed method=%s path=%s attempts=%s error_class=%s error=%s",
            method,
            path,
            attempt + 1,
            last_error.__class__.__name__,
            last_error,
        )
        raise last_error

    @staticmethod
    def _build_generation_payload(
        avatar_id: str,
        voice: Dict[str, Any],
        style: Optional[str],
        aspect_ratio: Optional[str],
        background: Optional[Dict[str, Any]],
        test_mode: bool,
    ) -> Dict[str, Any]:
        video_input: Dict[str, Any] = {
            "character": {
                "type": "avatar",
                "avatar_id": avatar_id,
                "avatar_style": style or "normal",
            },
            "voice": voice,
        }
        if background:
            video_input["background"] = background
        return {
            "video_inputs": [video_input],
            "aspect_ratio": aspect_ratio or "16:9",
            "test": bool(test_mode),
        }

    async def _submit(self, payload: Dict[str, Any]) -> str:
        data = await self._retry_with_backoff("POST", GENERATE_PATH, payload=payload)
        video_id = (data.get("data") or {}).get("video_id")
        if not video_id:
            raise ProviderResponseError("No video_id in response")
        return video_id

    async def submit_text_job(
        self,
        avatar_id: str,
        voice_id: str,
        text: str,
        style: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        background: Optional[Dict[str, Any]] = None,
        test_mode: bool = False,
    ) -> str:
        """Create a text-to-speech avatar video; returns the provider video id."""
        voice = {"type": "text", "input_text": text, "voice_id": voice_id}
        return await self._submit(
            self._build_generation_payload(avatar_id, voice, style, aspect_ratio, background, test_mode)
        )

    async def submit_audio_job(
        self,
        avatar_id: str,
        audio_url: str,
        style: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        background: Optional[Dict[str, Any]] = None,
        test_mode: bool = False,
    ) -> str:
        """Create a lip-synced avatar video from an uploaded audio URL."""
        voice = {"type": "audio", "audio_url": audio_url}
        return await self._submit(
            self._build_generation_payload(avatar_id, voice, style, aspect_ratio, background, test_mode)
        )

    async def get_job_status(self, video_id: str) -> ProviderStatus:
        """Fetch authoritative status for ``video_id``."""
        if not video_id:
            raise ProviderClientError("video_id is required")
        data = await self._retry_with_backoff("GET", STATUS_PATH, params={"video_id": video_id})
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise ProviderResponseError("No data in status response")
        return parse_status_payload(video_id, payload)
