"""Telegram messaging channel used for result delivery and relayed requests."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import RetryAfter, TelegramError

from avatar_relay.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Longest RetryAfter pause honoured inline; anything longer is left to the next pass.
MAX_RETRY_AFTER_S = 30.0


def _retry_after_seconds(exc: RetryAfter) -> float:
    delay = exc.retry_after
    if hasattr(delay, "total_seconds"):
        delay = delay.total_seconds()
    return float(delay)


class TelegramChannel:
    """Thin wrapper over ``telegram.Bot``; every send returns a bool instead of raising."""

    def __init__(self, token: Optional[str] = None, *, bot: Optional[Bot] = None):
        if bot is None:
            if not token:
                raise ConfigurationError("TELEGRAM_BOT_TOKEN not configured")
            bot = Bot(token=token)
        self.bot = bot

    async def initialize(self) -> None:
        await self.bot.initialize()

    async def shutdown(self) -> None:
        await self.bot.shutdown()

    async def _call(self, method: str, recipient_id: int, **kwargs) -> bool:
        sender = getattr(self.bot, method)
        for attempt in (1, 2):
            try:
                await sender(chat_id=recipient_id, **kwargs)
                logger.info("TG_SEND_OK method=%s chat_id=%s attempt=%s", method, recipient_id, attempt)
                return True
            except RetryAfter as exc:
                delay = _retry_after_seconds(exc)
                if attempt == 1 and delay <= MAX_RETRY_AFTER_S:
                    logger.warning("TG_SEND_RETRY_AFTER method=%s chat_id=%s delay=%.1fs", method, recipient_id, delay)
                    await asyncio.sleep(delay)
                    continue
                logger.error("TG_SEND_FAILED method=%s chat_id=%s error=RetryAfter(%.1fs)", method, recipient_id, delay)
                return False
            except (TelegramError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error(
                    "TG_SEND_FAILED method=%s chat_id=%s error_class=%s error=%s",
                    method,
                    recipient_id,
                    exc.__class__.__name__,
                    exc,
                )
                return False
        return False

    async def send_asset(self, recipient_id: int, asset_url: str, caption: Optional[str] = None) -> bool:
        """Send a video by URL; Telegram fetches it itself."""
        return await self._call(
            "send_video",
            recipient_id,
            video=asset_url,
            caption=caption,
            parse_mode=ParseMode.HTML,
            supports_streaming=True,
        )

    async def send_text(self, recipient_id: int, text: str) -> bool:
        return await self._call("send_message", recipient_id, text=text, parse_mode=ParseMode.HTML)
