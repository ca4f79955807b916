"""User-facing texts for result delivery and relayed requests."""
from __future__ import annotations

import html
import json
from typing import Any, Dict, Optional

from avatar_relay.storage.records import INPUT_AUDIO, JobRecord

# Telegram caps media captions at 1024 characters.
CAPTION_LIMIT = 1024


def _input_label(input_type: str, *, lang: str) -> str:
    if input_type == INPUT_AUDIO:
        return "аудио" if lang == "ru" else "audio"
    return "текст" if lang == "ru" else "text"


def _fit_escaped(text: str, budget: int) -> str:
    """Escape ``text``, shortening the raw value until the escaped form fits ``budget``."""
    escaped = html.escape(text)
    if len(escaped) <= budget:
        return escaped
    raw = text
    while raw and len(html.escape(raw)) + 1 > budget:
        raw = raw[: max(0, min(len(raw) - 1, budget - 1))]
    return html.escape(raw) + "…"


def build_result_caption(job: JobRecord, *, lang: str) -> str:
    template = _result_caption_template(job, lang=lang)
    budget = CAPTION_LIMIT - len(template.replace("{avatar}", ""))
    return template.replace("{avatar}", _fit_escaped(job.display_avatar, budget))


def _result_caption_template(job: JobRecord, *, lang: str) -> str:
    source = _input_label(job.input_type, lang=lang)
    if lang == "ru":
        cost_line = (
            "⚠️ Тестовый режим (бесплатно)"
            if job.test_mode
            else f"💳 Использовано кредитов: {job.credits_used}"
        )
        caption = (
            "🎬 <b>Ваше видео готово!</b>\n\n"
            "🧑 <b>Аватар:</b> {avatar}\n"
            f"🎙 <b>Источник:</b> {source}\n"
            f"📐 <b>Формат:</b> {job.aspect_ratio}\n"
            f"{cost_line}"
        )
    else:
        cost_line = "⚠️ Test mode (free)" if job.test_mode else f"💳 Credits used: {job.credits_used}"
        caption = (
            "🎬 <b>Your video is ready!</b>\n\n"
            "🧑 <b>Avatar:</b> {avatar}\n"
            f"🎙 <b>Source:</b> {source}\n"
            f"📐 <b>Format:</b> {job.aspect_ratio}\n"
            f"{cost_line}"
        )
    return caption


def build_failure_message(job: JobRecord, error: Optional[str], *, lang: str) -> str:
    avatar = html.escape(job.display_avatar)
    if lang == "ru":
        reason = html.escape(error or "Неизвестная ошибка")
        return (
            "❌ <b>К сожалению, генерация видео не удалась.</b>\n\n"
            f"🧑 <b>Аватар:</b> {avatar}\n"
            f"<b>Ошибка:</b> {reason}\n\n"
            "Попробуйте ещё раз или выберите другой аватар."
        )
    reason = html.escape(error or "Unknown error")
    return (
        "❌ <b>Unfortunately, the video generation failed.</b>\n\n"
        f"🧑 <b>Avatar:</b> {avatar}\n"
        f"<b>Error:</b> {reason}\n\n"
        "Please try again or choose another avatar."
    )


def build_relay_message(envelope: Dict[str, Any]) -> str:
    """Header line plus the envelope as pretty JSON in a <pre> block."""
    payload = envelope.get("payload") or {}
    header = (
        f"📨 <b>{html.escape(str(envelope.get('kind', '')))}</b> "
        f"from <code>{html.escape(str(payload.get('telegramId', '')))}</code>"
    )
    body = html.escape(json.dumps(envelope, ensure_ascii=False, indent=2))
    return f"{header}\n<pre>{body}</pre>"
