"""
HTTP trigger surface (aiohttp).

Routes drive the dispatcher and the reconciler; every JSON body carries
``success``. Domain errors are mapped to status codes by ``error_middleware``.
"""
from __future__ import annotations

import hmac
import logging
import time
from typing import Optional

from aiohttp import web

from avatar_relay import __version__
from avatar_relay.config import Config
from avatar_relay.delivery.reconciler import StatusReconciler
from avatar_relay.generations.dispatcher import Dispatcher, GenerationRequest
from avatar_relay.integrations.heygen_client import HeyGenClient, ProviderClientError, ProviderError
from avatar_relay.observability.delivery_metrics import metrics_snapshot
from avatar_relay.observability.structured_logs import get_recent_failure_event_ids
from avatar_relay.storage.base import JobStore
from avatar_relay.utils.errors import (
    AvatarRelayError,
    JobNotFoundError,
    StorageError,
    ValidationError,
)

log = logging.getLogger("avatar_relay.web")

HISTORY_LIMIT = 50


def _error(message: str, status: int, **extra) -> web.Response:
    return web.json_response({"success": False, "error": message, **extra}, status=status)


@web.middleware
async def request_logger(request: web.Request, handler):
    """Log every request with timing; the cron bearer is never logged."""
    start_time = time.monotonic()
    try:
        response = await handler(request)
    except Exception as exc:
        log.error(
            "HTTP_FAILED method=%s path=%s latency_ms=%s error=%s",
            request.method,
            request.path,
            int((time.monotonic() - start_time) * 1000),
            exc,
        )
        raise
    log.info(
        "HTTP method=%s path=%s status=%s latency_ms=%s",
        request.method,
        request.path,
        response.status,
        int((time.monotonic() - start_time) * 1000),
    )
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as exc:
        return _error(str(exc), 400, field=exc.field)
    except JobNotFoundError as exc:
        return _error(str(exc), 404)
    except ProviderClientError as exc:
        status = 404 if exc.status == 404 else 502
        return _error(str(exc), status, code=exc.code.value)
    except ProviderError as exc:
        return _error(str(exc), 502, code=exc.code.value)
    except StorageError as exc:
        return _error(str(exc), 503, code=exc.code.value)
    except AvatarRelayError as exc:
        log.error("Request %s %s failed: %s", request.method, request.path, exc)
        return _error(str(exc), 500, code=exc.code.value)


def _telegram_id_param(request: web.Request) -> int:
    raw = request.query.get("telegramId", "").strip()
    if not raw:
        raise ValidationError("telegramId")
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("telegramId", "telegramId must be an integer") from None


async def _json_body(request: web.Request, *, required: bool = True) -> dict:
    if not request.can_read_body:
        if required:
            raise ValidationError("body", "Request body must be a JSON object")
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("body", "Request body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return payload


def create_app(
    config: Config,
    *,
    dispatcher: Dispatcher,
    reconciler: StatusReconciler,
    store: JobStore,
    provider: HeyGenClient,
) -> web.Application:
    app = web.Application(middlewares=[request_logger, error_middleware])

    def cron_authorized(request: web.Request) -> bool:
        if not config.cron_secret:
            return True
        provided = request.headers.get("Authorization", "")
        return hmac.compare_digest(provided.encode(), f"Bearer {config.cron_secret}".encode())

    async def generate(request: web.Request) -> web.Response:
        generation = GenerationRequest.from_payload(await _json_body(request))
        if config.dispatch_mode == "relay":
            handed_off = await dispatcher.relay(generation)
            if not handed_off:
                return _error("Failed to hand off the request", 502)
            return web.json_response({"success": True, "data": {"relayed": True}}, status=202)
        result = await dispatcher.dispatch(generation)
        return web.json_response({"success": True, "data": result.to_dict()})

    async def cron_check_videos(request: web.Request) -> web.Response:
        if not cron_authorized(request):
            log.warning("CRON_UNAUTHORIZED ip=%s", request.headers.get("X-Forwarded-For", request.remote))
            return web.json_response({"success": False, "error": "Unauthorized"}, status=401)
        report = await reconciler.reconcile_all(include_pending=config.reconcile_include_pending)
        return web.json_response(report.to_dict())

    async def check_and_send_batch(request: web.Request) -> web.Response:
        body = await _json_body(request, required=False)
        include_pending = bool(body.get("includePending", config.reconcile_include_pending))
        report = await reconciler.reconcile_all(include_pending=include_pending)
        return web.json_response(report.to_dict())

    async def check_and_send_single(request: web.Request) -> web.Response:
        video_id = request.query.get("videoId", "").strip()
        if not video_id:
            raise ValidationError("videoId")
        outcome = await reconciler.reconcile_video(video_id)
        job = await store.get_job(video_id)
        if job is None:
            raise JobNotFoundError(video_id)
        return web.json_response(
            {
                "success": outcome.status != "error",
                "outcome": outcome.status,
                "status": job.status,
                "sent": job.sent_to_telegram,
                "videoUrl": job.video_url,
                "error": outcome.error,
            }
        )

    async def video_status(request: web.Request) -> web.Response:
        status = await provider.get_job_status(request.match_info["video_id"])
        return web.json_response({"success": True, "data": status.to_dict()})

    async def heygen_webhook(request: web.Request) -> web.Response:
        payload = await _json_body(request)
        try:
            outcome = await reconciler.apply_provider_event(payload)
        except JobNotFoundError as exc:
            # Unknown ids answer 200; the provider redelivers on non-2xx.
            log.warning("WEBHOOK_UNKNOWN_VIDEO video_id=%s", exc.video_id)
            return web.json_response({"success": False, "error": "Video generation record not found"})
        return web.json_response({"success": True, "data": outcome.to_dict()})

    async def video_history(request: web.Request) -> web.Response:
        telegram_id = _telegram_id_param(request)
        jobs = await store.list_user_jobs(telegram_id, limit=HISTORY_LIMIT)
        return web.json_response({"success": True, "data": [job.to_dict() for job in jobs]})

    async def video_credits(request: web.Request) -> web.Response:
        telegram_id = _telegram_id_param(request)
        stats = await store.get_credit_stats(telegram_id)
        if stats is None:
            return _error("User not found", 404)
        return web.json_response({"success": True, "data": stats.to_dict()})

    async def health(request: web.Request) -> web.Response:
        storage_ok = await store.ping()
        return web.json_response(
            {
                "success": storage_ok,
                "ok": storage_ok,
                "version": __version__,
                "storage": config.resolved_storage_mode,
                "dispatch_mode": config.dispatch_mode,
                "metrics": metrics_snapshot(),
                "recent_failures": get_recent_failure_event_ids(),
                "time": time.time(),
            },
            status=200 if storage_ok else 503,
        )

    app.router.add_post("/api/video/generate", generate)
    app.router.add_get("/api/cron/check-videos", cron_check_videos)
    app.router.add_post("/api/video/check-and-send", check_and_send_batch)
    app.router.add_get("/api/video/check-and-send", check_and_send_single)
    app.router.add_get("/api/video/status/{video_id}", video_status)
    app.router.add_post("/api/webhook/heygen", heygen_webhook)
    app.router.add_get("/api/video/history", video_history)
    app.router.add_get("/api/video/credits", video_credits)
    app.router.add_get("/health", health)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("HTTP server listening on %s:%s", host, port)
    return runner


async def stop_server(runner: Optional[web.AppRunner]) -> None:
    if runner is not None:
        await runner.cleanup()
