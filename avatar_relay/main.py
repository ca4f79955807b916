"""
Service entrypoint: HTTP trigger surface plus the in-process reconcile loop.
"""
import asyncio
import contextlib
import logging
import signal
import sys

from avatar_relay import __version__
from avatar_relay.config import get_config
from avatar_relay.delivery.notifier import DeliveryNotifier
from avatar_relay.delivery.reconciler import StatusReconciler, run_reconciler_loop
from avatar_relay.generations.dispatcher import Dispatcher
from avatar_relay.integrations.heygen_client import HeyGenClient
from avatar_relay.locking.job_lock import cleanup_all_locks
from avatar_relay.messaging.telegram_channel import TelegramChannel
from avatar_relay.storage import get_storage
from avatar_relay.utils.logging_config import get_logger, setup_logging
from avatar_relay.web.server import create_app, start_server, stop_server

logger = get_logger(__name__)


async def main() -> None:
    config = get_config()
    logger.info(
        "Starting avatar-relay %s port=%s dispatch=%s token=%s",
        __version__,
        config.port,
        config.dispatch_mode,
        config.mask_secret(config.telegram_bot_token),
    )

    store = get_storage(config)
    provider = HeyGenClient(
        config.heygen_api_key,
        base_url=config.heygen_base_url,
        timeout=config.heygen_timeout_seconds,
        max_retries=config.heygen_max_retries,
    )
    channel = TelegramChannel(config.telegram_bot_token)
    await channel.initialize()
    notifier = DeliveryNotifier(channel, lang=config.bot_language)
    dispatcher = Dispatcher(provider, store, channel=channel, relay_chat_id=config.relay_chat_id)
    reconciler = StatusReconciler(provider, store, notifier, concurrency=config.reconcile_concurrency)

    app = create_app(config, dispatcher=dispatcher, reconciler=reconciler, store=store, provider=provider)
    runner = None
    loop_task = None
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_event.set)

    try:
        runner = await start_server(app, "0.0.0.0", config.port)
        if config.reconcile_interval_seconds > 0:
            loop_task = asyncio.create_task(
                run_reconciler_loop(
                    reconciler,
                    interval_seconds=config.reconcile_interval_seconds,
                    include_pending=config.reconcile_include_pending,
                )
            )
            logger.info("Reconcile loop started interval=%ss", config.reconcile_interval_seconds)
        else:
            logger.info("Reconcile loop disabled; relying on cron/webhook triggers")
        await shutdown_event.wait()
    finally:
        logger.info("Initiating graceful shutdown...")
        if loop_task is not None:
            loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await loop_task
        await stop_server(runner)
        await provider.close()
        await store.close()
        await channel.shutdown()
        cleanup_all_locks()
        logger.info("Graceful shutdown complete")


def run() -> None:
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Application interrupted")
        sys.exit(0)
    except Exception as e:
        logging.getLogger(__name__).critical("Fatal error in main: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
