"""Background Worker for the notification sync service.

This module keeps the device schedule converged without user interaction.

The worker:
- Registers the device push token once at startup (best-effort)
- Runs a reconciliation pass every SYNC_INTERVAL seconds (configurable)
- Watches the reminders and reminder_actions tables and syncs on change
- Delivers due local notifications every DELIVERY_INTERVAL seconds
- Logs errors and keeps running; the next trigger converges again
"""

import asyncio
import signal
import sys
from typing import Optional

from config import settings
from device import LocalNotificationScheduler
from engine import NotificationEngine, build_engine
from logger_config import setup_logger

logger = setup_logger(__name__, 'worker.log')

WATCHED_TABLES = ('reminders', 'reminder_actions')

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    request_shutdown()


def request_shutdown():
    global shutdown_requested
    shutdown_requested = True


async def _sleep_interruptibly(seconds: int):
    # 1-second slices allow quick shutdown
    for _ in range(max(1, seconds)):
        if shutdown_requested:
            break
        await asyncio.sleep(1)


async def sync_loop(engine: NotificationEngine):
    """Periodic reconciliation trigger."""
    iteration = 0
    while not shutdown_requested:
        iteration += 1
        try:
            logger.debug(f"Sync iteration {iteration} started")
            await engine.reconciler.reconcile(trigger="interval")
        except Exception as e:
            logger.error(f"Error in sync iteration {iteration}: {str(e)}", exc_info=True)
        await _sleep_interruptibly(settings.SYNC_INTERVAL)


async def delivery_loop(engine: NotificationEngine):
    """Deliver due notifications held by the in-process scheduler."""
    scheduler = engine.scheduler
    if not isinstance(scheduler, LocalNotificationScheduler):
        return
    while not shutdown_requested:
        try:
            await scheduler.deliver_due()
        except Exception as e:
            logger.error(f"Error delivering notifications: {str(e)}", exc_info=True)
        await asyncio.sleep(settings.DELIVERY_INTERVAL)


async def worker_loop(engine: Optional[NotificationEngine] = None):
    """Main worker loop that runs until shutdown is requested."""
    logger.info("Background worker started")
    logger.info(f"Worker enabled: {settings.WORKER_ENABLED}")
    logger.info(f"Sync interval: {settings.SYNC_INTERVAL} seconds")
    logger.info(f"Remote store: {settings.STORE_URL}")

    if not settings.WORKER_ENABLED:
        logger.warning("Worker is disabled in configuration. Exiting.")
        return

    if not settings.USER_ID:
        logger.warning("USER_ID is not configured; syncs will find no reminders")

    engine = engine or build_engine()

    registration = await engine.registrar.initialize()
    if registration is None:
        logger.info("Continuing without a push token for this device")

    subscriptions = []
    for table in WATCHED_TABLES:
        subscriptions.append(engine.store.subscribe_to_changes(
            table, lambda changed: engine.reconciler.request_sync(f"{changed}-change")
        ))

    try:
        await asyncio.gather(sync_loop(engine), delivery_loop(engine))
    finally:
        for subscription in subscriptions:
            subscription.cancel()

    logger.info("Background worker shutting down gracefully")


def main():
    """Main entry point for the background worker."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Notification Sync - Background Worker")
    logger.info("=" * 60)

    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error in background worker: {str(e)}", exc_info=True)
        sys.exit(1)

    logger.info("Background worker stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
