#!/usr/bin/env python3
"""
DomainDesk fulfillment server - single event loop
Runs the webhook/API server and the periodic push-expiry and auto-renewal jobs in one asyncio loop
"""

import os
import logging
import asyncio
import sys
import signal
from typing import Optional, Callable, Awaitable, Any

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
)

# Prevent httpx from logging request URLs carrying registrar credentials
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from config import get_config
from database import init_database
from admin_alerts import get_admin_alert_system
from services.enom import close_registrars
from services.push_protocol import expire_stale_push_requests
from services.renewal_processor import process_auto_renewals
from services.fulfillment_orchestrator import reap_stale_items
from services.transfer_sync import sync_pending_transfers
from webhook_handler import start_webhook_server, stop_webhook_server

PUSH_EXPIRY_INTERVAL = int(os.getenv('PUSH_EXPIRY_INTERVAL_SECONDS', '3600'))
AUTO_RENEW_INTERVAL = int(os.getenv('AUTO_RENEW_INTERVAL_SECONDS', '86400'))
TRANSFER_SYNC_INTERVAL = int(os.getenv('TRANSFER_SYNC_INTERVAL_SECONDS', '3600'))
STALE_ITEM_SWEEP_INTERVAL = int(os.getenv('STALE_ITEM_SWEEP_INTERVAL_SECONDS', '300'))
ALERT_CLEANUP_INTERVAL = 86400

# Global shutdown event, created inside the running loop
_shutdown_event: Optional[asyncio.Event] = None


def request_shutdown(signum=None):
    """Handle shutdown signals gracefully"""
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")
    if _shutdown_event is not None:
        _shutdown_event.set()


async def initialize_database() -> bool:
    try:
        logger.info("🔄 Initializing database...")
        await init_database()
        return True
    except Exception as db_error:
        logger.error(f"❌ Database initialization failed: {db_error}")
        return False


async def run_periodic(name: str, interval: float, job: Callable[[], Awaitable[Any]], initial_delay: float = 0):
    """Run job every interval seconds until shutdown; a failed run never stops the loop"""
    if initial_delay:
        await asyncio.sleep(initial_delay)

    while _shutdown_event is None or not _shutdown_event.is_set():
        try:
            result = await job()
            logger.debug(f"⏱️ {name} finished: {result}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Periodic job {name} failed: {e}")

        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def main_loop() -> bool:
    """Main server loop"""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig)
        except NotImplementedError:
            signal.signal(sig, lambda signum, frame: request_shutdown(signum))

    webhook_runner = None
    tasks = []

    try:
        if not await initialize_database():
            logger.error("💥 FAIL FAST: Database unavailable, exiting for supervisor restart")
            return False

        config = get_config()
        logger.info(f"🚀 Fulfillment core starting (default registrar mode: {config.default_registrar_mode.value}, "
                    f"auto-refill {'on' if config.auto_refill_enabled else 'off'})")

        port = int(os.getenv('PORT', '5000'))
        webhook_runner = await start_webhook_server(port)

        alert_system = get_admin_alert_system()
        tasks = [
            asyncio.create_task(run_periodic('push_expiry', PUSH_EXPIRY_INTERVAL, expire_stale_push_requests)),
            asyncio.create_task(run_periodic('auto_renewal', AUTO_RENEW_INTERVAL, process_auto_renewals,
                                             initial_delay=60)),
            asyncio.create_task(run_periodic('transfer_sync', TRANSFER_SYNC_INTERVAL, sync_pending_transfers,
                                             initial_delay=120)),
            asyncio.create_task(run_periodic('stale_item_reaper', STALE_ITEM_SWEEP_INTERVAL, reap_stale_items,
                                             initial_delay=30)),
            asyncio.create_task(run_periodic('alert_cleanup', ALERT_CLEANUP_INTERVAL, alert_system.cleanup_old_alerts,
                                             initial_delay=300)),
        ]
        logger.info("✅ Periodic jobs scheduled: push expiry, auto-renewal, transfer sync, "
                    f"stale item reaper (every {STALE_ITEM_SWEEP_INTERVAL}s), alert cleanup")

        await _shutdown_event.wait()
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        return False
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            if webhook_runner is not None:
                await stop_webhook_server()
            await close_registrars()
            logger.info("✅ Cleanup completed")
        except Exception as cleanup_error:
            logger.warning(f"⚠️ Cleanup error: {cleanup_error}")


def main():
    """Main entry point"""
    logger.info("🚀 Starting DomainDesk fulfillment server...")
    try:
        result = asyncio.run(main_loop())
        logger.info("✅ Server stopped normally" if result else "⚠️ Server stopped with error")
        if not result:
            sys.exit(1)
    except Exception as e:
        logger.error(f"💥 Critical server failure: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
