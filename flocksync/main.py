"""Composition root for the flocksync ChMS integration service.

This module is the ONLY location that imports both core domain logic
and concrete adapter implementations. All wiring of dependencies
happens here, creating a clear entry point for the application.

Module Structure:
- Configuration loading via config module
- Adapter instantiation
- Core service initialization
- Entry point selection (once, daemon, webhook)
"""

import asyncio
import functools
import logging
import sys

from flocksync.adapters.chms.factory import create_adapter
from flocksync.adapters.scheduler.daemon import DaemonScheduler
from flocksync.adapters.store.sqlite import SQLiteChmsStore
from flocksync.adapters.webhook.http_server import WebhookHTTPServer
from flocksync.adapters.webhook.receiver import WebhookReceiver
from flocksync.config import Settings, load_settings
from flocksync.core.models import TriggerMethod
from flocksync.core.sync_service import SyncService


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json, text).
    """
    level = getattr(logging, log_level, logging.INFO)

    if log_format == "json":
        format_str = (
            '{"time": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "message": "%(message)s"}'
        )
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def build_sync_service(settings: Settings, store: SQLiteChmsStore) -> SyncService:
    """Wire the sync engine to the store and the adapter factory."""
    return SyncService(
        identity_store=store,
        connection_store=store,
        adapter_factory=functools.partial(
            create_adapter, timeout=settings.http_timeout_seconds
        ),
        write_back_enabled=settings.write_back_enabled,
        incremental_sync=settings.incremental_sync,
    )


async def run_once(sync_service: SyncService, organization_id: str | None) -> int:
    """Run one pull and return a process exit code.

    Returns 1 when any run ended in error, else 0.
    """
    logger = logging.getLogger(__name__)
    if organization_id:
        results = [
            await sync_service.sync_organization(organization_id, TriggerMethod.SCHEDULED)
        ]
    else:
        results = await DaemonScheduler.run_single_cycle(sync_service)

    for result in results:
        logger.info(
            f"{result.organization_id} ({result.provider}): {result.status} "
            f"{result.stats.as_dict()}"
        )
    return 1 if any(r.status == "error" for r in results) else 0


async def bootstrap(settings: Settings | None = None) -> int:
    """Load configuration, wire adapters, and start the application.

    This is the composition root: the single place where all components
    are instantiated and wired together.

    Steps:
    1. Load configuration from environment
    2. Configure logging
    3. Instantiate the store
    4. Initialize the sync service
    5. Select and start run mode

    Returns:
        Process exit code.
    """
    # Step 1: Load configuration
    if settings is None:
        settings = load_settings()

    # Step 2: Configure logging
    configure_logging("DEBUG" if settings.debug else settings.log_level, settings.log_format)
    logger = logging.getLogger(__name__)
    logger.info("Loading flocksync...")

    # Step 3: Instantiate adapters
    store = SQLiteChmsStore(db_path=settings.store_sqlite_path)
    logger.info(f"Store initialized: {settings.store_sqlite_path}")

    # Step 4: Initialize core services
    sync_service = build_sync_service(settings, store)

    # Step 5: Select run mode and start
    logger.info(f"Starting in {settings.run_mode} mode...")

    try:
        if settings.run_mode == "once":
            return await run_once(sync_service, settings.sync_organization_id or None)

        elif settings.run_mode == "daemon":
            scheduler = DaemonScheduler(
                sync_port=sync_service,
                interval_seconds=settings.sync_interval_seconds,
            )
            await scheduler.start()

        elif settings.run_mode == "webhook":
            http_server = WebhookHTTPServer(
                webhook_receiver=WebhookReceiver(sync_service),
                host=settings.webhook_host,
                port=settings.webhook_port,
                api_key=settings.webhook_api_key or None,
                require_auth=settings.webhook_require_auth,
            )
            await http_server.start()
            try:
                while True:
                    await asyncio.sleep(1)
            finally:
                await http_server.stop()

        else:
            logger.error(f"Unknown run mode: {settings.run_mode}")
            return 1

    finally:
        await store.close_pool()

    return 0


def main() -> None:
    """Application entry point.

    Exit codes:
        0: Successful shutdown
        1: Fatal bootstrap or runtime error, or a failed run in 'once' mode
        130: Interrupted by user (SIGINT/KeyboardInterrupt)
    """
    logger = logging.getLogger(__name__)
    try:
        code = asyncio.run(bootstrap())
    except KeyboardInterrupt:
        logger.warning("Shutdown requested by user (SIGINT)")
        sys.exit(130)
    except asyncio.CancelledError:
        logger.info("Graceful shutdown completed")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
