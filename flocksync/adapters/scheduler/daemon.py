"""Daemon scheduler adapter.

Implements a long-running asyncio loop that syncs every active ChMS
connection at a configurable interval.
"""

import asyncio
import logging
import signal
from typing import cast

from flocksync.core.models import SyncResult, TriggerMethod
from flocksync.core.ports import SyncPort

logger = logging.getLogger(__name__)


def _summarize(results: list[SyncResult]) -> str:
    by_status = {"success": 0, "partial": 0, "error": 0}
    for result in results:
        by_status[result.status] += 1
    return (
        f"{len(results)} connections: {by_status['success']} ok, "
        f"{by_status['partial']} partial, {by_status['error']} failed"
    )


class DaemonScheduler:
    """Asyncio-based daemon scheduler for periodic sync cycles."""

    def __init__(
        self,
        sync_port: SyncPort | None = None,
        interval_seconds: int = 21600,
    ):
        """Initialize daemon scheduler.

        Args:
            sync_port: SyncPort implementation to drive (can be set later).
            interval_seconds: Interval between sync cycles in seconds.
        """
        self.sync_port = sync_port
        self.interval_seconds = interval_seconds
        self.running = False
        self._task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0

    async def start(self) -> None:
        """Start the daemon scheduler loop.

        Raises:
            ValueError: If sync_port is not set.
        """
        if self.sync_port is None:
            raise ValueError("sync_port must be set before starting the scheduler")

        if self.running:
            logger.warning("Daemon scheduler already running")
            return

        self.running = True
        logger.info(f"Starting daemon scheduler with {self.interval_seconds}s interval")

        self._setup_signal_handlers()

        try:
            self._task = asyncio.current_task()  # type: ignore[assignment]
            await self._run_loop()
        except asyncio.CancelledError:
            logger.info("Daemon scheduler cancelled")
        except Exception as e:
            logger.error(f"Daemon scheduler error: {e}", exc_info=True)
        finally:
            self.running = False
            self._task = None
            logger.info("Daemon scheduler stopped")

    async def stop(self) -> None:
        """Stop the daemon scheduler loop."""
        if not self.running:
            return

        logger.info("Stopping daemon scheduler...")
        self.running = False

        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        try:
            loop = asyncio.get_running_loop()

            def _handle_signal(sig: int) -> None:
                logger.info(f"Received signal {sig}, initiating graceful shutdown...")
                asyncio.create_task(self.stop())

            loop.add_signal_handler(signal.SIGTERM, _handle_signal, signal.SIGTERM)
            loop.add_signal_handler(signal.SIGINT, _handle_signal, signal.SIGINT)
        except NotImplementedError:
            # Windows
            logger.debug("Signal handlers not available on this platform")
        except Exception as e:
            logger.warning(f"Failed to set up signal handlers: {e}")

    async def _run_loop(self) -> None:
        """Main daemon loop."""
        sync_port = cast(SyncPort, self.sync_port)

        cycle_number = 0
        loop = asyncio.get_running_loop()

        while self.running:
            cycle_number += 1

            try:
                logger.debug(f"Starting sync cycle #{cycle_number}")
                start_time = loop.time()

                results = await sync_port.sync_all_active(TriggerMethod.SCHEDULED)

                elapsed = loop.time() - start_time
                logger.info(
                    f"Sync cycle #{cycle_number} completed in {elapsed:.2f}s: "
                    f"{_summarize(results)}"
                )
                self._consecutive_failures = 0

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._consecutive_failures += 1
                logger.error(
                    f"Error in sync cycle #{cycle_number}: {e} "
                    f"(consecutive failures: {self._consecutive_failures})",
                    exc_info=True,
                )
                if self._consecutive_failures >= 5:
                    logger.critical(
                        f"Sync cycle has failed {self._consecutive_failures} "
                        f"consecutive times. Manual intervention may be required."
                    )

            if self.running:
                await asyncio.sleep(self.interval_seconds)

    @staticmethod
    async def run_single_cycle(sync_port: SyncPort) -> list[SyncResult]:
        """Run a single sync cycle over all active connections (non-daemon mode).

        Args:
            sync_port: SyncPort implementation to drive.

        Returns:
            One SyncResult per active connection.
        """
        try:
            logger.info("Running single sync cycle")
            results = await sync_port.sync_all_active(TriggerMethod.SCHEDULED)
            logger.info(f"Sync cycle completed: {_summarize(results)}")
            return results
        except Exception as e:
            logger.error(f"Error in sync cycle: {e}", exc_info=True)
            raise
