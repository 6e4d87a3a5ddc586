"""Scheduler adapters for driving periodic ChMS syncs.

- Daemon (asyncio event loop with configurable interval)
"""

from .daemon import DaemonScheduler

__all__ = ["DaemonScheduler"]
