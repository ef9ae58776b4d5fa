"""
Periodic status report: listener count, per-network subscription count,
stream state and a freshly read block height.

Usage:
    reporter = StatusReporter(manager, registry)
    asyncio.create_task(reporter.run())
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import DEFAULT_STATUS_REPORT_INTERVAL_SECONDS
from shared.types import ConnectionStatus

if TYPE_CHECKING:
    from chain.connection_manager import ConnectionManager
    from core.subscription_registry import SubscriptionRegistry


class StatusReporter:
    """Logs a liveness snapshot every ``status_report.interval_seconds``."""

    def __init__(self, manager: ConnectionManager, registry: SubscriptionRegistry) -> None:
        self._manager = manager
        self._registry = registry

        report_cfg = get_config().get_timing_config().get("status_report", {})
        self._interval: float = report_cfg.get(
            "interval_seconds", DEFAULT_STATUS_REPORT_INTERVAL_SECONDS
        )
        self._running = False

        self._logger = setup_module_logger(
            "status_reporter", "status_reporter.log", module_folder="Status_Logs"
        )

    async def run(self) -> None:
        """Report loop, launched as an asyncio.Task."""
        self._running = True
        self._logger.info("Status reporter started (every %.0fs)", self._interval)
        try:
            while self._running:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                try:
                    await self.report_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error("Status report failed: %s", exc, exc_info=True)
        except asyncio.CancelledError:
            self._logger.info("Status reporter cancelled")
            raise
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the run loop to stop."""
        self._running = False

    async def report_once(self) -> list[ConnectionStatus]:
        self._logger.info("Active listeners: %d", self._registry.listener_count())

        statuses = []
        for key in self._manager.network_keys:
            block = await self._manager.check_health(key)
            status = self._manager.status(key, subscription_count=self._registry.count(key))
            statuses.append(status)
            self._logger.info(
                "[%s] subscriptions=%d stream=%s generation=%d block=%s",
                key,
                status.subscription_count,
                "open" if status.is_open else "down",
                status.generation,
                block if block is not None else "n/a",
            )
        return statuses
