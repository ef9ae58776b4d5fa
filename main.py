"""
Pool Trade Monitor: Main Entrypoint.

Single-process asyncio runner. Two long-lived tasks:
    1. TelegramFrontend: long-polls chats, turns them into subscriptions
    2. StatusReporter:   periodic liveness snapshot in the logs

Everything else is reactive: each network's stream reader dispatches Swap
logs to per-subscription handlers, and the ConnectionManager's reconnect
tasks hand fresh streams to SubscriptionRegistry.rebind.

Usage:
    python main.py          # BOT_TOKEN must be set (env or .env)
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

from dotenv import load_dotenv

from bot_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import load_networks
from config.validate import ConfigValidationError, validate_all_configs

create_module_log_directories()
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


def _log_banner(networks: dict) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Pool Trade Monitor starting")
    _logger.info("=" * 60)
    for key, network in networks.items():
        _logger.info("  %-5s : %s (%s)", key, network.label, network.ws_url)
    _logger.info("=" * 60)


def _task_done_callback(task: asyncio.Task[None], shutdown_event: asyncio.Event) -> None:
    """Called when a long-lived task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


async def _run() -> None:
    """Wire all components and launch the long-lived tasks."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    bot_token = os.getenv("BOT_TOKEN", "")
    if not bot_token:
        _logger.critical("BOT_TOKEN not set in environment")
        sys.exit(1)

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    networks = load_networks()
    _log_banner(networks)

    # ------------------------------------------------------------------
    # 2. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    from chain.connection_manager import ConnectionManager
    from chain.pool_resolver import PoolResolver
    from core.status_reporter import StatusReporter
    from core.subscription_registry import SubscriptionRegistry
    from frontend.telegram_frontend import TelegramFrontend
    from notify.telegram_client import TelegramClient
    from notify.trade_notifier import TradeNotifier

    manager = ConnectionManager(networks)
    resolver = PoolResolver()
    telegram_client = TelegramClient(bot_token)
    notifier = TradeNotifier(telegram_client)
    registry = SubscriptionRegistry(manager, resolver, notifier, networks)
    manager.on_reconnect(registry.rebind)

    frontend = TelegramFrontend(telegram_client, registry, resolver, manager, networks)
    status_reporter = StatusReporter(manager, registry)

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Launch long-lived tasks
    # ------------------------------------------------------------------
    task_frontend = asyncio.create_task(frontend.run(), name="telegram_frontend")
    task_status = asyncio.create_task(status_reporter.run(), name="status_reporter")
    tasks = [task_frontend, task_status]

    for t in tasks:
        t.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("All tasks launched: telegram_frontend, status_reporter")

    # ------------------------------------------------------------------
    # 5. Wait for shutdown signal, then tear down
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, cancelling tasks")

        frontend.stop()
        status_reporter.stop()

        for t in tasks:
            if not t.done():
                t.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for t, result in zip(tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", t.get_name(), result)

        await registry.shutdown()
        await manager.close_all()
        await telegram_client.close()
        _logger.info(
            "Shutdown complete (%d trade(s) delivered, %d failed)",
            notifier.delivered_count,
            notifier.failed_count,
        )


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
