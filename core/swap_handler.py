"""
Per-attachment swap event handler.

One handler exists per (subscription, connection generation). The connection
reader calls ``on_log`` synchronously; the handler queues the log and a
single worker task decodes, classifies and delivers in arrival order. A slow
delivery only backs up this handler's queue, never the reader or sibling
subscribers on the same pool.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import log_data_entry, log_data_output, setup_module_logger
from chain.abi import decode_swap_log
from core.swap_classifier import classify_swap
from shared.constants import DEFAULT_MIN_BASE_AMOUNT

if TYPE_CHECKING:
    from chain.connection import ChainConnection
    from core.subscription_registry import Subscription
    from notify.trade_notifier import TradeNotifier
    from shared.types import TradeRecord

_STOP = object()
_trace_counter = itertools.count(1)


def _generate_trace_id() -> str:
    """Lightweight trace ID: timestamp_ms-SWP-counter."""
    return f"{int(time.time() * 1000)}-SWP-{next(_trace_counter):08d}"


async def resolve_block_time(
    connection: ChainConnection, block_number: int | None, logger: logging.Logger
) -> datetime:
    """Block time of a swap, or wall-clock now if the lookup fails."""
    if block_number is None:
        return datetime.now(timezone.utc)
    try:
        timestamp = await connection.get_block_timestamp(block_number)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(
            "[%s] Block %s timestamp lookup failed, using now: %s",
            connection.network.key,
            block_number,
            e,
        )
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class SwapEventHandler:
    """Queue + worker bound to one subscription on one connection."""

    def __init__(
        self,
        subscription: Subscription,
        connection: ChainConnection,
        notifier: TradeNotifier,
        min_base_amount: Decimal = DEFAULT_MIN_BASE_AMOUNT,
    ) -> None:
        self._subscription = subscription
        self._connection = connection
        self._notifier = notifier
        self._min_base_amount = min_base_amount

        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._stopped = False

        self._logger = setup_module_logger(
            "swap_handler", "swap_handler.log", module_folder="Swap_Handler_Logs"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        sub = self._subscription
        self._worker = asyncio.create_task(
            self._run(),
            name=f"swap_handler:{sub.network.key}:{sub.listener_id}:{sub.token_info.symbol}",
        )

    def stop(self) -> None:
        """Stop accepting events; already queued events still complete."""
        if self._stopped:
            return
        self._stopped = True
        self._queue.put_nowait(_STOP)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def on_log(self, log_data: dict) -> None:
        """Connection reader callback. Never blocks."""
        if self._stopped:
            return
        self._queue.put_nowait(log_data)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            try:
                await self.handle_log(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(
                    "[%s] Failed to process swap for %s: %s",
                    self._subscription.network.key,
                    self._subscription.token_info.symbol,
                    e,
                    exc_info=True,
                )

    async def handle_log(self, log_data: dict) -> TradeRecord | None:
        """Decode, classify and deliver one log. Returns the delivered record, if any."""
        # Reorged-out logs are re-sent with removed=true
        if log_data.get("removed"):
            return None

        sub = self._subscription
        raw = decode_swap_log(log_data)
        record = classify_swap(
            raw, sub.pool, sub.token_info.address, sub.token_info, self._min_base_amount
        )
        if record is None:
            self._logger.debug(
                "[%s] Swap %s dropped for %s", sub.network.key, raw.tx_hash, sub.token_info.symbol
            )
            return None

        trace_id = _generate_trace_id()
        log_data_entry(
            trace_id,
            "swap_handler",
            f"{sub.network.key} swap on {sub.pool.address}",
            "RawSwap",
            raw,
        )

        block_time = await resolve_block_time(self._connection, raw.block_number, self._logger)
        record = replace(record, block_timestamp=block_time)

        await self._notifier.deliver_trade(sub.listener_id, record, sub.network, sub.token_info)
        log_data_output(
            trace_id,
            "swap_handler",
            f"{record.side.value} {sub.token_info.symbol} for {sub.listener_id}",
            "TradeRecord",
            record,
            next_stage="notifier",
        )
        return record

