"""
Streaming JSON-RPC connection to one network's node.

Wraps a single WebSocket and multiplexes three things over it:
    - id-correlated request/response calls (eth_call, eth_blockNumber, ...)
    - eth_subscribe("logs") notifications, routed by subscription id
    - a liveness check (WebSocket ping + eth_blockNumber) on a fixed interval

The connection never reconnects itself. When the socket drops without a local
``close()`` it fails all pending requests and fires ``on_lost`` exactly once;
ConnectionManager owns what happens next.

Usage:
    conn = await ChainConnection.open(network, generation=1, on_lost=callback)
    sub_id = await conn.subscribe_logs(pool_address, [SWAP_TOPIC], handler.on_log)
    data = await conn.call(token_address, encode_call("symbol()"))
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable

import websockets

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import (
    DEFAULT_BLOCK_TIMESTAMP_CACHE_SIZE,
    DEFAULT_KEEPALIVE_INTERVAL_SECONDS,
    DEFAULT_KEEPALIVE_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)

if TYPE_CHECKING:
    from shared.types import Network

LogCallback = Callable[[dict], None]


class ChainReadError(Exception):
    """Raised when a read over the stream fails or times out."""


class RpcError(ChainReadError):
    """Node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else str(error)
        super().__init__(f"{method} failed: {message} (code={self.code})")


class ConnectionLostError(ChainReadError):
    """The stream went away before the request completed."""


class ChainConnection:
    """One live WebSocket JSON-RPC stream. Exclusively owned by ConnectionManager."""

    def __init__(
        self,
        network: Network,
        ws: Any,
        generation: int,
        on_lost: Callable[[ChainConnection], None] | None = None,
    ) -> None:
        self.network = network
        self.generation = generation
        self._ws = ws
        self._on_lost = on_lost

        cfg = get_config()
        conn_cfg = cfg.get_timing_config().get("connection", {})
        cache_cfg = cfg.get_app_config().get("cache", {})

        self._keepalive_interval: float = conn_cfg.get(
            "keepalive_interval_seconds", DEFAULT_KEEPALIVE_INTERVAL_SECONDS
        )
        self._keepalive_timeout: float = conn_cfg.get(
            "keepalive_timeout_seconds", DEFAULT_KEEPALIVE_TIMEOUT_SECONDS
        )
        self._request_timeout: float = conn_cfg.get(
            "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS
        )
        self._timestamp_cache_size: int = cache_cfg.get(
            "block_timestamp_cache_size", DEFAULT_BLOCK_TIMESTAMP_CACHE_SIZE
        )

        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._log_handlers: dict[str, LogCallback] = {}
        self._timestamp_cache: OrderedDict[int, int] = OrderedDict()

        self._open = True
        self._closing = False
        self.last_block: int | None = None

        self._reader_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None

        self._logger = setup_module_logger(
            "connection", "connection.log", module_folder="Connection_Logs"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def open(
        cls,
        network: Network,
        generation: int,
        on_lost: Callable[[ChainConnection], None] | None = None,
    ) -> ChainConnection:
        """Connect to ``network.ws_url`` and start the reader and keepalive tasks."""
        conn_cfg = get_config().get_timing_config().get("connection", {})
        ws = await websockets.connect(
            network.ws_url,
            ping_interval=None,  # liveness is checked by _keepalive_loop
            close_timeout=conn_cfg.get("close_timeout_seconds", 10),
            max_size=conn_cfg.get("max_message_bytes", 10 * 1024 * 1024),
        )
        conn = cls(network, ws, generation, on_lost)
        conn.start()
        return conn

    def start(self) -> None:
        key = self.network.key
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"stream_reader:{key}:{self.generation}"
        )
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(), name=f"stream_keepalive:{key}:{self.generation}"
        )
        self._logger.info("[%s] Stream open (generation %d)", key, self.generation)

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def url(self) -> str:
        return self.network.ws_url

    @property
    def handler_count(self) -> int:
        return len(self._log_handlers)

    async def close(self) -> None:
        """Close deliberately. Does not fire ``on_lost``."""
        self._closing = True
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        try:
            await self._ws.close()
        except Exception as e:
            self._logger.debug("[%s] Error closing stream: %s", self.network.key, e)
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        else:
            self._mark_closed("closed locally")

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason = "remote close"
        try:
            async for raw_message in self._ws:
                self._dispatch(raw_message)
        except asyncio.CancelledError:
            reason = "reader cancelled"
            raise
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except Exception as e:
            reason = f"error: {e}"
            self._logger.error("[%s] Stream reader failed: %s", self.network.key, e)
        finally:
            self._mark_closed(reason)

    def _dispatch(self, raw_message: Any) -> None:
        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError as e:
            self._logger.warning("[%s] Invalid JSON message: %s", self.network.key, e)
            return

        # eth_subscribe notifications have method "eth_subscription"
        if message.get("method") == "eth_subscription":
            params = message.get("params", {})
            callback = self._log_handlers.get(params.get("subscription"))
            if callback is None:
                return
            try:
                callback(params.get("result", {}))
            except Exception as e:
                self._logger.error(
                    "[%s] Log handler raised for subscription %s: %s",
                    self.network.key,
                    params.get("subscription"),
                    e,
                )
            return

        entry = self._pending.pop(message.get("id"), None)
        if entry is None:
            return
        method, future = entry
        if future.done():
            return
        if "error" in message:
            future.set_exception(RpcError(method, message["error"]))
        else:
            future.set_result(message.get("result"))

    def _mark_closed(self, reason: str) -> None:
        if not self._open:
            return
        self._open = False

        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()

        for _method, future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ConnectionLostError(f"[{self.network.key}] stream closed ({reason})")
                )
        self._pending.clear()

        if self._closing:
            self._logger.info("[%s] Stream closed (generation %d)", self.network.key, self.generation)
            return

        self._logger.warning(
            "[%s] Stream lost (generation %d): %s", self.network.key, self.generation, reason
        )
        if self._on_lost is not None:
            self._on_lost(self)

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    async def _keepalive_loop(self) -> None:
        try:
            while self._open:
                await asyncio.sleep(self._keepalive_interval)
                if not self._open:
                    break
                try:
                    pong_waiter = await self._ws.ping()
                    await asyncio.wait_for(pong_waiter, timeout=self._keepalive_timeout)
                    await self.get_block_number()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.warning(
                        "[%s] Liveness check failed: %s, closing stream", self.network.key, e
                    )
                    # Detach from _mark_closed so the close below is not cancelled
                    self._keepalive_task = None
                    await self._ws.close()
                    return
        except asyncio.CancelledError:
            self._logger.debug("[%s] Keepalive cancelled", self.network.key)

    # ------------------------------------------------------------------
    # JSON-RPC requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: list | None = None) -> Any:
        """Send one JSON-RPC request and await its correlated response."""
        if not self._open:
            raise ConnectionLostError(f"[{self.network.key}] stream is not open")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as e:
            raise ChainReadError(
                f"{method} timed out after {self._request_timeout}s"
            ) from e
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionLostError(f"{method}: connection closed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def call(self, to: str, data: str) -> bytes:
        """eth_call against the latest block; returns raw return data."""
        result = await self.request("eth_call", [{"to": to, "data": data}, "latest"])
        if not result or result == "0x":
            return b""
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    async def get_block_number(self) -> int:
        result = await self.request("eth_blockNumber")
        self.last_block = int(result, 16)
        return self.last_block

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of ``block_number`` (LRU cached)."""
        if block_number in self._timestamp_cache:
            self._timestamp_cache.move_to_end(block_number)
            return self._timestamp_cache[block_number]

        block = await self.request("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise ChainReadError(f"block {block_number} not found")
        timestamp = int(block["timestamp"], 16)

        self._timestamp_cache[block_number] = timestamp
        if len(self._timestamp_cache) > self._timestamp_cache_size:
            self._timestamp_cache.popitem(last=False)
        return timestamp

    # ------------------------------------------------------------------
    # Log subscriptions
    # ------------------------------------------------------------------

    async def subscribe_logs(self, address: str, topics: list, callback: LogCallback) -> str:
        """eth_subscribe to logs of ``address`` and route notifications to ``callback``."""
        subscription_id = await self.request(
            "eth_subscribe", ["logs", {"address": address, "topics": topics}]
        )
        self._log_handlers[subscription_id] = callback
        return subscription_id

    def remove_log_handler(self, subscription_id: str) -> bool:
        """Stop routing notifications for ``subscription_id``. Synchronous."""
        return self._log_handlers.pop(subscription_id, None) is not None

    async def unsubscribe_logs(self, subscription_id: str) -> bool:
        """Detach locally, then tell the node. Node-side failures are ignored."""
        self.remove_log_handler(subscription_id)
        if not self._open:
            return False
        try:
            return bool(await self.request("eth_unsubscribe", [subscription_id]))
        except ChainReadError as e:
            self._logger.debug(
                "[%s] eth_unsubscribe %s failed: %s", self.network.key, subscription_id, e
            )
            return False
