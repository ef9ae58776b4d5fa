"""
Chain connection manager: one long-lived stream per configured network.

Responsibilities:
    - acquire(): idempotent, returns the live connection or opens one,
      retrying construction failures on a fixed backoff with no cap
    - on unexpected close: schedule exactly one reconnect after the fixed
      backoff, then hand the fresh connection to every reconnect listener
      (the subscription registry rebinds its entries there)
    - status/health reporting for the status reporter

Usage:
    manager = ConnectionManager(networks)
    manager.on_reconnect(registry.rebind)
    conn = await manager.acquire("ETH")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from bot_logging.logger_manager import setup_module_logger
from chain.connection import ChainConnection, ChainReadError
from config.loader import get_config
from shared.constants import DEFAULT_RECONNECT_DELAY_SECONDS
from shared.types import ConnectionStatus

if TYPE_CHECKING:
    from shared.types import Network

ReconnectListener = Callable[[str, ChainConnection], Awaitable[None]]


@dataclass
class ConnectionState:
    """Per-network connection slot. Owned exclusively by ConnectionManager."""

    network: Network
    connection: ChainConnection | None = None
    generation: int = 0
    reconnect_task: asyncio.Task | None = None


class ConnectionManager:
    """Owns every ChainConnection; never shares construction or teardown."""

    def __init__(self, networks: dict[str, Network]) -> None:
        conn_cfg = get_config().get_timing_config().get("connection", {})
        self._reconnect_delay: float = conn_cfg.get(
            "reconnect_delay_seconds", DEFAULT_RECONNECT_DELAY_SECONDS
        )

        self._states: dict[str, ConnectionState] = {
            key: ConnectionState(network=network) for key, network in networks.items()
        }
        self._locks: dict[str, asyncio.Lock] = {key: asyncio.Lock() for key in networks}
        self._reconnect_listeners: list[ReconnectListener] = []
        self._closed = False

        self._logger = setup_module_logger(
            "connection_manager", "connection_manager.log", module_folder="Connection_Logs"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_reconnect(self, listener: ReconnectListener) -> None:
        """Register a coroutine called as ``listener(network_key, connection)`` after reconnect."""
        self._reconnect_listeners.append(listener)

    @property
    def network_keys(self) -> list[str]:
        return list(self._states)

    def get_connection(self, network_key: str) -> ChainConnection | None:
        """Current connection without opening one (may be closed)."""
        return self._state(network_key).connection

    async def acquire(self, network_key: str) -> ChainConnection:
        """
        Return the live connection for ``network_key``, opening one if needed.

        Construction failures are retried after the fixed backoff, indefinitely.
        """
        state = self._state(network_key)
        async with self._locks[network_key]:
            if state.connection is not None and state.connection.is_open:
                return state.connection

            attempt = 0
            while True:
                if self._closed:
                    raise ChainReadError(f"[{network_key}] connection manager is closed")
                attempt += 1
                generation = state.generation + 1
                try:
                    self._logger.info(
                        "[%s] Opening stream to %s (attempt %d)",
                        network_key,
                        state.network.ws_url,
                        attempt,
                    )
                    connection = await ChainConnection.open(
                        state.network, generation, on_lost=self._handle_connection_lost
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.error(
                        "[%s] Failed to open stream: %s. Retrying in %.1fs",
                        network_key,
                        e,
                        self._reconnect_delay,
                    )
                    await asyncio.sleep(self._reconnect_delay)
                    continue

                state.connection = connection
                state.generation = generation
                break

        try:
            block = await connection.get_block_number()
            self._logger.info("[%s] Connected. Latest block: %d", network_key, block)
        except ChainReadError as e:
            self._logger.warning("[%s] Connected, block height check failed: %s", network_key, e)
        return connection

    def status(self, network_key: str, subscription_count: int | None = None) -> ConnectionStatus:
        """Liveness snapshot for one network."""
        state = self._state(network_key)
        connection = state.connection
        return ConnectionStatus(
            network_key=network_key,
            url=state.network.ws_url,
            is_open=connection is not None and connection.is_open,
            generation=state.generation,
            last_block=connection.last_block if connection is not None else None,
            subscription_count=(
                subscription_count
                if subscription_count is not None
                else (connection.handler_count if connection is not None else 0)
            ),
        )

    async def check_health(self, network_key: str) -> int | None:
        """Check the current connection's block height. Returns None if down or failing."""
        connection = self._state(network_key).connection
        if connection is None or not connection.is_open:
            return None
        try:
            return await connection.get_block_number()
        except ChainReadError as e:
            self._logger.error("[%s] Block height check failed: %s", network_key, e)
            return None

    async def close_all(self) -> None:
        """Shutdown: cancel pending reconnects and close every stream."""
        self._closed = True
        for key, state in self._states.items():
            if state.reconnect_task is not None and not state.reconnect_task.done():
                state.reconnect_task.cancel()
            if state.connection is not None:
                await state.connection.close()
                self._logger.info("[%s] Stream closed for shutdown", key)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _handle_connection_lost(self, connection: ChainConnection) -> None:
        key = connection.network.key
        state = self._state(key)
        if self._closed or state.connection is not connection:
            return
        if state.reconnect_task is not None and not state.reconnect_task.done():
            return
        self._logger.warning(
            "[%s] Stream dropped, reconnecting in %.1fs", key, self._reconnect_delay
        )
        state.reconnect_task = asyncio.create_task(self._reconnect(key), name=f"reconnect:{key}")

    async def _reconnect(self, network_key: str) -> None:
        try:
            while True:
                await asyncio.sleep(self._reconnect_delay)
                self._logger.info("[%s] Reconnect attempt", network_key)
                connection = await self.acquire(network_key)
                if connection.is_open:
                    break
                # Dropped again before we could hand it over; on_lost was ignored meanwhile
                self._logger.warning(
                    "[%s] Fresh stream dropped during reconnect, retrying in %.1fs",
                    network_key,
                    self._reconnect_delay,
                )
        except asyncio.CancelledError:
            self._logger.info("[%s] Reconnect cancelled", network_key)
            return
        except ChainReadError as e:
            self._logger.info("[%s] Reconnect abandoned: %s", network_key, e)
            return

        # A drop of the fresh stream during rebind must be able to schedule its own reconnect
        self._state(network_key).reconnect_task = None
        for listener in self._reconnect_listeners:
            try:
                await listener(network_key, connection)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(
                    "[%s] Reconnect listener failed: %s", network_key, e, exc_info=True
                )

    def _state(self, network_key: str) -> ConnectionState:
        try:
            return self._states[network_key]
        except KeyError:
            raise KeyError(f"Unknown network: {network_key}") from None
