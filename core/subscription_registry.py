"""
Subscription registry: the authoritative set of live (listener, network, token)
subscriptions.

Responsibilities:
    - subscribe(): validate -> acquire stream -> token metadata -> pool ->
      attach a SwapEventHandler to the pool's Swap logs
    - unsubscribe()/unsubscribe_listener(): idempotent teardown
    - rebind(): after a reconnect, re-attach every entry of the network to
      the fresh connection; entries that fail are logged and dropped, unless
      the stream itself was lost, in which case they wait for the next rebind

Subscriptions outlive connections. Attachments do not: each one is tied to
a single connection generation and is rebuilt by rebind().

Locking:
    - one asyncio.Lock per network guards the entry list and the whole
      rebind pass, so no subscribe/unsubscribe interleaves with a rebind
    - one asyncio.Lock per listener allows one in-flight subscribe each
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, AsyncIterator

from bot_logging.logger_manager import setup_module_logger
from chain.abi import SWAP_TOPIC
from chain.connection import ChainReadError, ConnectionLostError
from chain.pool_resolver import PoolResolutionError
from chain.token_metadata import fetch_token_info
from config.loader import get_config
from core.swap_handler import SwapEventHandler
from shared.address import validate_address
from shared.constants import DEFAULT_MIN_BASE_AMOUNT

if TYPE_CHECKING:
    from chain.connection import ChainConnection
    from chain.connection_manager import ConnectionManager
    from chain.pool_resolver import PoolResolver
    from notify.trade_notifier import TradeNotifier
    from shared.types import Network, PoolHandle, TokenInfo


class UnknownNetworkError(Exception):
    """Requested network key is not configured."""


@dataclass(frozen=True)
class HandlerAttachment:
    """A handler bound to one connection generation. Disposable."""

    connection: ChainConnection
    subscription_id: str
    handler: SwapEventHandler
    generation: int


@dataclass(eq=False)
class Subscription:
    listener_id: Any
    network: Network
    token_info: TokenInfo
    pool: PoolHandle
    attachment: HandlerAttachment | None = None
    active: bool = True

    @property
    def key(self) -> tuple[Any, str, str]:
        return (self.listener_id, self.network.key, self.token_info.address.lower())


class SubscriptionRegistry:
    """Owns every Subscription and its current HandlerAttachment."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        pool_resolver: PoolResolver,
        notifier: TradeNotifier,
        networks: dict[str, Network],
    ) -> None:
        self._manager = connection_manager
        self._resolver = pool_resolver
        self._notifier = notifier
        self._networks = networks

        trade_filter = get_config().get_app_config().get("trade_filter", {})
        self._min_base_amount = Decimal(
            str(trade_filter.get("min_base_amount", DEFAULT_MIN_BASE_AMOUNT))
        )

        self._entries: dict[str, list[Subscription]] = {key: [] for key in networks}
        self._network_locks: dict[str, asyncio.Lock] = {key: asyncio.Lock() for key in networks}
        self._listener_locks: dict[Any, asyncio.Lock] = {}
        self._listener_waiters: defaultdict[Any, int] = defaultdict(int)

        self._logger = setup_module_logger(
            "subscription_registry", "subscription_registry.log", module_folder="Subscription_Logs"
        )

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    async def subscribe(self, listener_id: Any, network_key: str, token_address: str) -> Subscription:
        """
        Start monitoring ``token_address`` on ``network_key`` for ``listener_id``.

        A prior subscription with the same (listener, network, token) is torn
        down and replaced. On any error nothing is registered.

        Raises:
            UnknownNetworkError: network key not configured.
            AddressValidationError: malformed address.
            PoolNotFoundError / TokenNotInPoolError: no usable pool.
            ChainReadError: a chain read failed.
        """
        network = self._networks.get(network_key)
        if network is None:
            raise UnknownNetworkError(f"Unknown network: {network_key}")
        address = validate_address(token_address)

        async with self._listener_guard(listener_id):
            connection = await self._manager.acquire(network_key)
            token_info = await fetch_token_info(connection, address)
            pool = await self._resolver.resolve(connection, network, address)

            subscription = Subscription(
                listener_id=listener_id, network=network, token_info=token_info, pool=pool
            )
            previous = self._find(subscription.key)
            if previous is not None:
                self._logger.info(
                    "[%s] Replacing subscription of %s to %s",
                    network_key,
                    listener_id,
                    token_info.symbol,
                )
                await self.unsubscribe(previous)

            # Attach under the network lock so a concurrent rebind sees the entry
            async with self._network_locks[network_key]:
                subscription.attachment = await self._attach(subscription, connection)
                self._entries[network_key].append(subscription)

        self._logger.info(
            "[%s] %s subscribed to %s (%s) via pool %s",
            network_key,
            listener_id,
            token_info.symbol,
            address,
            pool.address,
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> bool:
        """Tear down one subscription. Returns False if it was already inactive."""
        if not subscription.active:
            return False
        subscription.active = False

        network_key = subscription.network.key
        async with self._network_locks[network_key]:
            entries = self._entries[network_key]
            if subscription in entries:
                entries.remove(subscription)
            attachment = subscription.attachment
            subscription.attachment = None

        if attachment is not None:
            self._detach(attachment)
            await attachment.connection.unsubscribe_logs(attachment.subscription_id)

        self._logger.info(
            "[%s] %s unsubscribed from %s",
            network_key,
            subscription.listener_id,
            subscription.token_info.symbol,
        )
        return True

    async def unsubscribe_listener(self, listener_id: Any) -> int:
        """Tear down every subscription of ``listener_id``. Returns how many."""
        async with self._listener_guard(listener_id):
            owned = [s for s in self.subscriptions() if s.listener_id == listener_id]
            removed = 0
            for subscription in owned:
                if await self.unsubscribe(subscription):
                    removed += 1
        return removed

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def rebind(self, network_key: str, connection: ChainConnection) -> None:
        """
        Re-attach every subscription of ``network_key`` to ``connection``.

        Entries already attached to ``connection`` are left alone. If the
        stream itself goes away mid-pass, the remaining entries stay
        registered unattached and the next reconnect rebinds them.
        """
        if network_key not in self._entries:
            return

        async with self._network_locks[network_key]:
            entries = list(self._entries[network_key])
            self._logger.info(
                "[%s] Rebinding %d subscription(s) to generation %d",
                network_key,
                len(entries),
                connection.generation,
            )

            kept: list[Subscription] = []
            for index, subscription in enumerate(entries):
                stale = subscription.attachment
                if stale is not None and stale.connection is connection:
                    kept.append(subscription)
                    continue
                if not connection.is_open:
                    kept.extend(entries[index:])
                    break

                subscription.attachment = None
                if stale is not None:
                    self._detach(stale)

                try:
                    await self._check_token_order(subscription, connection)
                    subscription.attachment = await self._attach(subscription, connection)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if isinstance(e, ConnectionLostError) or not connection.is_open:
                        self._logger.warning(
                            "[%s] Stream lost during rebind, %d subscription(s) wait for the next reconnect: %s",
                            network_key,
                            len(entries) - index,
                            e,
                        )
                        kept.extend(entries[index:])
                        break
                    subscription.active = False
                    self._logger.error(
                        "[%s] Rebind failed for %s / %s, dropping: %s",
                        network_key,
                        subscription.listener_id,
                        subscription.token_info.symbol,
                        e,
                    )
                    continue
                kept.append(subscription)

            self._entries[network_key] = kept

        restored = sum(
            1 for s in kept if s.attachment is not None and s.attachment.connection is connection
        )
        self._logger.info(
            "[%s] Rebind complete: %d/%d subscription(s) attached",
            network_key,
            restored,
            len(entries),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def subscriptions(self, network_key: str | None = None) -> list[Subscription]:
        if network_key is not None:
            return list(self._entries.get(network_key, []))
        return [s for entries in self._entries.values() for s in entries]

    def count(self, network_key: str | None = None) -> int:
        return len(self.subscriptions(network_key))

    def listener_count(self) -> int:
        return len({s.listener_id for s in self.subscriptions()})

    async def shutdown(self) -> None:
        """Unsubscribe everything."""
        for subscription in self.subscriptions():
            try:
                await self.unsubscribe(subscription)
            except ChainReadError as e:
                self._logger.debug("Unsubscribe during shutdown failed: %s", e)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _listener_guard(self, listener_id: Any) -> AsyncIterator[None]:
        """Per-listener lock, forgotten once nobody holds or waits on it."""
        lock = self._listener_locks.setdefault(listener_id, asyncio.Lock())
        self._listener_waiters[listener_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._listener_waiters[listener_id] -= 1
            if self._listener_waiters[listener_id] == 0:
                del self._listener_waiters[listener_id]
                del self._listener_locks[listener_id]

    def _find(self, key: tuple[Any, str, str]) -> Subscription | None:
        for subscription in self._entries.get(key[1], []):
            if subscription.key == key:
                return subscription
        return None

    async def _attach(self, subscription: Subscription, connection: ChainConnection) -> HandlerAttachment:
        handler = SwapEventHandler(subscription, connection, self._notifier, self._min_base_amount)
        handler.start()
        attached = False
        try:
            subscription_id = await connection.subscribe_logs(
                subscription.pool.address, [SWAP_TOPIC], handler.on_log
            )
            attached = True
        finally:
            if not attached:
                handler.stop()
        return HandlerAttachment(
            connection=connection,
            subscription_id=subscription_id,
            handler=handler,
            generation=connection.generation,
        )

    @staticmethod
    def _detach(attachment: HandlerAttachment) -> None:
        attachment.connection.remove_log_handler(attachment.subscription_id)
        attachment.handler.stop()

    async def _check_token_order(
        self, subscription: Subscription, connection: ChainConnection
    ) -> None:
        pool = subscription.pool
        token0, token1 = await self._resolver.read_token_order(connection, pool.address)
        if token0.lower() != pool.token0.lower() or token1.lower() != pool.token1.lower():
            raise PoolResolutionError(
                f"Token ordering of {pool.address} changed ({token0}, {token1})"
            )
