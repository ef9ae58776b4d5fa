"""
Unit tests for core/subscription_registry.py.

Tests cover:
- subscribe(): happy path, validation before any read, resolution errors,
  metadata placeholder, duplicate replacement
- unsubscribe()/unsubscribe_listener(): idempotence, handler detachment,
  in-flight events still complete
- rebind(): every entry moves to the new connection, idempotence, partial
  failure drops only the failing entry, token-order change drops the entry,
  a lost stream keeps every entry for the next rebind
- Reconnect scenario: 3 subscriptions survive and keep producing trades
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chain.abi import SWAP_TOPIC
from chain.connection import ChainReadError, ConnectionLostError
from chain.pool_resolver import PoolNotFoundError, TokenNotInPoolError
from chain.token_metadata import placeholder_token_info
from core.subscription_registry import SubscriptionRegistry, UnknownNetworkError
from shared.address import AddressValidationError
from shared.types import PoolHandle, TokenInfo
from tests.fakes import (
    BSC_NETWORK,
    ETH_NETWORK,
    OTHER_POOL_ADDRESS,
    OTHER_TOKEN_ADDRESS,
    POOL_ADDRESS,
    SAMPLE_POOL,
    SAMPLE_TOKEN,
    TOKEN_ADDRESS,
    WBNB,
    WETH,
    FakeConnection,
    drain,
    make_swap_log,
)

ONE = 10**18

NETWORKS = {"ETH": ETH_NETWORK, "BSC": BSC_NETWORK}

OTHER_TOKEN = TokenInfo(address=OTHER_TOKEN_ADDRESS, symbol="UNI", name="Uniswap", decimals=18)
OTHER_POOL = PoolHandle(
    address=OTHER_POOL_ADDRESS, token0=OTHER_TOKEN_ADDRESS, token1=WETH, network_key="ETH"
)
BSC_POOL = PoolHandle(address=POOL_ADDRESS, token0=TOKEN_ADDRESS, token1=WBNB, network_key="BSC")

BUY_LOG = make_swap_log(0, ONE, 500 * ONE, 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _token_info_for(connection, address):
    return OTHER_TOKEN if address.lower() == OTHER_TOKEN_ADDRESS.lower() else SAMPLE_TOKEN


def _pool_for(connection, network, address):
    if network.key == "BSC":
        return BSC_POOL
    return OTHER_POOL if address.lower() == OTHER_TOKEN_ADDRESS.lower() else SAMPLE_POOL


def _order_for(connection, pool_address):
    pool = OTHER_POOL if pool_address == OTHER_POOL_ADDRESS else SAMPLE_POOL
    return pool.token0, pool.token1


@pytest.fixture
def connections():
    return {"ETH": FakeConnection(ETH_NETWORK), "BSC": FakeConnection(BSC_NETWORK)}


@pytest.fixture
def manager(connections):
    manager = MagicMock()
    manager.acquire = AsyncMock(side_effect=lambda key: connections[key])
    return manager


@pytest.fixture
def resolver():
    resolver = MagicMock()
    resolver.resolve = AsyncMock(side_effect=_pool_for)
    resolver.read_token_order = AsyncMock(side_effect=_order_for)
    return resolver


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.deliver_trade = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def fetch_token_info():
    with patch(
        "core.subscription_registry.fetch_token_info",
        new=AsyncMock(side_effect=_token_info_for),
    ) as mock_fetch:
        yield mock_fetch


@pytest.fixture
def registry(manager, resolver, notifier, fetch_token_info, mock_config_loader):
    with (
        patch("core.subscription_registry.get_config", return_value=mock_config_loader),
        patch("core.subscription_registry.setup_module_logger") as mock_logger,
        patch("core.swap_handler.setup_module_logger") as mock_handler_logger,
    ):
        mock_logger.return_value = MagicMock()
        mock_handler_logger.return_value = MagicMock()
        registry = SubscriptionRegistry(manager, resolver, notifier, NETWORKS)
        yield registry


# ---------------------------------------------------------------------------
# subscribe
# ---------------------------------------------------------------------------


class TestSubscribe:
    async def test_subscribe_attaches_handler(self, registry, connections):
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS.lower())

        assert registry.count() == 1
        assert registry.count("ETH") == 1
        assert sub.active
        assert sub.token_info == SAMPLE_TOKEN
        assert sub.pool == SAMPLE_POOL
        assert sub.attachment.connection is connections["ETH"]
        assert sub.attachment.generation == 1
        connections["ETH"].subscribe_logs.assert_awaited_once()
        args = connections["ETH"].subscribe_logs.await_args.args
        assert args[0] == POOL_ADDRESS
        assert args[1] == [SWAP_TOPIC]

    async def test_min_base_amount_read_from_config(self, registry):
        assert registry._min_base_amount == Decimal("0.01")

    async def test_unknown_network_raises_before_any_read(self, registry, manager):
        with pytest.raises(UnknownNetworkError):
            await registry.subscribe(1, "SOL", TOKEN_ADDRESS)

        manager.acquire.assert_not_awaited()
        assert registry.count() == 0

    async def test_malformed_address_raises_before_any_read(self, registry, manager):
        with pytest.raises(AddressValidationError):
            await registry.subscribe(1, "ETH", "0x1234")

        manager.acquire.assert_not_awaited()
        assert registry.count() == 0

    async def test_pool_not_found_leaves_nothing(self, registry, resolver, connections):
        resolver.resolve.side_effect = PoolNotFoundError("no pool")

        with pytest.raises(PoolNotFoundError):
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert registry.count() == 0
        assert connections["ETH"].handler_count == 0

    async def test_token_not_in_pool_leaves_nothing(self, registry, resolver):
        resolver.resolve.side_effect = TokenNotInPoolError("not a member")

        with pytest.raises(TokenNotInPoolError):
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert registry.count() == 0

    async def test_attach_failure_leaves_nothing(self, registry, connections):
        connections["ETH"].subscribe_logs.side_effect = ChainReadError("eth_subscribe failed")

        with pytest.raises(ChainReadError):
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert registry.count() == 0

    async def test_metadata_placeholder_still_subscribes(self, registry, fetch_token_info):
        fetch_token_info.side_effect = None
        fetch_token_info.return_value = placeholder_token_info(TOKEN_ADDRESS)

        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert sub.token_info.symbol == "TOKEN"
        assert registry.count() == 1

    async def test_duplicate_replaces_prior(self, registry, connections):
        first = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        second = await registry.subscribe(1, "ETH", TOKEN_ADDRESS.lower())

        assert registry.count() == 1
        assert not first.active
        assert first.attachment is None
        assert second.active
        assert list(connections["ETH"].handlers) == [second.attachment.subscription_id]

    async def test_listeners_share_pool(self, registry, connections, notifier):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(2, "ETH", TOKEN_ADDRESS)

        connections["ETH"].emit(BUY_LOG)
        await drain()

        listeners = sorted(c.args[0] for c in notifier.deliver_trade.await_args_list)
        assert listeners == [1, 2]
        assert registry.listener_count() == 2


# ---------------------------------------------------------------------------
# unsubscribe
# ---------------------------------------------------------------------------


class TestUnsubscribe:
    async def test_unsubscribe_is_idempotent(self, registry, connections):
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert await registry.unsubscribe(sub) is True
        assert await registry.unsubscribe(sub) is False

        assert registry.count() == 0
        assert connections["ETH"].handler_count == 0
        connections["ETH"].unsubscribe_logs.assert_awaited_once()

    async def test_detached_handler_ignores_late_events(self, registry, notifier):
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        stale_callback = sub.attachment.handler.on_log

        await registry.unsubscribe(sub)
        stale_callback(BUY_LOG)
        await drain()

        notifier.deliver_trade.assert_not_awaited()

    async def test_in_flight_event_completes(self, registry, connections, notifier):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        connections["ETH"].emit(BUY_LOG)
        await registry.unsubscribe_listener(1)
        await drain()

        notifier.deliver_trade.assert_awaited_once()

    async def test_unsubscribe_listener_across_networks(self, registry):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(1, "ETH", OTHER_TOKEN_ADDRESS)
        await registry.subscribe(1, "BSC", TOKEN_ADDRESS)
        await registry.subscribe(2, "ETH", TOKEN_ADDRESS)

        removed = await registry.unsubscribe_listener(1)

        assert removed == 3
        assert registry.count() == 1
        assert registry.subscriptions()[0].listener_id == 2

    async def test_unsubscribe_listener_without_subscriptions(self, registry):
        assert await registry.unsubscribe_listener(99) == 0

    async def test_shutdown_clears_everything(self, registry, connections):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(2, "BSC", TOKEN_ADDRESS)

        await registry.shutdown()

        assert registry.count() == 0
        assert connections["ETH"].handler_count == 0
        assert connections["BSC"].handler_count == 0


# ---------------------------------------------------------------------------
# rebind
# ---------------------------------------------------------------------------


class TestRebind:
    async def test_rebind_moves_every_entry(self, registry, connections):
        old = connections["ETH"]
        subs = [
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS),
            await registry.subscribe(2, "ETH", TOKEN_ADDRESS),
            await registry.subscribe(3, "ETH", OTHER_TOKEN_ADDRESS),
        ]
        old.is_open = False
        new = FakeConnection(ETH_NETWORK, generation=2)

        await registry.rebind("ETH", new)

        assert registry.count("ETH") == 3
        assert old.handler_count == 0
        assert new.handler_count == 3
        for sub in subs:
            assert sub.active
            assert sub.attachment.connection is new
            assert sub.attachment.generation == 2

    async def test_rebind_only_touches_its_network(self, registry, connections):
        bsc_sub = await registry.subscribe(1, "BSC", TOKEN_ADDRESS)
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        await registry.rebind("ETH", FakeConnection(ETH_NETWORK, generation=2))

        assert bsc_sub.attachment.connection is connections["BSC"]
        assert connections["BSC"].handler_count == 1

    async def test_rebind_twice_is_idempotent(self, registry):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(2, "ETH", OTHER_TOKEN_ADDRESS)
        new = FakeConnection(ETH_NETWORK, generation=2)

        await registry.rebind("ETH", new)
        first = {(s.listener_id, s.pool.address) for s in registry.subscriptions("ETH")}
        await registry.rebind("ETH", new)
        second = {(s.listener_id, s.pool.address) for s in registry.subscriptions("ETH")}

        assert first == second
        assert new.handler_count == 2
        # One node-side subscription per entry, none churned by the second pass
        assert new.subscribe_logs.await_count == 2
        new.unsubscribe_logs.assert_not_awaited()

    async def test_partial_failure_drops_only_failing_entry(self, registry, resolver):
        ok = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        failing = await registry.subscribe(2, "ETH", OTHER_TOKEN_ADDRESS)

        async def _order(connection, pool_address):
            if pool_address == OTHER_POOL_ADDRESS:
                raise ChainReadError("token0 read failed")
            return _order_for(connection, pool_address)

        resolver.read_token_order.side_effect = _order
        new = FakeConnection(ETH_NETWORK, generation=2)

        await registry.rebind("ETH", new)

        assert registry.subscriptions("ETH") == [ok]
        assert ok.attachment.connection is new
        assert not failing.active
        assert failing.attachment is None
        assert new.handler_count == 1

    async def test_changed_token_order_drops_entry(self, registry, resolver):
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        resolver.read_token_order.side_effect = None
        resolver.read_token_order.return_value = (WETH, TOKEN_ADDRESS)

        await registry.rebind("ETH", FakeConnection(ETH_NETWORK, generation=2))

        assert registry.count() == 0
        assert not sub.active

    async def test_reconnect_with_three_subscriptions_keeps_delivering(
        self, registry, connections, notifier
    ):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(2, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(3, "ETH", TOKEN_ADDRESS)
        connections["ETH"].is_open = False
        new = FakeConnection(ETH_NETWORK, generation=2)

        await registry.rebind("ETH", new)
        new.emit(BUY_LOG)
        await drain()

        assert registry.count("ETH") == 3
        assert all(s.active for s in registry.subscriptions("ETH"))
        listeners = sorted(c.args[0] for c in notifier.deliver_trade.await_args_list)
        assert listeners == [1, 2, 3]

    async def test_unsubscribe_after_rebind_detaches_new_handler(self, registry):
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        new = FakeConnection(ETH_NETWORK, generation=2)
        await registry.rebind("ETH", new)

        await registry.unsubscribe(sub)

        assert new.handler_count == 0
        new.unsubscribe_logs.assert_awaited_once()

    async def test_rebind_unknown_network_is_noop(self, registry):
        await registry.rebind("SOL", FakeConnection(ETH_NETWORK, generation=2))
        assert registry.count() == 0

    async def test_rebind_onto_current_connection_keeps_attachment(self, registry, connections):
        current = connections["ETH"]
        sub = await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        attachment = sub.attachment

        await registry.rebind("ETH", current)

        assert sub.attachment is attachment
        assert current.subscribe_logs.await_count == 1
        assert current.handler_count == 1

    async def test_stream_lost_during_rebind_keeps_entries(self, registry, resolver):
        subs = [
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS),
            await registry.subscribe(2, "ETH", OTHER_TOKEN_ADDRESS),
        ]
        resolver.read_token_order.side_effect = ConnectionLostError("stream closed")
        flapping = FakeConnection(ETH_NETWORK, generation=2)

        await registry.rebind("ETH", flapping)

        assert registry.count("ETH") == 2
        assert all(s.active for s in subs)
        assert flapping.handler_count == 0

        # The next reconnect picks them up
        resolver.read_token_order.side_effect = _order_for
        fresh = FakeConnection(ETH_NETWORK, generation=3)
        await registry.rebind("ETH", fresh)

        assert fresh.handler_count == 2
        assert all(s.attachment.connection is fresh for s in subs)

    async def test_rebind_onto_closed_connection_keeps_entries(self, registry, resolver):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.subscribe(2, "ETH", TOKEN_ADDRESS)
        dead = FakeConnection(ETH_NETWORK, generation=2)
        dead.is_open = False

        await registry.rebind("ETH", dead)

        assert registry.count("ETH") == 2
        resolver.read_token_order.assert_not_awaited()
        dead.subscribe_logs.assert_not_awaited()


class TestListenerLocks:
    async def test_lock_released_after_unsubscribe(self, registry):
        await registry.subscribe(1, "ETH", TOKEN_ADDRESS)
        await registry.unsubscribe_listener(1)

        assert registry._listener_locks == {}

    async def test_lock_released_after_failed_subscribe(self, registry, resolver):
        resolver.resolve.side_effect = PoolNotFoundError("none")

        with pytest.raises(PoolNotFoundError):
            await registry.subscribe(1, "ETH", TOKEN_ADDRESS)

        assert registry._listener_locks == {}
