"""
Pool resolution against a network's V2 factory.

Looks up the pair for (token, base asset), reads its token ordering once and
returns an immutable PoolHandle. All calls are read-only ``eth_call``s issued
over the connection handed in by the caller.

Usage:
    resolver = PoolResolver()
    pool = await resolver.resolve(conn, network, token_address)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from chain.abi import decode_result, encode_call
from chain.connection import ChainReadError
from shared.constants import (
    FACTORY_GET_PAIR,
    PAIR_GET_RESERVES,
    PAIR_TOKEN0,
    PAIR_TOKEN1,
    ZERO_ADDRESS,
)
from shared.types import PoolHandle, PoolReserves

if TYPE_CHECKING:
    from chain.connection import ChainConnection
    from shared.types import Network


class PoolResolutionError(Exception):
    """Base for steady-state resolution failures (not retried)."""


class PoolNotFoundError(PoolResolutionError):
    """Factory has no pair for (token, base asset)."""


class TokenNotInPoolError(PoolResolutionError):
    """Pair exists but neither token0 nor token1 is the requested token."""


class PoolResolver:
    """Factory/pair reads that produce a PoolHandle."""

    def __init__(self) -> None:
        self._logger = setup_module_logger(
            "pool_resolver", "pool_resolver.log", module_folder="Pool_Resolver_Logs"
        )

    async def resolve(
        self, connection: ChainConnection, network: Network, token_address: str
    ) -> PoolHandle:
        """
        Find the pair pairing ``token_address`` with the network's base asset.

        Raises:
            PoolNotFoundError: factory returned the zero address.
            TokenNotInPoolError: pair does not contain the token.
            ChainReadError: any read failed.
        """
        pair_address = await self.get_pair_address(connection, network, token_address)
        if pair_address.lower() == ZERO_ADDRESS:
            self._logger.info(
                "[%s] No pool for %s / %s", network.key, token_address, network.base_symbol
            )
            raise PoolNotFoundError(
                f"No {network.base_symbol} pool found for {token_address} on {network.label}"
            )

        token0, token1 = await self.read_token_order(connection, pair_address)
        pool = PoolHandle(
            address=pair_address, token0=token0, token1=token1, network_key=network.key
        )
        if pool.slot_of(token_address) is None:
            self._logger.error(
                "[%s] Pool %s does not contain %s (token0=%s token1=%s)",
                network.key,
                pair_address,
                token_address,
                token0,
                token1,
            )
            raise TokenNotInPoolError(f"Token {token_address} is not a member of pool {pair_address}")

        self._logger.info(
            "[%s] Resolved pool %s for %s (slot %d)",
            network.key,
            pair_address,
            token_address,
            pool.slot_of(token_address),
        )
        return pool

    async def get_pair_address(
        self, connection: ChainConnection, network: Network, token_address: str
    ) -> str:
        calldata = encode_call(
            FACTORY_GET_PAIR,
            ["address", "address"],
            [
                Web3.to_checksum_address(token_address),
                Web3.to_checksum_address(network.base_asset_address),
            ],
        )
        try:
            data = await connection.call(network.factory_address, calldata)
            (pair_address,) = decode_result(["address"], data)
        except ChainReadError:
            raise
        except Exception as e:
            raise ChainReadError(f"getPair decode failed: {e}") from e
        return Web3.to_checksum_address(pair_address)

    async def read_token_order(
        self, connection: ChainConnection, pool_address: str
    ) -> tuple[str, str]:
        """Read token0/token1 concurrently."""
        try:
            data0, data1 = await asyncio.gather(
                connection.call(pool_address, encode_call(PAIR_TOKEN0)),
                connection.call(pool_address, encode_call(PAIR_TOKEN1)),
            )
            (token0,) = decode_result(["address"], data0)
            (token1,) = decode_result(["address"], data1)
        except ChainReadError:
            raise
        except Exception as e:
            raise ChainReadError(f"token0/token1 read failed for {pool_address}: {e}") from e
        return Web3.to_checksum_address(token0), Web3.to_checksum_address(token1)

    async def get_reserves(self, connection: ChainConnection, pool: PoolHandle) -> PoolReserves:
        """Optional ``getReserves()`` read used for the subscription confirmation."""
        try:
            data = await connection.call(pool.address, encode_call(PAIR_GET_RESERVES))
            reserve0, reserve1, ts_last = decode_result(["uint112", "uint112", "uint32"], data)
        except ChainReadError:
            raise
        except Exception as e:
            raise ChainReadError(f"getReserves failed for {pool.address}: {e}") from e
        return PoolReserves(reserve0=reserve0, reserve1=reserve1, block_timestamp_last=ts_last)
