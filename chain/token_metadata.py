"""
ERC20 metadata reads with an explicit degrade-not-fail fallback.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from bot_logging.logger_manager import setup_module_logger
from chain.abi import decode_result, encode_call
from shared.constants import (
    EMPTY_TOKEN_NAME,
    EMPTY_TOKEN_SYMBOL,
    ERC20_DECIMALS,
    ERC20_NAME,
    ERC20_SYMBOL,
    PLACEHOLDER_TOKEN_DECIMALS,
    PLACEHOLDER_TOKEN_NAME,
    PLACEHOLDER_TOKEN_SYMBOL,
)
from shared.types import TokenInfo

if TYPE_CHECKING:
    from chain.connection import ChainConnection

_logger = setup_module_logger(
    "token_metadata", "token_metadata.log", module_folder="Pool_Resolver_Logs"
)


def placeholder_token_info(address: str) -> TokenInfo:
    return TokenInfo(
        address=address,
        symbol=PLACEHOLDER_TOKEN_SYMBOL,
        name=PLACEHOLDER_TOKEN_NAME,
        decimals=PLACEHOLDER_TOKEN_DECIMALS,
    )


async def read_token_info(connection: ChainConnection, address: str) -> TokenInfo:
    """Read symbol/decimals/name concurrently. Raises on any failure."""
    symbol_data, decimals_data, name_data = await asyncio.gather(
        connection.call(address, encode_call(ERC20_SYMBOL)),
        connection.call(address, encode_call(ERC20_DECIMALS)),
        connection.call(address, encode_call(ERC20_NAME)),
    )
    (symbol,) = decode_result(["string"], symbol_data)
    (decimals,) = decode_result(["uint8"], decimals_data)
    (name,) = decode_result(["string"], name_data)
    return TokenInfo(
        address=address,
        symbol=symbol or EMPTY_TOKEN_SYMBOL,
        name=name or EMPTY_TOKEN_NAME,
        decimals=decimals or PLACEHOLDER_TOKEN_DECIMALS,
    )


async def fetch_token_info(connection: ChainConnection, address: str) -> TokenInfo:
    """
    Resolve token metadata, substituting placeholders if the read fails.

    The subscription proceeds either way; only the display fields degrade.
    """
    try:
        return await read_token_info(connection, address)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        _logger.warning("Token metadata read failed for %s, using placeholder: %s", address, e)
        return placeholder_token_info(address)
