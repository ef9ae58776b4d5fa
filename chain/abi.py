"""
ABI encoding helpers and Swap log decoding.

Calls are encoded by hand (4-byte selector + eth_abi-encoded args) so they can
go straight over the connection's JSON-RPC ``eth_call`` without building
web3 contract objects per connection.
"""

from typing import Any, Dict, Optional, Sequence

from eth_abi.abi import decode as abi_decode
from eth_abi.abi import encode as abi_encode
from web3 import Web3

from shared.constants import SWAP_EVENT_SIGNATURE
from shared.types import RawSwap


class LogDecodeError(ValueError):
    """Raised when a log entry is not a decodable V2 Swap."""


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


SWAP_TOPIC: str = _hex(Web3.keccak(text=SWAP_EVENT_SIGNATURE)).lower()


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> str:
    """Build hex calldata for ``signature`` with the given arguments."""
    data = function_selector(signature)
    if arg_types:
        data += abi_encode(list(arg_types), list(args))
    return "0x" + data.hex()


def decode_result(result_types: Sequence[str], data: bytes) -> tuple:
    """Decode eth_call return data; empty data means no contract or a revert."""
    if not data:
        raise ValueError("empty return data")
    return abi_decode(list(result_types), data)


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


def _topic_to_address(topic: Any) -> str:
    raw = bytes.fromhex(_hex(topic).replace("0x", ""))
    return Web3.to_checksum_address("0x" + raw[-20:].hex())


def decode_swap_log(log_data: Dict[str, Any]) -> RawSwap:
    """
    Decode a raw ``eth_subscription`` log into a RawSwap.

    Indexed ``sender`` and ``to`` come from topics[1:3]; the four amounts are
    ABI-encoded in ``data``.
    """
    topics = log_data.get("topics") or []
    if len(topics) < 3 or _hex(topics[0]).lower() != SWAP_TOPIC:
        raise LogDecodeError("not a Swap log")

    raw_data = log_data.get("data", "0x")
    if isinstance(raw_data, str):
        raw_data = bytes.fromhex(raw_data.replace("0x", ""))
    try:
        amount0_in, amount1_in, amount0_out, amount1_out = abi_decode(
            ["uint256", "uint256", "uint256", "uint256"], raw_data
        )
    except Exception as e:
        raise LogDecodeError(f"bad Swap data: {e}") from e

    return RawSwap(
        pool_address=Web3.to_checksum_address(log_data.get("address", "")),
        sender=_topic_to_address(topics[1]),
        recipient=_topic_to_address(topics[2]),
        amount0_in=amount0_in,
        amount1_in=amount1_in,
        amount0_out=amount0_out,
        amount1_out=amount1_out,
        tx_hash=_hex(log_data.get("transactionHash", "")),
        block_number=_parse_int(log_data.get("blockNumber")),
        log_index=_parse_int(log_data.get("logIndex")),
    )
