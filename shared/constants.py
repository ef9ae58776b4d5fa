"""
Shared constants for the pool trade monitor.

Event signatures, numeric constants, and default values used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

BASE_ASSET_DECIMALS = 18  # Wrapped native coin on every supported network
ZERO_ADDRESS = "0x" + "00" * 20

# ---------------------------------------------------------------------------
# Uniswap V2-style ABI signatures
# ---------------------------------------------------------------------------

SWAP_EVENT_SIGNATURE = "Swap(address,uint256,uint256,uint256,uint256,address)"

FACTORY_GET_PAIR = "getPair(address,address)"
PAIR_TOKEN0 = "token0()"
PAIR_TOKEN1 = "token1()"
PAIR_GET_RESERVES = "getReserves()"

ERC20_SYMBOL = "symbol()"
ERC20_NAME = "name()"
ERC20_DECIMALS = "decimals()"

# ---------------------------------------------------------------------------
# Token metadata fallbacks
# ---------------------------------------------------------------------------

# Used when the on-chain read fails outright
PLACEHOLDER_TOKEN_SYMBOL = "TOKEN"
PLACEHOLDER_TOKEN_NAME = "Unknown"
PLACEHOLDER_TOKEN_DECIMALS = 18

# Used when the read succeeds but returns empty values
EMPTY_TOKEN_SYMBOL = "UNKNOWN"
EMPTY_TOKEN_NAME = "Unknown Token"

# ---------------------------------------------------------------------------
# Default operational values
# ---------------------------------------------------------------------------

DEFAULT_MIN_BASE_AMOUNT = Decimal("0.01")
DEFAULT_KEEPALIVE_INTERVAL_SECONDS = 25
DEFAULT_KEEPALIVE_TIMEOUT_SECONDS = 10
DEFAULT_RECONNECT_DELAY_SECONDS = 5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15
DEFAULT_STATUS_REPORT_INTERVAL_SECONDS = 300
DEFAULT_BLOCK_TIMESTAMP_CACHE_SIZE = 500

# Shown to users alongside address validation errors
EXAMPLE_ADDRESS = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
