from chain.connection import ChainConnection, ChainReadError, ConnectionLostError, RpcError
from chain.connection_manager import ConnectionManager
from chain.pool_resolver import (
    PoolNotFoundError,
    PoolResolutionError,
    PoolResolver,
    TokenNotInPoolError,
)

__all__ = [
    "ChainConnection",
    "ChainReadError",
    "ConnectionLostError",
    "ConnectionManager",
    "PoolNotFoundError",
    "PoolResolutionError",
    "PoolResolver",
    "RpcError",
    "TokenNotInPoolError",
]
