"""
Replica Router Shared Module

Common models, errors, and SQL helpers shared by the balancer and the CLI.
"""

from .models import (
    CallMode,
    FetchMode,
    OperationCategory,
    DSN,
    NodeSettings,
    CacheBackend,
    CacheSettings,
    RouterSettings,
)
from .errors import (
    RouterError,
    ConfigurationError,
    UnsupportedOperationError,
    DispatchStateError,
    NodeUnavailableError,
    BroadcastPartialFailure,
    CacheError,
    DriverConnectionError,
)
from .sql import is_manipulation

__all__ = [
    # Models
    "CallMode",
    "FetchMode",
    "OperationCategory",
    "DSN",
    "NodeSettings",
    "CacheBackend",
    "CacheSettings",
    "RouterSettings",
    # Errors
    "RouterError",
    "ConfigurationError",
    "UnsupportedOperationError",
    "DispatchStateError",
    "NodeUnavailableError",
    "BroadcastPartialFailure",
    "CacheError",
    "DriverConnectionError",
    # SQL
    "is_manipulation",
]
