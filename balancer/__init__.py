"""
Replica Router Balancer

Weighted read distribution across replicas with master routing for writes.
"""

from .cache import CACHE_MISS, CacheGateway, MemoryCacheStore, RedisCacheStore, cache_key
from .database import SQLiteDriver, get_driver
from .dispatcher import OPERATIONS, Dispatcher, OperationSpec
from .main import QueryRouter, build_router, configure_logging
from .node_registry import NodeRegistry, RegisteredNode
from .router import DispatchState, Router

__all__ = [
    "CACHE_MISS",
    "CacheGateway",
    "RedisCacheStore",
    "MemoryCacheStore",
    "cache_key",
    "SQLiteDriver",
    "get_driver",
    "OPERATIONS",
    "Dispatcher",
    "OperationSpec",
    "QueryRouter",
    "build_router",
    "configure_logging",
    "NodeRegistry",
    "RegisteredNode",
    "DispatchState",
    "Router",
]
