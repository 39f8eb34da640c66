"""
Replica Router - Main Entry Point

QueryRouter ties the registry, router, dispatcher and optional cache
together behind one object that is used like a single database connection.
"""

import logging
import random
from typing import Any, Optional, Sequence, Union
import structlog

from shared.models import (
    CacheBackend,
    CacheSettings,
    CallMode,
    FetchMode,
    OperationCategory,
    RouterSettings,
)
from .cache import CacheGateway, CacheStore, MemoryCacheStore, RedisCacheStore
from .database import Driver
from .dispatcher import Dispatcher
from .node_registry import NodeRegistry, Target
from .router import Router


def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


class QueryRouter:
    """
    Load-balancing front for one master and N read replicas.

    Usage:
        router = QueryRouter()
        router.attach_master("sqlite:///master.db", 50)
        router.attach_node("sqlite://replica-1/replica.db", 50)
        rows = router.get_all("SELECT * FROM posts", mode=CallMode.READ)

    Reads default to the master; pass CallMode.READ to spread them across
    nodes and CallMode.CACHE to read through the configured cache.
    """

    def __init__(
        self,
        driver: Optional[Driver] = None,
        cache_store: Optional[CacheStore] = None,
        rng: Optional[random.Random] = None
    ):
        self.registry = NodeRegistry(driver)
        self.router = Router(self.registry, rng)
        self.dispatcher = Dispatcher(
            self.registry,
            self.router,
            CacheGateway(cache_store) if cache_store is not None else None
        )

    # =========================================================================
    # Setup
    # =========================================================================

    def attach_master(self, target: Target, weight: Any) -> str:
        return self.registry.attach_master(target, weight)

    def attach_node(self, target: Target, weight: Any) -> str:
        return self.registry.attach_node(target, weight)

    def use_cache(self, store: CacheStore) -> None:
        """Install the cache store used for CACHE-mode reads."""
        self.dispatcher.cache = CacheGateway(store)

    @property
    def normalized(self) -> dict[int, list[str]]:
        return self.registry.normalized

    # =========================================================================
    # Statements and Transactions
    # =========================================================================

    def query(self, sql: str, params: Sequence[Any] = (), mode: CallMode = CallMode.MASTER) -> Any:
        return self.dispatcher.query(sql, params, mode)

    def query_master(self, sql: str, params: Sequence[Any] = ()) -> Any:
        return self.dispatcher.query_master(sql, params)

    def auto_commit(self, on: bool = False) -> Any:
        return self.dispatcher.auto_commit(on)

    @property
    def master_only(self) -> bool:
        return self.dispatcher.state.master_only

    def call(self, operation: str, *args: Any, mode: Optional[CallMode] = None) -> Any:
        """Dispatch any catalog operation by name."""
        return self.dispatcher.dispatch(operation, *args, mode=mode)

    def category_of(self, operation: str, *args: Any, mode: CallMode = CallMode.MASTER) -> OperationCategory:
        return self.dispatcher.classify(operation, args, mode)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_one(self, sql: str, params: Sequence[Any] = (), mode: Optional[CallMode] = None) -> Any:
        return self.call("get_one", sql, params, mode=mode)

    def get_col(
        self,
        sql: str,
        col: Union[int, str] = 0,
        params: Sequence[Any] = (),
        mode: Optional[CallMode] = None
    ) -> list:
        return self.call("get_col", sql, col, params, mode=mode)

    def get_all(
        self,
        sql: str,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None,
        mode: Optional[CallMode] = None
    ) -> list:
        return self.call("get_all", sql, params, fetch_mode, mode=mode)

    def get_row(
        self,
        sql: str,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None,
        mode: Optional[CallMode] = None
    ) -> Any:
        return self.call("get_row", sql, params, fetch_mode, mode=mode)

    def get_assoc(
        self,
        sql: str,
        force_array: bool = False,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None,
        group: bool = False,
        mode: Optional[CallMode] = None
    ) -> dict:
        return self.call("get_assoc", sql, force_array, params, fetch_mode, group, mode=mode)

    def limit_query(
        self,
        sql: str,
        offset: int,
        count: int,
        params: Sequence[Any] = (),
        mode: Optional[CallMode] = None
    ) -> Any:
        return self.call("limit_query", sql, offset, count, params, mode=mode)

    def quote_smart(self, value: Any, mode: Optional[CallMode] = None) -> str:
        return self.call("quote_smart", value, mode=mode)

    def get_tables(self, mode: Optional[CallMode] = None) -> list[str]:
        return self.call("get_tables", mode=mode)

    # =========================================================================
    # Master-Only, Broadcast and Last-Node Operations
    # =========================================================================

    def prepare(self, sql: str) -> Any:
        return self.call("prepare", sql)

    def provides(self, feature: str) -> bool:
        return self.call("provides", feature)

    def table_info(self, table: str) -> list[dict[str, Any]]:
        return self.call("table_info", table)

    def get_option(self, name: str) -> Any:
        return self.call("get_option", name)

    def get_list_of(self, kind: str) -> list[str]:
        return self.call("get_list_of", kind)

    def commit(self) -> Any:
        return self.call("commit")

    def rollback(self) -> Any:
        return self.call("rollback")

    def set_option(self, name: str, value: Any) -> bool:
        return self.call("set_option", name, value)

    def set_fetch_mode(self, mode: FetchMode) -> bool:
        return self.call("set_fetch_mode", mode)

    def disconnect(self) -> bool:
        return self.call("disconnect")

    def affected_rows(self) -> int:
        return self.call("affected_rows")

    # =========================================================================
    # Attributes
    # =========================================================================

    @property
    def last_node(self) -> Optional[str]:
        """Node that served the previous call."""
        return self.dispatcher.get_attribute("last_node")

    @property
    def last_query(self) -> Optional[str]:
        """Last statement executed on the node that served the previous call."""
        return self.dispatcher.get_attribute("last_query")

    def get_attribute(self, name: str) -> Any:
        return self.dispatcher.get_attribute(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.dispatcher.set_attribute(name, value)

    def __enter__(self) -> "QueryRouter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if len(self.registry):
            self.disconnect()


def create_cache_store(settings: CacheSettings) -> Optional[CacheStore]:
    """Build the cache store selected in the settings, if any."""
    if settings.backend == CacheBackend.MEMORY:
        return MemoryCacheStore(lifetime=settings.lifetime)
    if settings.backend == CacheBackend.REDIS:
        return RedisCacheStore(url=settings.url, lifetime=settings.lifetime)
    return None


def build_router(settings: RouterSettings, driver: Optional[Driver] = None) -> QueryRouter:
    """
    Create a router from settings: master first, then every node.

    Args:
        settings: Validated router settings
        driver: Driver override; by default chosen per DSN backend

    Returns:
        A ready QueryRouter
    """
    rng = random.Random(settings.seed) if settings.seed is not None else None
    router = QueryRouter(
        driver=driver,
        cache_store=create_cache_store(settings.cache),
        rng=rng,
    )

    router.attach_master(settings.master.dsn, settings.master.weight)
    for node in settings.nodes:
        router.attach_node(node.dsn, node.weight)

    logger.info(
        "router_ready",
        master=router.registry.master_id,
        nodes=router.registry.node_ids,
        cache=settings.cache.backend.value,
    )
    return router
