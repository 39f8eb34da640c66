"""
Replica Router Dispatcher

Classifies every call, resolves its target node(s) and forwards it.

Routing rules:
- Manipulating statements, master-only operations, MASTER/WRITE mode bits and
  master-only state (auto-commit off) go to the master
- Read operations go to a weighted node; an empty result from a replica is
  re-issued once against the master to hide replication lag
- Broadcast operations run on every node in registration order and stop at
  the first failure without undoing earlier nodes
- affected_rows runs on the node that served the previous call
"""

import copy
from dataclasses import dataclass
from typing import Any, Optional, Sequence
import structlog

from shared.errors import (
    BroadcastPartialFailure,
    NodeUnavailableError,
    UnsupportedOperationError,
)
from shared.models import CallMode, OperationCategory
from shared.sql import is_manipulation
from .cache import CACHE_MISS, CacheGateway
from .node_registry import NodeRegistry
from .router import DispatchState, Router

logger = structlog.get_logger()


@dataclass(frozen=True)
class OperationSpec:
    """
    Dispatch rule for one operation.

    mode_position is the positional index at which a trailing CallMode may
    be passed; operations that have one are cache-eligible. statement_position
    marks the argument holding the SQL text, if any.
    """
    category: OperationCategory
    mode_position: Optional[int] = None
    statement_position: Optional[int] = None

    @property
    def cacheable(self) -> bool:
        return self.mode_position is not None


_READ = OperationCategory.WEIGHTED_READ
_MASTER = OperationCategory.MASTER_ONLY
_BROADCAST = OperationCategory.BROADCAST

OPERATIONS: dict[str, OperationSpec] = {
    # Weighted node
    "get_one": OperationSpec(_READ, mode_position=2, statement_position=0),
    "get_col": OperationSpec(_READ, mode_position=3, statement_position=0),
    "get_all": OperationSpec(_READ, mode_position=3, statement_position=0),
    "get_row": OperationSpec(_READ, mode_position=3, statement_position=0),
    "get_assoc": OperationSpec(_READ, mode_position=5, statement_position=0),
    "limit_query": OperationSpec(_READ, statement_position=0),
    "quote_smart": OperationSpec(_READ),
    "get_tables": OperationSpec(_READ),
    # Master only
    "prepare": OperationSpec(_MASTER),
    "provides": OperationSpec(_MASTER),
    "table_info": OperationSpec(_MASTER),
    "get_option": OperationSpec(_MASTER),
    "get_list_of": OperationSpec(_MASTER),
    "commit": OperationSpec(_MASTER),
    "rollback": OperationSpec(_MASTER),
    # Every node
    "disconnect": OperationSpec(_BROADCAST),
    "set_option": OperationSpec(_BROADCAST),
    "set_fetch_mode": OperationSpec(_BROADCAST),
    # Node of the previous call
    "affected_rows": OperationSpec(OperationCategory.LAST_NODE),
}

# Attributes readable from the master handle
READABLE_ATTRIBUTES = frozenset({"backend", "dsn", "fetch_mode", "options"})

# Attributes assigned on every node handle
WRITABLE_ATTRIBUTES = frozenset({"fetch_mode", "options"})


def is_empty_result(result: Any) -> bool:
    """Check if a forwarded result carries no rows."""
    if result is None:
        return True
    num_rows = getattr(result, "num_rows", None)
    if callable(num_rows):
        return num_rows() == 0
    if isinstance(result, (list, tuple, dict, set)):
        return len(result) == 0
    return False


class Dispatcher:
    """
    Forwards calls to the master and replica connections.

    Holds the dispatch state: the node that served the last call and whether
    master-only mode is active.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        router: Router,
        cache: Optional[CacheGateway] = None
    ):
        self.registry = registry
        self.router = router
        self.cache = cache
        self.state = DispatchState()

    # =========================================================================
    # Statement Execution
    # =========================================================================

    def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        mode: CallMode = CallMode.MASTER
    ) -> Any:
        """
        Execute a statement.

        Manipulating statements always run on the master, as does everything
        while master-only mode is active or when MASTER/WRITE is set. The
        CACHE bit is not honored here.
        """
        self.registry.freeze()
        mode = CallMode(mode)
        if mode & CallMode.CACHE:
            logger.warning("query_cache_mode_ignored", sql=sql)

        category = OperationCategory.WRITE if is_manipulation(sql) else OperationCategory.WEIGHTED_READ
        node_id = self.router.resolve(category, mode, self.state)[0]
        return self._forward_read(node_id, "query", [sql, params])

    def query_master(self, sql: str, params: Sequence[Any] = ()) -> Any:
        """Execute a statement on the master, e.g. to read back fresh writes."""
        self.registry.freeze()
        master_id = self.router.master_id
        result = self._forward(master_id, "query", [sql, params])
        self.state.last_node = master_id
        return result

    def auto_commit(self, on: bool = False) -> Any:
        """
        Toggle auto-commit on the master.

        Turning it off enters master-only mode until it is turned back on.
        The state only changes when the master accepts the toggle.
        """
        self.registry.freeze()
        result = self._forward(self.router.master_id, "auto_commit", [on])

        master_only = not on
        if master_only != self.state.master_only:
            logger.info("master_only_mode_changed", master_only=master_only)
        self.state.master_only = master_only
        return result

    # =========================================================================
    # Generic Dispatch
    # =========================================================================

    def classify(
        self,
        operation: str,
        args: Sequence[Any] = (),
        mode: CallMode = CallMode.MASTER
    ) -> OperationCategory:
        """Routing category of an operation call."""
        spec = OPERATIONS.get(operation)
        if spec is None:
            logger.warning("unsupported_operation", operation=operation)
            raise UnsupportedOperationError(operation)

        if spec.category == _READ:
            position = spec.statement_position
            if (
                mode & CallMode.WRITE
                or position is not None
                and len(args) > position
                and isinstance(args[position], str)
                and is_manipulation(args[position])
            ):
                return OperationCategory.WRITE
        return spec.category

    def dispatch(self, operation: str, *args: Any, mode: Optional[CallMode] = None) -> Any:
        """
        Forward a catalog operation.

        The mode may be given as a keyword or, for cache-eligible operations,
        as the trailing positional argument at the operation's mode position.
        Without a mode the call goes to the master.

        Args:
            operation: Catalog operation name
            *args: Arguments forwarded to the connection
            mode: CallMode bits

        Returns:
            The connection's result (or a cached one)
        """
        spec = OPERATIONS.get(operation)
        if spec is None:
            logger.warning("unsupported_operation", operation=operation)
            raise UnsupportedOperationError(operation)

        self.registry.freeze()
        args_list = list(args)
        if mode is None:
            if spec.mode_position is not None and len(args_list) > spec.mode_position:
                mode = args_list.pop(spec.mode_position)
            else:
                mode = CallMode.MASTER
        mode = CallMode(mode)

        category = self.classify(operation, args_list, mode)
        node_ids = self.router.resolve(category, mode, self.state)

        if category == OperationCategory.BROADCAST:
            return self._broadcast(operation, node_ids, args_list)
        if category == OperationCategory.LAST_NODE:
            return self._forward(node_ids[0], operation, args_list)

        node_id = node_ids[0]
        use_cache = self.cache is not None and spec.cacheable and bool(mode & CallMode.CACHE)
        if use_cache:
            cached = self.cache.lookup(operation, args_list)
            if cached is not CACHE_MISS:
                # A hit still counts as a call routed to the resolved node
                self.state.last_node = node_id
                return cached

        if category == OperationCategory.WEIGHTED_READ:
            result = self._forward_read(node_id, operation, args_list)
        else:
            result = self._forward(node_id, operation, args_list)
            self.state.last_node = node_id

        if use_cache:
            self.cache.populate(operation, args_list, result)
        return result

    # =========================================================================
    # Attributes
    # =========================================================================

    def get_attribute(self, name: str) -> Any:
        """
        Read a connection attribute.

        ``last_node`` and ``last_query`` describe the node that served the
        previous call; everything else is read from the master.
        """
        if name == "last_node":
            return self.state.last_node
        if name == "last_query":
            if self.state.last_node is None:
                return None
            return self.registry.connection(self.state.last_node).last_query
        if name not in READABLE_ATTRIBUTES:
            raise UnsupportedOperationError(name)
        return getattr(self.registry.connection(self.router.master_id), name)

    def set_attribute(self, name: str, value: Any) -> None:
        """Assign a connection attribute on every node."""
        if name not in WRITABLE_ATTRIBUTES:
            raise UnsupportedOperationError(name)
        for node_id in self.registry.node_ids:
            setattr(self.registry.connection(node_id), name, copy.copy(value))

    # =========================================================================
    # Forwarding
    # =========================================================================

    def _forward(self, node_id: str, operation: str, args: Sequence[Any]) -> Any:
        node = self.registry.get(node_id)
        if node.failure is not None:
            logger.warning(
                "node_unavailable",
                node_id=node_id,
                operation=operation,
                error=str(node.failure)
            )
            raise NodeUnavailableError(node_id) from node.failure

        method = getattr(node.connection, operation)
        try:
            return method(*args)
        except ConnectionError as e:
            self.registry.mark_failed(node_id, e)
            raise

    def _forward_read(self, node_id: str, operation: str, args: Sequence[Any]) -> Any:
        """Forward a read; last_node is only updated once a node has answered."""
        result = self._forward(node_id, operation, args)
        self.state.last_node = node_id

        master_id = self.router.master_id
        if node_id != master_id and is_empty_result(result):
            # Replica may not have caught up with a recent write
            logger.info("replica_empty_fallback", node_id=node_id, operation=operation)
            result = self._forward(master_id, operation, args)
            self.state.last_node = master_id
        return result

    def _broadcast(self, operation: str, node_ids: list[str], args: Sequence[Any]) -> bool:
        completed: list[str] = []
        for node_id in node_ids:
            if self.registry.is_failed(node_id):
                logger.warning(
                    "node_unavailable",
                    node_id=node_id,
                    operation=operation,
                    error=str(self.registry.get(node_id).failure)
                )
                continue

            try:
                self._forward(node_id, operation, args)
            except Exception as e:
                logger.warning(
                    "broadcast_failed",
                    operation=operation,
                    node_id=node_id,
                    completed=completed,
                    error=str(e)
                )
                raise BroadcastPartialFailure(operation, node_id, completed) from e
            completed.append(node_id)

        return True
