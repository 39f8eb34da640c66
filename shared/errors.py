"""
Replica Router Errors

Exception hierarchy raised by the registry, router, dispatcher and cache.
"""

from typing import Any, Optional


class RouterError(Exception):
    """Base class for all replica router errors."""
    pass


class ConfigurationError(RouterError):
    """Invalid setup: missing master, bad weight, or attach after setup."""
    pass


class UnsupportedOperationError(RouterError):
    """A dispatched operation or attribute is not in the known catalog."""

    def __init__(self, operation: str):
        super().__init__(f"Operation '{operation}' is not supported by the router")
        self.operation = operation


class DispatchStateError(RouterError):
    """A node-scoped call was made before any call recorded a node."""
    pass


class NodeUnavailableError(RouterError):
    """A call targeted a node that is in a persistent error state."""

    def __init__(self, node_id: str):
        super().__init__(f"Node '{node_id}' is unavailable")
        self.node_id = node_id


class BroadcastPartialFailure(RouterError):
    """
    A broadcast stopped at the first failing node.

    Nodes listed in ``completed`` already applied the call; they are not
    rolled back. Nodes after ``node_id`` were never called.
    """

    def __init__(self, operation: str, node_id: str, completed: list[str]):
        super().__init__(
            f"Broadcast of '{operation}' failed on node '{node_id}' "
            f"after {len(completed)} node(s) completed"
        )
        self.operation = operation
        self.node_id = node_id
        self.completed = completed


class CacheError(RouterError):
    """The cache store failed during lookup or population."""

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        # Set when population failed after a successful forward
        self.result = result


class DriverConnectionError(RouterError, ConnectionError):
    """The bundled driver could not open a connection."""
    pass
