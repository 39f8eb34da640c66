"""
Replica Router Node Registry

Manages the master and replica connections and their normalized weights.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional, Union
import structlog

from shared.errors import ConfigurationError
from shared.models import DSN
from .database import Connection, Driver, get_driver

logger = structlog.get_logger()

Target = Union[str, dict[str, Any], DSN]

# Normalized weights are expressed on this scale
WEIGHT_SCALE = 100


@dataclass
class RegisteredNode:
    """Runtime state of an attached master or replica."""
    node_id: str
    dsn: DSN
    connection: Connection
    weight: float
    bucket: int = 0
    failure: Optional[BaseException] = None


def validate_weight(weight: Any) -> float:
    """
    Check that a weight is a positive number.

    Numeric strings are accepted; booleans are not.

    Raises:
        ConfigurationError: If the weight is non-numeric or not positive
    """
    if isinstance(weight, bool):
        raise ConfigurationError("Weight must be numeric")
    try:
        value = float(weight)
    except (TypeError, ValueError):
        raise ConfigurationError("Weight must be numeric") from None

    if not math.isfinite(value):
        raise ConfigurationError("Weight must be numeric")
    if value <= 0:
        raise ConfigurationError("Weight must be greater than zero")
    return value


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class NodeRegistry:
    """
    Registry of the master and replica nodes.

    The master must be attached before any replica. Each successful attach
    recomputes the normalized weight table from scratch. Attaching is a setup
    step: once frozen, the registry rejects further attaches.
    """

    def __init__(self, driver: Optional[Driver] = None):
        self._driver = driver
        self._master_id: Optional[str] = None
        self._nodes: dict[str, RegisteredNode] = {}
        self._normalized: dict[int, list[str]] = {}
        self._frozen = False

    @property
    def master_id(self) -> Optional[str]:
        """Identifier of the master node."""
        return self._master_id

    @property
    def node_ids(self) -> list[str]:
        """All node identifiers in registration order."""
        return list(self._nodes)

    @property
    def weights(self) -> dict[str, float]:
        """Raw weights keyed by node ID."""
        return {node_id: node.weight for node_id, node in self._nodes.items()}

    @property
    def normalized(self) -> dict[int, list[str]]:
        """Threshold -> node IDs, in ascending threshold order."""
        return {threshold: list(ids) for threshold, ids in self._normalized.items()}

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str) -> Optional[RegisteredNode]:
        """Get a registered node by ID."""
        return self._nodes.get(node_id)

    def connection(self, node_id: str) -> Connection:
        """Get the open connection of a registered node."""
        node = self._nodes.get(node_id)
        if node is None:
            raise KeyError(f"Unknown node: {node_id}")
        return node.connection

    # =========================================================================
    # Attaching
    # =========================================================================

    def attach_master(self, target: Target, weight: Any) -> str:
        """
        Attach the master node.

        The master also takes part in weighted read selection with the given
        weight.

        Args:
            target: DSN string, mapping, or parsed DSN
            weight: Relative read capacity

        Returns:
            The master node ID
        """
        value = validate_weight(weight)
        dsn = self._parse(target)

        if self._master_id is not None:
            if self._master_id == dsn.hostspec:
                return self._master_id
            raise ConfigurationError(
                f"Master already attached as '{self._master_id}'"
            )

        self._master_id = dsn.hostspec
        try:
            self.attach_node(dsn, value)
        except Exception:
            self._master_id = None
            raise

        logger.info("master_attached", node_id=self._master_id)
        return self._master_id

    def attach_node(self, target: Target, weight: Any) -> str:
        """
        Attach a replica node.

        Re-attaching an already registered node is a no-op. Connection
        failures from the driver propagate unchanged and leave the registry
        as it was.

        Args:
            target: DSN string, mapping, or parsed DSN
            weight: Relative read capacity

        Returns:
            The node ID
        """
        if self._frozen:
            raise ConfigurationError("Registry is frozen; attach nodes during setup")
        if self._master_id is None:
            raise ConfigurationError("You must attach a master first")

        value = validate_weight(weight)
        dsn = self._parse(target)
        node_id = dsn.hostspec

        if node_id in self._nodes:
            logger.debug("node_already_attached", node_id=node_id)
            return node_id

        driver = self._driver or get_driver(dsn.backend)
        try:
            connection = driver.connect(dsn)
        except Exception as e:
            logger.warning("node_attach_failed", node_id=node_id, error=str(e))
            raise

        self._nodes[node_id] = RegisteredNode(
            node_id=node_id,
            dsn=dsn,
            connection=connection,
            weight=value,
        )
        self.normalize()

        logger.info("node_attached", node_id=node_id, weight=value)
        return node_id

    def freeze(self) -> None:
        """Reject further attaches."""
        self._frozen = True

    @staticmethod
    def _parse(target: Target) -> DSN:
        try:
            return DSN.parse(target)
        except ValueError as e:
            raise ConfigurationError(f"Invalid DSN: {e}") from e

    # =========================================================================
    # Weights
    # =========================================================================

    def normalize(self) -> dict[int, list[str]]:
        """
        Rebuild the normalized weight table.

        Each node's bucket is its rounded share of the total weight on a
        0-100 scale. Nodes with the same share end up in the same bucket.
        """
        total = sum(node.weight for node in self._nodes.values())

        buckets: dict[int, list[str]] = {}
        for node in self._nodes.values():
            node.bucket = round_half_up(node.weight / total * WEIGHT_SCALE)
            buckets.setdefault(node.bucket, []).append(node.node_id)

        self._normalized = dict(sorted(buckets.items()))

        logger.debug("weights_normalized", table=self._normalized)
        return self.normalized

    # =========================================================================
    # Failure State
    # =========================================================================

    def mark_failed(self, node_id: str, error: BaseException) -> None:
        """Put a node into a persistent error state."""
        node = self._nodes.get(node_id)
        if node is not None:
            node.failure = error
            logger.warning("node_marked_failed", node_id=node_id, error=str(error))

    def is_failed(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        return node is not None and node.failure is not None
