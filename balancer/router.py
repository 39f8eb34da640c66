"""
Replica Router Node Selection

Turns a call classification into the node(s) that should serve it.
"""

import random
from dataclasses import dataclass
from typing import Optional
import structlog

from shared.errors import ConfigurationError, DispatchStateError
from shared.models import CallMode, OperationCategory
from .node_registry import NodeRegistry

logger = structlog.get_logger()

# Mode bits that pin a call to the master
MASTER_BITS = CallMode.MASTER | CallMode.WRITE


@dataclass
class DispatchState:
    """Routing state carried between dispatched calls."""
    last_node: Optional[str] = None
    master_only: bool = False


class Router:
    """
    Resolves routing categories to node IDs.

    Weighted selection lays the normalized buckets end to end, each bucket
    spanning its share times its member count, and draws a position in that
    range. Nodes whose share rounds to zero are never picked.
    """

    def __init__(self, registry: NodeRegistry, rng: Optional[random.Random] = None):
        self.registry = registry
        self._rng = rng or random.Random()

    def pick_weighted_node(self) -> str:
        """
        Select a node by weight.

        Each bucket carries share x member count of the draw range, so every
        node is picked in proportion to its own rounded share.

        Returns:
            The selected node ID
        """
        table = self.registry.normalized
        if not table:
            raise ConfigurationError("No nodes attached")

        total = sum(threshold * len(node_ids) for threshold, node_ids in table.items())
        draw = self._rng.randint(0, total - 1)

        start = 0
        for threshold, node_ids in table.items():
            end = start + threshold * len(node_ids)
            if draw < end:
                node_id = node_ids[(draw - start) // threshold]
                break
            start = end

        logger.debug("weighted_node_selected", node_id=node_id, draw=draw)
        return node_id

    def resolve(
        self,
        category: OperationCategory,
        mode: CallMode,
        state: DispatchState
    ) -> list[str]:
        """
        Resolve the target node(s) of a call.

        Args:
            category: Routing category of the operation
            mode: Mode bits supplied with the call
            state: Current dispatch state

        Returns:
            Node IDs to forward to, in call order
        """
        if category == OperationCategory.BROADCAST:
            return self.registry.node_ids

        if category == OperationCategory.LAST_NODE:
            if state.last_node is None:
                raise DispatchStateError("No previous call has selected a node yet")
            return [state.last_node]

        if (
            category in (OperationCategory.WRITE, OperationCategory.MASTER_ONLY)
            or state.master_only
            or mode & MASTER_BITS
        ):
            return [self.master_id]

        return [self.pick_weighted_node()]

    @property
    def master_id(self) -> str:
        master_id = self.registry.master_id
        if master_id is None:
            raise ConfigurationError("You must attach a master first")
        return master_id
