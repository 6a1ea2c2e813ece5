import abc
import itertools
import logging
import threading
from typing import Sequence

from storage_gateway.exceptions import NoAvailableNodesError
from storage_gateway.models import BackendType, StorageNode

logger = logging.getLogger(__name__)


class SelectionStrategy(abc.ABC):
    name: str

    @abc.abstractmethod
    def choose(self, candidates: Sequence[StorageNode]) -> StorageNode:
        """candidates is never empty."""


class LeastUsedStrategy(SelectionStrategy):
    name = "least_used"

    def choose(self, candidates: Sequence[StorageNode]) -> StorageNode:
        # при равенстве - по node_id, чтобы выбор был детерминированным
        return min(candidates, key=lambda n: (n.used_capacity_percent, n.node_id))


class RoundRobinStrategy(SelectionStrategy):
    name = "round_robin"

    def __init__(self):
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def choose(self, candidates: Sequence[StorageNode]) -> StorageNode:
        with self._lock:
            index = next(self._counter)
        return candidates[index % len(candidates)]


STRATEGIES = {
    LeastUsedStrategy.name: LeastUsedStrategy,
    RoundRobinStrategy.name: RoundRobinStrategy,
}


def create_strategy(name: str) -> SelectionStrategy:
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown selection strategy: {name}") from None


class NodeSelector:
    def __init__(self, strategy: SelectionStrategy | None = None):
        self._strategy = strategy or LeastUsedStrategy()

    @property
    def strategy(self) -> SelectionStrategy:
        return self._strategy

    def select(self, candidates: Sequence[StorageNode], preferred_type: BackendType | None = None) -> StorageNode:
        eligible = [
            n for n in candidates
            if n.is_available and (preferred_type is None or n.backend_type == preferred_type)
        ]
        if not eligible:
            wanted = preferred_type.value if preferred_type else "any"
            raise NoAvailableNodesError(f"No available storage nodes (backend: {wanted})")
        eligible.sort(key=lambda n: n.node_id)
        node = self._strategy.choose(eligible)
        logger.info(
            "Selected storage node %s (%s, %.1f%% used) via %s",
            node.node_id, node.backend_type.value, node.used_capacity_percent, self._strategy.name,
        )
        return node
