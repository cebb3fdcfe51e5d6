from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

from ..core.config import BackendSettings
from ..core.logging import get_logger
from ..core.metrics import record_routing_failure
from ..schemas.pipeline import RoutingPolicy
from ..services.llm import ModelBackend
from .errors import RoutingError
from .graph import TaskComplexity, TaskGraph, TaskNode

logger = get_logger(name=__name__)

TIER_RANK = {"fast": 1, "balanced": 2, "high": 3}
SPEED_RANK = {"slow": 1, "medium": 2, "fast": 3}


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    backend_id: str
    tier: str
    speed: str
    backend: ModelBackend = field(compare=False, repr=False)
    cost_per_1k_tokens: float = 0.0
    local: bool = False
    tasks: frozenset[str] = field(default_factory=frozenset)
    max_tokens: int = 4000
    temperature: float = 0.7

    @classmethod
    def from_settings(cls, settings: BackendSettings, backend: ModelBackend) -> "BackendDescriptor":
        return cls(
            backend_id=settings.backend_id,
            tier=settings.tier,
            speed=settings.speed,
            backend=backend,
            cost_per_1k_tokens=settings.cost_per_1k_tokens,
            local=settings.local,
            tasks=frozenset(settings.tasks),
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )

    def serves(self, node_id: str) -> bool:
        return not self.tasks or node_id in self.tasks

    @property
    def tier_rank(self) -> int:
        return TIER_RANK[self.tier]

    @property
    def speed_rank(self) -> int:
        return SPEED_RANK[self.speed]


_Ranked = tuple[int, BackendDescriptor]


def _by_quality(item: _Ranked) -> tuple:
    index, descriptor = item
    return (-descriptor.tier_rank, index)


def _by_speed(item: _Ranked) -> tuple:
    index, descriptor = item
    return (-descriptor.speed_rank, index)


def _by_cost(item: _Ranked) -> tuple:
    index, descriptor = item
    return (descriptor.cost_per_1k_tokens, index)


class ModelRouter:
    """Resolve (task node, routing policy) pairs to a registered backend.

    Resolution is a pure function of the descriptor tuple and the node's
    complexity class. Ties always go to the backend declared first.
    """

    def __init__(self, descriptors: Sequence[BackendDescriptor]) -> None:
        seen: set[str] = set()
        for descriptor in descriptors:
            if descriptor.backend_id in seen:
                raise ValueError(f"Duplicate backend descriptor: {descriptor.backend_id}")
            seen.add(descriptor.backend_id)
        self._descriptors: tuple[BackendDescriptor, ...] = tuple(descriptors)

    @property
    def descriptors(self) -> tuple[BackendDescriptor, ...]:
        return self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def _candidates(self, node: TaskNode, policy: RoutingPolicy) -> list[_Ranked]:
        ranked = [
            (index, descriptor)
            for index, descriptor in enumerate(self._descriptors)
            if descriptor.serves(node.node_id)
        ]
        if policy is RoutingPolicy.LOCAL_ONLY:
            ranked = [item for item in ranked if item[1].local]
        return ranked

    @staticmethod
    def _rule(node: TaskNode, policy: RoutingPolicy) -> Callable[[_Ranked], tuple]:
        if policy is RoutingPolicy.QUALITY:
            return _by_quality
        if policy is RoutingPolicy.SPEED:
            return _by_speed
        if policy is RoutingPolicy.COST:
            return _by_cost
        # balanced and local-only share the complexity-based split
        if node.complexity is TaskComplexity.REASONING:
            return _by_quality
        return _by_speed

    def resolve(self, node: TaskNode, policy: RoutingPolicy) -> BackendDescriptor:
        candidates = self._candidates(node, policy)
        if not candidates:
            qualifier = "local-eligible " if policy is RoutingPolicy.LOCAL_ONLY else ""
            raise RoutingError(
                f"No {qualifier}backend can serve node {node.node_id} under policy {policy.value}",
                node_id=node.node_id,
                policy=policy.value,
            )
        return min(candidates, key=self._rule(node, policy))[1]

    def fallback(
        self,
        node: TaskNode,
        policy: RoutingPolicy,
        primary: BackendDescriptor,
    ) -> BackendDescriptor | None:
        """Pick a backend of equal-or-lower capability or equal-or-faster speed than ``primary``."""
        candidates = [
            item
            for item in self._candidates(node, policy)
            if item[1].backend_id != primary.backend_id
            and (item[1].tier_rank <= primary.tier_rank or item[1].speed_rank >= primary.speed_rank)
        ]
        if not candidates:
            return None
        return min(candidates, key=self._rule(node, policy))[1]

    def preflight(
        self,
        graph: TaskGraph,
        policy: RoutingPolicy,
        node_ids: Iterable[str],
    ) -> dict[str, BackendDescriptor]:
        routes: dict[str, BackendDescriptor] = {}
        for node_id in node_ids:
            node = graph.node(node_id)
            try:
                routes[node_id] = self.resolve(node, policy)
            except RoutingError:
                record_routing_failure(policy=policy.value, node=node_id)
                logger.error("routing_failed", node=node_id, policy=policy.value, backends=len(self._descriptors))
                raise
        return routes

    def policy_table(self, graph: TaskGraph) -> Mapping[str, Mapping[str, str]]:
        table: dict[str, dict[str, str]] = {}
        for policy in RoutingPolicy:
            row: dict[str, str] = {}
            for node_id in graph.node_ids:
                try:
                    row[node_id] = self.resolve(graph.node(node_id), policy).backend_id
                except RoutingError:
                    row[node_id] = "unroutable"
            table[policy.value] = row
        return table
