"""Static task graph describing which agents may run, when, and after whom."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence

from .errors import GraphConfigurationError


class Phase(str, Enum):
    RESEARCH = "research"
    STRUCTURE = "structure"
    GENERATION = "generation"
    QA = "qa"
    ENHANCEMENT = "enhancement"
    FINALIZATION = "finalization"


class ConcurrencyClass(str, Enum):
    SEQUENTIAL = "sequential"
    FAN_OUT = "fan_out"


class TaskComplexity(str, Enum):
    REASONING = "reasoning"
    THROUGHPUT = "throughput"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.RESEARCH,
    Phase.STRUCTURE,
    Phase.GENERATION,
    Phase.QA,
    Phase.ENHANCEMENT,
    Phase.FINALIZATION,
)

# Nodes that omit a concurrency class take the one their phase defaults to.
DEFAULT_CONCURRENCY: Mapping[Phase, ConcurrencyClass] = {Phase.QA: ConcurrencyClass.FAN_OUT}


@dataclass(frozen=True, slots=True)
class TaskNode:
    node_id: str
    phase: Phase
    depends_on: frozenset[str] = field(default_factory=frozenset)
    critical: bool = False
    complexity: TaskComplexity = TaskComplexity.THROUGHPUT
    feature_flag: str | None = None
    concurrency: ConcurrencyClass | None = None

    def __post_init__(self) -> None:
        if self.concurrency is None:
            object.__setattr__(
                self, "concurrency", DEFAULT_CONCURRENCY.get(self.phase, ConcurrencyClass.SEQUENTIAL)
            )


class TaskGraph:
    """Immutable, validated dependency graph over task nodes.

    Nodes are grouped into phases executed in ``PHASE_ORDER``. Inside a phase
    the declaration order is preserved. A phase whose nodes are all
    ``FAN_OUT`` runs them side by side behind a join barrier; a phase may not
    mix concurrency classes.
    """

    def __init__(self, nodes: Sequence[TaskNode]) -> None:
        self._nodes: dict[str, TaskNode] = {}
        for node in nodes:
            if node.node_id in self._nodes:
                raise GraphConfigurationError(f"Duplicate task node: {node.node_id}")
            self._nodes[node.node_id] = node
        self._concurrent = self._concurrent_phases()
        self._order: dict[str, int] = {node_id: index for index, node_id in enumerate(self._nodes)}
        self._validate()

    def _concurrent_phases(self) -> frozenset[Phase]:
        classes: dict[Phase, ConcurrencyClass] = {}
        for node in self._nodes.values():
            seen = classes.setdefault(node.phase, node.concurrency)
            if seen is not node.concurrency:
                raise GraphConfigurationError(
                    f"Phase {node.phase.value} mixes concurrency classes: {node.node_id} is {node.concurrency.value}, "
                    f"earlier nodes are {seen.value}"
                )
        return frozenset(phase for phase, kind in classes.items() if kind is ConcurrencyClass.FAN_OUT)

    def _validate(self) -> None:
        for node in self._nodes.values():
            unknown = sorted(dep for dep in node.depends_on if dep not in self._nodes)
            if unknown:
                raise GraphConfigurationError(f"Node {node.node_id} depends on unknown nodes: {', '.join(unknown)}")
            if node.node_id in node.depends_on:
                raise GraphConfigurationError(f"Node {node.node_id} depends on itself")
        self._check_cycles()
        for node in self._nodes.values():
            for dep_id in node.depends_on:
                dep = self._nodes[dep_id]
                dep_rank = PHASE_ORDER.index(dep.phase)
                node_rank = PHASE_ORDER.index(node.phase)
                if dep_rank > node_rank:
                    raise GraphConfigurationError(
                        f"Node {node.node_id} ({node.phase.value}) depends on later-phase node {dep_id} ({dep.phase.value})"
                    )
                if dep_rank == node_rank:
                    if self.is_concurrent_phase(node.phase):
                        raise GraphConfigurationError(
                            f"Nodes {dep_id} and {node.node_id} share concurrent phase {node.phase.value}"
                        )
                    if self._order[dep_id] > self._order[node.node_id]:
                        raise GraphConfigurationError(
                            f"Node {node.node_id} is declared before its dependency {dep_id}"
                        )

    def _check_cycles(self) -> None:
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(node_id: str, path: list[str]) -> None:
            if node_id in done:
                return
            if node_id in visiting:
                cycle = path[path.index(node_id):] + [node_id]
                raise GraphConfigurationError(f"Cycle detected in task graph: {' -> '.join(cycle)}")
            visiting.add(node_id)
            path.append(node_id)
            for dep in sorted(self._nodes[node_id].depends_on):
                visit(dep, path)
            path.pop()
            visiting.discard(node_id)
            done.add(node_id)

        for node_id in self._nodes:
            visit(node_id, [])

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(self._nodes)

    def node(self, node_id: str) -> TaskNode:
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise KeyError(f"Unknown task node: {node_id}") from exc

    def dependencies_of(self, node_id: str) -> frozenset[str]:
        return self.node(node_id).depends_on

    def is_concurrent_phase(self, phase: Phase) -> bool:
        return phase in self._concurrent

    def nodes_in(self, phase: Phase) -> tuple[TaskNode, ...]:
        return tuple(node for node in self._nodes.values() if node.phase == phase)

    def phases(self) -> tuple[tuple[Phase, tuple[TaskNode, ...]], ...]:
        """Non-empty phases in execution order with their nodes in declaration order."""
        grouped = []
        for phase in PHASE_ORDER:
            members = self.nodes_in(phase)
            if members:
                grouped.append((phase, members))
        return tuple(grouped)

    def descendants_of(self, node_id: str) -> frozenset[str]:
        found: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for candidate in self._nodes.values():
                if current in candidate.depends_on and candidate.node_id not in found:
                    found.add(candidate.node_id)
                    frontier.append(candidate.node_id)
        return frozenset(found)

    def describe(self) -> Mapping[str, list[str]]:
        return {node_id: sorted(node.depends_on) for node_id, node in self._nodes.items()}


RESEARCHER = "researcher"
STRUCTURER = "structurer"
SLIDEWRITER = "slidewriter"
FACT_CHECKER = "fact-checker"
ACCESSIBILITY_LINTER = "accessibility-linter"
READABILITY_ANALYZER = "readability-analyzer"
COPY_TIGHTENER = "copy-tightener"
DATA_VIZ_PLANNER = "data-viz-planner"
MEDIA_FINDER = "media-finder"
SPEAKER_NOTES = "speaker-notes-generator"
LIVE_WIDGET_PLANNER = "live-widget-planner"
EXECUTIVE_SUMMARY = "executive-summary"
AUDIENCE_ADAPTER = "audience-adapter"


def default_task_graph() -> TaskGraph:
    writer = frozenset({SLIDEWRITER})
    return TaskGraph(
        [
            TaskNode(RESEARCHER, Phase.RESEARCH, critical=True, complexity=TaskComplexity.REASONING),
            TaskNode(
                STRUCTURER,
                Phase.STRUCTURE,
                frozenset({RESEARCHER}),
                critical=True,
                complexity=TaskComplexity.REASONING,
            ),
            TaskNode(SLIDEWRITER, Phase.GENERATION, frozenset({RESEARCHER, STRUCTURER}), critical=True),
            TaskNode(FACT_CHECKER, Phase.QA, frozenset({SLIDEWRITER, RESEARCHER})),
            TaskNode(ACCESSIBILITY_LINTER, Phase.QA, writer),
            TaskNode(READABILITY_ANALYZER, Phase.QA, writer),
            TaskNode(COPY_TIGHTENER, Phase.QA, writer),
            TaskNode(DATA_VIZ_PLANNER, Phase.QA, writer),
            TaskNode(MEDIA_FINDER, Phase.QA, writer),
            TaskNode(SPEAKER_NOTES, Phase.QA, writer),
            TaskNode(
                LIVE_WIDGET_PLANNER,
                Phase.ENHANCEMENT,
                frozenset({STRUCTURER}),
                feature_flag="enable_live_data",
            ),
            TaskNode(
                EXECUTIVE_SUMMARY,
                Phase.FINALIZATION,
                frozenset({SLIDEWRITER, STRUCTURER, RESEARCHER}),
                complexity=TaskComplexity.REASONING,
                feature_flag="wants_executive_summary",
            ),
            TaskNode(
                AUDIENCE_ADAPTER,
                Phase.FINALIZATION,
                frozenset({SLIDEWRITER, STRUCTURER}),
                complexity=TaskComplexity.REASONING,
                feature_flag="wants_audience_adaptation",
            ),
        ]
    )
