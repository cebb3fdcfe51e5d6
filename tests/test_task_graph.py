from __future__ import annotations

import pytest

from slideforge.orchestration.errors import GraphConfigurationError
from slideforge.orchestration.graph import (
    ACCESSIBILITY_LINTER,
    AUDIENCE_ADAPTER,
    FACT_CHECKER,
    RESEARCHER,
    SLIDEWRITER,
    STRUCTURER,
    ConcurrencyClass,
    Phase,
    TaskGraph,
    TaskNode,
    default_task_graph,
)


def test_default_graph_orders_phases_and_preserves_declaration_order() -> None:
    graph = default_task_graph()
    phases = [phase for phase, _ in graph.phases()]
    assert phases == [
        Phase.RESEARCH,
        Phase.STRUCTURE,
        Phase.GENERATION,
        Phase.QA,
        Phase.ENHANCEMENT,
        Phase.FINALIZATION,
    ]
    qa_nodes = [node.node_id for node in graph.nodes_in(Phase.QA)]
    assert qa_nodes[0] == FACT_CHECKER
    assert len(qa_nodes) == 7
    assert graph.is_concurrent_phase(Phase.QA)
    assert not graph.is_concurrent_phase(Phase.GENERATION)


def test_default_graph_dependencies() -> None:
    graph = default_task_graph()
    assert graph.dependencies_of(STRUCTURER) == frozenset({RESEARCHER})
    assert graph.dependencies_of(SLIDEWRITER) == frozenset({RESEARCHER, STRUCTURER})
    assert graph.dependencies_of(ACCESSIBILITY_LINTER) == frozenset({SLIDEWRITER})
    assert graph.node(RESEARCHER).critical
    assert not graph.node(AUDIENCE_ADAPTER).critical
    assert graph.node(AUDIENCE_ADAPTER).feature_flag == "wants_audience_adaptation"


def test_descendants_cover_everything_downstream_of_research() -> None:
    graph = default_task_graph()
    descendants = graph.descendants_of(RESEARCHER)
    assert descendants == frozenset(graph.node_ids) - {RESEARCHER}


def test_cycle_is_rejected_at_construction() -> None:
    nodes = [
        TaskNode("a", Phase.RESEARCH, frozenset({"b"})),
        TaskNode("b", Phase.RESEARCH, frozenset({"a"})),
    ]
    with pytest.raises(GraphConfigurationError, match="Cycle detected in task graph"):
        TaskGraph(nodes)


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="unknown nodes: ghost"):
        TaskGraph([TaskNode("a", Phase.RESEARCH, frozenset({"ghost"}))])


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="depends on itself"):
        TaskGraph([TaskNode("a", Phase.RESEARCH, frozenset({"a"}))])


def test_duplicate_node_is_rejected() -> None:
    with pytest.raises(GraphConfigurationError, match="Duplicate task node"):
        TaskGraph([TaskNode("a", Phase.RESEARCH), TaskNode("a", Phase.QA)])


def test_dependency_on_later_phase_is_rejected() -> None:
    nodes = [
        TaskNode("writer", Phase.GENERATION, frozenset({"checker"})),
        TaskNode("checker", Phase.QA),
    ]
    with pytest.raises(GraphConfigurationError, match="later-phase"):
        TaskGraph(nodes)


def test_dependency_inside_concurrent_phase_is_rejected() -> None:
    nodes = [
        TaskNode("one", Phase.QA),
        TaskNode("two", Phase.QA, frozenset({"one"})),
    ]
    with pytest.raises(GraphConfigurationError, match="share concurrent phase"):
        TaskGraph(nodes)


def test_sequential_phase_requires_dependencies_declared_first() -> None:
    nodes = [
        TaskNode("second", Phase.GENERATION, frozenset({"first"})),
        TaskNode("first", Phase.GENERATION),
    ]
    with pytest.raises(GraphConfigurationError, match="declared before its dependency"):
        TaskGraph(nodes)


def test_unknown_node_lookup_raises_key_error() -> None:
    with pytest.raises(KeyError):
        default_task_graph().node("nope")


def test_nodes_carry_their_concurrency_class() -> None:
    graph = default_task_graph()
    assert graph.node(ACCESSIBILITY_LINTER).concurrency is ConcurrencyClass.FAN_OUT
    assert graph.node(SLIDEWRITER).concurrency is ConcurrencyClass.SEQUENTIAL


def test_phase_concurrency_follows_its_nodes() -> None:
    graph = TaskGraph(
        [
            TaskNode("writer", Phase.GENERATION, concurrency=ConcurrencyClass.FAN_OUT),
            TaskNode("lint", Phase.QA, frozenset({"writer"}), concurrency=ConcurrencyClass.SEQUENTIAL),
        ]
    )
    assert graph.is_concurrent_phase(Phase.GENERATION)
    assert not graph.is_concurrent_phase(Phase.QA)


def test_phase_mixing_concurrency_classes_is_rejected() -> None:
    nodes = [
        TaskNode("lint", Phase.QA),
        TaskNode("read", Phase.QA, concurrency=ConcurrencyClass.SEQUENTIAL),
    ]
    with pytest.raises(GraphConfigurationError, match="mixes concurrency classes"):
        TaskGraph(nodes)
