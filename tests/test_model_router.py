from __future__ import annotations

import pytest

from slideforge.orchestration.errors import RoutingError
from slideforge.orchestration.graph import (
    ACCESSIBILITY_LINTER,
    RESEARCHER,
    SLIDEWRITER,
    STRUCTURER,
    default_task_graph,
)
from slideforge.orchestration.routing import ModelRouter
from slideforge.schemas.pipeline import RoutingPolicy
from tests.helpers.stubs import descriptor


def _catalogue() -> ModelRouter:
    return ModelRouter(
        [
            descriptor("remote-high", tier="high", speed="medium", cost=0.03),
            descriptor("remote-fast", tier="fast", speed="fast", cost=0.002),
            descriptor("local-high", tier="high", speed="slow", local=True),
            descriptor("local-mid", tier="balanced", speed="medium", local=True),
            descriptor("local-fast", tier="fast", speed="fast", local=True),
        ]
    )


def test_quality_prefers_highest_tier_with_declaration_tiebreak() -> None:
    graph = default_task_graph()
    router = _catalogue()
    assert router.resolve(graph.node(SLIDEWRITER), RoutingPolicy.QUALITY).backend_id == "remote-high"


def test_speed_prefers_fastest_backend() -> None:
    graph = default_task_graph()
    router = _catalogue()
    assert router.resolve(graph.node(RESEARCHER), RoutingPolicy.SPEED).backend_id == "remote-fast"


def test_cost_prefers_free_backends() -> None:
    graph = default_task_graph()
    router = _catalogue()
    assert router.resolve(graph.node(RESEARCHER), RoutingPolicy.COST).backend_id == "local-high"


def test_balanced_splits_on_task_complexity() -> None:
    graph = default_task_graph()
    router = _catalogue()
    assert router.resolve(graph.node(STRUCTURER), RoutingPolicy.BALANCED).backend_id == "remote-high"
    assert router.resolve(graph.node(ACCESSIBILITY_LINTER), RoutingPolicy.BALANCED).backend_id == "remote-fast"


def test_local_only_never_returns_remote_backends() -> None:
    graph = default_task_graph()
    router = _catalogue()
    for node_id in graph.node_ids:
        chosen = router.resolve(graph.node(node_id), RoutingPolicy.LOCAL_ONLY)
        assert chosen.local
    assert router.resolve(graph.node(RESEARCHER), RoutingPolicy.LOCAL_ONLY).backend_id == "local-high"
    assert router.resolve(graph.node(SLIDEWRITER), RoutingPolicy.LOCAL_ONLY).backend_id == "local-fast"


def test_local_only_without_local_backend_fails() -> None:
    graph = default_task_graph()
    router = ModelRouter([descriptor("remote", tier="high")])
    with pytest.raises(RoutingError) as exc_info:
        router.resolve(graph.node(STRUCTURER), RoutingPolicy.LOCAL_ONLY)
    assert exc_info.value.node_id == STRUCTURER
    assert exc_info.value.policy == "local-only"


def test_resolution_is_deterministic() -> None:
    graph = default_task_graph()
    router = _catalogue()
    for policy in RoutingPolicy:
        first = [router.resolve(graph.node(node_id), policy).backend_id for node_id in graph.node_ids]
        second = [router.resolve(graph.node(node_id), policy).backend_id for node_id in graph.node_ids]
        assert first == second


def test_task_restricted_backends_only_serve_their_nodes() -> None:
    graph = default_task_graph()
    router = ModelRouter(
        [
            descriptor("writer-only", tier="high", tasks=[SLIDEWRITER]),
            descriptor("general", tier="fast"),
        ]
    )
    assert router.resolve(graph.node(SLIDEWRITER), RoutingPolicy.QUALITY).backend_id == "writer-only"
    assert router.resolve(graph.node(RESEARCHER), RoutingPolicy.QUALITY).backend_id == "general"


def test_fallback_picks_lower_or_faster_backend() -> None:
    graph = default_task_graph()
    router = _catalogue()
    node = graph.node(RESEARCHER)
    primary = router.resolve(node, RoutingPolicy.QUALITY)
    backup = router.fallback(node, RoutingPolicy.QUALITY, primary)
    assert backup is not None
    assert backup.backend_id == "local-high"


def test_fallback_returns_none_when_no_alternative() -> None:
    graph = default_task_graph()
    only = descriptor("only", tier="high")
    router = ModelRouter([only])
    assert router.fallback(graph.node(RESEARCHER), RoutingPolicy.QUALITY, only) is None


def test_preflight_routes_every_requested_node() -> None:
    graph = default_task_graph()
    router = _catalogue()
    routes = router.preflight(graph, RoutingPolicy.SPEED, graph.node_ids)
    assert set(routes) == set(graph.node_ids)


def test_policy_table_marks_unroutable_nodes() -> None:
    graph = default_task_graph()
    router = ModelRouter([descriptor("remote", tier="high")])
    table = router.policy_table(graph)
    assert table["quality"][RESEARCHER] == "remote"
    assert table["local-only"][RESEARCHER] == "unroutable"


def test_duplicate_descriptor_ids_are_rejected() -> None:
    with pytest.raises(ValueError):
        ModelRouter([descriptor("dup"), descriptor("dup")])
