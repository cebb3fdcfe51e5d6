from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import pytest

from slideforge.agents.registry import default_registry
from slideforge.orchestration.errors import (
    AgentInputError,
    BackendError,
    PipelineAbortedError,
    PipelineCancelledError,
    RoutingError,
)
from slideforge.orchestration.executor import DagExecutor, RequestScope
from slideforge.orchestration.graph import (
    ACCESSIBILITY_LINTER,
    AUDIENCE_ADAPTER,
    COPY_TIGHTENER,
    EXECUTIVE_SUMMARY,
    FACT_CHECKER,
    LIVE_WIDGET_PLANNER,
    READABILITY_ANALYZER,
    RESEARCHER,
    SLIDEWRITER,
    STRUCTURER,
    Phase,
    default_task_graph,
)
from slideforge.orchestration.quality import build_quality_report
from slideforge.orchestration.routing import BackendDescriptor, ModelRouter
from slideforge.orchestration.state import NodeStatus
from slideforge.schemas.agents import Severity
from slideforge.schemas.pipeline import RoutingPolicy
from tests.helpers.stubs import (
    QA_JSON,
    RESEARCH_JSON,
    STRUCTURE_JSON,
    ScriptedBackend,
    Sleep,
    default_script,
    descriptor,
    fast_execution,
    make_request,
)

CORE = [RESEARCHER, STRUCTURER, SLIDEWRITER]


def _executor(descriptors: Sequence[BackendDescriptor], **execution: Any) -> DagExecutor:
    return DagExecutor(
        graph=default_task_graph(),
        registry=default_registry(),
        router=ModelRouter(descriptors),
        settings=fast_execution(**execution),
    )


@pytest.mark.asyncio
async def test_speed_policy_runs_every_node_in_declared_order() -> None:
    backend = ScriptedBackend(default_script())
    executor = _executor([descriptor("stub", tier="fast", speed="fast", backend=backend)])

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)

    graph = executor.graph
    qa_nodes = {node.node_id for node in graph.nodes_in(Phase.QA)}
    assert outcome.execution_order[:3] == CORE
    assert set(outcome.execution_order[3:]) == qa_nodes
    for node_id in CORE + sorted(qa_nodes):
        assert outcome.records[node_id].status is NodeStatus.SUCCEEDED
    assert outcome.nodes_with(NodeStatus.SKIPPED) == [LIVE_WIDGET_PLANNER, EXECUTIVE_SUMMARY, AUDIENCE_ADAPTER]

    report = build_quality_report(graph, outcome.records, outcome.context)
    assert report.unavailable_validators == []
    assert report.high_severity_count == 0


@pytest.mark.asyncio
async def test_nodes_start_only_after_their_dependencies_finish() -> None:
    backend = ScriptedBackend(default_script())
    executor = _executor([descriptor("stub", backend=backend)])

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.BALANCED)

    for node_id in outcome.execution_order:
        record = outcome.records[node_id]
        for dep_id in executor.graph.dependencies_of(node_id):
            dep = outcome.records[dep_id]
            assert dep.status is NodeStatus.SUCCEEDED
            assert dep.finished_at is not None and record.started_at is not None
            assert dep.finished_at <= record.started_at


@pytest.mark.asyncio
async def test_rerun_produces_identical_execution_shape() -> None:
    first = await _executor([descriptor("stub", backend=ScriptedBackend(default_script()))]).execute(
        make_request(), policy=RoutingPolicy.SPEED
    )
    second = await _executor([descriptor("stub", backend=ScriptedBackend(default_script()))]).execute(
        make_request(), policy=RoutingPolicy.SPEED
    )
    assert first.execution_order[:3] == second.execution_order[:3]
    assert set(first.execution_order) == set(second.execution_order)
    assert {k: r.status for k, r in first.records.items()} == {k: r.status for k, r in second.records.items()}


@pytest.mark.asyncio
async def test_researcher_recovers_on_third_attempt_without_fallback() -> None:
    primary = ScriptedBackend(
        default_script(researcher=[BackendError("overloaded"), BackendError("overloaded"), RESEARCH_JSON])
    )
    secondary = ScriptedBackend(default_script())
    executor = _executor(
        [
            descriptor("primary", tier="high", speed="medium", backend=primary),
            descriptor("secondary", tier="fast", speed="fast", backend=secondary),
        ]
    )

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.QUALITY)

    record = outcome.records[RESEARCHER]
    assert record.status is NodeStatus.SUCCEEDED
    assert record.retries == 2
    assert not record.fallback_used
    assert record.backend_id == "primary"
    assert secondary.calls_for(RESEARCHER) == 0
    assert record.to_report().retries == 2


@pytest.mark.asyncio
async def test_researcher_failing_everywhere_aborts_the_request() -> None:
    primary = ScriptedBackend(default_script(researcher=[BackendError("down")]))
    backup = ScriptedBackend(default_script(researcher=[BackendError("down too")]))
    executor = _executor(
        [
            descriptor("primary", tier="high", speed="medium", backend=primary),
            descriptor("backup", tier="fast", speed="fast", backend=backup),
        ]
    )

    with pytest.raises(PipelineAbortedError) as exc_info:
        await executor.execute(make_request(), policy=RoutingPolicy.QUALITY)

    records = exc_info.value.records
    assert exc_info.value.node_id == RESEARCHER
    assert records[RESEARCHER].status is NodeStatus.FAILED
    assert records[RESEARCHER].fallback_used
    assert len(records[RESEARCHER].attempts) == 4
    for node_id, record in records.items():
        if node_id == RESEARCHER:
            continue
        assert record.status in {NodeStatus.ABORTED, NodeStatus.SKIPPED}
        assert record.started_at is None
    assert primary.tasks() == [RESEARCHER] * 3
    assert backup.tasks() == [RESEARCHER]


@pytest.mark.asyncio
async def test_fallback_backend_rescues_a_node() -> None:
    primary = ScriptedBackend(default_script(structurer=[BackendError("down")]))
    backup = ScriptedBackend(default_script())
    executor = _executor(
        [
            descriptor("primary", tier="high", speed="medium", backend=primary),
            descriptor("backup", tier="fast", speed="fast", backend=backup),
        ]
    )

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.QUALITY)

    record = outcome.records[STRUCTURER]
    assert record.status is NodeStatus.SUCCEEDED
    assert record.fallback_used
    assert record.backend_id == "backup"
    assert record.retries == 2
    assert outcome.usage["primary"].failures >= 3
    assert outcome.usage["backup"].calls >= 1


@pytest.mark.asyncio
async def test_timed_out_validator_degrades_only_itself() -> None:
    backend = ScriptedBackend(default_script(accessibility_linter=[Sleep(1.0, QA_JSON)]))
    executor = _executor([descriptor("stub", backend=backend)], node_timeout_seconds=0.1, max_attempts=2)

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)

    assert outcome.records[ACCESSIBILITY_LINTER].status is NodeStatus.DEGRADED
    assert "BackendTimeoutError" in (outcome.records[ACCESSIBILITY_LINTER].error or "")
    assert outcome.nodes_with(NodeStatus.DEGRADED) == [ACCESSIBILITY_LINTER]
    report = build_quality_report(executor.graph, outcome.records, outcome.context)
    assert report.unavailable_validators == [ACCESSIBILITY_LINTER]
    meta = [finding for finding in report.findings if finding.category == "validator-unavailable"]
    assert len(meta) == 1
    assert meta[0].severity is Severity.HIGH
    assert meta[0].source == ACCESSIBILITY_LINTER
    other_sources = {finding.source for finding in report.findings} - {ACCESSIBILITY_LINTER}
    assert other_sources


@pytest.mark.asyncio
async def test_local_only_without_local_backends_fails_before_any_call() -> None:
    backend = ScriptedBackend(default_script())
    executor = _executor(
        [
            descriptor("remote", tier="high", backend=backend),
            descriptor("local-research", tier="high", local=True, tasks=[RESEARCHER], backend=backend),
        ]
    )

    with pytest.raises(RoutingError) as exc_info:
        await executor.execute(make_request(policy="local-only"), policy=RoutingPolicy.LOCAL_ONLY)

    assert exc_info.value.node_id == STRUCTURER
    assert backend.calls == []


@pytest.mark.asyncio
async def test_soft_node_failure_does_not_stop_siblings() -> None:
    backend = ScriptedBackend(default_script(copy_tightener=[BackendError("nope")]))
    executor = _executor([descriptor("stub", backend=backend)])

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)

    assert outcome.records[COPY_TIGHTENER].status is NodeStatus.DEGRADED
    assert backend.calls_for(COPY_TIGHTENER) == 3
    succeeded = outcome.nodes_with(NodeStatus.SUCCEEDED)
    assert len(succeeded) == 9


@pytest.mark.asyncio
async def test_unexpected_agent_error_is_not_retried() -> None:
    backend = ScriptedBackend(default_script(copy_tightener=[RuntimeError("bug")]))
    executor = _executor([descriptor("stub", backend=backend)])

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)

    assert outcome.records[COPY_TIGHTENER].status is NodeStatus.DEGRADED
    assert outcome.records[COPY_TIGHTENER].error == "RuntimeError: bug"
    assert backend.calls_for(COPY_TIGHTENER) == 1


@pytest.mark.asyncio
async def test_malformed_output_is_retried() -> None:
    backend = ScriptedBackend(default_script(structurer=["I am not JSON", STRUCTURE_JSON]))
    executor = _executor([descriptor("stub", backend=backend)])

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)

    record = outcome.records[STRUCTURER]
    assert record.status is NodeStatus.SUCCEEDED
    assert record.retries == 1
    assert "did not contain JSON" in (record.attempts[0].error or "")
    assert record.attempts[1].error is None


@pytest.mark.asyncio
async def test_invalid_input_never_reaches_the_backend() -> None:
    backend = ScriptedBackend(default_script())
    executor = _executor([descriptor("stub", backend=backend)])

    with pytest.raises(AgentInputError):
        await executor.execute_node(
            AUDIENCE_ADAPTER,
            make_request(),
            policy=RoutingPolicy.SPEED,
            raw_input={"topic": "Solar", "audience": "planners", "tone": "calm", "slides": []},
        )

    assert backend.calls == []


@pytest.mark.asyncio
async def test_qa_validators_run_concurrently() -> None:
    script = default_script()
    for node in default_task_graph().nodes_in(Phase.QA):
        script[node.node_id] = [Sleep(0.3, script[node.node_id][0])]
    executor = _executor([descriptor("stub", backend=ScriptedBackend(script))])

    started = time.perf_counter()
    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED)
    elapsed = time.perf_counter() - started

    assert all(outcome.records[node.node_id].status is NodeStatus.SUCCEEDED for node in executor.graph.nodes_in(Phase.QA))
    assert elapsed < 1.5


@pytest.mark.asyncio
async def test_cancelling_the_scope_stops_in_flight_work() -> None:
    backend = ScriptedBackend(default_script(researcher=[Sleep(5.0, RESEARCH_JSON)]))
    executor = _executor([descriptor("stub", backend=backend)], node_timeout_seconds=10.0)
    scope = RequestScope(deadline_seconds=30.0)

    task = asyncio.create_task(executor.execute(make_request(), policy=RoutingPolicy.SPEED, scope=scope))
    await asyncio.sleep(0.05)
    scope.cancel()

    with pytest.raises(PipelineCancelledError) as exc_info:
        await task

    records = exc_info.value.records
    assert records[RESEARCHER].status is NodeStatus.CANCELLED
    assert records[STRUCTURER].status is NodeStatus.ABORTED
    assert backend.tasks() == [RESEARCHER]


@pytest.mark.asyncio
async def test_deadline_with_best_effort_keeps_completed_outputs() -> None:
    backend = ScriptedBackend(default_script(slidewriter=[Sleep(5.0, "{}")]))
    executor = _executor([descriptor("stub", backend=backend)], node_timeout_seconds=10.0)
    scope = RequestScope(deadline_seconds=0.3, best_effort=True)

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED, scope=scope)

    assert outcome.interrupted
    assert outcome.interruption == "deadline_exceeded"
    assert outcome.records[RESEARCHER].status is NodeStatus.SUCCEEDED
    assert outcome.records[STRUCTURER].status is NodeStatus.SUCCEEDED
    assert outcome.records[SLIDEWRITER].status is NodeStatus.CANCELLED
    assert outcome.records[ACCESSIBILITY_LINTER].status is NodeStatus.ABORTED
    assert outcome.context.keys() == (RESEARCHER, STRUCTURER)


@pytest.mark.asyncio
async def test_deadline_during_qa_fan_out_keeps_finished_validators() -> None:
    backend = ScriptedBackend(default_script(accessibility_linter=[Sleep(5.0, QA_JSON)]))
    executor = _executor([descriptor("stub", backend=backend)], node_timeout_seconds=10.0)
    scope = RequestScope(deadline_seconds=0.5, best_effort=True)

    outcome = await executor.execute(make_request(), policy=RoutingPolicy.SPEED, scope=scope)

    assert outcome.interrupted
    assert outcome.records[ACCESSIBILITY_LINTER].status is NodeStatus.CANCELLED
    finished = outcome.nodes_with(NodeStatus.SUCCEEDED)
    assert READABILITY_ANALYZER in finished
    for node_id in finished:
        assert outcome.context.has(node_id)

    report = build_quality_report(executor.graph, outcome.records, outcome.context)
    assert report.unavailable_validators == [ACCESSIBILITY_LINTER]
    assert report.by_source(READABILITY_ANALYZER)
    assert FACT_CHECKER in report.scores


@pytest.mark.asyncio
async def test_execute_node_raises_the_node_error() -> None:
    backend = ScriptedBackend(default_script())
    executor = _executor([descriptor("stub", backend=backend)])

    with pytest.raises(AgentInputError):
        await executor.execute_node(AUDIENCE_ADAPTER, make_request(), policy=RoutingPolicy.SPEED, raw_input={})

    assert backend.calls_for(AUDIENCE_ADAPTER) == 0
