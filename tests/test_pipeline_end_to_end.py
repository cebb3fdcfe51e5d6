from __future__ import annotations

from typing import Any, Mapping, Sequence

import pytest

from slideforge.agents.registry import AgentRegistry
from slideforge.agents.research import ResearcherAgent
from slideforge.core.config import BackendSettings, Settings
from slideforge.orchestration.errors import PipelineAbortedError, RegistryError, RoutingError
from slideforge.orchestration.graph import (
    ACCESSIBILITY_LINTER,
    AUDIENCE_ADAPTER,
    EXECUTIVE_SUMMARY,
    LIVE_WIDGET_PLANNER,
    READABILITY_ANALYZER,
    RESEARCHER,
    SLIDEWRITER,
)
from slideforge.orchestration.pipeline import PresentationPipeline
from slideforge.services.bootstrap import build_pipeline, build_router
from tests.helpers.stubs import (
    QA_JSON,
    Behavior,
    ScriptedBackend,
    Sleep,
    default_script,
    fast_execution,
    make_request,
)


def _settings(*, local: bool = True, **execution: Any) -> Settings:
    return Settings(
        environment="test",
        default_policy="speed",
        backends=[BackendSettings(backend_id="stub", model="stub-model", tier="high", speed="fast", local=local)],
        execution=fast_execution(**execution),
        observability={"log_level": "WARNING", "metrics_enabled": False},
    )


def _pipeline(
    script: Mapping[str, Sequence[Behavior]] | None = None,
    *,
    local: bool = True,
    **execution: Any,
) -> tuple[PresentationPipeline, ScriptedBackend]:
    backend = ScriptedBackend(script or default_script())
    pipeline = build_pipeline(_settings(local=local, **execution), backends={"stub": backend})
    return pipeline, backend


@pytest.mark.asyncio
async def test_run_pipeline_assembles_a_complete_deck() -> None:
    pipeline, _ = _pipeline()

    result = await pipeline.run_pipeline(make_request())

    assert result.status == "completed"
    assert result.degraded_nodes == []
    assert result.skipped_nodes == [LIVE_WIDGET_PLANNER, EXECUTIVE_SUMMARY, AUDIENCE_ADAPTER]
    deck = result.deck
    assert deck is not None
    assert [slide.id for slide in deck.slides] == [
        "title",
        "agenda",
        "section-1-slide-1",
        "section-2-slide-1",
        "section-3-slide-1",
        "conclusion",
        "references",
    ]
    assert [slide.order for slide in deck.slides] == list(range(1, 8))
    assert deck.slides[2].notes == "Open with the growth figure."
    assert deck.meta.title == "The State of Solar Energy"
    assert deck.meta.duration_minutes == 8
    assert len(deck.research_snippets) == 3
    assert len(result.enhancements.charts) == 1
    assert len(result.enhancements.media) == 1
    assert result.executive_summary is None

    metadata = result.metadata
    assert metadata.policy.value == "speed"
    assert metadata.execution_order[0] == RESEARCHER
    assert len(metadata.nodes) == 13
    assert metadata.nodes[SLIDEWRITER].status == "succeeded"
    assert metadata.nodes[SLIDEWRITER].backend_id == "stub"
    assert metadata.backend_usage["stub"].calls >= 12
    assert metadata.extra["quality_scores"] == result.quality_report.scores


@pytest.mark.asyncio
async def test_optional_nodes_run_when_requested() -> None:
    pipeline, _ = _pipeline()
    request = make_request(
        enable_live_data=True,
        generate_executive_summary=True,
        audience_adaptation_target="high school students",
    )

    result = await pipeline.run_pipeline(request)

    assert result.skipped_nodes == []
    assert [placement.section_id for placement in result.enhancements.live_widgets] == ["section-1"]
    assert result.executive_summary is not None
    assert result.executive_summary.headline == "Solar is scaling fast"
    assert result.audience_adaptation is not None
    assert result.audience_adaptation.target_audience == "high school students"


@pytest.mark.asyncio
async def test_executive_audience_triggers_summary() -> None:
    pipeline, backend = _pipeline()

    result = await pipeline.run_pipeline(make_request(audience="Executive leadership team"))

    assert result.executive_summary is not None
    assert backend.calls_for(EXECUTIVE_SUMMARY) == 1


@pytest.mark.asyncio
async def test_timed_out_validator_marks_result_degraded() -> None:
    script = default_script(accessibility_linter=[Sleep(1.0, QA_JSON)])
    pipeline, _ = _pipeline(script, node_timeout_seconds=0.1, max_attempts=1, fallback_attempts=0)

    result = await pipeline.run_pipeline(make_request())

    assert result.status == "degraded"
    assert result.degraded_nodes == [ACCESSIBILITY_LINTER]
    assert result.deck is not None
    assert result.quality_report.unavailable_validators == [ACCESSIBILITY_LINTER]
    assert result.metadata.nodes[ACCESSIBILITY_LINTER].status == "degraded"


@pytest.mark.asyncio
async def test_hard_failure_surfaces_to_the_caller() -> None:
    pipeline, backend = _pipeline(default_script(slidewriter=["not json"]))

    with pytest.raises(PipelineAbortedError) as exc_info:
        await pipeline.run_pipeline(make_request())

    assert exc_info.value.node_id == SLIDEWRITER
    assert backend.calls_for(ACCESSIBILITY_LINTER) == 0


@pytest.mark.asyncio
async def test_local_only_request_without_local_backends_is_rejected() -> None:
    pipeline, backend = _pipeline(local=False)

    with pytest.raises(RoutingError):
        await pipeline.run_pipeline(make_request(policy="local-only"))

    assert backend.calls == []


@pytest.mark.asyncio
async def test_best_effort_deadline_returns_partial_result() -> None:
    script = default_script(slidewriter=[Sleep(5.0, "{}")])
    pipeline, _ = _pipeline(script, request_deadline_seconds=0.3)

    result = await pipeline.run_pipeline(make_request(best_effort=True))

    assert result.status == "partial"
    assert result.deck is None
    assert SLIDEWRITER in result.missing_nodes
    assert ACCESSIBILITY_LINTER in result.missing_nodes
    assert result.metadata.extra["interruption"] == "deadline_exceeded"
    assert result.metadata.nodes[RESEARCHER].status == "succeeded"


@pytest.mark.asyncio
async def test_partial_result_keeps_validators_finished_before_the_deadline() -> None:
    script = default_script(accessibility_linter=[Sleep(5.0, QA_JSON)])
    pipeline, _ = _pipeline(script, request_deadline_seconds=0.5, node_timeout_seconds=10.0)

    result = await pipeline.run_pipeline(make_request(best_effort=True))

    assert result.status == "partial"
    assert result.missing_nodes == [ACCESSIBILITY_LINTER]
    assert result.quality_report.unavailable_validators == [ACCESSIBILITY_LINTER]
    assert result.quality_report.by_source(READABILITY_ANALYZER)
    assert result.deck is not None
    assert result.deck.slides[2].notes == "Open with the growth figure."


@pytest.mark.asyncio
async def test_adapt_for_audience_reuses_a_finished_deck() -> None:
    pipeline, backend = _pipeline()
    request = make_request()
    result = await pipeline.run_pipeline(request)

    adapted = await pipeline.adapt_for_audience(request, result, "students", target_duration_minutes=5)

    assert adapted.target_audience == "students"
    assert len(adapted.slides) == 2
    assert backend.calls_for(AUDIENCE_ADAPTER) == 1


def test_status_reports_registry_and_policy_table() -> None:
    pipeline, _ = _pipeline()

    status = pipeline.status()

    assert status["registry_size"] == 13
    assert status["backends"] == 1
    assert status["default_policy"] == "speed"
    assert status["policy_table"]["local-only"][RESEARCHER] == "stub"
    assert RESEARCHER in status["agents"]


def test_incomplete_registry_is_rejected_at_startup() -> None:
    with pytest.raises(RegistryError):
        build_pipeline(_settings(), backends={"stub": ScriptedBackend()}, registry=AgentRegistry([ResearcherAgent()]))


def test_router_skips_disabled_and_keyless_remote_backends() -> None:
    settings = Settings(
        environment="test",
        backends=[
            BackendSettings(backend_id="remote", provider="openai", model="gpt", base_url="https://api.example.com"),
            BackendSettings(backend_id="off", model="llama", local=True, enabled=False),
            BackendSettings(backend_id="on", model="llama", local=True),
        ],
    )
    router = build_router(settings, backends={"on": ScriptedBackend()})
    assert [descriptor.backend_id for descriptor in router.descriptors] == ["on"]
