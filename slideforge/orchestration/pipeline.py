from __future__ import annotations

import time
from typing import Any

from ..agents.registry import AgentRegistry
from ..core.config import Settings
from ..core.logging import get_logger, request_log_context
from ..core.metrics import mark_pipeline_completed, mark_pipeline_started
from ..schemas.agents import (
    AudienceAdaptationOutput,
    ChartPlanOutput,
    ExecutiveSummaryOutput,
    LiveWidgetOutput,
    MediaPlanOutput,
    ResearchOutput,
    SlidewriterOutput,
    SpeakerNotesOutput,
    StructureOutput,
)
from ..schemas.pipeline import Enhancements, PipelineMetadata, PipelineRequest, PipelineResult, RoutingPolicy
from .assembly import assemble_deck
from .errors import AgentInputError, MalformedOutputError, PipelineAbortedError, PipelineCancelledError, RoutingError
from .executor import DagExecutor, ExecutionOutcome, RequestScope
from .graph import (
    AUDIENCE_ADAPTER,
    DATA_VIZ_PLANNER,
    EXECUTIVE_SUMMARY,
    LIVE_WIDGET_PLANNER,
    MEDIA_FINDER,
    RESEARCHER,
    SLIDEWRITER,
    SPEAKER_NOTES,
    STRUCTURER,
    TaskGraph,
)
from .quality import build_quality_report
from .routing import ModelRouter
from .state import NodeStatus

logger = get_logger(name=__name__)


class PresentationPipeline:
    """Facade the HTTP layer talks to: one call per request, plus status."""

    def __init__(
        self,
        *,
        graph: TaskGraph,
        registry: AgentRegistry,
        router: ModelRouter,
        settings: Settings,
    ) -> None:
        self._graph = graph
        self._registry = registry
        self._router = router
        self._settings = settings
        self._executor = DagExecutor(graph=graph, registry=registry, router=router, settings=settings.execution)

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def router(self) -> ModelRouter:
        return self._router

    def resolve_policy(self, request: PipelineRequest) -> RoutingPolicy:
        return request.policy or RoutingPolicy(self._settings.default_policy)

    async def run_pipeline(self, request: PipelineRequest, *, scope: RequestScope | None = None) -> PipelineResult:
        policy = self.resolve_policy(request)
        with request_log_context(request_id=request.request_id, policy=policy.value):
            return await self._run(request, policy, scope)

    async def _run(
        self,
        request: PipelineRequest,
        policy: RoutingPolicy,
        scope: RequestScope | None,
    ) -> PipelineResult:
        scope = scope or RequestScope(
            deadline_seconds=self._settings.execution.request_deadline_seconds,
            best_effort=request.best_effort,
        )
        started = time.perf_counter()
        status = "failed"
        mark_pipeline_started()
        logger.info("pipeline_started", topic=request.topic)
        try:
            outcome = await self._executor.execute(request, policy=policy, scope=scope)
            result = self._build_result(request, policy, outcome, started)
            status = result.status
        except RoutingError:
            status = "rejected"
            raise
        except PipelineCancelledError:
            status = "cancelled"
            raise
        except PipelineAbortedError:
            status = "aborted"
            raise
        finally:
            mark_pipeline_completed(policy=policy.value, status=status, latency=time.perf_counter() - started)

        logger.info(
            "pipeline_completed",
            status=result.status,
            degraded=result.degraded_nodes,
            findings=len(result.quality_report.findings),
            latency_ms=result.metadata.total_latency_ms,
        )
        return result

    def _build_result(
        self,
        request: PipelineRequest,
        policy: RoutingPolicy,
        outcome: ExecutionOutcome,
        started: float,
    ) -> PipelineResult:
        context = outcome.context
        research = context.get(RESEARCHER)
        structure = context.get(STRUCTURER)
        written = context.get(SLIDEWRITER)

        deck = None
        if isinstance(research, ResearchOutput) and isinstance(structure, StructureOutput) and isinstance(
            written, SlidewriterOutput
        ):
            notes = context.get(SPEAKER_NOTES)
            deck = assemble_deck(
                request,
                outline=structure.outline,
                slides=written.slides,
                snippets=research.snippets,
                speaker_notes=notes if isinstance(notes, SpeakerNotesOutput) else None,
            )

        report = build_quality_report(self._graph, outcome.records, context)
        enhancements = Enhancements()
        charts = context.get(DATA_VIZ_PLANNER)
        if isinstance(charts, ChartPlanOutput):
            enhancements.charts = list(charts.charts)
        media = context.get(MEDIA_FINDER)
        if isinstance(media, MediaPlanOutput):
            enhancements.media = list(media.media)
        widgets = context.get(LIVE_WIDGET_PLANNER)
        if isinstance(widgets, LiveWidgetOutput):
            enhancements.live_widgets = list(widgets.widgets)

        summary = context.get(EXECUTIVE_SUMMARY)
        adaptation = context.get(AUDIENCE_ADAPTER)

        degraded = outcome.nodes_with(NodeStatus.DEGRADED, NodeStatus.ABORTED)
        missing = outcome.nodes_with(NodeStatus.CANCELLED, NodeStatus.ABORTED) if outcome.interrupted else []
        missing += [node_id for node_id in outcome.nodes_with(NodeStatus.SUCCEEDED) if not context.has(node_id)]
        if outcome.interrupted or missing:
            status = "partial"
        elif degraded:
            status = "degraded"
        else:
            status = "completed"

        extra: dict[str, Any] = {"topic": request.topic, "quality_scores": dict(report.scores)}
        if outcome.interruption:
            extra["interruption"] = outcome.interruption

        return PipelineResult(
            status=status,
            deck=deck,
            quality_report=report,
            enhancements=enhancements,
            executive_summary=summary if isinstance(summary, ExecutiveSummaryOutput) else None,
            audience_adaptation=adaptation if isinstance(adaptation, AudienceAdaptationOutput) else None,
            degraded_nodes=degraded,
            skipped_nodes=outcome.nodes_with(NodeStatus.SKIPPED),
            missing_nodes=missing,
            metadata=PipelineMetadata(
                run_id=request.request_id,
                policy=policy,
                total_latency_ms=(time.perf_counter() - started) * 1000,
                execution_order=list(outcome.execution_order),
                nodes={node_id: record.to_report() for node_id, record in outcome.records.items()},
                backend_usage=dict(outcome.usage),
                extra=extra,
            ),
        )

    async def adapt_for_audience(
        self,
        request: PipelineRequest,
        result: PipelineResult,
        target_audience: str,
        *,
        target_duration_minutes: int | None = None,
    ) -> AudienceAdaptationOutput:
        """Re-run the audience adapter against a finished deck."""
        if result.deck is None:
            raise AgentInputError("Cannot adapt a result without a deck")
        policy = self.resolve_policy(request)
        raw_input = {
            "topic": request.topic,
            "audience": request.audience,
            "tone": request.tone,
            "slides": [slide.model_dump() for slide in result.deck.slides],
            "outline": None,
            "snippets": [snippet.model_dump() for snippet in result.deck.research_snippets],
            "target_audience": target_audience,
            "target_duration_minutes": target_duration_minutes,
        }
        output, record, _ = await self._executor.execute_node(
            AUDIENCE_ADAPTER,
            request,
            policy=policy,
            raw_input=raw_input,
        )
        logger.info(
            "audience_adapted",
            request_id=request.request_id,
            target_audience=target_audience,
            backend=record.backend_id,
            attempts=len(record.attempts),
        )
        if not isinstance(output, AudienceAdaptationOutput):
            raise MalformedOutputError(f"{AUDIENCE_ADAPTER} returned {type(output).__name__}")
        return output

    async def aclose(self) -> None:
        """Release transport resources held by registered backends."""
        for descriptor in self._router.descriptors:
            close = getattr(descriptor.backend, "aclose", None)
            if close is not None:
                await close()

    def status(self) -> dict[str, Any]:
        return {
            "registry_size": len(self._registry),
            "agents": self._registry.describe(),
            "backends": len(self._router),
            "default_policy": self._settings.default_policy,
            "policy_table": {policy: dict(table) for policy, table in self._router.policy_table(self._graph).items()},
        }
