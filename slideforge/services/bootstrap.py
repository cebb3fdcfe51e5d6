from __future__ import annotations

from typing import Mapping

from ..agents.registry import AgentRegistry, default_registry
from ..core.config import BackendSettings, Settings, get_settings
from ..core.logging import configure_logging, get_logger
from ..core.metrics import set_metrics_enabled
from ..orchestration.graph import TaskGraph, default_task_graph
from ..orchestration.pipeline import PresentationPipeline
from ..orchestration.routing import BackendDescriptor, ModelRouter
from .llm import ModelBackend, build_backend

logger = get_logger(name=__name__)


def _available(backend: BackendSettings, overrides: Mapping[str, ModelBackend]) -> bool:
    if not backend.enabled:
        logger.info("backend_disabled", backend=backend.backend_id)
        return False
    if backend.backend_id in overrides:
        return True
    if not backend.local and backend.provider == "openai" and not backend.api_key:
        logger.warning("backend_unavailable", backend=backend.backend_id, reason="missing api key")
        return False
    return True


def build_router(settings: Settings, *, backends: Mapping[str, ModelBackend] | None = None) -> ModelRouter:
    overrides = dict(backends or {})
    descriptors = [
        BackendDescriptor.from_settings(backend, overrides.get(backend.backend_id) or build_backend(backend))
        for backend in settings.backends
        if _available(backend, overrides)
    ]
    return ModelRouter(descriptors)


def build_pipeline(
    settings: Settings | None = None,
    *,
    backends: Mapping[str, ModelBackend] | None = None,
    registry: AgentRegistry | None = None,
    graph: TaskGraph | None = None,
) -> PresentationPipeline:
    """Build a fully initialised pipeline.

    The graph is validated, the registry is populated and verified against
    the graph, and the router is built before the pipeline is returned, so
    callers never observe a half-built registry.
    """
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
    set_metrics_enabled(settings.observability.metrics_enabled)

    graph = graph or default_task_graph()
    registry = registry or default_registry()
    registry.verify(graph)
    router = build_router(settings, backends=backends)
    pipeline = PresentationPipeline(graph=graph, registry=registry, router=router, settings=settings)
    logger.info(
        "pipeline_ready",
        environment=settings.environment,
        agents=len(registry),
        backends=[descriptor.backend_id for descriptor in router.descriptors],
        default_policy=settings.default_policy,
    )
    return pipeline
