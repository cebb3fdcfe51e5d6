"""
DAG Executor

Drives one request through the task graph: phases run in order, sequential
phases one node at a time, concurrent phases behind a join barrier. Each node
is routed, validated, retried with backoff, and finally handed to a fallback
backend before it is declared degraded or failed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from ..agents.base import AgentContext, BaseAgent
from ..agents.contracts import AgentContract
from ..agents.registry import AgentRegistry
from ..core.config import ExecutionSettings
from ..core.logging import get_logger
from ..core.metrics import increment_node_event, observe_node_latency, record_node_fallback, record_node_retry
from ..schemas.pipeline import BackendUsage, PipelineRequest, RoutingPolicy
from ..services.llm import BackendInvoker
from .context import ContextSnapshot, ExecutionContext
from .errors import (
    AgentInputError,
    BackendError,
    DependencyAbortedError,
    MalformedOutputError,
    PipelineAbortedError,
    PipelineCancelledError,
    SlideforgeError,
)
from .graph import TaskGraph, TaskNode
from .retry import RetryPolicy
from .routing import BackendDescriptor, ModelRouter
from .state import NodeAttempt, NodeRecord, NodeStatus

logger = get_logger(name=__name__)


@dataclass
class RequestScope:
    """Cancellation and deadline scope shared by everything one request starts."""

    deadline_seconds: float | None = None
    best_effort: bool = False
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()


@dataclass(slots=True)
class NodeOutcome:
    output: BaseModel | None = None
    error: BaseException | None = None


@dataclass
class ExecutionOutcome:
    context: ExecutionContext
    records: dict[str, NodeRecord]
    routes: dict[str, BackendDescriptor]
    execution_order: list[str] = field(default_factory=list)
    usage: dict[str, BackendUsage] = field(default_factory=dict)
    interrupted: bool = False
    interruption: str | None = None

    def nodes_with(self, *statuses: NodeStatus) -> list[str]:
        return [node_id for node_id, record in self.records.items() if record.status in statuses]


@dataclass
class _RunState:
    request: PipelineRequest
    policy: RoutingPolicy
    routes: dict[str, BackendDescriptor]
    records: dict[str, NodeRecord]
    context: ExecutionContext
    order: list[str] = field(default_factory=list)
    usage: dict[str, BackendUsage] = field(default_factory=dict)


class DagExecutor:
    def __init__(
        self,
        *,
        graph: TaskGraph,
        registry: AgentRegistry,
        router: ModelRouter,
        settings: ExecutionSettings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        registry.verify(graph)
        self._graph = graph
        self._registry = registry
        self._router = router
        self._settings = settings
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._semaphore_size = max(1, settings.max_concurrency)

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    def _new_records(self) -> dict[str, NodeRecord]:
        return {
            node.node_id: NodeRecord(node_id=node.node_id, phase=node.phase.value)
            for _, nodes in self._graph.phases()
            for node in nodes
        }

    async def execute(
        self,
        request: PipelineRequest,
        *,
        policy: RoutingPolicy,
        scope: RequestScope | None = None,
    ) -> ExecutionOutcome:
        scope = scope or RequestScope(deadline_seconds=self._settings.request_deadline_seconds)
        records = self._new_records()
        active: list[str] = []
        for node_id, record in records.items():
            node = self._graph.node(node_id)
            if request.flag_enabled(node.feature_flag):
                active.append(node_id)
            else:
                record.transition(NodeStatus.SKIPPED)
                increment_node_event(node=node_id, event="skipped")

        # raises RoutingError before any node is marked running
        routes = self._router.preflight(self._graph, policy, active)

        state = _RunState(
            request=request,
            policy=policy,
            routes=routes,
            records=records,
            context=ExecutionContext(request.request_id),
        )
        outcome = ExecutionOutcome(
            context=state.context,
            records=records,
            routes=routes,
            execution_order=state.order,
            usage=state.usage,
        )

        work = asyncio.create_task(self._run_phases(state))
        watcher = asyncio.create_task(scope.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {work, watcher},
                timeout=scope.deadline_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            watcher.cancel()
            raise
        watcher.cancel()

        if work in done:
            work.result()
            return outcome

        reason = "cancelled" if scope.cancelled else "deadline_exceeded"
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        self._interrupt(records, reason)
        logger.warning(
            "pipeline_interrupted",
            request_id=request.request_id,
            reason=reason,
            completed=state.context.keys(),
            best_effort=scope.best_effort,
        )
        if not scope.best_effort:
            raise PipelineCancelledError(f"Request {request.request_id} {reason}", records=records)
        outcome.interrupted = True
        outcome.interruption = reason
        return outcome

    def _interrupt(self, records: Mapping[str, NodeRecord], reason: str) -> None:
        for node_id, record in records.items():
            if record.status is NodeStatus.RUNNING:
                record.transition(NodeStatus.CANCELLED, error=reason)
                increment_node_event(node=node_id, event="cancelled")
            elif record.status is NodeStatus.PENDING:
                record.transition(NodeStatus.ABORTED, error=reason)
                increment_node_event(node=node_id, event="aborted")

    async def _run_phases(self, state: _RunState) -> None:
        for phase, nodes in self._graph.phases():
            pending = [node for node in nodes if state.records[node.node_id].status is NodeStatus.PENDING]
            if not pending:
                continue
            logger.info("phase_started", phase=phase.value, nodes=[node.node_id for node in pending])

            if self._graph.is_concurrent_phase(phase):
                ready = [node for node in pending if self._dependencies_ready(node, state.records)]
                semaphore = asyncio.Semaphore(self._semaphore_size)
                # siblings read what earlier phases committed, never each other
                snapshot = state.context.snapshot()

                async def bounded(node: TaskNode) -> None:
                    async with semaphore:
                        outcome = await self._run_node(node, state, snapshot=snapshot)
                        # finished siblings stay committed if the barrier is cancelled
                        if outcome.output is not None:
                            state.context.commit(node.node_id, outcome.output)

                await asyncio.gather(*(bounded(node) for node in ready))
                for node in ready:
                    self._raise_if_fatal(node, state)
            else:
                for node in pending:
                    if not self._dependencies_ready(node, state.records):
                        continue
                    outcome = await self._run_node(node, state)
                    if outcome.output is not None:
                        state.context.commit(node.node_id, outcome.output)
                    self._raise_if_fatal(node, state)

    def _dependencies_ready(self, node: TaskNode, records: Mapping[str, NodeRecord]) -> bool:
        for dep_id in sorted(node.depends_on):
            dep = self._graph.node(dep_id)
            if dep.critical and records[dep_id].status is not NodeStatus.SUCCEEDED:
                error = DependencyAbortedError(f"Hard dependency {dep_id} is {records[dep_id].status.value}")
                records[node.node_id].transition(NodeStatus.ABORTED, error=str(error))
                increment_node_event(node=node.node_id, event="aborted")
                return False
        return True

    def _raise_if_fatal(self, node: TaskNode, state: _RunState) -> None:
        record = state.records[node.node_id]
        if record.status is not NodeStatus.FAILED or not node.critical:
            return
        for other_id, other in state.records.items():
            if other.status is NodeStatus.PENDING:
                other.transition(
                    NodeStatus.ABORTED,
                    error=str(DependencyAbortedError(f"Aborted after {node.node_id} failed")),
                )
                increment_node_event(node=other_id, event="aborted")
        logger.error("pipeline_aborted", request_id=state.request.request_id, node=node.node_id, error=record.error)
        raise PipelineAbortedError(
            f"Critical node {node.node_id} failed: {record.error}",
            node_id=node.node_id,
            records=state.records,
        )

    async def _run_node(
        self,
        node: TaskNode,
        state: _RunState,
        *,
        raw_input: Mapping[str, Any] | None = None,
        snapshot: ContextSnapshot | None = None,
    ) -> NodeOutcome:
        record = state.records[node.node_id]
        primary = state.routes[node.node_id]
        agent = self._registry.get(node.node_id)
        contract = self._registry.contract(node.node_id)
        if snapshot is None:
            snapshot = state.context.snapshot()

        record.transition(NodeStatus.RUNNING)
        state.order.append(node.node_id)
        increment_node_event(node=node.node_id, event="started")
        logger.info("node_started", node=node.node_id, backend=primary.backend_id, policy=state.policy.value)
        started = time.perf_counter()

        try:
            try:
                raw = raw_input if raw_input is not None else agent.prepare(state.request, snapshot)
                payload = contract.validate_request(raw)
            except AgentInputError as exc:
                return self._settle_failure(node, record, exc)

            try:
                output = await self._attempt(node, agent, contract, payload, primary, state, snapshot, fallback=False)
                return self._settle_success(node, record, output)
            except BackendError as exc:
                error: BaseException = exc

            backup = self._router.fallback(node, state.policy, primary)
            if backup is not None and self._retry.fallback_attempts > 0:
                record.fallback_used = True
                record_node_fallback(node=node.node_id, backend=backup.backend_id)
                logger.warning(
                    "node_fallback",
                    node=node.node_id,
                    primary=primary.backend_id,
                    fallback=backup.backend_id,
                    error=str(error),
                )
                try:
                    output = await self._attempt(node, agent, contract, payload, backup, state, snapshot, fallback=True)
                    return self._settle_success(node, record, output)
                except BackendError as exc:
                    error = exc
            return self._settle_failure(node, record, error)
        except Exception as exc:
            logger.exception("node_crashed", node=node.node_id, error=str(exc))
            return self._settle_failure(node, record, exc)
        finally:
            observe_node_latency(node=node.node_id, latency=time.perf_counter() - started)

    async def _attempt(
        self,
        node: TaskNode,
        agent: BaseAgent,
        contract: AgentContract,
        payload: BaseModel,
        descriptor: BackendDescriptor,
        state: _RunState,
        snapshot: ContextSnapshot,
        *,
        fallback: bool,
    ) -> BaseModel:
        record = state.records[node.node_id]

        async def operation(attempt_number: int) -> BaseModel:
            invoker = BackendInvoker(descriptor=descriptor, timeout_seconds=self._settings.node_timeout_seconds)
            context = AgentContext(
                node_id=node.node_id,
                request=state.request,
                snapshot=snapshot,
                invoker=invoker,
                attempt=attempt_number,
                fallback=fallback,
                slide_concurrency=self._settings.slide_concurrency,
            )
            attempt = NodeAttempt(backend_id=descriptor.backend_id, attempt=attempt_number, fallback=fallback)
            record.attempts.append(attempt)
            began = time.perf_counter()
            try:
                result = await agent.handle(payload, context=context)
                validated = contract.validate_response(result)
            except ValidationError as exc:
                attempt.error = str(exc)
                raise MalformedOutputError(f"{node.node_id} produced an invalid value: {exc.error_count()} errors") from exc
            except BackendError as exc:
                attempt.error = str(exc)
                raise
            finally:
                attempt.latency_ms = (time.perf_counter() - began) * 1000
                self._account(record, invoker, state.usage)
            record.backend_id = descriptor.backend_id
            return validated

        def on_retry(attempt_number: int, exc: BaseException | None) -> None:
            record_node_retry(node=node.node_id)
            logger.warning(
                "node_retry",
                node=node.node_id,
                backend=descriptor.backend_id,
                attempt=attempt_number,
                fallback=fallback,
                error=str(exc),
            )

        attempts = self._retry.fallback_attempts if fallback else self._retry.max_attempts
        return await self._retry.run(operation, attempts=attempts, on_retry=on_retry)

    @staticmethod
    def _account(record: NodeRecord, invoker: BackendInvoker, usage: dict[str, BackendUsage]) -> None:
        record.prompt_tokens += invoker.prompt_tokens
        record.completion_tokens += invoker.completion_tokens
        record.cost += invoker.cost
        bucket = usage.setdefault(invoker.backend_id, BackendUsage())
        bucket.calls += invoker.calls
        bucket.failures += invoker.failures
        bucket.prompt_tokens += invoker.prompt_tokens
        bucket.completion_tokens += invoker.completion_tokens
        bucket.cost += invoker.cost

    def _settle_success(self, node: TaskNode, record: NodeRecord, output: BaseModel) -> NodeOutcome:
        record.transition(NodeStatus.SUCCEEDED)
        increment_node_event(node=node.node_id, event="succeeded")
        logger.info(
            "node_succeeded",
            node=node.node_id,
            backend=record.backend_id,
            attempts=len(record.attempts),
            retries=record.retries,
            fallback=record.fallback_used,
        )
        return NodeOutcome(output=output)

    def _settle_failure(self, node: TaskNode, record: NodeRecord, error: BaseException) -> NodeOutcome:
        status = NodeStatus.FAILED if node.critical else NodeStatus.DEGRADED
        record.transition(status, error=f"{type(error).__name__}: {error}")
        increment_node_event(node=node.node_id, event=status.value)
        log = logger.error if node.critical else logger.warning
        log(
            "node_failed" if node.critical else "node_degraded",
            node=node.node_id,
            attempts=len(record.attempts),
            error=record.error,
        )
        return NodeOutcome(error=error)

    async def execute_node(
        self,
        node_id: str,
        request: PipelineRequest,
        *,
        policy: RoutingPolicy,
        raw_input: Mapping[str, Any],
    ) -> tuple[BaseModel, NodeRecord, dict[str, BackendUsage]]:
        """Run a single node outside of a full pipeline, e.g. an on-demand adaptation."""
        node = self._graph.node(node_id)
        routes = self._router.preflight(self._graph, policy, [node_id])
        record = NodeRecord(node_id=node_id, phase=node.phase.value)
        state = _RunState(
            request=request,
            policy=policy,
            routes=routes,
            records={node_id: record},
            context=ExecutionContext(request.request_id),
        )
        outcome = await self._run_node(node, state, raw_input=raw_input)
        if outcome.output is None:
            raise outcome.error or SlideforgeError(f"Node {node_id} finished without an output")
        return outcome.output, record, state.usage
