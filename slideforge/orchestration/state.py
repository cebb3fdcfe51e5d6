from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..schemas.pipeline import NodeReport
from .errors import SlideforgeError


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"
    ABORTED = "aborted"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        NodeStatus.SUCCEEDED,
        NodeStatus.DEGRADED,
        NodeStatus.FAILED,
        NodeStatus.ABORTED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    }
)

_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.ABORTED, NodeStatus.SKIPPED}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.SUCCEEDED, NodeStatus.DEGRADED, NodeStatus.FAILED, NodeStatus.CANCELLED}
    ),
}


class NodeStateError(SlideforgeError):
    """Raised on an illegal node status transition."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class NodeAttempt:
    backend_id: str
    attempt: int
    fallback: bool = False
    error: str | None = None
    latency_ms: float = 0.0


@dataclass(slots=True)
class NodeRecord:
    node_id: str
    phase: str
    status: NodeStatus = NodeStatus.PENDING
    attempts: list[NodeAttempt] = field(default_factory=list)
    backend_id: str | None = None
    fallback_used: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    error: str | None = None

    def transition(self, status: NodeStatus, *, error: str | None = None) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise NodeStateError(f"Node {self.node_id} cannot move from {self.status.value} to {status.value}")
        self.status = status
        if status is NodeStatus.RUNNING:
            self.started_at = _now()
        elif self.started_at is not None:
            self.finished_at = _now()
        if error is not None:
            self.error = error

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def retries(self) -> int:
        """Repeat attempts on the primary backend."""
        primary = [attempt for attempt in self.attempts if not attempt.fallback]
        return max(0, len(primary) - 1)

    @property
    def latency_ms(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_report(self) -> NodeReport:
        return NodeReport(
            node_id=self.node_id,
            phase=self.phase,
            status=self.status.value,
            attempts=len(self.attempts),
            retries=self.retries,
            backend_id=self.backend_id,
            fallback_used=self.fallback_used,
            started_at=self.started_at.isoformat() if self.started_at else None,
            finished_at=self.finished_at.isoformat() if self.finished_at else None,
            latency_ms=self.latency_ms,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            cost=self.cost,
            error=self.error,
        )
