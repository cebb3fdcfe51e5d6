from __future__ import annotations

from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .state import NodeRecord


class SlideforgeError(RuntimeError):
    """Base class for orchestration failures."""


class GraphConfigurationError(SlideforgeError):
    """Raised at startup when the task graph is malformed or cyclic."""


class RegistryError(SlideforgeError):
    """Raised when the agent registry does not cover the task graph."""


class AgentInputError(SlideforgeError):
    """Raised when an agent rejects its input; never retried."""


class BackendError(SlideforgeError):
    """Raised when a model backend call fails."""


class BackendTimeoutError(BackendError):
    """Raised when a model backend call exceeds its deadline."""


class MalformedOutputError(BackendError):
    """Raised when a backend answer fails the agent's output contract."""


class OutputParseError(MalformedOutputError):
    """Raised when backend text cannot be parsed into structured data."""


class RoutingError(SlideforgeError):
    """Raised when no backend satisfies the routing policy for a node."""

    def __init__(self, message: str, *, node_id: str | None = None, policy: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.policy = policy


class DependencyAbortedError(SlideforgeError):
    """Recorded on nodes that never ran because a hard dependency failed."""


class QAValidatorError(SlideforgeError):
    """Recorded when a quality validator could not produce findings."""


class PipelineAbortedError(SlideforgeError):
    """Raised when a hard-path node fails and the request cannot complete."""

    def __init__(self, message: str, *, node_id: str, records: Mapping[str, "NodeRecord"]) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.records = dict(records)


class PipelineCancelledError(SlideforgeError):
    """Raised when a request is cancelled or exceeds its deadline without best-effort output."""

    def __init__(self, message: str, *, records: Mapping[str, "NodeRecord"]) -> None:
        super().__init__(message)
        self.records = dict(records)
