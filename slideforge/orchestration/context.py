from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from pydantic import BaseModel

from .errors import SlideforgeError


class ContextWriteError(SlideforgeError):
    """Raised when a context key is written twice within one request."""


@dataclass(frozen=True, slots=True)
class ContextSnapshot:
    """Read-only view of the outputs committed before a node started."""

    values: Mapping[str, BaseModel]

    def get(self, node_id: str) -> BaseModel | None:
        return self.values.get(node_id)

    def require(self, node_id: str) -> BaseModel:
        try:
            return self.values[node_id]
        except KeyError as exc:
            raise KeyError(f"Output of {node_id} is not available in this snapshot") from exc

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)


class ExecutionContext:
    """Per-request store of validated node outputs.

    Only the executor commits into the context, and every key is written at
    most once. Agents receive a ``ContextSnapshot`` taken before they start.
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._values: dict[str, BaseModel] = {}

    def commit(self, node_id: str, value: BaseModel) -> None:
        if node_id in self._values:
            raise ContextWriteError(f"Context key {node_id} already written for request {self.request_id}")
        self._values[node_id] = value

    def has(self, node_id: str) -> bool:
        return node_id in self._values

    def get(self, node_id: str) -> BaseModel | None:
        return self._values.get(node_id)

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(values=MappingProxyType(dict(self._values)))

    def keys(self) -> tuple[str, ...]:
        return tuple(self._values)

    def dump(self) -> dict[str, Any]:
        return {node_id: value.model_dump(mode="json") for node_id, value in self._values.items()}
