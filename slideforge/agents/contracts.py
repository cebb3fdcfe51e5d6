from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from ..orchestration.errors import AgentInputError, MalformedOutputError
from ..schemas.agents import AgentMetadata


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:3]:
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


@dataclass(slots=True)
class AgentContract:
    metadata: AgentMetadata
    input_model: type[BaseModel]
    output_model: type[BaseModel]

    def validate_request(self, payload: Mapping[str, Any] | BaseModel) -> BaseModel:
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        try:
            return self.input_model.model_validate(data)
        except ValidationError as exc:
            raise AgentInputError(f"Invalid input for {self.metadata.name}: {_summarize(exc)}") from exc

    def validate_response(self, payload: Mapping[str, Any] | BaseModel) -> BaseModel:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            return self.output_model.model_validate(payload)
        except ValidationError as exc:
            raise MalformedOutputError(f"Invalid output from {self.metadata.name}: {_summarize(exc)}") from exc
