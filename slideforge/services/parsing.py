"""Strict structured-output parsing with a single repair pass."""

from __future__ import annotations

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from ..orchestration.errors import MalformedOutputError, OutputParseError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_PREFIX_PATTERN = re.compile(
    r"^\s*(?:sure|certainly|of course|okay|ok|here(?:'s| is| are)|below is|the following is)\b[^\n{\[]*[:.!]?\s*",
    re.IGNORECASE,
)


def repair_json_text(text: str) -> str:
    """Strip code fences and conversational prefixes, then cut to the outermost JSON value.

    This is the only repair applied to backend output. It never edits the
    JSON body itself.
    """
    candidate = text.strip()
    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    candidate = _PREFIX_PATTERN.sub("", candidate, count=1).strip()

    starts = [index for index in (candidate.find("{"), candidate.find("[")) if index != -1]
    if not starts:
        raise OutputParseError("Backend response did not contain JSON")
    start = min(starts)
    closing = "}" if candidate[start] == "{" else "]"
    end = candidate.rfind(closing)
    if end <= start:
        raise OutputParseError("Backend response contained an unterminated JSON value")
    return candidate[start : end + 1]


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        repaired = repair_json_text(text)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise OutputParseError(f"Backend response is not valid JSON after repair: {exc.msg}") from exc


def parse_structured_output(text: str, model: type[ModelT]) -> ModelT:
    payload = parse_json(text)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedOutputError(
            f"Backend response does not match {model.__name__}: {exc.error_count()} validation errors"
        ) from exc
