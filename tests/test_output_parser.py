from __future__ import annotations

import pytest
from pydantic import BaseModel

from slideforge.orchestration.errors import MalformedOutputError, OutputParseError
from slideforge.services.parsing import parse_json, parse_structured_output, repair_json_text


class _Answer(BaseModel):
    title: str
    points: list[str] = []


def test_strict_json_is_parsed_directly() -> None:
    assert parse_json('{"title": "Solar"}') == {"title": "Solar"}


def test_code_fence_is_stripped() -> None:
    text = 'Here is the outline:\n```json\n{"title": "Solar", "points": ["a"]}\n```\nHope that helps!'
    assert parse_structured_output(text, _Answer).points == ["a"]


def test_conversational_prefix_is_stripped() -> None:
    text = 'Sure! Here is the JSON you asked for: {"title": "Solar"}'
    assert parse_json(text) == {"title": "Solar"}


def test_trailing_chatter_after_array_is_cut() -> None:
    assert repair_json_text('Okay. [1, 2, 3] Let me know.') == "[1, 2, 3]"


def test_text_without_json_raises_parse_error() -> None:
    with pytest.raises(OutputParseError):
        parse_json("I cannot help with that.")


def test_unrepairable_json_raises_parse_error() -> None:
    with pytest.raises(OutputParseError):
        parse_json('Sure: {"title": "Solar",, }')


def test_schema_mismatch_raises_malformed_output() -> None:
    with pytest.raises(MalformedOutputError, match="_Answer"):
        parse_structured_output('{"points": ["a"]}', _Answer)


def test_parse_errors_are_malformed_output_errors() -> None:
    assert issubclass(OutputParseError, MalformedOutputError)
