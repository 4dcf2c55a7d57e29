from __future__ import annotations

import pytest

from mcp_orchestrator.errors import NormalizationError
from mcp_orchestrator.normalizer import (
    JSON,
    TEXT,
    NormalizedResult,
    Shape,
    extract_embedded_json,
    normalize,
)


def test_primitive_string_is_text():
    result = normalize("plain answer")
    assert result == NormalizedResult(TEXT, "plain answer", Shape.PRIMITIVE)


def test_primitive_number_and_bool_are_json():
    assert normalize(42).payload == 42
    assert normalize(42).content_type == JSON
    assert normalize(False).payload is False


def test_array_is_json():
    result = normalize([{"id": 1}, {"id": 2}])
    assert result.is_json
    assert result.provenance == Shape.ARRAY
    assert result.payload == [{"id": 1}, {"id": 2}]


def test_content_envelope_prefers_text_item():
    raw = {"content": [
        {"type": "json", "json": {"ignored": True}},
        {"type": "text", "text": "hello"},
    ]}
    result = normalize(raw)
    assert result.is_text
    assert result.payload == "hello"
    assert result.provenance == Shape.CONTENT


def test_content_envelope_json_item():
    result = normalize({"content": [{"type": "json", "json": {"count": 3}}]})
    assert result.payload == {"count": 3}
    assert result.provenance == Shape.CONTENT


def test_two_level_nested_envelope():
    raw = {"content": [{"type": "json", "json": {"content": [{"type": "text", "text": "inner"}]}}]}
    result = normalize(raw)
    assert result.payload == "inner"
    assert result.provenance == Shape.NESTED_CONTENT


def test_three_level_envelope_is_rejected():
    innermost = {"content": [{"type": "text", "text": "too deep"}]}
    middle = {"content": [{"type": "json", "json": innermost}]}
    raw = {"content": [{"type": "json", "json": middle}]}
    with pytest.raises(NormalizationError, match="nested deeper"):
        normalize(raw)


def test_embedded_json_in_content_item_text():
    raw = {"content": [{"type": "log", "value": 'Result for graph API - get /users:\n\n{"value": [{"id": "1"}]}'}]}
    result = normalize(raw)
    assert result.provenance == Shape.EMBEDDED_JSON
    assert result.payload == {"value": [{"id": "1"}]}


def test_embedded_json_in_single_field_wrapper():
    result = normalize({"output": 'INFO starting\n{"users": 7} trailing'})
    assert result.provenance == Shape.EMBEDDED_JSON
    assert result.payload == {"users": 7}


def test_single_field_with_inline_braces_stays_flat():
    raw = {"template": 'use {"a": 1} as the body'}
    result = normalize(raw)
    assert result.provenance == Shape.FLAT_OBJECT
    assert result.payload == raw


def test_single_field_json_after_indented_log_line():
    result = normalize({"output": 'Result for graph API:\n  {"value": []}'})
    assert result.provenance == Shape.EMBEDDED_JSON
    assert result.payload == {"value": []}


def test_extract_embedded_json_line_start():
    assert extract_embedded_json('say {"a": 1}', line_start=True) is None
    assert extract_embedded_json('{"a": 1}', line_start=True) == {"a": 1}
    assert extract_embedded_json('say {"a": 1}\n{"b": 2}', line_start=True) == {"b": 2}


def test_flat_object_is_not_scanned():
    raw = {"echoed": "hello {1}", "length": 9}
    result = normalize(raw)
    assert result.provenance == Shape.FLAT_OBJECT
    assert result.payload == raw


def test_resource_contents_text():
    raw = {"contents": [{"uri": "echo://readme", "mimeType": "text/plain", "text": "read me"}]}
    result = normalize(raw)
    assert result.provenance == Shape.RESOURCE
    assert result.as_text() == "read me"


def test_is_error_flag_is_carried():
    result = normalize({"content": [{"type": "text", "text": "Error: boom"}], "isError": True})
    assert result.is_error
    assert result.payload == "Error: boom"


@pytest.mark.parametrize("raw", [
    None,
    {"content": []},
    {"content": "not a list"},
    {"content": [{"type": "image", "data": "AAAA"}]},
    {"contents": []},
    b"bytes",
])
def test_unrecognized_shapes_raise(raw):
    with pytest.raises(NormalizationError) as excinfo:
        normalize(raw)
    assert excinfo.value.raw == raw


def test_normalize_is_idempotent():
    raw = {"content": [{"type": "text", "text": "same"}]}
    assert normalize(raw) == normalize(raw)


def test_as_json_extracts_from_log_prefixed_text():
    result = normalize({"content": [{"type": "text", "text": 'Result for report - x:\n\n{"subject": "x"}'}]})
    assert result.is_text
    assert result.as_json() == {"subject": "x"}


def test_as_json_without_json_raises():
    with pytest.raises(NormalizationError):
        normalize("no structure here").as_json()


def test_extract_embedded_json_skips_invalid_openers():
    assert extract_embedded_json("see [docs] then {\"ok\": true}", objects_only=True) == {"ok": True}
    assert extract_embedded_json("values: [1, 2] and more") == [1, 2]
    assert extract_embedded_json("nothing") is None
