"""
Response normalization.

Tool servers (and different versions of the same one) wrap their payload
inconsistently: bare values, arrays, MCP content envelopes, envelopes inside
envelopes, or human-readable log text followed by the JSON they meant to
return. normalize() maps every one of those onto a NormalizedResult so
callers never look at the raw shape.

Shapes are tried in order by the strategies in STRATEGIES. A strategy
returns None when the payload is not its shape, returns a result when it
is, and raises NormalizationError when the payload is its shape but broken.
Support for a new shape means appending a strategy, not adding branches at
call sites.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import NormalizationError

TEXT = "text"
JSON = "json"

# A json content item may carry one more envelope; anything deeper is rejected
MAX_ENVELOPE_DEPTH = 2

_decoder = json.JSONDecoder()


class Shape(str, Enum):
    """Which envelope shape was unwrapped (for diagnostics)."""
    PRIMITIVE = "primitive"
    ARRAY = "array"
    CONTENT = "content"
    NESTED_CONTENT = "nested-content"
    RESOURCE = "resource"
    EMBEDDED_JSON = "embedded-json"
    FLAT_OBJECT = "flat-object"


@dataclass(frozen=True)
class NormalizedResult:
    """Canonical payload: either text or structured JSON."""
    content_type: str
    payload: Any
    provenance: Shape
    is_error: bool = False

    @property
    def is_text(self) -> bool:
        return self.content_type == TEXT

    @property
    def is_json(self) -> bool:
        return self.content_type == JSON

    def as_text(self) -> str:
        if self.is_text:
            return self.payload
        return json.dumps(self.payload, indent=2, ensure_ascii=False)

    def as_json(self) -> Any:
        """
        Structured view of the payload. Text payloads are parsed directly
        or, failing that, scanned for an embedded JSON value.
        """
        if self.is_json:
            return self.payload
        try:
            return json.loads(self.payload)
        except json.JSONDecodeError:
            pass
        found = extract_embedded_json(self.payload)
        if found is None:
            raise NormalizationError("text result contains no JSON value", self.payload)
        return found


Strategy = Callable[[Any, int], Optional[NormalizedResult]]


def extract_embedded_json(text: str, objects_only: bool = False, line_start: bool = False) -> Any | None:
    """
    Find the first JSON object or array inside free text.

    Handles output such as "Result for graph API - get /users:\\n\\n{...}"
    where a tool prepends a human-readable header to its payload. Trailing
    text after the JSON value is ignored. With objects_only, arrays are
    not accepted as the embedded value. With line_start, the value must
    open a line, so "use {...} here" in running prose is not taken.
    """
    index = 0
    while True:
        openers = ("{",) if objects_only else ("{", "[")
        starts = [i for i in (text.find(o, index) for o in openers) if i >= 0]
        if not starts:
            return None
        start = min(starts)
        if line_start and text[:start].rstrip(" \t")[-1:] not in ("", "\n"):
            index = start + 1
            continue
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            index = start + 1
            continue
        if isinstance(value, dict) or (isinstance(value, list) and not objects_only):
            return value
        index = start + 1


def _is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and "content" in value


def _wrap_primitive(raw: Any, depth: int) -> NormalizedResult | None:
    if isinstance(raw, str):
        return NormalizedResult(TEXT, raw, Shape.PRIMITIVE)
    if isinstance(raw, (bool, int, float)):
        return NormalizedResult(JSON, raw, Shape.PRIMITIVE)
    return None


def _wrap_array(raw: Any, depth: int) -> NormalizedResult | None:
    if isinstance(raw, list):
        return NormalizedResult(JSON, raw, Shape.ARRAY)
    return None


def _unwrap_content(raw: Any, depth: int) -> NormalizedResult | None:
    if not _is_envelope(raw):
        return None

    content = raw["content"]
    if not isinstance(content, list):
        raise NormalizationError("'content' is not an array", raw)
    if not content:
        raise NormalizationError("'content' array is empty", raw)

    is_error = bool(raw.get("isError", False))
    shape = Shape.CONTENT if depth == 1 else Shape.NESTED_CONTENT
    items = [item for item in content if isinstance(item, dict)]

    for item in items:
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            return NormalizedResult(TEXT, item["text"], shape, is_error)

    for item in items:
        if item.get("type") == "json" and "json" in item:
            payload = item["json"]
            if _is_envelope(payload):
                if depth >= MAX_ENVELOPE_DEPTH:
                    raise NormalizationError(
                        f"content envelope nested deeper than {MAX_ENVELOPE_DEPTH} levels", raw,
                    )
                inner = _unwrap_content(payload, depth + 1)
                if inner is None:
                    raise NormalizationError("nested envelope has no usable content item", raw)
                if is_error and not inner.is_error:
                    inner = NormalizedResult(inner.content_type, inner.payload, inner.provenance, True)
                return inner
            return NormalizedResult(JSON, payload, shape, is_error)

    # No text/json item; the embedded-JSON scan gets a chance next
    return None


def _unwrap_resource(raw: Any, depth: int) -> NormalizedResult | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("contents"), list) or "content" in raw:
        return None
    contents = [item for item in raw["contents"] if isinstance(item, dict)]
    if not contents:
        raise NormalizationError("'contents' array is empty", raw)
    for item in contents:
        if isinstance(item.get("text"), str):
            return NormalizedResult(TEXT, item["text"], Shape.RESOURCE)
    return NormalizedResult(JSON, contents[0], Shape.RESOURCE)


def _scan_embedded_json(raw: Any, depth: int) -> NormalizedResult | None:
    if not isinstance(raw, dict):
        return None
    if isinstance(raw.get("content"), list):
        values = [v for item in raw["content"] if isinstance(item, dict) for v in item.values()]
        line_start = False
    elif len(raw) == 1:
        # Single-field wrapper such as {"output": "<log lines>\n{...}"}
        values = list(raw.values())
        line_start = True
    else:
        return None
    for text in values:
        if not isinstance(text, str):
            continue
        found = extract_embedded_json(text, objects_only=True, line_start=line_start)
        if found is not None:
            return NormalizedResult(JSON, found, Shape.EMBEDDED_JSON, bool(raw.get("isError", False)))
    return None


def _wrap_flat_object(raw: Any, depth: int) -> NormalizedResult | None:
    if isinstance(raw, dict) and "content" not in raw:
        return NormalizedResult(JSON, raw, Shape.FLAT_OBJECT)
    return None


STRATEGIES: list[Strategy] = [
    _wrap_primitive,
    _wrap_array,
    _unwrap_content,
    _unwrap_resource,
    _scan_embedded_json,
    _wrap_flat_object,
]


def normalize(raw: Any) -> NormalizedResult:
    """
    Convert a raw JSON-RPC ``result`` into a NormalizedResult.

    Raises:
        NormalizationError: no strategy recognized the payload. The raw
            payload is attached for diagnosis.
    """
    for strategy in STRATEGIES:
        result = strategy(raw, 1)
        if result is not None:
            return result
    if raw is None:
        raise NormalizationError("result is null", raw)
    raise NormalizationError(f"no strategy matched {type(raw).__name__}", raw)
