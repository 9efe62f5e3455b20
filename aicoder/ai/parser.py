"""Structured-response parser for model output.

The model is asked for `{"code": ..., "explanation": ..., "filename": ...}`,
optionally inside a fenced block. Output is unreliable, so the public entry
point `parse_response` never raises: anything that cannot be decoded degrades
to a commented-out echo of the raw text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from aicoder.errors import ParseError

DEFAULT_EXPLANATION = "Generated code."
PARSE_FAILURE_EXPLANATION = (
    "Could not parse the AI response as a structured file; "
    "the raw output was saved as a comment instead."
)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?(.*?)```", flags=re.DOTALL)
# Upper bound on decode attempts per buffer; long garbage buffers stay cheap.
_MAX_DECODE_STARTS = 64

_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class GeneratedFile:
    code: str
    explanation: str
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "explanation": self.explanation,
            "filename": self.filename,
        }


def _fenced_object(text: str) -> str | None:
    for m in _FENCE_RE.finditer(text):
        inner = m.group(1).strip()
        if inner.startswith("{"):
            return inner
    return None


def _balanced_span(text: str) -> str | None:
    # Structural fallback: braces inside string literals are not excluded.
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _decode_first_object(text: str) -> dict[str, Any] | None:
    pos = text.find("{")
    attempts = 0
    while pos >= 0 and attempts < _MAX_DECODE_STARTS:
        attempts += 1
        try:
            obj, _end = _decoder.raw_decode(text, pos)
        except (ValueError, RecursionError):
            obj = None
        if isinstance(obj, dict):
            return obj
        pos = text.find("{", pos + 1)
    return None


def _candidate_object(text: str) -> dict[str, Any]:
    fenced = _fenced_object(text)
    if fenced is not None:
        obj = _decode_first_object(fenced)
        if obj is not None:
            return obj

    obj = _decode_first_object(text)
    if obj is not None:
        return obj

    candidate = _balanced_span(text) or text
    try:
        parsed = json.loads(candidate)
    except (ValueError, RecursionError) as exc:
        raise ParseError(ParseError.DECODE, str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ParseError(ParseError.DECODE, "top-level value is not an object")
    return parsed


def parse_response_strict(text: str) -> GeneratedFile:
    """Parse model output or raise ParseError."""
    obj = _candidate_object(text or "")

    code = obj.get("code")
    if not isinstance(code, str) or not code.strip():
        raise ParseError(ParseError.MISSING_FIELD, "code")

    explanation = obj.get("explanation")
    if not isinstance(explanation, str) or not explanation.strip():
        explanation = DEFAULT_EXPLANATION

    filename = obj.get("filename")
    if not isinstance(filename, str) or not filename.strip():
        filename = None

    return GeneratedFile(
        code=code,
        explanation=explanation.strip(),
        filename=filename.strip() if filename else None,
    )


def degraded_file(raw: str) -> GeneratedFile:
    text = (raw or "").replace("\x00", "")
    lines = text.splitlines() or ["(empty response)"]
    code = "\n".join(f"// {line}".rstrip() for line in lines)
    return GeneratedFile(code=code, explanation=PARSE_FAILURE_EXPLANATION, filename=None)


def parse_response(text: str) -> GeneratedFile:
    """Total parser: returns a GeneratedFile for any input, never raises."""
    raw = text if isinstance(text, str) else str(text or "")
    try:
        return parse_response_strict(raw)
    except ParseError:
        return degraded_file(raw)


def is_degraded(item: GeneratedFile) -> bool:
    return item.explanation == PARSE_FAILURE_EXPLANATION
