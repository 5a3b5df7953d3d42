"""
extraction.py: Recover structured data from free-text Claude replies.

Claude is asked for JSON but may wrap it in prose or markdown fences. Every
extractor here returns a tagged result and never raises:

    Parsed(value)           : the reply contained the requested shape
    Degraded(value, reason) : it did not; value is the type's fallback
"""

from __future__ import annotations

import json
from typing import Any, Callable, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")

_NOT_FOUND = object()


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class ReportContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: str = ""
    insights: str = ""
    recommendations: str = ""


class RecommendationSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendations: list[dict[str, Any]] = []
    strategy_notes: Optional[str] = None


class Parsed(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True)

    kind: Literal["parsed"] = "parsed"
    value: T

    @property
    def degraded(self) -> bool:
        return False


class Degraded(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True)

    kind: Literal["degraded"] = "degraded"
    value: T
    reason: str

    @property
    def degraded(self) -> bool:
        return True


# Tagged union; narrow on `kind` or `degraded`.
Extraction = Union[Parsed, Degraded]


# ---------------------------------------------------------------------------
# JSON span location
# ---------------------------------------------------------------------------

def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        text = text.rsplit("```", 1)[0].strip()
    return text


def _balanced_span(text: str, start: int) -> Optional[str]:
    """Return text[start:end] for the bracket opened at ``start``, or None if it never closes."""
    open_c = text[start]
    close_c = "}" if open_c == "{" else "]"

    # String-aware bracket counting
    in_string = False
    escape = False
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_c:
            depth += 1
        elif ch == close_c:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


# Bounds the work spent on replies full of stray brackets.
MAX_CANDIDATE_SPANS = 64


def _parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return _NOT_FOUND


def extract_json(
    text: str,
    openers: str = "{[",
    accept: Optional[Callable[[Any], bool]] = None,
) -> Any:
    """
    Return the first JSON value in ``text`` whose outer bracket is one of
    ``openers`` and which ``accept`` approves, or the module sentinel
    ``_NOT_FOUND``.

    Tries the whole (fence-stripped) text first, then every balanced span in
    order of its opening bracket, so bracketed prose such as "[see below]" or
    a markdown link ahead of the real payload is skipped.
    """
    if not isinstance(text, str):
        return _NOT_FOUND
    text = _strip_fences(text)
    if not text:
        return _NOT_FOUND

    def wanted(value: Any) -> bool:
        if isinstance(value, dict):
            shape_ok = "{" in openers
        elif isinstance(value, list):
            shape_ok = "[" in openers
        else:
            return False
        return shape_ok and (accept is None or accept(value))

    value = _parse(text)
    if value is not _NOT_FOUND and wanted(value):
        return value

    tried = 0
    for start, ch in enumerate(text):
        if ch not in openers:
            continue
        tried += 1
        if tried > MAX_CANDIDATE_SPANS:
            break
        span = _balanced_span(text, start)
        if span is None:
            continue
        value = _parse(span)
        if value is not _NOT_FOUND and wanted(value):
            return value
    return _NOT_FOUND


# ---------------------------------------------------------------------------
# Typed extractors
# ---------------------------------------------------------------------------

REPORT_KEYS = ("summary", "insights", "recommendations")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(_as_text(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _looks_like_report(value: Any) -> bool:
    return isinstance(value, dict) and any(k in value for k in REPORT_KEYS)


def _looks_like_recommendations(value: Any) -> bool:
    if isinstance(value, dict):
        return isinstance(value.get("recommendations"), list)
    # A bare array counts when it is empty or holds at least one entry object
    return not value or any(isinstance(item, dict) for item in value)


def extract_report(text: str) -> Extraction:
    """Report reply → ReportContent. Unusable replies become the summary verbatim."""
    raw = text if isinstance(text, str) else ""
    fallback = ReportContent(summary=raw, insights="", recommendations="")

    data = extract_json(raw, openers="{", accept=_looks_like_report)
    if data is _NOT_FOUND:
        return Degraded(value=fallback, reason="no JSON object with report keys in reply")

    return Parsed(value=ReportContent(**{k: _as_text(data.get(k)) for k in REPORT_KEYS}))


def extract_recommendations(text: str) -> Extraction:
    """
    Recommendation reply → RecommendationSet.

    Accepts {"recommendations": [...], "strategy_notes": "..."} or a bare
    array. Never invents entries: unusable replies give an empty list.
    """
    fallback = RecommendationSet()

    data = extract_json(text, openers="{[", accept=_looks_like_recommendations)
    if data is _NOT_FOUND:
        return Degraded(value=fallback, reason="no recommendations object or array in reply")

    notes = None
    if isinstance(data, dict):
        items = data["recommendations"]
        if isinstance(data.get("strategy_notes"), str):
            notes = data["strategy_notes"]
    else:
        items = data

    entries = [item for item in items if isinstance(item, dict)]
    return Parsed(value=RecommendationSet(recommendations=entries, strategy_notes=notes))
