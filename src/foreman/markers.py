"""Marker protocol between the loop and the worker.

The worker reports progress in-band. The primary form is one JSON object per
line::

    {"marker": "learning", "text": "The API client retries on 502 already"}
    {"marker": "fixed", "error": "ImportError: no module x", "fix": "add x to deps"}
    {"marker": "complete"}

The legacy form is line-anchored keywords, optionally bulleted and wrapped in
markdown emphasis::

    LEARNING: ...
    **FIXED:** ImportError: no module x → add x to deps
    - __BLOCKER__: waiting on credentials
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

MARKER_KINDS = ("completed", "learning", "pattern", "fixed", "blocker")
COMPLETION_MARKERS = ("<promise>COMPLETE</promise>", "FOREMAN_COMPLETE")

_BULLET_PATTERN = re.compile(r"^(?:[-*+]\s+|\d+[.)]\s+|>\s*)")
_EMPHASIS_TOKENS = ("**", "__", "*", "_", "`")
_FIX_SEPARATOR = re.compile(r"\s*(?:→|->|=>)\s*")


@dataclass(frozen=True, slots=True)
class Marker:
    kind: str
    text: str
    error: str = ""
    fix: str = ""


def _strip_emphasis(value: str) -> tuple[str, str]:
    for token in _EMPHASIS_TOKENS:
        if value.startswith(token):
            return value[len(token) :], token
    return value, ""


def _parse_json_line(line: str) -> Marker | None:
    if not (line.startswith("{") and line.endswith("}")):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    kind = str(payload.get("marker", "")).strip().lower()
    if kind == "complete":
        return Marker(kind="complete", text="")
    if kind not in MARKER_KINDS:
        return None
    if kind == "fixed":
        error = str(payload.get("error", "")).strip()
        fix = str(payload.get("fix", "")).strip()
        text = str(payload.get("text", "")).strip() or (f"{error} → {fix}" if fix else error)
        if not text:
            return None
        return Marker(kind=kind, text=text, error=error, fix=fix)
    text = str(payload.get("text", "")).strip()
    if not text:
        return None
    return Marker(kind=kind, text=text)


def _parse_legacy_line(line: str) -> Marker | None:
    candidate = _BULLET_PATTERN.sub("", line, count=1).strip()
    candidate, opener = _strip_emphasis(candidate)
    upper = candidate.upper()
    for kind in MARKER_KINDS:
        keyword = kind.upper()
        if not upper.startswith(keyword):
            continue
        rest = candidate[len(keyword) :]
        if opener and rest.startswith(opener):
            rest = rest[len(opener) :]
        rest = rest.lstrip()
        if not rest.startswith(":"):
            return None
        rest = rest[1:]
        if opener and rest.startswith(opener):
            rest = rest[len(opener) :]
        text = rest.strip()
        if not text:
            return None
        if kind == "fixed":
            parts = _FIX_SEPARATOR.split(text, maxsplit=1)
            if len(parts) == 2:
                return Marker(kind=kind, text=text, error=parts[0].strip(), fix=parts[1].strip())
            return Marker(kind=kind, text=text, error=text)
        return Marker(kind=kind, text=text)
    return None


def parse_markers(output: str) -> list[Marker]:
    """Return every marker in ``output`` in the order it appears."""
    markers: list[Marker] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        marker = _parse_json_line(line)
        if marker is None and line in COMPLETION_MARKERS:
            marker = Marker(kind="complete", text="")
        if marker is None:
            marker = _parse_legacy_line(line)
        if marker is not None:
            markers.append(marker)
    return markers


def has_completion_marker(output: str) -> bool:
    """Only a marker on a line of its own counts; quoting one in prose does not."""
    return any(marker.kind == "complete" for marker in parse_markers(output))
