from __future__ import annotations

import json
import logging
import os
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from foreman.markers import Marker, parse_markers
from foreman.state.store import atomic_write_text, utcnow_iso

logger = logging.getLogger(__name__)

CATEGORIES = ("discovery", "pattern", "fix", "success", "blocker", "iteration_failure")
MARKER_CATEGORY = {
    "completed": "success",
    "learning": "discovery",
    "pattern": "pattern",
    "fixed": "fix",
    "blocker": "blocker",
}

HARMFUL_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(skip|ignore|disable|bypass|suppress|silence|comment(?:ing)? out)\w*\b"
        r"[^.\n]{0,40}\b(gates?|tests?|lint\w*|checks?|type[- ]?checks?|ci|hooks?)\b",
        r"\b(gates?|tests?|checks?|failures?|errors?)\b[^.\n]{0,40}\b(can|may|should)\s+be\s+"
        r"(safely\s+)?(ignored|skipped|dismissed|disabled)",
        r"\b(pre-?existing|unrelated|environmental|flaky)\b[^.\n]{0,60}"
        r"\b(failures?|errors?|issues?)\b"
        r"[^.\n]{0,40}\b(ignore|skip|not\s+(our|my)\s+(problem|concern)|safe)",
        r"\bnot\s+(my|our)\s+(problem|concern|responsibility)\b",
        r"--no-verify\b",
        r"\|\|\s*true\b",
        r"@?pytest\.mark\.skip\b",
        r"\b(xfail|it\.skip|describe\.skip|test\.skip)\b",
    )
)

_TOKEN_PATTERN = re.compile(r"[a-z0-9_]{3,}")
_STOPWORDS = {
    "the",
    "and",
    "for",
    "with",
    "that",
    "this",
    "from",
    "not",
    "was",
    "are",
    "error",
    "line",
    "file",
    "failed",
}
_SUMMARY_KINDS = ("completed", "learning", "fixed", "blocker")


def is_harmful(text: str) -> bool:
    return any(pattern.search(text) for pattern in HARMFUL_PATTERNS)


def _tokenize(text: str) -> set[str]:
    return {token for token in _TOKEN_PATTERN.findall(text.lower()) if token not in _STOPWORDS}


@dataclass(slots=True)
class LearningEntry:
    category: str
    text: str
    spec: str = ""
    iteration: int = 0
    timestamp: str = field(default_factory=utcnow_iso)
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LearningEntry:
        return cls(
            category=str(payload["category"]),
            text=str(payload["text"]),
            spec=str(payload.get("spec", "")),
            iteration=int(payload.get("iteration", 0)),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
            files=[str(item) for item in payload.get("files", []) if item],
        )


@dataclass(frozen=True, slots=True)
class IterationSummary:
    passed: bool
    marker: Marker | None

    def render(self) -> str:
        outcome = "PASSED" if self.passed else "FAILED"
        if self.marker is None:
            return f"Previous iteration: {outcome}."
        return f"Previous iteration: {outcome}. Last {self.marker.kind}: {self.marker.text}"


class LearningStore:
    """Append-only JSON-lines store of learnings shared by every spec."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.reset_path = path.with_name(f"{path.stem}.resets.json")

    def _read_resets(self) -> dict[str, int]:
        if not self.reset_path.exists():
            return {}
        try:
            payload = json.loads(self.reset_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}
        if not isinstance(payload, dict):
            return {}
        return {
            str(spec): mark
            for spec, mark in payload.items()
            if isinstance(mark, int) and not isinstance(mark, bool)
        }

    def entries(self) -> list[LearningEntry]:
        if not self.path.exists():
            return []
        entries: list[LearningEntry] = []
        for line_no, raw_line in enumerate(
            self.path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            line = raw_line.strip()
            if not line:
                continue
            try:
                entries.append(LearningEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed learning %s:%d", self.path, line_no)
        return entries

    def append(self, entry: LearningEntry) -> bool:
        if entry.category not in CATEGORIES:
            raise ValueError(f"Unknown learning category: {entry.category}")
        text = entry.text.strip()
        if not text:
            return False
        if is_harmful(text):
            logger.warning("Rejected harmful learning for %s: %s", entry.spec or "-", text[:200])
            return False
        entry.text = text
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def extract(self, output: str, *, spec: str, iteration: int) -> list[LearningEntry]:
        entries: list[LearningEntry] = []
        for marker in parse_markers(output):
            category = MARKER_CATEGORY.get(marker.kind)
            if category is None:
                continue
            entries.append(
                LearningEntry(category=category, text=marker.text, spec=spec, iteration=iteration)
            )
        return entries

    def record_output(self, output: str, *, spec: str, iteration: int) -> list[LearningEntry]:
        """Extract learnings from worker output and persist the acceptable ones."""
        stored: list[LearningEntry] = []
        for entry in self.extract(output, spec=spec, iteration=iteration):
            if self.append(entry):
                stored.append(entry)
        return stored

    def query(
        self, category: str | None = None, *, limit: int = 10, spec: str | None = None
    ) -> list[LearningEntry]:
        resets = self._read_resets()
        matched: list[LearningEntry] = []
        for position, entry in reversed(list(enumerate(self.entries()))):
            if category is not None and entry.category != category:
                continue
            if spec is not None:
                if entry.spec != spec:
                    continue
                if position < resets.get(spec, 0):
                    continue
            if is_harmful(entry.text):
                continue
            matched.append(entry)
            if len(matched) >= limit:
                break
        return matched

    def render(self, spec: str, *, limit: int = 10) -> str:
        groups = (
            ("Discoveries & successes", ("discovery", "success")),
            ("Prior fixes (don't repeat these)", ("fix",)),
            ("Patterns", ("pattern",)),
        )
        blocks: list[str] = []
        for title, categories in groups:
            items: list[LearningEntry] = []
            for category in categories:
                items.extend(self.query(category, limit=limit, spec=spec))
            items.sort(key=lambda item: item.timestamp, reverse=True)
            if not items:
                continue
            lines = [f"### {title}"]
            lines.extend(f"- {item.text}" for item in items[: limit * len(categories)])
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def find_similar_fixes(self, error_text: str, *, limit: int = 3) -> list[LearningEntry]:
        wanted = _tokenize(error_text)
        if not wanted:
            return []
        scored: list[tuple[int, int, LearningEntry]] = []
        for position, entry in enumerate(self.entries()):
            if entry.category != "fix" or is_harmful(entry.text):
                continue
            overlap = len(wanted & _tokenize(entry.text))
            if overlap >= 2:
                scored.append((overlap, position, entry))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [entry for _, _, entry in scored[:limit]]

    def reset(self, spec: str) -> int:
        """Drop harmful entries for ``spec`` and empty its rendered context.

        A reset marks how many entries existed at that moment; ``query`` hides
        the spec's entries that sit before the mark.
        """
        kept: list[LearningEntry] = []
        purged_at: list[int] = []
        for position, entry in enumerate(self.entries()):
            if entry.spec == spec and is_harmful(entry.text):
                purged_at.append(position)
                continue
            kept.append(entry)
        resets = self._read_resets()
        if purged_at:
            atomic_write_text(
                self.path,
                "".join(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n" for entry in kept),
            )
            for other, mark in resets.items():
                resets[other] = mark - sum(1 for position in purged_at if position < mark)
        resets[spec] = len(kept)
        atomic_write_text(self.reset_path, json.dumps(resets, ensure_ascii=False, indent=2))
        logger.info(
            "Reset learning context for %s (purged %d harmful entries)", spec, len(purged_at)
        )
        return len(purged_at)

    def stats(self, spec: str | None = None) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for entry in self.entries():
            if spec is None or entry.spec == spec:
                counts[entry.category] += 1
        return {category: counts.get(category, 0) for category in CATEGORIES}


def summarize(log_text: str, *, passed: bool) -> IterationSummary:
    latest: Marker | None = None
    for marker in parse_markers(log_text):
        if marker.kind in _SUMMARY_KINDS:
            latest = marker
    return IterationSummary(passed=passed, marker=latest)


def summarize_log(log_path: Path, *, passed: bool) -> IterationSummary:
    if not log_path.exists():
        return IterationSummary(passed=passed, marker=None)
    return summarize(log_path.read_text(encoding="utf-8", errors="replace"), passed=passed)
