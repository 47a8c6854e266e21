from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from foreman.state.store import StateError, utcnow_iso

logger = logging.getLogger(__name__)


class IterationOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True, slots=True)
class IterationRecord:
    iteration: int
    outcome: IterationOutcome
    log_path: str
    timestamp: str = field(default_factory=utcnow_iso)
    task_id: str | None = None
    completion_claimed: bool = False
    gates: list[dict[str, Any]] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationRecord:
        return cls(
            iteration=int(payload["iteration"]),
            outcome=IterationOutcome(payload["outcome"]),
            log_path=str(payload.get("log_path", "")),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
            task_id=payload.get("task_id"),
            completion_claimed=bool(payload.get("completion_claimed", False)),
            gates=list(payload.get("gates", [])),
            notes=str(payload.get("notes", "")),
        )


class IterationJournal:
    """Append-only log of iteration records, one JSON object per line."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, record: IterationRecord) -> None:
        last = self.last()
        if last is not None and record.iteration <= last.iteration:
            raise StateError(
                f"Iteration {record.iteration} is not after recorded iteration {last.iteration}."
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def records(self) -> list[IterationRecord]:
        if not self.path.exists():
            return []
        records: list[IterationRecord] = []
        for line_no, raw_line in enumerate(
            self.path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            line = raw_line.strip()
            if not line:
                continue
            try:
                records.append(IterationRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed iteration record %s:%d", self.path, line_no)
        return records

    def last(self) -> IterationRecord | None:
        records = self.records()
        return records[-1] if records else None
