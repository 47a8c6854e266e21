from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
LOCK_TIMEOUT_SECONDS = 3.0
UPDATE_ATTEMPTS = 4


class StateError(RuntimeError):
    """Raised when controller state cannot be read or written."""


class StateConflict(StateError):
    """Another writer moved a namespace past the revision we read."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` so readers only ever observe the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


@dataclass(slots=True)
class Envelope:
    data: Any
    revision: int = 1
    schema_version: int = SCHEMA_VERSION
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "revision": self.revision,
            "updated_at": self.updated_at,
            "data": self.data,
        }

    @classmethod
    def from_raw(cls, raw: Any, default: Any) -> Envelope:
        # Files written before the envelope existed hold the bare payload.
        if not isinstance(raw, dict) or not {"schema_version", "revision", "data"} <= raw.keys():
            return cls(data=default if raw is None else raw)
        return cls(
            data=raw.get("data", default),
            revision=int(raw.get("revision") or 1),
            schema_version=int(raw.get("schema_version") or SCHEMA_VERSION),
            updated_at=str(raw.get("updated_at") or utcnow_iso()),
        )


class StateStore:
    """Revisioned JSON namespaces under one spec's state directory."""

    NAMESPACES = frozenset({"loop", "gates", "metrics"})
    SCHEMA_VERSION = SCHEMA_VERSION

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    def _path(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + LOCK_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as exc:
                if time.monotonic() > deadline:
                    holder = self.lock_file.read_text(encoding="utf-8", errors="replace")
                    raise StateError(
                        f"Timed out waiting for {self.lock_file} (held by pid {holder or '?'})."
                    ) from exc
                time.sleep(0.02)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            break
        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def get_envelope(self, namespace: str, default: Any | None = None) -> Envelope:
        path = self._path(namespace)
        fallback = {} if default is None else default
        if not path.exists():
            return Envelope(data=fallback)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state namespace %s at %s", namespace, path)
            return Envelope(data=fallback)
        return Envelope.from_raw(raw, fallback)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).data

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        """Store ``data`` and return the new revision."""
        path = self._path(namespace)
        with self._locked():
            current = self.get_envelope(namespace)
            if expected_revision is not None and expected_revision != current.revision:
                raise StateConflict(
                    f"State namespace '{namespace}' moved to revision {current.revision} "
                    f"(expected {expected_revision})."
                )
            envelope = Envelope(data=data, revision=current.revision + 1)
            atomic_write_text(
                path, json.dumps(envelope.to_dict(), ensure_ascii=False, separators=(",", ":"))
            )
        return envelope.revision

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, retrying when another writer got in first."""
        conflict: StateConflict | None = None
        for _ in range(UPDATE_ATTEMPTS):
            current = self.get_envelope(namespace, default=default)
            updated = updater(current.data)
            try:
                self.set_json(namespace, updated, expected_revision=current.revision)
            except StateConflict as exc:
                conflict = exc
                logger.debug("Retrying state update: %s", exc)
                time.sleep(0.01)
                continue
            return updated
        raise StateError(
            f"Gave up updating '{namespace}' after {UPDATE_ATTEMPTS} attempts: {conflict}"
        )

    def _get_dict(self, namespace: str) -> dict[str, Any]:
        payload = self.get_json(namespace)
        return payload if isinstance(payload, dict) else {}

    def get_loop(self) -> dict[str, Any]:
        return self._get_dict("loop")

    def set_loop(self, payload: dict[str, Any]) -> None:
        self.set_json("loop", payload)

    def get_gate_counters(self) -> dict[str, Any]:
        return self._get_dict("gates")

    def set_gate_counters(self, counters: dict[str, Any]) -> None:
        self.set_json("gates", counters)

    def get_metrics(self) -> dict[str, Any]:
        return self._get_dict("metrics")

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.set_json("metrics", metrics)
