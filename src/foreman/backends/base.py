from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any


class AgentExecutionError(RuntimeError):
    """Raised when a worker invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class TransientAgentFailure(AgentExecutionError):
    """A single attempt failed in a way worth retrying."""


class PermanentAgentFailure(AgentExecutionError):
    """Retries are exhausted or the failure cannot be retried."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message, backend=backend, exit_code=exit_code, retriable=False)
        self.attempts = attempts


class AgentProcessError(AgentExecutionError):
    """Raised when the worker process cannot be started or supervised."""


class ShutdownRequested(AgentExecutionError):
    def __init__(self, message: str = "Shutdown requested.", *, backend: str | None = None) -> None:
        super().__init__(message, backend=backend, retriable=False)


class StreamDecoder:
    """Turns raw worker stdout lines into log text. Plain output passes through."""

    def feed(self, line: str) -> list[str]:
        return [line]

    def flush(self) -> list[str]:
        return []


class JsonStreamDecoder(StreamDecoder):
    """Decodes JSON-lines event streams, joining events split across lines."""

    def __init__(self, extract: Callable[[dict[str, Any]], str]) -> None:
        self.extract = extract
        self.parse_buffer = ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> list[str]:
        line = line.strip()
        if not line:
            return []
        candidate = f"{self.parse_buffer}{line}" if self.parse_buffer else line
        try:
            event = json.loads(candidate)
            self.parse_buffer = ""
        except json.JSONDecodeError:
            if self._appears_partial_json(candidate):
                self.parse_buffer = candidate
                return []
            self.parse_buffer = ""
            return [line]

        if not isinstance(event, dict):
            return [candidate]
        content = self.extract(event)
        return [content] if content else []

    def flush(self) -> list[str]:
        if not self.parse_buffer:
            return []
        pending, self.parse_buffer = self.parse_buffer, ""
        return [pending]


class AgentBackend(ABC):
    name = "agent"

    def __init__(self, binary: str, extra_args: list[str] | None = None) -> None:
        self.binary = binary
        self.extra_args = list(extra_args or [])

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv that runs one work unit for ``prompt``."""

    def decoder(self) -> StreamDecoder:
        return StreamDecoder()
