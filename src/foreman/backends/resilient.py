from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from foreman.backends.base import (
    AgentBackend,
    AgentExecutionError,
    PermanentAgentFailure,
    ShutdownRequested,
    TransientAgentFailure,
)
from foreman.backends.classifier import classify_attempt
from foreman.backends.process import StreamResult, run_streaming
from foreman.shutdown import ShutdownFlag

BackendEventHook = Callable[[dict[str, Any]], None]
SleepFunction = Callable[[float], Awaitable[bool]]
SpawnFunction = Callable[..., Awaitable[StreamResult]]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 5.0
    timeout_seconds: float = 600.0
    grace_seconds: float = 5.0

    @property
    def attempts(self) -> int:
        return max(1, self.max_retries)

    def delay_for(self, retry: int) -> float:
        return self.backoff_seconds * (2 ** (retry - 1))


@dataclass(slots=True)
class AgentRun:
    output: str
    exit_code: int | None
    attempts: int
    duration_seconds: float = 0.0


async def _plain_sleep(seconds: float) -> bool:
    await asyncio.sleep(seconds)
    return True


class ResilientInvoker:
    """Runs one work unit with a timeout, classifying and retrying transient failures."""

    def __init__(
        self,
        backend: AgentBackend,
        retry_policy: RetryPolicy,
        *,
        shutdown: ShutdownFlag | None = None,
        event_hook: BackendEventHook | None = None,
        cwd: Path | None = None,
        sleep: SleepFunction | None = None,
        spawn: SpawnFunction = run_streaming,
    ) -> None:
        self.backend = backend
        self.retry_policy = retry_policy
        self.shutdown = shutdown
        self.event_hook = event_hook
        self.cwd = cwd
        if sleep is not None:
            self._sleep = sleep
        elif shutdown is not None:
            self._sleep = shutdown.sleep
        else:
            self._sleep = _plain_sleep
        self._spawn = spawn

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _shutdown_requested(self) -> bool:
        return self.shutdown is not None and self.shutdown.requested

    async def _attempt(self, argv: list[str], log_handle: TextIO, attempt: int) -> AgentRun:
        result = await self._spawn(
            argv,
            log_handle=log_handle,
            decoder=self.backend.decoder(),
            timeout_seconds=self.retry_policy.timeout_seconds,
            grace_seconds=self.retry_policy.grace_seconds,
            shutdown=self.shutdown,
            cwd=self.cwd,
        )
        if result.interrupted:
            raise ShutdownRequested(backend=self.backend.name)
        verdict = classify_attempt(result.output, result.exit_code, timed_out=result.timed_out)
        if verdict.transient:
            raise TransientAgentFailure(
                verdict.reason, backend=self.backend.name, exit_code=result.exit_code
            )
        return AgentRun(
            output=result.output,
            exit_code=result.exit_code,
            attempts=attempt,
            duration_seconds=result.duration_seconds,
        )

    async def invoke(self, prompt: str, log_path: Path) -> AgentRun:
        total = self.retry_policy.attempts
        argv = self.backend.build_command(prompt)
        errors: list[str] = []
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with log_path.open("a", encoding="utf-8") as log_handle:
            for attempt in range(1, total + 1):
                if attempt > 1:
                    delay = self.retry_policy.delay_for(attempt - 1)
                    self._emit(
                        {
                            "event": "agent_retry",
                            "backend": self.backend.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    log_handle.write(f"[foreman] retrying in {delay:g}s\n")
                    log_handle.flush()
                    if not await self._sleep(delay):
                        raise ShutdownRequested(backend=self.backend.name)
                if self._shutdown_requested():
                    raise ShutdownRequested(backend=self.backend.name)

                log_handle.write(f"[foreman] attempt {attempt}/{total} ({self.backend.name})\n")
                log_handle.flush()
                try:
                    return await self._attempt(argv, log_handle, attempt)
                except ShutdownRequested:
                    raise
                except AgentExecutionError as exc:
                    errors.append(f"attempt {attempt}: {exc}")
                    self._emit(
                        {
                            "event": "agent_attempt_failed",
                            "backend": self.backend.name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        self._emit(
                            {
                                "event": "agent_permanent_failure",
                                "backend": self.backend.name,
                                "attempts": attempt,
                            }
                        )
                        raise PermanentAgentFailure(
                            str(exc), backend=self.backend.name, attempts=attempt
                        ) from exc

        self._emit(
            {"event": "agent_permanent_failure", "backend": self.backend.name, "attempts": total}
        )
        summary = "; ".join(errors[-6:])
        raise PermanentAgentFailure(
            f"Worker failed after {total} attempts. {summary}",
            backend=self.backend.name,
            attempts=total,
        )
