from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from foreman.backends.base import AgentProcessError, StreamDecoder
from foreman.shutdown import ShutdownFlag

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = 16 * 1024 * 1024
READER_DRAIN_SECONDS = 2.0


@dataclass(slots=True)
class StreamResult:
    output: str
    exit_code: int | None
    timed_out: bool = False
    interrupted: bool = False
    duration_seconds: float = 0.0


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.warning("Not permitted to signal process group %d with %s", pid, sig.name)


async def terminate_process_group(
    process: asyncio.subprocess.Process, grace_seconds: float
) -> None:
    """SIGTERM the child's process group, then SIGKILL it after ``grace_seconds``."""
    if process.returncode is not None:
        return
    _signal_group(process.pid, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        return
    except TimeoutError:
        logger.warning("Worker pid %d ignored SIGTERM; sending SIGKILL", process.pid)
    _signal_group(process.pid, signal.SIGKILL)
    await process.wait()


async def run_streaming(
    argv: list[str],
    *,
    log_handle: TextIO,
    decoder: StreamDecoder,
    timeout_seconds: float,
    grace_seconds: float = 5.0,
    shutdown: ShutdownFlag | None = None,
    cwd: Path | None = None,
) -> StreamResult:
    """Run ``argv`` and copy decoded output to ``log_handle`` line by line.

    The reader races a wall-clock timeout and the shutdown flag. When either
    wins, the whole process group is terminated before this returns.
    """
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            limit=STREAM_LIMIT_BYTES,
        )
    except FileNotFoundError as exc:
        raise AgentProcessError(f"Worker binary not found: {argv[0]}", retriable=False) from exc
    except PermissionError as exc:
        raise AgentProcessError(
            f"Worker binary is not executable: {argv[0]}", retriable=False
        ) from exc

    if process.stdout is None:
        raise AgentProcessError("Worker process did not expose stdout.", retriable=False)

    collected: list[str] = []

    def _write(text: str) -> None:
        collected.append(text)
        log_handle.write(text + "\n")
        log_handle.flush()

    async def _pump() -> int:
        assert process.stdout is not None
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            for text in decoder.feed(line):
                _write(text)
        for text in decoder.flush():
            _write(text)
        return await process.wait()

    reader = asyncio.create_task(_pump())
    waiters: set[asyncio.Task] = {reader}
    stop_waiter: asyncio.Task | None = None
    if shutdown is not None:
        stop_waiter = asyncio.create_task(shutdown.wait())
        waiters.add(stop_waiter)

    done, _ = await asyncio.wait(
        waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
    )
    if stop_waiter is not None and stop_waiter not in done:
        stop_waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_waiter

    if reader in done:
        return StreamResult(
            output="\n".join(collected),
            exit_code=reader.result(),
            duration_seconds=round(time.monotonic() - started, 3),
        )

    interrupted = stop_waiter is not None and stop_waiter in done
    if interrupted:
        logger.warning("Terminating worker pid %d for shutdown", process.pid)
    else:
        logger.warning("Worker pid %d exceeded %.0fs; terminating", process.pid, timeout_seconds)
    await terminate_process_group(process, grace_seconds)

    try:
        await asyncio.wait_for(reader, timeout=READER_DRAIN_SECONDS)
    except TimeoutError:
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    if interrupted:
        marker = "[foreman] worker interrupted by shutdown"
    else:
        marker = f"[foreman] worker timed out after {timeout_seconds:g}s"
    log_handle.write(marker + "\n")
    log_handle.flush()
    return StreamResult(
        output="\n".join(collected),
        exit_code=process.returncode,
        timed_out=not interrupted,
        interrupted=interrupted,
        duration_seconds=round(time.monotonic() - started, 3),
    )
