from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1


class ShutdownFlag:
    """Cooperative stop request shared by the controller and the invoker."""

    def __init__(self) -> None:
        self._requested = False
        self.reason = ""

    @property
    def requested(self) -> bool:
        return self._requested

    def request(self, reason: str = "shutdown requested") -> None:
        if not self._requested:
            logger.warning("Shutdown requested (%s); finishing current step.", reason)
        self._requested = True
        self.reason = reason

    async def wait(self) -> None:
        while not self._requested:
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns False when interrupted by shutdown."""
        deadline = time.monotonic() + seconds
        while not self._requested:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))
        return False


@contextmanager
def signal_handlers(flag: ShutdownFlag) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        flag.request(name)

    installed = True
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
