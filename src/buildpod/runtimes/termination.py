"""Cooperative termination signal and first-completed racing.

``TerminationSignal`` is the caller-owned notification every supervising
loop observes (watch loop, log copy tasks, local wait/attach). It is
level-triggered: once fired it stays fired, and every later check sees
it. It is never consumed.

``first_completed`` is the single racing primitive used at every
suspension point: it waits for the first of several awaitables,
cancels the rest, and waits for the cancelled ones to unwind so no task
outlives the race.

Example:
    >>> term = TerminationSignal()
    >>> done = await first_completed(watch_task, term.wait(), timeout=5400)
    >>> if not done:
    ...     ...  # timed out

Tags:
    buildpod, runtimes, cancellation, asyncio, signals
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Iterable
from typing import Any

logger = logging.getLogger(__name__)


class TerminationSignal:
    """Level-triggered cancellation token backed by ``asyncio.Event``.

    Many tasks may wait on it at once; firing it releases all of them,
    and firing it again is a no-op.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def fire(self, reason: str = "terminated") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        logger.info("Termination signalled: %s", reason)
        self._event.set()

    async def wait(self) -> bool:
        await self._event.wait()
        return True

    def bind_process_signals(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """Fire this token when the process receives SIGINT/SIGTERM."""
        loop = loop or asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self.fire, f"received {sig.name}")

    def __repr__(self) -> str:
        state = f"fired: {self._reason}" if self.fired else "armed"
        return f"TerminationSignal({state})"


async def first_completed(
    *aws: Awaitable[Any],
    timeout: float | None = None,
) -> set[asyncio.Future[Any]]:
    """Wait for the first awaitable to finish, then cancel the others.

    Returns the set of finished futures; empty when ``timeout`` expired
    first. Pending futures are cancelled and awaited before returning.
    If the caller itself is cancelled, everything is cancelled too.
    """
    futures = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, pending = await asyncio.wait(
            futures, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await _cancel_all(futures)
        raise
    await _cancel_all(pending)
    return done


async def _cancel_all(futures: Iterable[asyncio.Future[Any]]) -> None:
    pending = [f for f in futures if not f.done()]
    for fut in pending:
        fut.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
