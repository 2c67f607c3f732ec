"""Per-run cancellation: run id -> one-shot cancel signal."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from llamarun.errors import RunIdInUseError


class CancelSignal:
    """One-shot signal bound to the event loop that created it.

    ``fire()`` may be called from any thread; firing twice is a no-op.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        self._event: asyncio.Event = asyncio.Event()

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self) -> None:
        if self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        else:
            self._loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        await self._event.wait()


class CancelRegistry:
    """Maps run ids to live cancel signals; at most one entry per run id."""

    def __init__(self) -> None:
        self._signals: dict[str, CancelSignal] = {}
        self._lock = threading.Lock()

    def register(self, run_id: str) -> CancelSignal:
        """Create and register a fresh signal for ``run_id``.

        Raises:
            RunIdInUseError: If a call with the same run id is still in flight
        """
        signal = CancelSignal()
        with self._lock:
            if run_id in self._signals:
                raise RunIdInUseError(run_id)
            self._signals[run_id] = signal
        return signal

    def unregister(self, run_id: str, signal: CancelSignal) -> None:
        """Remove the entry only if it is still ``signal`` (never someone else's)."""
        with self._lock:
            if self._signals.get(run_id) is signal:
                del self._signals[run_id]

    @contextmanager
    def registered(self, run_id: str) -> Iterator[CancelSignal]:
        """Register for the duration of a call; the entry never outlives it."""
        signal = self.register(run_id)
        try:
            yield signal
        finally:
            self.unregister(run_id, signal)

    def cancel(self, run_id: str) -> bool:
        """Remove and fire the signal for ``run_id``.

        Unknown or already finished run ids are a no-op: callers may race a
        cancel against natural completion.

        Returns:
            True if a live run was signalled
        """
        with self._lock:
            signal = self._signals.pop(run_id, None)
        if signal is None:
            return False
        signal.fire()
        return True

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._signals

    def __len__(self) -> int:
        with self._lock:
            return len(self._signals)
