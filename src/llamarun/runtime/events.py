"""Token-stream event channel: fan out `{run_id, content}` fragments to subscribers."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from llamarun.models import StreamToken

_DEFAULT_QUEUE_SIZE = 1000


class _Subscriber:
    def __init__(self, run_id: str | None, maxsize: int) -> None:
        self.run_id: str | None = run_id
        self.queue: asyncio.Queue[StreamToken] = asyncio.Queue(maxsize=maxsize)

    def wants(self, token: StreamToken) -> bool:
        return self.run_id is None or self.run_id == token.run_id


class TokenBroadcaster:
    """Publishes streamed tokens to every live subscriber queue.

    Publishing never blocks: a subscriber that falls behind loses its oldest
    queued tokens rather than stalling the stream that produces them.
    """

    def __init__(self, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[_Subscriber] = []
        self._lock = threading.Lock()

    @contextmanager
    def subscribe(self, run_id: str | None = None) -> Iterator[asyncio.Queue[StreamToken]]:
        """Receive tokens for one run id (or all runs) while the context is open."""
        subscriber = _Subscriber(run_id, self._queue_size)
        with self._lock:
            self._subscribers.append(subscriber)
        try:
            yield subscriber.queue
        finally:
            with self._lock:
                self._subscribers.remove(subscriber)

    def publish(self, token: StreamToken) -> int:
        """Deliver ``token`` to matching subscribers; returns how many received it."""
        with self._lock:
            targets = [s for s in self._subscribers if s.wants(token)]
        for subscriber in targets:
            if subscriber.queue.full():
                subscriber.queue.get_nowait()
            subscriber.queue.put_nowait(token)
        return len(targets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
