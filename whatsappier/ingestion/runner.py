"""Bounded, key-partitioned worker pool with cancel support."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from threading import Event

logger = logging.getLogger(__name__)


class WorkPoolSaturated(RuntimeError):
    """Raised by :meth:`KeyedWorkPool.submit` when the backlog is full."""


class WorkPoolClosed(RuntimeError):
    pass


class KeyedWorkPool:
    """Wrapper around :class:`ThreadPoolExecutor` that orders work per key.

    Items sharing a partition key run one after another in submission order;
    items with different keys run concurrently. Each item gets its own
    :class:`threading.Event` used as a cancellation flag and passed to the
    worker as its only argument. Queued and running items count towards
    ``max_pending``; delayed work waits in a job store outside the pool.
    """

    # Worker function signature
    Worker = Callable[[Event], None]

    def __init__(self, max_workers: int = 4, max_pending: int = 1000):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="whatsappier-worker"
        )
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._queues: dict[str, deque[tuple[KeyedWorkPool.Worker, Event]]] = {}
        self._draining: set[str] = set()
        self._events: set[Event] = set()
        self._pending = 0
        self._closed = False

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def submit(self, key: str, fn: Worker) -> Event:
        """Queue ``fn`` behind earlier work for ``key``."""

        cancel_event = self._reserve()
        self._enqueue(key, fn, cancel_event)
        return cancel_event

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no work is queued or running."""

        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Set every cancel flag and stop the executor."""

        with self._lock:
            self._closed = True
            for event in self._events:
                event.set()
        self.executor.shutdown(wait=wait, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reserve(self) -> Event:
        with self._lock:
            if self._closed:
                raise WorkPoolClosed("Work pool is shut down")
            if self._pending >= self.max_pending:
                raise WorkPoolSaturated(
                    f"{self._pending} work items pending (limit {self.max_pending})"
                )
            self._pending += 1
            cancel_event = Event()
            self._events.add(cancel_event)
            return cancel_event

    def _release(self, cancel_event: Event) -> None:
        with self._lock:
            self._pending -= 1
            self._events.discard(cancel_event)
            self._idle.notify_all()

    def _enqueue(self, key: str, fn: Worker, cancel_event: Event) -> None:
        with self._lock:
            closed = self._closed
            start = False
            if not closed:
                self._queues.setdefault(key, deque()).append((fn, cancel_event))
                start = key not in self._draining
                if start:
                    self._draining.add(key)
        if closed:
            self._release(cancel_event)
            return
        if start:
            self.executor.submit(self._drain, key)

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(key)
                if not queue:
                    self._queues.pop(key, None)
                    self._draining.discard(key)
                    return
                fn, cancel_event = queue.popleft()
            try:
                if not cancel_event.is_set():
                    fn(cancel_event)
            except Exception:
                logger.exception("Work item for partition %s failed", key)
            finally:
                self._release(cancel_event)


class PeriodicSweeper:
    """Call ``fn`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, interval: float, fn: Callable[[], object], *, name: str = "sweeper"):
        self.interval = interval
        self._fn = fn
        self._stop = Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._fn()
            except Exception:
                logger.exception("Periodic sweep failed")
