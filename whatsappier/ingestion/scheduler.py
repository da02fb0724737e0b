"""Delayed dispatch jobs kept outside the worker pool.

A delayed action (an abandoned-checkout reminder, for instance) is parked in
a job store keyed by its due time. A poller periodically moves due jobs onto
the :class:`KeyedWorkPool`, so parked jobs never count against the pool
backlog. The Redis store survives restarts and is shared by every process;
the in-memory store is for tests and single-process development.
"""

from __future__ import annotations

import heapq
import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event
from typing import Any, List, Optional, Protocol

import redis

from ..automations.models import TriggerEvent
from .runner import KeyedWorkPool, WorkPoolClosed, WorkPoolSaturated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelayedJob:
    job_id: str
    automation_id: str
    event: TriggerEvent
    due_at: float

    def to_json(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "automation_id": self.automation_id,
                "event": self.event.to_dict(),
                "due_at": self.due_at,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "DelayedJob":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            job_id=data["job_id"],
            automation_id=data["automation_id"],
            event=TriggerEvent.from_dict(data["event"]),
            due_at=float(data["due_at"]),
        )


class DelayedJobStore(Protocol):
    def add(self, job: DelayedJob) -> None: ...

    def pop_due(self, now: float, limit: int) -> List[DelayedJob]:
        """Remove and return up to ``limit`` jobs due at ``now``, earliest first."""
        ...

    def count(self) -> int: ...


class InMemoryDelayedJobStore:
    def __init__(self) -> None:
        self._heap: list[tuple[float, str, DelayedJob]] = []
        self._lock = threading.Lock()

    def add(self, job: DelayedJob) -> None:
        with self._lock:
            heapq.heappush(self._heap, (job.due_at, job.job_id, job))

    def pop_due(self, now: float, limit: int) -> List[DelayedJob]:
        due: List[DelayedJob] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now and len(due) < limit:
                due.append(heapq.heappop(self._heap)[2])
        return due

    def count(self) -> int:
        with self._lock:
            return len(self._heap)


class RedisDelayedJobStore:
    """Sorted set of serialized jobs scored by their due timestamp.

    A job belongs to whichever process removes it from the set, so several
    pollers can share one key without running a job twice.
    """

    def __init__(
        self, client: redis.Redis, *, key: str = "whatsappier:delayed-dispatch"
    ) -> None:
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str) -> "RedisDelayedJobStore":
        return cls(redis.Redis.from_url(url))

    def add(self, job: DelayedJob) -> None:
        self.client.zadd(self.key, {job.to_json(): job.due_at})

    def pop_due(self, now: float, limit: int) -> List[DelayedJob]:
        members = self.client.zrangebyscore(self.key, "-inf", now, start=0, num=limit)
        due: List[DelayedJob] = []
        for member in members:
            if not self.client.zrem(self.key, member):
                continue
            try:
                due.append(DelayedJob.from_json(member))
            except (ValueError, KeyError) as exc:
                logger.error("Discarding unreadable delayed job %r: %s", member, exc)
        return due

    def count(self) -> int:
        return int(self.client.zcard(self.key))


def create_delayed_job_store(redis_url: Optional[str]) -> DelayedJobStore:
    if redis_url:
        return RedisDelayedJobStore.from_url(redis_url)
    logger.warning("REDIS_URL not set; delayed dispatches are kept in memory only")
    return InMemoryDelayedJobStore()


class DelayedDispatchScheduler:
    """Park jobs in ``store`` and hand due ones to the worker pool.

    ``submit`` is :meth:`KeyedWorkPool.submit` (or a stand-in with the same
    signature); ``run`` executes one job with the cancel flag of its work
    item.
    """

    Runner = Callable[[DelayedJob, Event], None]

    def __init__(
        self,
        store: DelayedJobStore,
        submit: Callable[[str, KeyedWorkPool.Worker], Any],
        run: Runner,
        *,
        clock: Callable[[], float] = time.time,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self._submit = submit
        self._run = run
        self._clock = clock
        self.batch_size = batch_size

    def schedule(
        self, delay_seconds: float, automation_id: str, event: TriggerEvent
    ) -> DelayedJob:
        job = DelayedJob(
            job_id=uuid.uuid4().hex,
            automation_id=automation_id,
            event=event,
            due_at=self._clock() + delay_seconds,
        )
        self.store.add(job)
        return job

    def poll(self, now: float | None = None) -> int:
        """Submit every due job; return how many reached the pool.

        Jobs the pool refuses go back to the store unchanged and are retried
        on the next poll.
        """

        now = self._clock() if now is None else now
        due = self.store.pop_due(now, self.batch_size)
        for index, job in enumerate(due):
            try:
                self._submit(
                    job.event.partition_key, lambda cancel, job=job: self._run(job, cancel)
                )
            except (WorkPoolSaturated, WorkPoolClosed) as exc:
                logger.warning(
                    "Worker pool refused delayed job %s (%s); %s job(s) put back",
                    job.job_id,
                    exc,
                    len(due) - index,
                )
                for remaining in due[index:]:
                    self.store.add(remaining)
                return index
        return len(due)

    def pending_count(self) -> int:
        return self.store.count()


__all__ = [
    "DelayedDispatchScheduler",
    "DelayedJob",
    "DelayedJobStore",
    "InMemoryDelayedJobStore",
    "RedisDelayedJobStore",
    "create_delayed_job_store",
]
