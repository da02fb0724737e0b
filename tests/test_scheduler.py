import threading

from whatsappier.automations.models import Platform, SourceHint
from whatsappier.automations.normalizer import normalize
from whatsappier.ingestion.runner import KeyedWorkPool, WorkPoolSaturated
from whatsappier.ingestion.scheduler import (
    DelayedDispatchScheduler,
    DelayedJob,
    InMemoryDelayedJobStore,
    RedisDelayedJobStore,
    create_delayed_job_store,
)

from conftest import FakeRedis, checkout_payload


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _event(checkout_id="chk-1"):
    return normalize(
        SourceHint(platform=Platform.LIGHTFUNNELS), checkout_payload(checkout_id=checkout_id)
    )


def _scheduler(store, submit, ran, clock):
    return DelayedDispatchScheduler(
        store, submit, lambda job, cancel: ran.append(job.event.correlation_key), clock=clock
    )


def _inline_submit(key, fn):
    fn(threading.Event())


def test_due_jobs_run_in_due_order():
    clock = Clock()
    ran = []
    scheduler = _scheduler(InMemoryDelayedJobStore(), _inline_submit, ran, clock)

    scheduler.schedule(300, "auto-recovery", _event("late"))
    scheduler.schedule(60, "auto-recovery", _event("early"))
    scheduler.schedule(900, "auto-recovery", _event("not-yet"))

    assert scheduler.poll() == 0
    clock.now += 301
    assert scheduler.poll() == 2
    assert ran == ["early", "late"]
    assert scheduler.pending_count() == 1


def test_refused_jobs_go_back_to_the_store():
    clock = Clock()
    ran = []
    accepted = []

    def submit(key, fn):
        if accepted:
            raise WorkPoolSaturated("1 work items pending (limit 1)")
        accepted.append(key)
        fn(threading.Event())

    scheduler = _scheduler(InMemoryDelayedJobStore(), submit, ran, clock)
    for n in range(3):
        scheduler.schedule(10 + n, "auto-recovery", _event(f"chk-{n}"))
    clock.now += 13

    assert scheduler.poll() == 1
    assert ran == ["chk-0"]
    assert scheduler.pending_count() == 2

    accepted.clear()
    scheduler._submit = _inline_submit
    assert scheduler.poll() == 2
    assert ran == ["chk-0", "chk-1", "chk-2"]


def test_closed_pool_keeps_jobs_for_the_next_process():
    pool = KeyedWorkPool(max_workers=1)
    pool.shutdown()
    clock = Clock()
    store = InMemoryDelayedJobStore()
    scheduler = _scheduler(store, pool.submit, [], clock)
    scheduler.schedule(1, "auto-recovery", _event())
    clock.now += 2

    assert scheduler.poll() == 0
    assert store.count() == 1


def test_jobs_hand_over_to_the_pool_with_partition_key():
    pool = KeyedWorkPool(max_workers=2, max_pending=10)
    clock = Clock()
    ran = []
    scheduler = _scheduler(InMemoryDelayedJobStore(), pool.submit, ran, clock)
    job = scheduler.schedule(5, "auto-recovery", _event())
    clock.now += 5

    assert scheduler.poll() == 1
    assert pool.wait_idle(timeout=5)
    assert ran == ["chk-1"]
    assert job.event.partition_key == "LIGHTFUNNELS:chk-1"
    pool.shutdown()


def test_redis_store_claims_each_job_once():
    client = FakeRedis()
    store = RedisDelayedJobStore(client)
    other_process = RedisDelayedJobStore(client)
    event = _event()
    store.add(DelayedJob("job-1", "auto-recovery", event, due_at=100.0))
    store.add(DelayedJob("job-2", "auto-recovery", _event("chk-2"), due_at=200.0))

    [job] = store.pop_due(150.0, limit=10)

    assert job.job_id == "job-1"
    assert job.event.fields == event.fields
    assert job.event.received_at == event.received_at
    assert other_process.pop_due(150.0, limit=10) == []
    assert other_process.count() == 1
    assert [j.job_id for j in other_process.pop_due(250.0, limit=10)] == ["job-2"]


def test_redis_store_discards_unreadable_members(caplog):
    client = FakeRedis()
    store = RedisDelayedJobStore(client)
    client.zadd(store.key, {"not json": 1.0})

    assert store.pop_due(10.0, limit=10) == []
    assert store.count() == 0
    assert "unreadable delayed job" in caplog.text


def test_without_redis_url_jobs_stay_in_memory(caplog):
    store = create_delayed_job_store(None)

    assert isinstance(store, InMemoryDelayedJobStore)
    assert "REDIS_URL not set" in caplog.text
