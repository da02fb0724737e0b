import threading
import time
from threading import Event

import pytest

from whatsappier.ingestion.runner import (
    KeyedWorkPool,
    PeriodicSweeper,
    WorkPoolClosed,
    WorkPoolSaturated,
)


def test_same_key_runs_in_submission_order():
    pool = KeyedWorkPool(max_workers=4)
    order = []

    def work(n):
        def _run(ev: Event):
            time.sleep(0.01 * (5 - n))
            order.append(n)

        return _run

    for n in range(5):
        pool.submit("order-1", work(n))
    assert pool.wait_idle(timeout=5)
    assert order == [0, 1, 2, 3, 4]
    pool.shutdown()


def test_different_keys_run_concurrently():
    pool = KeyedWorkPool(max_workers=2)
    started = threading.Barrier(2, timeout=2)
    done = []

    def work(name):
        def _run(ev: Event):
            started.wait()
            done.append(name)

        return _run

    pool.submit("a", work("a"))
    pool.submit("b", work("b"))
    assert pool.wait_idle(timeout=5)
    assert sorted(done) == ["a", "b"]
    pool.shutdown()


def test_saturated_pool_refuses_work():
    pool = KeyedWorkPool(max_workers=1, max_pending=2)
    release = Event()

    def blocker(ev: Event):
        release.wait(2)

    pool.submit("a", blocker)
    pool.submit("a", blocker)
    with pytest.raises(WorkPoolSaturated):
        pool.submit("b", blocker)
    release.set()
    assert pool.wait_idle(timeout=5)
    pool.submit("b", lambda ev: None)
    pool.shutdown()


def test_failing_work_item_does_not_block_partition(caplog):
    pool = KeyedWorkPool(max_workers=1)
    ran = []

    def boom(ev: Event):
        raise RuntimeError("boom")

    pool.submit("k", boom)
    pool.submit("k", lambda ev: ran.append(True))
    assert pool.wait_idle(timeout=5)
    assert ran == [True]
    assert "Work item for partition k failed" in caplog.text
    pool.shutdown()


def test_shutdown_cancels_running_and_queued_work():
    pool = KeyedWorkPool(max_workers=1)
    seen = {}
    started = Event()
    later = Event()

    def work(ev: Event):
        seen["evt"] = ev
        started.set()
        while not ev.is_set():
            time.sleep(0.01)

    pool.submit("k", work)
    pool.submit("k", lambda ev: later.set())
    assert started.wait(2)
    pool.shutdown(wait=True)

    assert seen["evt"].is_set()
    assert not later.is_set()
    with pytest.raises(WorkPoolClosed):
        pool.submit("k", work)


def test_periodic_sweeper_calls_function():
    calls = []
    called = Event()

    def sweep():
        calls.append(1)
        called.set()

    sweeper = PeriodicSweeper(0.01, sweep)
    sweeper.start()
    assert called.wait(2)
    sweeper.stop()
    assert calls
