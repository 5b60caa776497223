from __future__ import annotations

import threading
import time

import pytest

from event_relay.queue.pool import PriorityWorkerPool


@pytest.fixture()
def pools():
    created: list[PriorityWorkerPool] = []

    def _make(*args, **kwargs) -> PriorityWorkerPool:
        pool = PriorityWorkerPool(*args, **kwargs)
        created.append(pool)
        return pool

    yield _make
    for pool in created:
        pool.close()


def test_higher_priority_starts_first(pools) -> None:
    pool = pools(1)
    order: list[str] = []
    pool.pause()
    pool.submit(lambda: order.append("low"), priority=0)
    pool.submit(lambda: order.append("high"), priority=13)
    pool.submit(lambda: order.append("mid"), priority=5)
    pool.submit(lambda: order.append("mid-2"), priority=5)
    pool.resume()

    assert pool.join(timeout=5)
    assert order == ["high", "mid", "mid-2", "low"]


def test_concurrency_is_bounded(pools) -> None:
    pool = pools(2)
    lock = threading.Lock()
    running = 0
    peak = 0

    def work() -> None:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1

    for _ in range(6):
        pool.submit(work)

    assert pool.join(timeout=5)
    assert peak == 2


def test_rate_limit_bounds_starts_per_interval(pools) -> None:
    pool = pools(4, interval_sec=0.3, interval_cap=2)
    starts: list[float] = []
    lock = threading.Lock()

    def work() -> None:
        with lock:
            starts.append(time.monotonic())

    for _ in range(4):
        pool.submit(work)

    assert pool.join(timeout=5)
    starts.sort()
    assert len(starts) == 4
    assert starts[2] - starts[0] >= 0.25


def test_pause_stops_new_starts_and_clear_drops_pending(pools) -> None:
    pool = pools(1)
    ran: list[str] = []
    pool.pause()
    pool.submit(lambda: ran.append("a"), tag="a")
    pool.submit(lambda: ran.append("b"), tag="b")
    pool.submit_later(30.0, lambda: ran.append("c"), tag="c")

    assert pool.size() == 2
    assert pool.delayed() == 1
    assert sorted(pool.clear()) == ["a", "b", "c"]

    pool.resume()
    assert pool.join(timeout=5)
    assert ran == []


def test_submit_later_runs_after_delay(pools) -> None:
    pool = pools(1)
    done = threading.Event()
    started = time.monotonic()
    pool.submit_later(0.1, done.set)

    assert done.wait(timeout=5)
    assert time.monotonic() - started >= 0.09
    assert pool.join(timeout=5)


def test_failing_task_does_not_stop_pool(pools) -> None:
    pool = pools(1)
    ran: list[int] = []

    def boom() -> None:
        raise RuntimeError("task failed")

    pool.submit(boom)
    pool.submit(lambda: ran.append(1))

    assert pool.join(timeout=5)
    assert ran == [1]


def test_wait_in_flight_ignores_queued_work(pools) -> None:
    pool = pools(1)
    release = threading.Event()
    pool.submit(lambda: release.wait(5))
    time.sleep(0.05)
    pool.pause()
    pool.submit(lambda: None)

    assert pool.wait_in_flight(timeout=0.05) is False
    release.set()
    assert pool.wait_in_flight(timeout=5) is True
    assert pool.size() == 1


def test_closed_pool_rejects_submit(pools) -> None:
    pool = pools(1)
    pool.close()
    with pytest.raises(RuntimeError):
        pool.submit(lambda: None)
