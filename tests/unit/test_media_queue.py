from __future__ import annotations

import threading
import time

import pytest

from event_relay.connectors.mock import MockEventSource
from event_relay.contracts.events import DomainEvent
from event_relay.queue.media_queue import MediaDownloadQueue, calculate_priority
from event_relay.storage.media_cache import ContentCache, cache_key


class _RecordingNotifier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[tuple[str, dict]] = []

    def enqueue(self, event, data):
        with self._lock:
            self.events.append((event, data))
        return "wh_test"

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.events]

    def last(self, name: str) -> dict:
        with self._lock:
            return [data for n, data in self.events if n == name][-1]


@pytest.fixture()
def media_env(make_settings):
    queues: list[MediaDownloadQueue] = []

    def _make(**overrides):
        overrides.setdefault("download_concurrency", 1)
        s = make_settings(**overrides)
        source = MockEventSource()
        cache = ContentCache(s)
        cache.initialize()
        notifier = _RecordingNotifier()
        queue = MediaDownloadQueue(source, cache, notifier, s)
        queues.append(queue)
        return queue, source, notifier

    yield _make
    for q in queues:
        q.pool.close()


def _event(event_id: str = "msg-1", origin: str = "100@c.us", ts: float | None = None) -> DomainEvent:
    return DomainEvent(
        event_id=event_id,
        kind="message",
        origin_id=origin,
        timestamp=time.time() if ts is None else ts,
        has_attachment=True,
    )


def test_transient_failures_are_retried_then_completed(media_env) -> None:
    queue, source, notifier = media_env(max_retries=3)
    source.put_attachment("msg-1", b"jpeg-bytes", "image/jpeg")
    source.fail_next("msg-1", ConnectionResetError("reset"), ConnectionResetError("reset"))

    task_id = queue.queue_download(_event())
    assert queue.wait_idle(timeout=5)

    status = queue.get_task_status(task_id)
    assert status["found"] is True
    assert status["status"] == "completed"
    assert status["retry_count"] == 2
    assert source.fetch_calls == ["msg-1", "msg-1", "msg-1"]
    assert len(queue.cache) == 1

    names = notifier.names()
    assert names[0] == "media_queued"
    assert names[1] == "media_processing"
    assert names[-1] == "media_downloaded"
    assert names.count("media_retry") == 2
    downloaded = notifier.last("media_downloaded")
    assert downloaded["cache_hit"] is False
    assert downloaded["retry_count"] == 2
    assert downloaded["media"]["media_type"] == "image"


def test_oversize_attachment_fails_without_retry(media_env) -> None:
    queue, source, notifier = media_env(max_file_size=3)
    source.put_attachment("msg-1", b"too-large", "image/jpeg")

    task_id = queue.queue_download(_event())
    assert queue.wait_idle(timeout=5)

    status = queue.get_task_status(task_id)
    assert status["status"] == "failed"
    assert status["retry_count"] == 0
    assert len(queue.cache) == 0
    failed = notifier.last("media_failed")
    assert failed["kind"] == "media_too_large"
    assert "media_retry" not in notifier.names()


def test_missing_attachment_is_terminal(media_env) -> None:
    queue, source, notifier = media_env()

    queue.queue_download(_event())
    assert queue.wait_idle(timeout=5)

    assert source.fetch_calls == ["msg-1"]
    assert notifier.last("media_failed")["kind"] == "media_not_found"
    assert queue.get_stats()["failed"] == 1


def test_exhausted_retries_fail_with_retry_count(media_env) -> None:
    queue, source, notifier = media_env(max_retries=2)
    source.fail_next("msg-1", *(TimeoutError("slow") for _ in range(5)))

    task_id = queue.queue_download(_event())
    assert queue.wait_idle(timeout=5)

    assert len(source.fetch_calls) == 3
    status = queue.get_task_status(task_id)
    assert status["status"] == "failed"
    assert status["retry_count"] == 2
    assert notifier.last("media_failed")["kind"] == "timeout"


def test_concurrent_duplicates_share_one_task(media_env) -> None:
    queue, source, _ = media_env(download_concurrency=2)
    source.put_attachment("msg-1", b"jpeg", "image/jpeg")
    event = _event()
    queue.pause()

    barrier = threading.Barrier(2)
    ids: list[str | None] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        task_id = queue.queue_download(event)
        with lock:
            ids.append(task_id)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(ids) == 2
    assert ids[0] is not None
    assert ids[0] == ids[1]

    queue.resume()
    assert queue.wait_idle(timeout=5)
    assert source.fetch_calls == ["msg-1"]


def test_cache_hit_completes_without_fetch(media_env) -> None:
    queue, source, notifier = media_env()
    event = _event(ts=1700000000.0)
    queue.cache.store(
        cache_key(event.event_id, event.timestamp),
        b"jpeg",
        mime_type="image/jpeg",
        source_ref=event.event_id,
        timestamp=event.timestamp,
    )

    queue.queue_download(event)
    assert queue.wait_idle(timeout=5)

    assert source.fetch_calls == []
    assert notifier.last("media_downloaded")["cache_hit"] is True
    assert queue.get_stats()["cache_hits"] == 1


def test_events_without_attachment_or_when_disabled_are_ignored(media_env) -> None:
    queue, _, notifier = media_env()
    plain = DomainEvent(event_id="msg-2", kind="message", origin_id="1@c.us", timestamp=1.0)
    assert queue.queue_download(plain) is None

    disabled, _, _ = media_env(download_enabled=False)
    assert disabled.queue_download(_event()) is None
    assert notifier.events == []


def test_clear_drops_pending_tasks_into_history(media_env) -> None:
    queue, source, notifier = media_env()
    queue.pause()
    first = queue.queue_download(_event("msg-1"))
    second = queue.queue_download(_event("msg-2"))

    assert queue.clear() == 2
    queue.resume()
    assert queue.wait_idle(timeout=5)

    assert source.fetch_calls == []
    assert queue.get_active_downloads() == []
    history = {item["id"]: item for item in queue.get_download_history()}
    assert history[first]["status"] == "failed"
    assert history[second]["error"] == "cleared"
    assert notifier.names() == ["media_queued", "media_queued"]


def test_history_is_bounded_and_newest_first(media_env) -> None:
    queue, source, _ = media_env(download_history_size=2)
    for i in range(3):
        source.put_attachment(f"msg-{i}", b"jpeg", "image/jpeg")
        queue.queue_download(_event(f"msg-{i}"))
        assert queue.wait_idle(timeout=5)

    history = queue.get_download_history()
    assert [item["source_ref"] for item in history] == ["msg-2", "msg-1"]
    assert len(queue.get_download_history(limit=1)) == 1


def test_unknown_task_status(media_env) -> None:
    queue, _, _ = media_env()
    assert queue.get_task_status("media_nope_1") == {"found": False, "status": "not_found"}


def test_shutdown_drains_and_rejects_new_work(media_env) -> None:
    queue, source, _ = media_env()
    source.put_attachment("msg-1", b"jpeg", "image/jpeg")
    queue.queue_download(_event())

    assert queue.shutdown(drain_timeout=5) is True
    with pytest.raises(RuntimeError):
        queue.pool.submit(lambda: None)


def test_priority_prefers_fresh_direct_events() -> None:
    now = 1_000_000.0
    assert calculate_priority(_event(ts=now - 10), now) == 13
    assert calculate_priority(_event(origin="g@g.us", ts=now - 10), now) == 10
    assert calculate_priority(_event(ts=now - 120), now) == 8
    assert calculate_priority(_event(origin="g@g.us", ts=now - 120), now) == 5
    assert calculate_priority(_event(origin="g@g.us", ts=now - 3600), now) == 0


class _ManualPool:
    """
    Запоминает задачи вместо запуска: тест выполняет их сам по одной.
    """

    concurrency = 1

    def __init__(self) -> None:
        self.submitted: list[tuple] = []
        self.scheduled: list[tuple] = []

    def size(self) -> int:
        return len(self.submitted)

    def submit(self, fn, *, priority=0, tag=None) -> None:
        self.submitted.append((fn, priority, tag))

    def submit_later(self, delay_sec, fn, *, priority=0, tag=None) -> None:
        self.scheduled.append((delay_sec, fn, priority, tag))

    def run_next(self) -> None:
        fn, _, _ = self.submitted.pop(0)
        fn()


def _manual_queue(make_settings, ticks: list[float], **overrides):
    s = make_settings(**overrides)
    source = MockEventSource()
    cache = ContentCache(s)
    cache.initialize()
    notifier = _RecordingNotifier()
    pool = _ManualPool()
    queue = MediaDownloadQueue(source, cache, notifier, s, pool=pool, clock=lambda: ticks.pop(0))
    return queue, source, notifier, pool


def test_moving_average_drives_wait_estimate(make_settings) -> None:
    # queue a, queue b, a: 500 ms, b: 1000 ms, queue c, queue d
    ticks = [0.0, 0.0, 10.0, 10.5, 11.0, 12.0, 12.0, 12.0]
    queue, source, notifier, pool = _manual_queue(make_settings, ticks)
    for ref in ("a", "b", "c", "d"):
        source.put_attachment(ref, b"jpeg", "image/jpeg")

    queue.queue_download(_event("a", ts=0.0))
    queue.queue_download(_event("b", ts=0.0))
    assert notifier.last("media_queued")["estimated_wait_time"] == 0

    pool.run_next()
    assert queue.get_stats()["average_time"] == pytest.approx(500.0)
    pool.run_next()
    assert queue.get_stats()["average_time"] == pytest.approx(500.0 * 0.8 + 1000.0 * 0.2)

    queue.queue_download(_event("c", ts=0.0))
    queue.queue_download(_event("d", ts=0.0))
    queued = notifier.last("media_queued")
    assert queued["queue_position"] == 2
    assert queued["estimated_wait_time"] == pytest.approx(2 * 600.0)
    assert ticks == []


def test_retry_is_resubmitted_with_lower_priority(make_settings) -> None:
    ticks = [0.0, 1.0, 1.2, 3.0, 3.5]
    queue, source, _, pool = _manual_queue(make_settings, ticks, max_retries=2, retry_delay_ms=1500)
    source.put_attachment("msg-1", b"jpeg", "image/jpeg")
    source.fail_next("msg-1", ConnectionResetError("reset"))

    task_id = queue.queue_download(_event("msg-1", ts=0.0))
    assert pool.submitted[0][1] == 13

    pool.run_next()
    assert queue.get_task_status(task_id)["status"] == "retrying"
    delay, retry_fn, priority, tag = pool.scheduled[0]
    assert delay == 1.5
    assert priority == 12
    assert tag == task_id

    retry_fn()
    status = queue.get_task_status(task_id)
    assert status["status"] == "completed"
    assert status["retry_count"] == 1
