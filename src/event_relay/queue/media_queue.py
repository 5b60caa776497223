"""
Очередь загрузки медиа.

Назначение:
- дедупликация по ключу кэша (повтор события -> тот же task_id)
- приоритет: свежие события и личные чаты раньше
- ретраи транзиентных ошибок через retry_delay с пониженным приоритетом
- уведомления жизненного цикла через Notifier (очередь webhook)
- история завершённых задач с ограничением размера

Важно:
- задача принадлежит очереди до терминального статуса, потом уходит в историю
- ошибка одной задачи не останавливает очередь
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from event_relay.common.config import Settings, get_settings
from event_relay.common.errors import ErrCode, MediaError, to_app_error
from event_relay.common.ids import new_task_id
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import MEDIA_DOWNLOAD_LATENCY_MS, MEDIA_DOWNLOADS_TOTAL
from event_relay.common.time import utc_now_iso
from event_relay.connectors.base import EventSource
from event_relay.contracts.events import DomainEvent, WebhookEvent
from event_relay.delivery.base import Notifier
from event_relay.domain.enums import TaskStatus
from event_relay.queue.pool import PriorityWorkerPool
from event_relay.queue.retry import is_retryable
from event_relay.storage.media_cache import CacheEntry, ContentCache, cache_key

log = get_project_logger()


@dataclass
class DownloadTask:
    id: str
    source_ref: str
    origin_id: str
    cache_key: str
    priority: int
    max_retries: int
    queued_at: str
    status: str = TaskStatus.queued.value
    retry_count: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    download_time: float | None = None
    size_bytes: int = 0
    error: dict[str, Any] | None = None
    queued_ts: float = field(default=0.0, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "origin_id": self.origin_id,
            "status": self.status,
            "priority": self.priority,
            "queued_at": self.queued_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "download_time": self.download_time,
            "size_bytes": self.size_bytes,
            "error": self.error,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "origin_id": self.origin_id,
            "status": self.status,
            "queued_at": self.queued_at,
            "completed_at": self.completed_at or self.failed_at,
            "download_time": self.download_time,
            "retry_count": self.retry_count,
            "size_bytes": self.size_bytes,
            "error": (self.error or {}).get("message"),
        }


def calculate_priority(event: DomainEvent, now: float) -> int:
    priority = 0
    age = now - event.timestamp
    if age < 60:
        priority += 10
    elif age < 300:
        priority += 5
    if not event.is_group:
        priority += 3
    return priority


class MediaDownloadQueue:
    def __init__(
        self,
        source: EventSource,
        cache: ContentCache,
        notifier: Notifier,
        settings: Settings | None = None,
        *,
        pool: PriorityWorkerPool | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.s = settings or get_settings()
        self.source = source
        self.cache = cache
        self.notifier = notifier
        self._clock = clock
        self.pool = pool or PriorityWorkerPool(
            self.s.download_concurrency,
            interval_sec=self.s.download_interval_ms / 1000.0,
            interval_cap=self.s.download_interval_cap,
            name="media-download",
        )

        self._lock = threading.RLock()
        self._active: dict[str, DownloadTask] = {}
        self._active_by_key: dict[str, str] = {}
        self._events: dict[str, DomainEvent] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=self.s.download_history_size or None)
        self._stats = {
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "cache_hits": 0,
            "total_size": 0,
            "average_time": 0.0,
        }

    # -------------------------------------------------------------------------
    # Постановка
    # -------------------------------------------------------------------------
    def queue_download(self, event: DomainEvent) -> str | None:
        if not event.has_attachment:
            log.debug("media_skip_no_attachment", extra={"payload": {"source_ref": event.event_id}})
            return None
        if not self.s.download_enabled:
            log.debug("media_skip_disabled", extra={"payload": {"source_ref": event.event_id}})
            return None

        key = cache_key(event.event_id, event.timestamp)
        now = self._clock()
        with self._lock:
            existing = self._active_by_key.get(key)
            if existing:
                log.debug(
                    "media_already_queued",
                    extra={"payload": {"task_id": existing, "key": key}},
                )
                return existing

            task = DownloadTask(
                id=new_task_id(key),
                source_ref=event.event_id,
                origin_id=event.origin_id,
                cache_key=key,
                priority=calculate_priority(event, now),
                max_retries=self.s.max_retries,
                queued_at=utc_now_iso(),
                queued_ts=now,
            )
            self._active[task.id] = task
            self._active_by_key[key] = task.id
            self._events[task.id] = event

        position = self.pool.size() + 1
        self._notify(
            WebhookEvent.media_queued,
            {
                "task_id": task.id,
                "source_ref": task.source_ref,
                "origin_id": task.origin_id,
                "priority": task.priority,
                "queue_position": position,
                "estimated_wait_time": self._estimate_wait(position),
            },
        )
        self.pool.submit(lambda: self._process(task.id), priority=task.priority, tag=task.id)
        log.debug(
            "media_queued",
            extra={"payload": {"task_id": task.id, "priority": task.priority, "position": position}},
        )
        return task.id

    # -------------------------------------------------------------------------
    # Воркер
    # -------------------------------------------------------------------------
    def _process(self, task_id: str) -> None:
        with self._lock:
            task = self._active.get(task_id)
            event = self._events.get(task_id)
            if task is None or event is None:
                return
            task.status = TaskStatus.processing.value
            task.started_at = utc_now_iso()
            started = self._clock()

        log.info("media_download_started", extra={"payload": {"task_id": task.id}})
        self._notify(
            WebhookEvent.media_processing,
            {
                "task_id": task.id,
                "source_ref": task.source_ref,
                "origin_id": task.origin_id,
                "started_at": task.started_at,
                "retry_count": task.retry_count,
            },
        )

        try:
            entry, cache_hit = self._materialize(task, event)
        except Exception as e:
            self._on_failure(task, event, e, started)
            return
        self._on_success(task, entry, cache_hit, started)

    def _materialize(self, task: DownloadTask, event: DomainEvent) -> tuple[CacheEntry, bool]:
        entry = self.cache.resolve(task.cache_key)
        if entry is not None:
            return entry, True

        fetched = self.source.fetch_attachment(event)
        if fetched is None:
            raise MediaError(
                ErrCode.MEDIA_NOT_FOUND,
                f"No media found for event {event.event_id}",
                {"source_ref": event.event_id},
            )
        entry = self.cache.store(
            task.cache_key,
            fetched.data,
            mime_type=fetched.mime_type,
            filename=fetched.filename,
            source_ref=event.event_id,
            timestamp=event.timestamp,
        )
        return entry, False

    def _on_success(
        self, task: DownloadTask, entry: CacheEntry, cache_hit: bool, started: float
    ) -> None:
        finished = self._clock()
        download_ms = (finished - started) * 1000
        queue_ms = (started - task.queued_ts) * 1000
        total_ms = (finished - task.queued_ts) * 1000

        with self._lock:
            task.status = TaskStatus.completed.value
            task.completed_at = utc_now_iso()
            task.download_time = download_ms
            task.size_bytes = entry.size_bytes
            self._stats["completed"] += 1
            self._stats["total_size"] += entry.size_bytes
            if cache_hit:
                self._stats["cache_hits"] += 1
            if self._stats["completed"] == 1:
                self._stats["average_time"] = download_ms
            else:
                self._stats["average_time"] = self._stats["average_time"] * 0.8 + download_ms * 0.2
            self._finish_locked(task)

        MEDIA_DOWNLOADS_TOTAL.labels(result="cache_hit" if cache_hit else "completed").inc()
        MEDIA_DOWNLOAD_LATENCY_MS.observe(download_ms)
        log.info(
            "media_download_completed",
            extra={
                "payload": {
                    "task_id": task.id,
                    "download_ms": round(download_ms, 1),
                    "cache_hit": cache_hit,
                    "retry_count": task.retry_count,
                }
            },
        )
        self._notify(
            WebhookEvent.media_downloaded,
            {
                "task_id": task.id,
                "source_ref": task.source_ref,
                "origin_id": task.origin_id,
                "media": entry.to_dict(),
                "cache_hit": cache_hit,
                "retry_count": task.retry_count,
                "download_time": download_ms,
                "queue_time": queue_ms,
                "total_time": total_ms,
            },
        )

    def _on_failure(
        self, task: DownloadTask, event: DomainEvent, error: BaseException, started: float
    ) -> None:
        app_err = to_app_error(error)
        download_ms = (self._clock() - started) * 1000
        queue_ms = (started - task.queued_ts) * 1000

        with self._lock:
            task.error = app_err.to_dict()
            task.download_time = download_ms
            retry = task.retry_count < task.max_retries and is_retryable(app_err)
            if retry:
                task.retry_count += 1
                task.status = TaskStatus.retrying.value
                self._stats["retried"] += 1
            else:
                task.status = TaskStatus.failed.value
                task.failed_at = utc_now_iso()
                self._stats["failed"] += 1
                self._finish_locked(task)

        if retry:
            MEDIA_DOWNLOADS_TOTAL.labels(result="retry").inc()
            log.warning(
                "media_download_retry",
                extra={
                    "payload": {
                        "task_id": task.id,
                        "retry_count": task.retry_count,
                        "kind": app_err.code,
                        "error": str(error)[:200],
                    }
                },
            )
            self._notify(
                WebhookEvent.media_retry,
                {
                    "task_id": task.id,
                    "source_ref": task.source_ref,
                    "retry_count": task.retry_count,
                    "max_retries": task.max_retries,
                    "error": app_err.message,
                },
            )
            try:
                self.pool.submit_later(
                    self.s.retry_delay_ms / 1000.0,
                    lambda: self._process(task.id),
                    priority=task.priority - 1,
                    tag=task.id,
                )
            except RuntimeError as e:
                self._fail_dropped(task.id, f"resubmit rejected: {e}")
            return

        MEDIA_DOWNLOADS_TOTAL.labels(result="failed").inc()
        log.error(
            "media_download_failed",
            extra={
                "payload": {
                    "task_id": task.id,
                    "retry_count": task.retry_count,
                    "kind": app_err.code,
                    "error": str(error)[:200],
                }
            },
        )
        self._notify(
            WebhookEvent.media_failed,
            {
                "task_id": task.id,
                "source_ref": task.source_ref,
                "origin_id": task.origin_id,
                "error": app_err.message,
                "kind": app_err.code,
                "retry_count": task.retry_count,
                "download_time": download_ms,
                "queue_time": queue_ms,
            },
        )

    def _finish_locked(self, task: DownloadTask) -> None:
        self._history.appendleft(task.summary())
        self._active.pop(task.id, None)
        self._events.pop(task.id, None)
        if self._active_by_key.get(task.cache_key) == task.id:
            del self._active_by_key[task.cache_key]

    def _fail_dropped(self, task_id: str, reason: str) -> bool:
        with self._lock:
            task = self._active.get(task_id)
            if task is None:
                return False
            task.status = TaskStatus.failed.value
            task.failed_at = utc_now_iso()
            task.error = {"message": reason, "kind": "cancelled"}
            self._stats["failed"] += 1
            self._finish_locked(task)
        return True

    def _estimate_wait(self, queue_length: int) -> float:
        with self._lock:
            avg = self._stats["average_time"]
        return queue_length * avg

    def _notify(self, event: WebhookEvent, data: dict[str, Any]) -> None:
        try:
            self.notifier.enqueue(event.value, data)
        except Exception as e:
            log.warning(
                "media_notify_failed",
                extra={"payload": {"event": event.value, "error": str(e)[:200]}},
            )

    # -------------------------------------------------------------------------
    # Управление
    # -------------------------------------------------------------------------
    def pause(self) -> None:
        self.pool.pause()
        log.info("media_queue_paused")

    def resume(self) -> None:
        self.pool.resume()
        log.info("media_queue_resumed")

    def clear(self) -> int:
        """
        Выбросить задачи, которые ещё не стартовали. Они уходят в историю
        со статусом failed, уведомление не отправляется.
        """
        dropped = [tag for tag in self.pool.clear() if tag is not None]
        count = sum(1 for task_id in dropped if self._fail_dropped(task_id, "cleared"))
        log.info("media_queue_cleared", extra={"payload": {"dropped": count}})
        return count

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.pool.join(timeout)

    def shutdown(self, drain_timeout: float | None = None) -> bool:
        """
        pause -> ждать завершения выполняющихся (не дольше drain_timeout) -> clear.
        """
        timeout = self.s.download_drain_timeout_sec if drain_timeout is None else drain_timeout
        self.pool.pause()
        in_flight = self.pool.pending()
        if in_flight:
            log.info("media_queue_draining", extra={"payload": {"in_flight": in_flight}})
        drained = self.pool.wait_in_flight(timeout)
        if not drained:
            log.warning(
                "media_queue_drain_timeout",
                extra={"payload": {"in_flight": self.pool.pending(), "timeout_sec": timeout}},
            )
        self.clear()
        self.pool.close(timeout=0.5)
        log.info("media_queue_stopped", extra={"payload": {"drained": drained}})
        return drained

    # -------------------------------------------------------------------------
    # Статистика
    # -------------------------------------------------------------------------
    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            active = list(self._active.values())
        queue_size = self.pool.size()
        return {
            **stats,
            "queued": sum(1 for t in active if t.status == TaskStatus.queued.value),
            "processing": sum(1 for t in active if t.status == TaskStatus.processing.value),
            "retrying": sum(1 for t in active if t.status == TaskStatus.retrying.value),
            "queue_size": queue_size,
            "pending": self.pool.pending(),
            "is_paused": self.pool.is_paused,
            "active_downloads": len(active),
            "estimated_wait_time": queue_size * stats["average_time"],
            "concurrency": self.pool.concurrency,
            "download_enabled": self.s.download_enabled,
        }

    def get_active_downloads(self) -> list[dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in self._active.values()]

    def get_download_history(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(h) for h in list(self._history)[: max(0, limit)]]

    def get_task_status(self, task_id: str) -> dict[str, Any]:
        with self._lock:
            task = self._active.get(task_id)
            if task is not None:
                return {"found": True, **task.to_dict()}
            for item in self._history:
                if item["id"] == task_id:
                    return {"found": True, **item}
        return {"found": False, "status": "not_found"}
