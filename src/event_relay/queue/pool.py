"""
Пул воркеров с приоритетом и ограничением частоты стартов.

Назначение:
- не более concurrency задач одновременно
- не более interval_cap стартов за interval (скользящее окно)
- отложенная постановка (ретраи) через threading.Timer
- pause/resume/clear для административного управления
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from event_relay.common.logging import get_project_logger

log = get_project_logger()


class PriorityWorkerPool:
    def __init__(
        self,
        concurrency: int,
        *,
        interval_sec: float = 0.0,
        interval_cap: int = 0,
        name: str = "pool",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.interval_sec = max(0.0, interval_sec)
        self.interval_cap = max(0, interval_cap)
        self.name = name

        self._cond = threading.Condition()
        self._heap: list[tuple[int, int, Any, Callable[[], Any]]] = []
        self._seq = itertools.count()
        self._timers: dict[threading.Timer, Any] = {}
        self._starts: deque[float] = deque()
        self._in_flight = 0
        self._paused = False
        self._closed = False

        self._workers = [
            threading.Thread(target=self._worker, name=f"{name}-{i}", daemon=True)
            for i in range(concurrency)
        ]
        for t in self._workers:
            t.start()

    # -------------------------------------------------------------------------
    # Постановка
    # -------------------------------------------------------------------------
    def submit(self, fn: Callable[[], Any], *, priority: int = 0, tag: Any = None) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"{self.name} is closed")
            self._push_locked(fn, priority, tag)

    def submit_later(
        self, delay_sec: float, fn: Callable[[], Any], *, priority: int = 0, tag: Any = None
    ) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError(f"{self.name} is closed")

            def fire() -> None:
                self._fire(timer, fn, priority, tag)

            timer = threading.Timer(max(0.0, delay_sec), fire)
            timer.daemon = True
            self._timers[timer] = tag
            timer.start()

    def _fire(self, timer: threading.Timer, fn: Callable[[], Any], priority: int, tag: Any) -> None:
        with self._cond:
            if self._closed or timer not in self._timers:
                return
            del self._timers[timer]
            self._push_locked(fn, priority, tag)

    def _push_locked(self, fn: Callable[[], Any], priority: int, tag: Any) -> None:
        heapq.heappush(self._heap, (-priority, next(self._seq), tag, fn))
        self._cond.notify_all()

    # -------------------------------------------------------------------------
    # Управление
    # -------------------------------------------------------------------------
    def pause(self) -> None:
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def clear(self) -> list[Any]:
        """
        Выбросить всё, что ещё не стартовало (очередь и отложенные задачи).
        Возвращает теги выброшенных задач.
        """
        with self._cond:
            dropped = [tag for _, _, tag, _ in self._heap]
            self._heap.clear()
            for timer, tag in self._timers.items():
                timer.cancel()
                dropped.append(tag)
            self._timers.clear()
            self._cond.notify_all()
        return dropped

    def close(self, timeout: float | None = 1.0) -> None:
        with self._cond:
            self._closed = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._heap.clear()
            self._cond.notify_all()
        for t in self._workers:
            t.join(timeout)

    # -------------------------------------------------------------------------
    # Состояние
    # -------------------------------------------------------------------------
    def size(self) -> int:
        with self._cond:
            return len(self._heap)

    def pending(self) -> int:
        with self._cond:
            return self._in_flight

    def delayed(self) -> int:
        with self._cond:
            return len(self._timers)

    @property
    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    def join(self, timeout: float | None = None) -> bool:
        """Очередь пуста, отложенных нет, ничего не выполняется."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._heap and not self._timers and self._in_flight == 0,
                timeout=timeout,
            )

    def wait_in_flight(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    # -------------------------------------------------------------------------
    # Воркер
    # -------------------------------------------------------------------------
    def _rate_wait_locked(self) -> float:
        if self.interval_sec <= 0 or self.interval_cap <= 0:
            return 0.0
        now = time.monotonic()
        while self._starts and now - self._starts[0] >= self.interval_sec:
            self._starts.popleft()
        if len(self._starts) < self.interval_cap:
            return 0.0
        return self.interval_sec - (now - self._starts[0])

    def _worker(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._closed:
                        return
                    if self._paused or not self._heap:
                        self._cond.wait()
                        continue
                    wait = self._rate_wait_locked()
                    if wait > 0:
                        self._cond.wait(wait)
                        continue
                    break
                _, _, tag, fn = heapq.heappop(self._heap)
                self._starts.append(time.monotonic())
                self._in_flight += 1

            try:
                fn()
            except Exception as e:
                log.error(
                    "pool_task_failed",
                    extra={"payload": {"pool": self.name, "tag": str(tag), "error": str(e)[:200]}},
                )
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()
