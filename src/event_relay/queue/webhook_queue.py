"""
Очередь доставки webhook.

Назначение:
- FIFO исходящих пейлоадов с одним drain-потоком (порядок для потребителя)
- ретраи с экспоненциальным backoff, затем dead-letter
- пауза и возобновление drain (административное управление)
- статистика для status API

Важно:
- drain всегда один: ретраи пейлоада полностью разрешаются до следующего
- жёсткой отмены нет; на shutdown вызывать flush() синхронно
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from event_relay.common.config import Settings, get_settings
from event_relay.common.errors import to_app_error
from event_relay.common.ids import new_webhook_id
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import WEBHOOK_DELIVERIES_TOTAL, WEBHOOK_QUEUE_DEPTH
from event_relay.common.time import utc_now_iso
from event_relay.contracts.events import WebhookPayload
from event_relay.delivery.base import PayloadSender
from event_relay.delivery.webhook.sender import HttpWebhookSender
from event_relay.queue.dead_letter import DeadLetterStore
from event_relay.queue.retry import backoff_delay_sec, is_retryable

log = get_project_logger()


class WebhookDeliveryQueue:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sender: PayloadSender | None = None,
        dead_letters: DeadLetterStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.s = settings or get_settings()
        self.sender = sender or HttpWebhookSender(self.s)
        self.dead_letters = dead_letters or DeadLetterStore(self.s)
        self._sleep = sleep
        self._allowed = set(self.s.webhook_event_list)

        self._queue: deque[WebhookPayload] = deque()
        self._cond = threading.Condition()
        self._draining = False
        self._paused = False
        self._stats = {"sent": 0, "failed": 0, "retried": 0, "dead_lettered": 0}

    # -------------------------------------------------------------------------
    # Публичный API
    # -------------------------------------------------------------------------
    def enqueue(self, event: Any, data: dict[str, Any] | None = None) -> str | None:
        """
        Поставить пейлоад в очередь. None, если доставка выключена
        или событие не входит в allow-list.
        """
        name = str(getattr(event, "value", event))
        if not self.s.webhook_enabled:
            log.debug("webhook_skipped_disabled", extra={"payload": {"event": name}})
            WEBHOOK_DELIVERIES_TOTAL.labels(result="skipped").inc()
            return None
        if name not in self._allowed:
            log.debug("webhook_skipped_event", extra={"payload": {"event": name}})
            WEBHOOK_DELIVERIES_TOTAL.labels(result="skipped").inc()
            return None

        payload = WebhookPayload(
            id=new_webhook_id(),
            event=name,
            timestamp=utc_now_iso(),
            data=data if data is not None else {},
        )
        with self._cond:
            self._queue.append(payload)
            WEBHOOK_QUEUE_DEPTH.set(len(self._queue))
            self._start_drain_locked()
        return payload.id

    def flush(self, timeout: float | None = None) -> bool:
        """
        Дождаться, пока очередь опустеет и drain завершится.
        True, если успели за timeout. Снимает паузу: flush вызывается на shutdown.
        """
        with self._cond:
            self._paused = False
            if self._queue:
                self._start_drain_locked()
            return self._cond.wait_for(self._idle_locked, timeout=timeout)

    def pause(self) -> None:
        """
        Остановить выборку следующих пейлоадов. Текущий пейлоад
        доходит свою лестницу ретраев до конца.
        """
        with self._cond:
            self._paused = True
            queue_length = len(self._queue)
        log.info("webhook_processing_paused", extra={"payload": {"queue_length": queue_length}})

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            queue_length = len(self._queue)
            if self._queue:
                self._start_drain_locked()
        log.info("webhook_processing_resumed", extra={"payload": {"queue_length": queue_length}})

    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(self._idle_locked, timeout=timeout)

    def queue_length(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_processing(self) -> bool:
        with self._cond:
            return self._draining

    def get_stats(self) -> dict[str, Any]:
        with self._cond:
            stats = dict(self._stats)
            queue_length = len(self._queue)
            processing = self._draining
            paused = self._paused
        return {
            "enabled": self.s.webhook_enabled,
            "url": self.s.webhook_url,
            "events": sorted(self._allowed),
            "queue_length": queue_length,
            "processing": processing,
            "paused": paused,
            "retry_attempts": self.s.webhook_retry_attempts,
            "retry_delay_ms": self.s.webhook_retry_delay_ms,
            "dead_letter_count": len(self.dead_letters),
            "stats": stats,
        }

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------
    def _idle_locked(self) -> bool:
        # на паузе очередь может быть непустой
        return not self._draining and (self._paused or not self._queue)

    def _start_drain_locked(self) -> None:
        if self._draining or self._paused:
            return
        self._draining = True
        t = threading.Thread(target=self._drain, name="webhook-drain", daemon=True)
        t.start()

    def _drain(self) -> None:
        while True:
            with self._cond:
                if not self._queue or self._paused:
                    self._draining = False
                    self._cond.notify_all()
                    return
                payload = self._queue.popleft()
                WEBHOOK_QUEUE_DEPTH.set(len(self._queue))
            try:
                self._deliver(payload)
            except Exception as e:
                log.error(
                    "webhook_drain_item_failed",
                    extra={"payload": {"id": payload.id, "error": str(e)[:200]}},
                )

    def _deliver(self, payload: WebhookPayload) -> None:
        max_attempts = self.s.webhook_retry_attempts + 1
        attempt = 0
        last_error: BaseException | None = None

        while attempt < max_attempts:
            attempt += 1
            if attempt > 1:
                self._sleep(backoff_delay_sec(self.s.webhook_retry_delay_ms, attempt - 1))
                self._bump("retried")
                WEBHOOK_DELIVERIES_TOTAL.labels(result="retried").inc()
            try:
                self.sender.send(payload)
            except Exception as e:
                last_error = e
                retryable = is_retryable(e)
                log.warning(
                    "webhook_attempt_failed",
                    extra={
                        "payload": {
                            "id": payload.id,
                            "event": payload.event,
                            "attempt": attempt,
                            "kind": to_app_error(e).code,
                            "retryable": retryable,
                            "error": str(e)[:200],
                        }
                    },
                )
                if not retryable:
                    break
                continue

            self._bump("sent")
            WEBHOOK_DELIVERIES_TOTAL.labels(result="sent").inc()
            log.info(
                "webhook_delivered",
                extra={"payload": {"id": payload.id, "event": payload.event, "attempts": attempt}},
            )
            return

        self._bump("failed")
        self._bump("dead_lettered")
        WEBHOOK_DELIVERIES_TOTAL.labels(result="dead_lettered").inc()
        if last_error is None:
            raise RuntimeError(f"webhook {payload.id} finished without a delivery attempt")
        self.dead_letters.record(payload, last_error, retry_count=attempt - 1)

    def _bump(self, key: str) -> None:
        with self._cond:
            self._stats[key] += 1
