"""
Маршрутизация доменных событий.

Назначение:
- событие -> мутация состояния (StateStore)
- событие с вложением -> очередь загрузки медиа
- сборка пейлоада и постановка в очередь webhook

Важно:
- семантику событий не интерпретируем сверх маршрутизации
- ошибка мутации состояния логируется, уведомление всё равно уходит
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from event_relay.common.logging import get_project_logger
from event_relay.common.time import epoch_to_iso, utc_now_iso
from event_relay.contracts.events import DomainEvent, WebhookEvent
from event_relay.delivery.base import Notifier
from event_relay.domain.enums import CallStatus, TabStatus, TrackerStatus
from event_relay.domain.state import CallState, LocationTracker, PollState, TabRecord
from event_relay.queue.media_queue import MediaDownloadQueue
from event_relay.storage.state_store import StateStore

log = get_project_logger()

Handler = Callable[[DomainEvent], dict[str, Any]]


class EventCoordinator:
    def __init__(
        self,
        state: StateStore,
        notifier: Notifier,
        media: MediaDownloadQueue | None = None,
    ) -> None:
        self.state = state
        self.notifier = notifier
        self.media = media
        self._routes: dict[str, Handler] = {
            WebhookEvent.message.value: self._on_message,
            WebhookEvent.message_create.value: self._on_message,
            WebhookEvent.incoming_call.value: self._on_call_started,
            WebhookEvent.outgoing_call.value: self._on_call_started,
            WebhookEvent.call.value: self._on_call_started,
            WebhookEvent.call_ended.value: self._on_call_finished,
            WebhookEvent.call_rejected.value: self._on_call_finished,
            WebhookEvent.poll_created.value: self._on_poll_created,
            WebhookEvent.poll_vote.value: self._on_poll_vote,
            WebhookEvent.vote_update.value: self._on_poll_vote,
            WebhookEvent.location_message.value: self._on_location_message,
            WebhookEvent.live_location_start.value: self._on_live_location_start,
            WebhookEvent.live_location_update.value: self._on_live_location_update,
            WebhookEvent.live_location_stop.value: self._on_live_location_stop,
            WebhookEvent.tab_opened.value: self._on_tab_opened,
            WebhookEvent.tab_closed.value: self._on_tab_closed,
        }

    def handle(self, event: DomainEvent) -> dict[str, Any]:
        """
        Обработать событие. Возвращает {event, webhook_id, media_task_id?}.
        """
        extra: dict[str, Any] = {}
        handler = self._routes.get(event.kind)
        if handler is not None:
            try:
                extra = handler(event) or {}
            except Exception as e:
                log.error(
                    "coordinator_route_failed",
                    extra={
                        "payload": {
                            "kind": event.kind,
                            "source_ref": event.event_id,
                            "error": str(e)[:200],
                        }
                    },
                )

        payload = self.compose_payload(event, extra)
        webhook_id = self.notifier.enqueue(event.kind, payload)
        result: dict[str, Any] = {"event": event.kind, "webhook_id": webhook_id}
        if "media_task_id" in extra:
            result["media_task_id"] = extra["media_task_id"]
        return result

    @staticmethod
    def compose_payload(event: DomainEvent, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        return {
            **event.data,
            **(extra or {}),
            "source_ref": event.event_id,
            "origin_id": event.origin_id,
            "is_group": event.is_group,
            "event_timestamp": epoch_to_iso(event.timestamp),
        }

    # -------------------------------------------------------------------------
    # Сообщения
    # -------------------------------------------------------------------------
    def _on_message(self, event: DomainEvent) -> dict[str, Any]:
        if not event.has_attachment or self.media is None:
            return {}
        task_id = self.media.queue_download(event)
        return {"media_task_id": task_id} if task_id else {}

    # -------------------------------------------------------------------------
    # Звонки
    # -------------------------------------------------------------------------
    def _on_call_started(self, event: DomainEvent) -> dict[str, Any]:
        d = event.data
        call_id = str(d.get("call_id") or event.event_id)
        outgoing = event.kind == WebhookEvent.outgoing_call.value or bool(d.get("outgoing"))
        status = CallStatus.outgoing if outgoing else CallStatus.incoming
        call = self.state.add_call(
            CallState(
                id=call_id,
                peer=str(d.get("peer") or event.origin_id),
                direction="outgoing" if outgoing else "incoming",
                kind="video" if d.get("is_video") else "voice",
                status=status.value,
            )
        )
        return {"call_id": call.id, "call_status": call.status}

    def _on_call_finished(self, event: DomainEvent) -> dict[str, Any]:
        d = event.data
        call_id = str(d.get("call_id") or event.event_id)
        rejected = event.kind == WebhookEvent.call_rejected.value
        status = CallStatus.rejected if rejected else CallStatus(d.get("status") or "ended")
        updated = self.state.update_call(call_id, status=status.value, ended_at=utc_now_iso())
        if updated is None:
            log.warning("call_not_tracked", extra={"payload": {"call_id": call_id}})
        return {"call_id": call_id, "call_status": status.value}

    # -------------------------------------------------------------------------
    # Опросы
    # -------------------------------------------------------------------------
    def _on_poll_created(self, event: DomainEvent) -> dict[str, Any]:
        d = event.data
        poll = self.state.add_poll(
            PollState(
                id=str(d.get("poll_id") or event.event_id),
                creator=event.origin_id,
                title=str(d.get("title") or ""),
                options=[str(o) for o in d.get("options") or []],
            )
        )
        return {"poll_id": poll.id}

    def _on_poll_vote(self, event: DomainEvent) -> dict[str, Any]:
        d = event.data
        poll_id = str(d.get("poll_id") or "")
        voter = str(d.get("voter") or event.origin_id)
        selected = [str(o) for o in d.get("selected_options") or []]
        recorded = self.state.add_poll_vote(poll_id, voter, selected)
        if not recorded:
            log.warning("poll_not_tracked", extra={"payload": {"poll_id": poll_id}})
        poll = self.state.get_poll(poll_id)
        return {
            "poll_id": poll_id,
            "voter": voter,
            "total_votes": poll.total_votes if poll else None,
        }

    # -------------------------------------------------------------------------
    # Геопозиция
    # -------------------------------------------------------------------------
    def _on_location_message(self, event: DomainEvent) -> dict[str, Any]:
        self.state.save_location_data(self._location_record(event))
        return {}

    def _on_live_location_start(self, event: DomainEvent) -> dict[str, Any]:
        d = event.data
        tracker_id = str(d.get("tracker_id") or event.origin_id)
        self.state.add_live_location_tracker(
            LocationTracker(
                id=tracker_id,
                origin=event.origin_id,
                start_time=epoch_to_iso(event.timestamp),
                last_location=self._coords(d),
            )
        )
        duration = d.get("duration_sec")
        if duration:
            timer = threading.Timer(float(duration), self._expire_tracker, args=(tracker_id,))
            timer.daemon = True
            self.state.attach_timer(tracker_id, timer)
            timer.start()
        return {"tracker_id": tracker_id}

    def _on_live_location_update(self, event: DomainEvent) -> dict[str, Any]:
        tracker_id = str(event.data.get("tracker_id") or event.origin_id)
        tracker = self.state.record_location_update(tracker_id, self._coords(event.data))
        self.state.save_location_data(self._location_record(event, tracker_id=tracker_id))
        return {
            "tracker_id": tracker_id,
            "update_count": tracker.update_count if tracker else None,
        }

    def _on_live_location_stop(self, event: DomainEvent) -> dict[str, Any]:
        tracker_id = str(event.data.get("tracker_id") or event.origin_id)
        self.state.cancel_timer(tracker_id)
        self.state.update_live_location_tracker(tracker_id, status=TrackerStatus.stopped.value)
        return {"tracker_id": tracker_id}

    def _expire_tracker(self, tracker_id: str) -> None:
        self.state.cancel_timer(tracker_id)
        if self.state.update_live_location_tracker(tracker_id, status=TrackerStatus.stopped.value):
            log.info("live_location_expired", extra={"payload": {"tracker_id": tracker_id}})
            self.notifier.enqueue(
                WebhookEvent.live_location_stop.value, {"tracker_id": tracker_id, "expired": True}
            )

    @staticmethod
    def _coords(d: dict[str, Any]) -> dict[str, Any]:
        return {k: d[k] for k in ("latitude", "longitude", "accuracy", "description") if k in d}

    def _location_record(self, event: DomainEvent, **extra: Any) -> dict[str, Any]:
        return {
            "source_ref": event.event_id,
            "origin_id": event.origin_id,
            "kind": event.kind,
            "timestamp": epoch_to_iso(event.timestamp),
            **self._coords(event.data),
            **extra,
        }

    # -------------------------------------------------------------------------
    # Вкладки
    # -------------------------------------------------------------------------
    def _on_tab_opened(self, event: DomainEvent) -> dict[str, Any]:
        tab_id = str(event.data.get("tab_id") or event.event_id)
        self.state.add_browser_tab(TabRecord(id=tab_id, url=str(event.data.get("url") or "")))
        return {"tab_id": tab_id}

    def _on_tab_closed(self, event: DomainEvent) -> dict[str, Any]:
        tab_id = str(event.data.get("tab_id") or event.event_id)
        self.state.update_browser_tab(tab_id, status=TabStatus.closed.value)
        return {"tab_id": tab_id}
