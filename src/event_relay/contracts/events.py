"""
Контракты событий (runtime, Python-описание).

Важно:
- DomainEvent приходит от внешнего источника событий (at-least-once)
- WebhookPayload неизменяем после создания
- имена событий совпадают с тем, что видит потребитель webhook
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

GROUP_SUFFIX = "@g.us"


class WebhookEvent(str, enum.Enum):
    # Соединение
    ready = "ready"
    authenticated = "authenticated"
    auth_failure = "auth_failure"
    disconnected = "disconnected"
    change_state = "change_state"

    # Сообщения
    message = "message"
    message_create = "message_create"

    # Медиа
    media_queued = "media_queued"
    media_processing = "media_processing"
    media_downloaded = "media_downloaded"
    media_retry = "media_retry"
    media_failed = "media_failed"

    # Звонки
    incoming_call = "incoming_call"
    outgoing_call = "outgoing_call"
    call = "call"
    call_ended = "call_ended"
    call_rejected = "call_rejected"

    # Опросы
    poll_created = "poll_created"
    poll_vote = "poll_vote"
    vote_update = "vote_update"

    # Геопозиция
    location_message = "location_message"
    live_location_start = "live_location_start"
    live_location_update = "live_location_update"
    live_location_stop = "live_location_stop"

    # Вкладки браузера
    tab_opened = "tab_opened"
    tab_closed = "tab_closed"


@dataclass
class DomainEvent:
    """
    Событие источника.
    - event_id: идентификатор события у источника (sourceRef)
    - origin_id: отправитель (originId); группы оканчиваются на @g.us
    - timestamp: unix-время события (сек)
    """

    event_id: str
    kind: str
    origin_id: str
    timestamp: float
    has_attachment: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.origin_id.endswith(GROUP_SUFFIX)


@dataclass(frozen=True)
class WebhookPayload:
    id: str
    event: str
    timestamp: str
    data: Any

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "event": self.event, "timestamp": self.timestamp, "data": self.data}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WebhookPayload:
        return cls(
            id=str(raw["id"]),
            event=str(raw["event"]),
            timestamp=str(raw.get("timestamp") or ""),
            data=raw.get("data"),
        )
