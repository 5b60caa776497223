"""
Доменные перечисления (enum).

Используются во всей системе:
- типы медиа и статусы задач загрузки
- статусы звонков, трекеров геопозиции, вкладок
"""

from __future__ import annotations

import enum


class MediaType(str, enum.Enum):
    """
    Тип вложения (определяется по MIME).
    """

    image = "image"
    video = "video"
    audio = "audio"
    document = "document"
    sticker = "sticker"
    voice = "voice"


class TaskStatus(str, enum.Enum):
    """
    Жизненный цикл задачи загрузки медиа.
    """

    queued = "queued"
    processing = "processing"
    retrying = "retrying"
    completed = "completed"
    failed = "failed"


class CallStatus(str, enum.Enum):
    incoming = "incoming"
    outgoing = "outgoing"
    active = "active"
    ended = "ended"
    rejected = "rejected"
    missed = "missed"


ACTIVE_CALL_STATUSES = frozenset(
    {CallStatus.incoming.value, CallStatus.outgoing.value, CallStatus.active.value}
)


class TrackerStatus(str, enum.Enum):
    active = "active"
    stopped = "stopped"


class TabStatus(str, enum.Enum):
    open = "open"
    closed = "closed"
