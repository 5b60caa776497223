"""
Базовые интерфейсы коннекторов (источник событий).

Назначение:
- отделить "как источник добывает события/вложения" от ядра доставки
- ядро знает только fetch_attachment(event)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from event_relay.contracts.events import DomainEvent


@dataclass
class FetchedAttachment:
    """
    Вложение, выгруженное из источника.
    """

    data: bytes
    mime_type: str
    filename: str | None = None


class EventSource(Protocol):
    """
    Контракт источника событий.
    """

    def fetch_attachment(self, event: DomainEvent) -> FetchedAttachment | None:
        """
        Выгрузить вложение события.
        None -> вложения у источника нет (не ретраим).
        Исключения сети/таймауты -> ретраибельные ошибки.
        """
        ...
