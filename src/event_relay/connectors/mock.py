"""
Mock-источник событий для dev/тестов.

Назначение:
- позволить гонять пайплайн без реального источника
- отдавать заранее положенные вложения, считать обращения
"""

from __future__ import annotations

import threading

from event_relay.connectors.base import EventSource, FetchedAttachment
from event_relay.contracts.events import DomainEvent


class MockEventSource(EventSource):
    def __init__(self) -> None:
        self._attachments: dict[str, FetchedAttachment] = {}
        self._failures: dict[str, list[BaseException]] = {}
        self._lock = threading.Lock()
        self.fetch_calls: list[str] = []

    def put_attachment(
        self, event_id: str, data: bytes, mime_type: str, filename: str | None = None
    ) -> None:
        with self._lock:
            self._attachments[event_id] = FetchedAttachment(
                data=data, mime_type=mime_type, filename=filename
            )

    def fail_next(self, event_id: str, *errors: BaseException) -> None:
        """Следующие N обращений за event_id завершатся указанными ошибками."""
        with self._lock:
            self._failures.setdefault(event_id, []).extend(errors)

    def fetch_attachment(self, event: DomainEvent) -> FetchedAttachment | None:
        with self._lock:
            self.fetch_calls.append(event.event_id)
            pending = self._failures.get(event.event_id)
            if pending:
                raise pending.pop(0)
            return self._attachments.get(event.event_id)
