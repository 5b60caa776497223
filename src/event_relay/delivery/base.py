"""
Базовые интерфейсы доставки.

Назначение:
- единый контракт отправителя пейлоада (HTTP webhook и фейки в тестах)
- контракт канала уведомлений, через который компоненты сообщают о событиях
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from event_relay.contracts.events import WebhookPayload


@dataclass
class DeliveryResult:
    """
    Результат успешной доставки.
    """

    ok: bool
    provider: str
    status_code: int | None = None
    meta: dict[str, Any] | None = None


class PayloadSender(Protocol):
    """
    Контракт отправителя: одна попытка доставки.
    Неуспех -> исключение (DeliveryError или сетевое).
    """

    def send(self, payload: WebhookPayload) -> DeliveryResult: ...


class Notifier(Protocol):
    """
    Канал уведомлений (в проде: очередь webhook).
    """

    def enqueue(self, event: str, data: dict[str, Any]) -> str | None: ...
