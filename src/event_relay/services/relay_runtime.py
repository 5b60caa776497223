"""
Сборка relay-ядра из Settings.

Назначение:
- создать и связать компоненты (кэш, состояние, очереди, координатор)
- старт: каталоги, подъём индекса кэша, dead-letter, снапшота состояния
- shutdown: drain загрузок -> синхронный flush webhook -> финальный снапшот
"""

from __future__ import annotations

from typing import Any

from event_relay.common.config import Settings, get_settings
from event_relay.common.logging import get_project_logger
from event_relay.connectors.base import EventSource
from event_relay.connectors.mock import MockEventSource
from event_relay.contracts.events import DomainEvent
from event_relay.delivery.base import PayloadSender
from event_relay.queue.dead_letter import DeadLetterStore
from event_relay.queue.media_queue import MediaDownloadQueue
from event_relay.queue.webhook_queue import WebhookDeliveryQueue
from event_relay.services.coordinator import EventCoordinator
from event_relay.storage.media_cache import ContentCache
from event_relay.storage.state_store import StateStore

log = get_project_logger()


def build_event_source(settings: Settings | None = None) -> EventSource:
    s = settings or get_settings()
    provider = (s.event_source_provider or "").strip().lower()
    if provider == "mock":
        return MockEventSource()
    raise ValueError(f"Unsupported EVENT_SOURCE_PROVIDER: {s.event_source_provider}")


class RelayRuntime:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        source: EventSource | None = None,
        sender: PayloadSender | None = None,
    ) -> None:
        self.s = settings or get_settings()
        self.source = source or build_event_source(self.s)

        self.cache = ContentCache(self.s)
        self.dead_letters = DeadLetterStore(self.s)
        self.webhooks = WebhookDeliveryQueue(
            self.s, sender=sender, dead_letters=self.dead_letters
        )
        self.state = StateStore(self.s)
        self.media = MediaDownloadQueue(self.source, self.cache, self.webhooks, self.s)
        self.coordinator = EventCoordinator(self.state, self.webhooks, self.media)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """
        Невозможность создать каталоги кэша -> исключение (фатально для процесса).
        """
        self.cache.initialize()
        self.dead_letters.load()
        self.state.initialize()
        self._started = True
        log.info(
            "relay_runtime_started",
            extra={
                "payload": {
                    "service": self.s.service_name,
                    "webhook_enabled": self.s.webhook_enabled,
                    "download_enabled": self.s.download_enabled,
                    "cache_entries": len(self.cache),
                    "dead_letters": len(self.dead_letters),
                }
            },
        )

    def handle_event(self, event: DomainEvent) -> dict[str, Any]:
        return self.coordinator.handle(event)

    def shutdown(self, *, webhook_flush_timeout: float | None = 30.0) -> None:
        log.info("relay_runtime_stopping")
        self.media.shutdown()
        if not self.webhooks.flush(webhook_flush_timeout):
            log.warning(
                "webhook_flush_timeout",
                extra={"payload": {"queue_length": self.webhooks.queue_length()}},
            )
        self.state.close()
        close = getattr(self.webhooks.sender, "close", None)
        if callable(close):
            close()
        self._started = False
        log.info("relay_runtime_stopped")
