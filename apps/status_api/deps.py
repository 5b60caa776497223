"""
FastAPI Depends для status API.

Сюда выносим:
- доступ к компонентам relay-ядра (кладутся в app.state.components)
- 503, если компонент не подключён
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeVar

from fastapi import HTTPException, Request, status

from event_relay.queue.dead_letter import DeadLetterStore
from event_relay.queue.media_queue import MediaDownloadQueue
from event_relay.queue.webhook_queue import WebhookDeliveryQueue
from event_relay.storage.media_cache import ContentCache
from event_relay.storage.state_store import StateStore

T = TypeVar("T")


@dataclass
class StatusComponents:
    state: StateStore | None = None
    cache: ContentCache | None = None
    media: MediaDownloadQueue | None = None
    webhooks: WebhookDeliveryQueue | None = None
    dead_letters: DeadLetterStore | None = None

    @classmethod
    def from_runtime(cls, runtime: Any) -> StatusComponents:
        return cls(
            state=runtime.state,
            cache=runtime.cache,
            media=runtime.media,
            webhooks=runtime.webhooks,
            dead_letters=runtime.dead_letters,
        )

    def availability(self) -> dict[str, bool]:
        return {
            "state": self.state is not None,
            "cache": self.cache is not None,
            "media": self.media is not None,
            "webhooks": self.webhooks is not None,
            "dead_letters": self.dead_letters is not None,
        }


def components_dep(request: Request) -> StatusComponents:
    components = getattr(request.app.state, "components", None)
    return components if components is not None else StatusComponents()


def require_component(component: T | None, name: str) -> T:
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not available",
        )
    return component
