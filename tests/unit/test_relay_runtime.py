from __future__ import annotations

import threading

import pytest

from event_relay.connectors.mock import MockEventSource
from event_relay.contracts.events import DomainEvent
from event_relay.delivery.base import DeliveryResult
from event_relay.services.relay_runtime import RelayRuntime, build_event_source


class _CollectingSender:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.payloads = []
        self.closed = False

    def send(self, payload):
        with self._lock:
            self.payloads.append(payload)
        return DeliveryResult(ok=True, provider="fake", status_code=200)

    def close(self) -> None:
        self.closed = True

    def events(self) -> list[str]:
        with self._lock:
            return [p.event for p in self.payloads]


@pytest.fixture()
def relay_settings(make_settings):
    return make_settings(
        webhook_enabled=True,
        webhook_url="https://consumer.example/hook",
        download_concurrency=1,
    )


def test_build_event_source(make_settings) -> None:
    assert isinstance(build_event_source(make_settings()), MockEventSource)
    with pytest.raises(ValueError):
        build_event_source(make_settings(event_source_provider="carrier-pigeon"))


def test_message_with_attachment_end_to_end(relay_settings) -> None:
    source = MockEventSource()
    source.put_attachment("msg-1", b"\x89PNG...", "image/png", "photo.png")
    sender = _CollectingSender()
    runtime = RelayRuntime(relay_settings, source=source, sender=sender)
    runtime.start()
    assert runtime.started is True

    result = runtime.handle_event(
        DomainEvent(
            event_id="msg-1",
            kind="message",
            origin_id="100@c.us",
            timestamp=1700000000.0,
            has_attachment=True,
            data={"body": "look"},
        )
    )
    assert result["media_task_id"]
    assert runtime.media.wait_idle(timeout=5)
    assert runtime.webhooks.flush(timeout=5)

    events = sender.events()
    assert events[0] == "media_queued"
    assert sorted(events) == ["media_downloaded", "media_processing", "media_queued", "message"]
    assert events.index("media_processing") < events.index("media_downloaded")
    assert len(runtime.cache) == 1

    runtime.shutdown(webhook_flush_timeout=5)
    assert runtime.started is False
    assert sender.closed is True
    assert runtime.state.path.exists()


def test_state_survives_restart(relay_settings) -> None:
    first = RelayRuntime(relay_settings, sender=_CollectingSender())
    first.start()
    first.handle_event(
        DomainEvent(
            event_id="c1",
            kind="incoming_call",
            origin_id="100@c.us",
            timestamp=1700000000.0,
            data={"call_id": "c1"},
        )
    )
    first.shutdown(webhook_flush_timeout=5)

    second = RelayRuntime(relay_settings, sender=_CollectingSender())
    second.start()
    try:
        assert second.state.get_call("c1") is not None
    finally:
        second.shutdown(webhook_flush_timeout=5)
