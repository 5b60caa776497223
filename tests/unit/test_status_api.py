from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from apps.status_api.deps import StatusComponents
from apps.status_api.main import create_app
from event_relay.connectors.mock import MockEventSource
from event_relay.domain.state import CallState, LocationTracker, PollState, TabRecord
from event_relay.queue.dead_letter import DeadLetterStore
from event_relay.queue.media_queue import MediaDownloadQueue
from event_relay.queue.webhook_queue import WebhookDeliveryQueue
from event_relay.storage.media_cache import ContentCache
from event_relay.storage.state_store import StateStore


class _NullNotifier:
    def enqueue(self, event, data):
        return None


@pytest.fixture()
def components(make_settings):
    s = make_settings()
    state = StateStore(s)
    state.initialize()
    cache = ContentCache(s)
    cache.initialize()
    dead_letters = DeadLetterStore(s)
    webhooks = WebhookDeliveryQueue(s, dead_letters=dead_letters)
    media = MediaDownloadQueue(MockEventSource(), cache, _NullNotifier(), s)
    yield StatusComponents(
        state=state, cache=cache, media=media, webhooks=webhooks, dead_letters=dead_letters
    )
    media.pool.close()
    state.close(timeout=5)


@pytest.fixture()
def client(components, make_settings) -> TestClient:
    return TestClient(create_app(components, settings=make_settings()))


def test_health_reports_components(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["status"] == "healthy"
    assert body["uptime_sec"] >= 0
    assert all(body["components"].values())


def test_stats_aggregates_every_component(client) -> None:
    body = client.get("/stats").json()
    assert body["success"] is True
    for key in ("state", "cache", "media", "webhooks", "dead_letters"):
        assert key in body
    assert body["state"]["is_initialized"] is True


def test_calls_filter_and_limit(client, components) -> None:
    state = components.state
    state.add_call(CallState(id="c1", peer="1@c.us", direction="incoming"))
    state.add_call(CallState(id="c2", peer="2@c.us", direction="incoming", status="ended"))
    state.add_call(CallState(id="c3", peer="3@c.us", direction="outgoing", status="ended"))

    body = client.get("/calls", params={"status": "ended"}).json()
    assert body["count"] == 2
    assert [c["id"] for c in body["calls"]] == ["c2", "c3"]

    body = client.get("/calls", params={"limit": 1}).json()
    assert [c["id"] for c in body["calls"]] == ["c3"]


def test_state_collections(client, components) -> None:
    state = components.state
    state.add_poll(PollState(id="p1", creator="1@c.us", options=["a"]))
    state.add_poll_vote("p1", "2@c.us", ["a"])
    state.add_live_location_tracker(LocationTracker(id="l1", origin="1@c.us"))
    state.add_browser_tab(TabRecord(id="t1", url="https://a.example"))

    polls = client.get("/polls").json()
    assert polls["polls"][0]["total_votes"] == 1
    assert polls["polls"][0]["votes"][0][0] == "2@c.us"
    assert client.get("/live-locations").json()["trackers"][0]["status"] == "active"
    assert client.get("/browser-tabs").json()["tabs"][0]["url"] == "https://a.example"


def test_media_endpoints(client) -> None:
    stats = client.get("/media-stats").json()
    assert stats["success"] is True
    assert stats["cache_size"] == 0
    assert "queue" in stats

    downloads = client.get("/media-downloads", params={"limit": 10}).json()
    assert downloads == {"success": True, "active": [], "history": []}


def test_unknown_media_task_is_404(client) -> None:
    r = client.get("/media-tasks/media_nope_1")
    assert r.status_code == 404
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "Task not found"
    assert "timestamp" in body


def test_webhook_and_dead_letter_stats(client) -> None:
    webhook = client.get("/webhook-stats").json()
    assert webhook["enabled"] is False
    assert webhook["queue_length"] == 0

    dlq = client.get("/dead-letter-queue").json()
    assert dlq["success"] is True
    assert dlq["total"] == 0


def test_error_envelopes(client) -> None:
    missing = client.get("/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "Endpoint not found"

    wrong_method = client.post("/health")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"] == "Method not allowed"

    bad_query = client.get("/calls", params={"limit": 0})
    assert bad_query.status_code == 400
    assert bad_query.json() == {
        "success": False,
        "error": "Invalid query parameters",
        "timestamp": bad_query.json()["timestamp"],
    }


def test_missing_component_is_503(make_settings) -> None:
    client = TestClient(create_app(StatusComponents(), settings=make_settings()))

    r = client.get("/calls")
    assert r.status_code == 503
    assert r.json()["error"] == "StateStore not available"
    assert client.get("/health").json()["components"]["state"] is False


def test_cors_headers(client) -> None:
    r = client.get("/health", headers={"Origin": "https://dashboard.example"})
    assert r.headers["access-control-allow-origin"] == "*"

    preflight = client.options(
        "/health",
        headers={
            "Origin": "https://dashboard.example",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert preflight.status_code == 200
    assert "GET" in preflight.headers["access-control-allow-methods"]


def test_cors_restricted_origins(components, make_settings) -> None:
    client = TestClient(
        create_app(components, settings=make_settings(cors_allowed_origins="https://ok.example"))
    )
    allowed = client.get("/health", headers={"Origin": "https://ok.example"})
    assert allowed.headers["access-control-allow-origin"] == "https://ok.example"

    denied = client.get("/health", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in denied.headers


def test_metrics_endpoint(client) -> None:
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "relay_status_requests_total" in r.text
