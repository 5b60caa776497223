"""
Read-only status endpoints.

Назначение:
- снапшоты состояния, кэша, очередей и DLQ для других процессов
- только GET; мутаций на этой поверхности нет
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from apps.status_api.deps import StatusComponents, components_dep, require_component
from event_relay.common.time import utc_now_iso
from event_relay.storage.state_codec import record_to_dict

router = APIRouter()


def _uptime(request: Request) -> float:
    started = getattr(request.app.state, "started_monotonic", None)
    return round(time.monotonic() - started, 3) if started is not None else 0.0


@router.get("/health")
def health(request: Request, c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    return {
        "success": True,
        "status": "healthy",
        "timestamp": utc_now_iso(),
        "uptime_sec": _uptime(request),
        "components": c.availability(),
    }


@router.get("/stats")
def stats(request: Request, c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    out: dict[str, Any] = {
        "success": True,
        "timestamp": utc_now_iso(),
        "uptime_sec": _uptime(request),
    }
    if c.state is not None:
        out["state"] = c.state.get_stats()
    if c.cache is not None:
        out["cache"] = c.cache.get_stats()
    if c.media is not None:
        out["media"] = c.media.get_stats()
    if c.webhooks is not None:
        out["webhooks"] = c.webhooks.get_stats()
    if c.dead_letters is not None:
        out["dead_letters"] = c.dead_letters.summarize()
    return out


@router.get("/calls")
def calls(
    limit: int = Query(default=50, ge=1, le=1000),
    call_status: str | None = Query(default=None, alias="status"),
    c: StatusComponents = Depends(components_dep),
) -> dict[str, Any]:
    state = require_component(c.state, "StateStore")
    items = state.get_all_calls()
    if call_status:
        items = [i for i in items if i.status == call_status]
    items = items[-limit:]
    return {"success": True, "count": len(items), "calls": [record_to_dict(i) for i in items]}


@router.get("/polls")
def polls(
    limit: int = Query(default=50, ge=1, le=1000),
    c: StatusComponents = Depends(components_dep),
) -> dict[str, Any]:
    state = require_component(c.state, "StateStore")
    items = state.get_all_polls()[-limit:]
    return {"success": True, "count": len(items), "polls": [record_to_dict(i) for i in items]}


@router.get("/live-locations")
def live_locations(c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    state = require_component(c.state, "StateStore")
    items = state.get_all_live_location_trackers()
    return {"success": True, "count": len(items), "trackers": [record_to_dict(i) for i in items]}


@router.get("/browser-tabs")
def browser_tabs(c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    state = require_component(c.state, "StateStore")
    items = state.get_all_browser_tabs()
    return {"success": True, "count": len(items), "tabs": [record_to_dict(i) for i in items]}


@router.get("/media-stats")
def media_stats(c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    cache = require_component(c.cache, "ContentCache")
    out: dict[str, Any] = {"success": True, **cache.get_stats()}
    if c.media is not None:
        out["queue"] = c.media.get_stats()
    return out


@router.get("/webhook-stats")
def webhook_stats(c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    webhooks = require_component(c.webhooks, "WebhookDeliveryQueue")
    return {"success": True, **webhooks.get_stats()}


@router.get("/dead-letter-queue")
def dead_letter_queue(c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    dead_letters = require_component(c.dead_letters, "DeadLetterStore")
    return {"success": True, **dead_letters.summarize()}


@router.get("/media-downloads")
def media_downloads(
    limit: int = Query(default=50, ge=1, le=1000),
    c: StatusComponents = Depends(components_dep),
) -> dict[str, Any]:
    media = require_component(c.media, "MediaDownloadQueue")
    return {
        "success": True,
        "active": media.get_active_downloads(),
        "history": media.get_download_history(limit),
    }


@router.get("/media-tasks/{task_id}")
def media_task(task_id: str, c: StatusComponents = Depends(components_dep)) -> dict[str, Any]:
    media = require_component(c.media, "MediaDownloadQueue")
    task = media.get_task_status(task_id)
    if not task.get("found"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return {"success": True, "task": task}
