"""
Метрики Prometheus для relay-ядра.

Назначение:
- Экспорт /metrics в status API
- Счётчики доставки webhook, загрузок медиа, снапшотов состояния
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "relay_status_requests_total",
    "Количество HTTP запросов к status API",
    ["route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "relay_status_request_latency_ms",
    "Задержка HTTP запроса status API (мс)",
    ["route", "method"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "relay_webhook_deliveries_total",
    "Результаты доставки webhook",
    ["result"],  # sent|retried|dead_lettered|skipped
)

WEBHOOK_QUEUE_DEPTH = Gauge(
    "relay_webhook_queue_depth",
    "Текущая глубина очереди webhook",
)

DEAD_LETTER_DEPTH = Gauge(
    "relay_dead_letter_depth",
    "Количество записей в dead-letter хранилище",
)

MEDIA_DOWNLOADS_TOTAL = Counter(
    "relay_media_downloads_total",
    "Результаты задач загрузки медиа",
    ["result"],  # completed|cache_hit|retry|failed
)

MEDIA_DOWNLOAD_LATENCY_MS = Histogram(
    "relay_media_download_latency_ms",
    "Длительность загрузки медиа (мс)",
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000),
)

MEDIA_CACHE_ENTRIES = Gauge(
    "relay_media_cache_entries",
    "Количество записей в индексе медиа-кэша",
)

STATE_SNAPSHOT_WRITES_TOTAL = Counter(
    "relay_state_snapshot_writes_total",
    "Записи снапшота состояния",
    ["result"],  # ok|failed
)


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        REQUESTS_TOTAL.labels(route=route, method=method, status=str(response.status_code)).inc()
        HTTP_REQUEST_LATENCY_MS.labels(route=route, method=method).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
