"""
Observability bootstrap.

Назначение:
- централизованно включить логирование на старте процесса
- не тянуть лишние зависимости внутрь apps/*
"""

from __future__ import annotations

from event_relay.common.logging import get_project_logger, setup_logging

log = get_project_logger()


def setup_observability() -> None:
    """
    Вызывается на старте процесса (driver/status api).
    Метрики подключаются через setup_metrics_endpoint при сборке FastAPI app.
    """
    setup_logging()
    log.info("observability_ready")
