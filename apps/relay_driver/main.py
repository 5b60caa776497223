"""
Relay Driver.

Алгоритм:
- логирование + проверка готовности (каталоги создаются, иначе выход)
- сборка RelayRuntime и старт компонентов
- status API (uvicorn) в фоновом потоке
- ожидание SIGINT/SIGTERM -> graceful shutdown
"""

from __future__ import annotations

import signal
import threading

import uvicorn

from apps.status_api.deps import StatusComponents
from apps.status_api.main import create_app
from event_relay.common.config import get_settings
from event_relay.common.logging import get_project_logger
from event_relay.common.observability import setup_observability
from event_relay.services.readiness_service import enforce_startup_readiness
from event_relay.services.relay_runtime import RelayRuntime

log = get_project_logger()


def _start_status_api(runtime: RelayRuntime) -> tuple[uvicorn.Server, threading.Thread]:
    s = get_settings()
    app = create_app(StatusComponents.from_runtime(runtime), s)
    config = uvicorn.Config(
        app,
        host=s.status_api_host,
        port=s.status_api_port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    log.info(
        "status_api_started",
        extra={"payload": {"host": s.status_api_host, "port": s.status_api_port}},
    )
    return server, thread


def run() -> None:
    s = get_settings()
    setup_observability()
    enforce_startup_readiness(service_name=s.service_name)

    runtime = RelayRuntime(s)
    runtime.start()
    server, thread = _start_status_api(runtime)

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        log.info("relay_driver_signal", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    log.info("relay_driver_started", extra={"payload": {"service": s.service_name}})
    try:
        while not stop.wait(1.0):
            pass
    finally:
        server.should_exit = True
        thread.join(5.0)
        runtime.shutdown()
        log.info("relay_driver_stopped")


if __name__ == "__main__":
    run()
