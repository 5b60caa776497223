"""
Логирование relay-ядра.

- логирование в stdout (Docker-friendly)
- JSON по умолчанию, text через LOG_FORMAT=text
- контекст события кладём в extra={"payload": {...}}
- каждая запись несёт service/env и имя потока (drain, воркеры пула, таймеры)
- ключи корреляции из payload (task_id, webhook id, событие) поднимаются наверх,
  чтобы жизненный цикл одной задачи фильтровался без разбора payload
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from event_relay.common.config import get_settings

# payload-ключ -> ключ верхнего уровня
_CORRELATION_KEYS = {
    "task_id": "task_id",
    "id": "webhook_id",
    "event": "event",
    "tracker_id": "tracker_id",
}


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str = "event-relay", env: str | None = None) -> None:
        super().__init__()
        self.service = service
        self.env = env

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if self.env:
            payload["env"] = self.env
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            for src, dst in _CORRELATION_KEYS.items():
                value = extra_payload.get(src)
                if isinstance(value, str | int) and dst not in payload:
                    payload[dst] = value
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    return JsonFormatter(service=s.service_name, env=s.app_env)


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)


def get_project_logger(name: str = "event-relay") -> logging.Logger:
    return logging.getLogger(name)
