"""
Генерация идентификаторов.

Назначение:
- id webhook-пейлоада (уникален на "линию" доставки, не на каждый POST)
- id задач загрузки медиа (не повторяется в пределах процесса)
"""

from __future__ import annotations

import itertools
import re
import secrets
import threading
from datetime import UTC, datetime

_TASK_SEQ = itertools.count(1)
_TASK_SEQ_LOCK = threading.Lock()
_RE_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


def new_webhook_id(prefix: str = "wh") -> str:
    """
    Идентификатор webhook-пейлоада.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(6)
    return f"{prefix}_{ts}_{rnd}"


def new_task_id(cache_key: str, prefix: str = "media") -> str:
    """
    Идентификатор задачи загрузки.
    Формат: <prefix>_<sanitized cache key>_<seq>; seq монотонен в процессе.
    """
    with _TASK_SEQ_LOCK:
        seq = next(_TASK_SEQ)
    return f"{prefix}_{sanitize_token(cache_key)}_{seq}"


def sanitize_token(raw: str) -> str:
    """Оставить только [a-zA-Z0-9], остальное заменить на '_'."""
    return _RE_UNSAFE.sub("_", raw or "")
