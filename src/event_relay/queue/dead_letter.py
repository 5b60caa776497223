"""
Dead-letter хранилище webhook.

Назначение:
- хранить пейлоады, исчерпавшие ретраи (in-memory + append-only JSONL)
- сводка для status API
- ручной повтор только ретраибельных записей

Важно:
- can_retry вычисляется один раз при вставке и больше не пересчитывается
- ошибки записи файла логируются и не пробрасываются
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from event_relay.common.config import Settings, get_settings
from event_relay.common.errors import to_app_error
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import DEAD_LETTER_DEPTH
from event_relay.common.time import parse_iso, utc_now_iso
from event_relay.contracts.events import WebhookPayload
from event_relay.delivery.base import PayloadSender
from event_relay.queue.retry import is_retryable
from event_relay.storage.files import append_jsonl, read_jsonl, write_jsonl

log = get_project_logger()


@dataclass
class DeadLetterEntry:
    payload: WebhookPayload
    error: dict[str, Any]  # {message, kind, code?}
    retry_count: int
    failed_at: str
    can_retry: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload.to_dict(),
            "error": dict(self.error),
            "retry_count": self.retry_count,
            "failed_at": self.failed_at,
            "can_retry": self.can_retry,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DeadLetterEntry:
        return cls(
            payload=WebhookPayload.from_dict(raw["payload"]),
            error=dict(raw.get("error") or {}),
            retry_count=int(raw.get("retry_count", 0)),
            failed_at=str(raw.get("failed_at") or ""),
            can_retry=bool(raw.get("can_retry", False)),
        )


class DeadLetterStore:
    def __init__(self, settings: Settings | None = None, *, path: str | Path | None = None) -> None:
        s = settings or get_settings()
        self.path = Path(path or s.dead_letter_file)
        self._entries: list[DeadLetterEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def load(self) -> int:
        """
        Подтянуть записи из JSONL (старт процесса). Битые строки пропускаются.
        """
        raw_items, skipped = read_jsonl(self.path)
        loaded: list[DeadLetterEntry] = []
        for item in raw_items:
            try:
                loaded.append(DeadLetterEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                skipped += 1
        with self._lock:
            self._entries = loaded
            DEAD_LETTER_DEPTH.set(len(self._entries))
        if skipped:
            log.warning(
                "dead_letter_entries_skipped",
                extra={"payload": {"path": str(self.path), "skipped": skipped}},
            )
        if loaded:
            log.info(
                "dead_letter_loaded",
                extra={"payload": {"path": str(self.path), "entries": len(loaded)}},
            )
        return len(loaded)

    def record(
        self, payload: WebhookPayload, error: BaseException, retry_count: int
    ) -> DeadLetterEntry:
        app_err = to_app_error(error)
        entry = DeadLetterEntry(
            payload=payload,
            error=app_err.to_dict(),
            retry_count=retry_count,
            failed_at=utc_now_iso(),
            can_retry=is_retryable(app_err),
        )
        with self._lock:
            self._entries.append(entry)
            DEAD_LETTER_DEPTH.set(len(self._entries))
            try:
                append_jsonl(self.path, entry.to_dict())
            except OSError as e:
                log.error(
                    "dead_letter_write_failed",
                    extra={"payload": {"path": str(self.path), "error": str(e)[:200]}},
                )

        log.warning(
            "webhook_dead_lettered",
            extra={
                "payload": {
                    "id": payload.id,
                    "event": payload.event,
                    "kind": app_err.code,
                    "retry_count": retry_count,
                    "can_retry": entry.can_retry,
                }
            },
        )
        return entry

    def entries(self) -> list[DeadLetterEntry]:
        with self._lock:
            return list(self._entries)

    def retry_all(self, sender: PayloadSender) -> dict[str, int]:
        """
        Одна прямая попытка для каждой ретраибельной записи (без backoff).
        Успешные удаляются, файл переписывается целиком.
        """
        with self._lock:
            candidates = [e for e in self._entries if e.can_retry]

        results = {"retried": 0, "failed": 0}
        if not candidates:
            log.info("dead_letter_retry_nothing")
            return results

        log.info("dead_letter_retry_started", extra={"payload": {"candidates": len(candidates)}})
        delivered: list[DeadLetterEntry] = []
        for entry in candidates:
            try:
                sender.send(entry.payload)
            except Exception as e:
                results["failed"] += 1
                log.warning(
                    "dead_letter_retry_failed",
                    extra={
                        "payload": {
                            "id": entry.payload.id,
                            "event": entry.payload.event,
                            "error": str(e)[:200],
                        }
                    },
                )
                continue
            delivered.append(entry)
            results["retried"] += 1

        with self._lock:
            self._entries = [e for e in self._entries if not any(e is d for d in delivered)]
            DEAD_LETTER_DEPTH.set(len(self._entries))
            self._rewrite_locked()
        return results

    def summarize(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries)

        by_event: Counter[str] = Counter()
        by_error: Counter[str] = Counter()
        oldest: tuple | None = None
        newest: tuple | None = None
        for entry in entries:
            by_event[entry.payload.event] += 1
            by_error[str(entry.error.get("kind") or "unknown")] += 1
            failed_at = parse_iso(entry.failed_at)
            if failed_at is None:
                continue
            if oldest is None or failed_at < oldest[0]:
                oldest = (failed_at, entry.failed_at)
            if newest is None or failed_at > newest[0]:
                newest = (failed_at, entry.failed_at)

        return {
            "total": len(entries),
            "retryable": sum(1 for e in entries if e.can_retry),
            "by_event": dict(by_event),
            "by_error": dict(by_error),
            "oldest_failure": oldest[1] if oldest else None,
            "newest_failure": newest[1] if newest else None,
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            DEAD_LETTER_DEPTH.set(0)
            self._rewrite_locked()
        log.info("dead_letter_cleared")

    def _rewrite_locked(self) -> None:
        try:
            write_jsonl(self.path, [e.to_dict() for e in self._entries])
        except OSError as e:
            log.error(
                "dead_letter_rewrite_failed",
                extra={"payload": {"path": str(self.path), "error": str(e)[:200]}},
            )
