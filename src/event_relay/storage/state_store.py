"""
Хранилище состояния сессии (звонки, опросы, live-геопозиция, вкладки).

Назначение:
- единственный владелец реестров; изменения только через методы
- после каждой мутации снапшот пишется в фоне (fire-and-forget)
- восстановление на старте, экспорт, статистика

Важно:
- запись снапшота не ожидается вызывающим; две мутации подряд гонятся
  за файл, выигрывает последняя завершившаяся запись
- состояние в памяти авторитетно, файл только для восстановления
- flush() дожидается всех незавершённых записей (тесты, shutdown)
- таймеры трекеров хранятся отдельно и никогда не экспортируются
"""

from __future__ import annotations

import copy
import threading
from dataclasses import fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from event_relay.common.config import Settings, get_settings
from event_relay.common.errors import ValidationError
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import STATE_SNAPSHOT_WRITES_TOTAL
from event_relay.common.time import utc_now_iso
from event_relay.domain.enums import ACTIVE_CALL_STATUSES, TabStatus, TrackerStatus
from event_relay.domain.state import CallState, LocationTracker, PollState, TabRecord, VoteRecord
from event_relay.storage.files import append_jsonl, atomic_write_json, read_json
from event_relay.storage.state_codec import RECORD_TYPES, decode_snapshot, encode_snapshot

log = get_project_logger()

CALLS = "calls"
POLLS = "polls"
LIVE_LOCATIONS = "live_locations"
BROWSER_TABS = "browser_tabs"


class StateStore:
    def __init__(self, settings: Settings | None = None, *, path: str | Path | None = None) -> None:
        self.s = settings or get_settings()
        self.path = Path(path or self.s.state_file)
        self.location_dir = Path(self.s.location_data_dir)

        self._lock = threading.RLock()
        self._registries: dict[str, dict[str, Any]] = {name: {} for name in RECORD_TYPES}
        self._timers: dict[str, threading.Timer] = {}
        self._pending: set[threading.Thread] = set()
        self._pending_lock = threading.Lock()
        self._initialized = False

    # -------------------------------------------------------------------------
    # Старт / восстановление
    # -------------------------------------------------------------------------
    def initialize(self) -> None:
        self.load()
        self._initialized = True
        log.info("state_store_ready", extra={"payload": self._counts()})

    def load(self, snapshot: dict[str, Any] | None = None) -> dict[str, int]:
        """
        Восстановить реестры из снапшота (по умолчанию из файла).
        Нет файла / битый файл -> чистое состояние.
        """
        raw = snapshot if snapshot is not None else read_json(self.path)
        if not isinstance(raw, dict):
            log.info("state_clean_start", extra={"payload": {"path": str(self.path)}})
            return self._counts()

        registries, skipped = decode_snapshot(raw)
        with self._lock:
            self._registries = registries
        if skipped:
            log.warning("state_records_skipped", extra={"payload": {"skipped": skipped}})
        counts = self._counts()
        log.info("state_restored", extra={"payload": counts})
        return counts

    # -------------------------------------------------------------------------
    # Обобщённые операции над реестрами
    # -------------------------------------------------------------------------
    def _add(self, name: str, record: Any) -> Any:
        now = utc_now_iso()
        for attr in ("created_at", "last_updated"):
            if hasattr(record, attr) and not getattr(record, attr):
                setattr(record, attr, now)
        stored = copy.deepcopy(record)
        with self._lock:
            self._registries[name][stored.id] = stored
            out = copy.deepcopy(stored)
        self._persist_async()
        return out

    def _update(self, name: str, record_id: str, updates: dict[str, Any]) -> Any | None:
        allowed = {f.name for f in fields(RECORD_TYPES[name])} - {"id", "votes"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValidationError(
                f"Unknown {name} fields: {', '.join(sorted(unknown))}", {"fields": sorted(unknown)}
            )
        with self._lock:
            record = self._registries[name].get(record_id)
            if record is None:
                return None
            for key, value in updates.items():
                setattr(record, key, value)
            if hasattr(record, "last_updated"):
                record.last_updated = utc_now_iso()
            out = copy.deepcopy(record)
        self._persist_async()
        return out

    def _remove(self, name: str, record_id: str) -> bool:
        with self._lock:
            removed = self._registries[name].pop(record_id, None) is not None
        if removed:
            self._persist_async()
        return removed

    def _get(self, name: str, record_id: str) -> Any | None:
        with self._lock:
            record = self._registries[name].get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def _get_all(self, name: str) -> list[Any]:
        with self._lock:
            return copy.deepcopy(list(self._registries[name].values()))

    # -------------------------------------------------------------------------
    # Звонки
    # -------------------------------------------------------------------------
    def add_call(self, call: CallState) -> CallState:
        return self._add(CALLS, call)

    def update_call(self, call_id: str, **updates: Any) -> CallState | None:
        return self._update(CALLS, call_id, updates)

    def remove_call(self, call_id: str) -> bool:
        return self._remove(CALLS, call_id)

    def get_call(self, call_id: str) -> CallState | None:
        return self._get(CALLS, call_id)

    def get_all_calls(self) -> list[CallState]:
        return self._get_all(CALLS)

    def get_active_calls(self) -> list[CallState]:
        return [c for c in self.get_all_calls() if c.status in ACTIVE_CALL_STATUSES]

    # -------------------------------------------------------------------------
    # Опросы
    # -------------------------------------------------------------------------
    def add_poll(self, poll: PollState) -> PollState:
        poll.votes = {}
        poll.total_votes = 0
        return self._add(POLLS, poll)

    def update_poll(self, poll_id: str, **updates: Any) -> PollState | None:
        return self._update(POLLS, poll_id, updates)

    def remove_poll(self, poll_id: str) -> bool:
        return self._remove(POLLS, poll_id)

    def get_poll(self, poll_id: str) -> PollState | None:
        return self._get(POLLS, poll_id)

    def get_all_polls(self) -> list[PollState]:
        return self._get_all(POLLS)

    def add_poll_vote(self, poll_id: str, voter_id: str, selected_options: list[str]) -> bool:
        now = utc_now_iso()
        with self._lock:
            poll = self._registries[POLLS].get(poll_id)
            if poll is None:
                return False
            poll.votes[voter_id] = VoteRecord(selected_options=list(selected_options), voted_at=now)
            poll.total_votes = len(poll.votes)
            poll.last_vote_at = now
            poll.last_updated = now
        self._persist_async()
        return True

    # -------------------------------------------------------------------------
    # Live-геопозиция
    # -------------------------------------------------------------------------
    def add_live_location_tracker(self, tracker: LocationTracker) -> LocationTracker:
        tracker.status = TrackerStatus.active.value
        if not tracker.start_time:
            tracker.start_time = utc_now_iso()
        return self._add(LIVE_LOCATIONS, tracker)

    def update_live_location_tracker(self, tracker_id: str, **updates: Any) -> LocationTracker | None:
        return self._update(LIVE_LOCATIONS, tracker_id, updates)

    def record_location_update(
        self, tracker_id: str, location: dict[str, Any]
    ) -> LocationTracker | None:
        now = utc_now_iso()
        with self._lock:
            tracker = self._registries[LIVE_LOCATIONS].get(tracker_id)
            if tracker is None:
                return None
            tracker.update_count += 1
            tracker.last_update = now
            tracker.last_location = dict(location)
            tracker.last_updated = now
            out = copy.deepcopy(tracker)
        self._persist_async()
        return out

    def remove_live_location_tracker(self, tracker_id: str) -> bool:
        self.cancel_timer(tracker_id)
        return self._remove(LIVE_LOCATIONS, tracker_id)

    def get_live_location_tracker(self, tracker_id: str) -> LocationTracker | None:
        return self._get(LIVE_LOCATIONS, tracker_id)

    def get_all_live_location_trackers(self) -> list[LocationTracker]:
        return self._get_all(LIVE_LOCATIONS)

    def attach_timer(self, tracker_id: str, timer: threading.Timer) -> None:
        """
        Привязать таймер к трекеру. Предыдущий таймер отменяется.
        """
        with self._lock:
            old = self._timers.pop(tracker_id, None)
            self._timers[tracker_id] = timer
        if old is not None:
            old.cancel()

    def cancel_timer(self, tracker_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(tracker_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def _cancel_all_timers(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def save_location_data(self, location: dict[str, Any]) -> bool:
        """
        Дописать геопозицию в дневной JSONL (locations_YYYY-MM-DD.jsonl).
        """
        if not self.s.save_location_data:
            return False
        day = datetime.now(UTC).strftime("%Y-%m-%d")
        path = self.location_dir / f"locations_{day}.jsonl"
        try:
            append_jsonl(path, {**location, "saved_at": utc_now_iso()})
        except OSError as e:
            log.error(
                "location_save_failed",
                extra={"payload": {"path": str(path), "error": str(e)[:200]}},
            )
            return False
        return True

    # -------------------------------------------------------------------------
    # Вкладки
    # -------------------------------------------------------------------------
    def add_browser_tab(self, tab: TabRecord) -> TabRecord:
        tab.status = TabStatus.open.value
        return self._add(BROWSER_TABS, tab)

    def update_browser_tab(self, tab_id: str, **updates: Any) -> TabRecord | None:
        return self._update(BROWSER_TABS, tab_id, updates)

    def remove_browser_tab(self, tab_id: str) -> bool:
        return self._remove(BROWSER_TABS, tab_id)

    def get_browser_tab(self, tab_id: str) -> TabRecord | None:
        return self._get(BROWSER_TABS, tab_id)

    def get_all_browser_tabs(self) -> list[TabRecord]:
        return self._get_all(BROWSER_TABS)

    def clear_browser_tabs(self) -> None:
        with self._lock:
            self._registries[BROWSER_TABS].clear()
        self._persist_async()

    # -------------------------------------------------------------------------
    # Снапшоты
    # -------------------------------------------------------------------------
    def _snapshot_locked(self) -> dict[str, Any]:
        return encode_snapshot(self._registries, timestamp=utc_now_iso())

    def export_state(self) -> dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()

    def _persist_async(self) -> None:
        with self._lock:
            snapshot = self._snapshot_locked()
        t = threading.Thread(target=self._write_snapshot, args=(snapshot,), daemon=True)
        with self._pending_lock:
            self._pending.add(t)
        t.start()

    def _write_snapshot(self, snapshot: dict[str, Any]) -> None:
        try:
            atomic_write_json(self.path, snapshot)
            STATE_SNAPSHOT_WRITES_TOTAL.labels(result="ok").inc()
        except OSError as e:
            STATE_SNAPSHOT_WRITES_TOTAL.labels(result="failed").inc()
            log.error(
                "state_persist_failed",
                extra={"payload": {"path": str(self.path), "error": str(e)[:200]}},
            )
        finally:
            with self._pending_lock:
                self._pending.discard(threading.current_thread())

    def persist_now(self) -> bool:
        """Синхронная запись текущего снапшота."""
        with self._lock:
            snapshot = self._snapshot_locked()
        try:
            atomic_write_json(self.path, snapshot)
        except OSError as e:
            STATE_SNAPSHOT_WRITES_TOTAL.labels(result="failed").inc()
            log.error(
                "state_persist_failed",
                extra={"payload": {"path": str(self.path), "error": str(e)[:200]}},
            )
            return False
        STATE_SNAPSHOT_WRITES_TOTAL.labels(result="ok").inc()
        return True

    def flush(self, timeout: float | None = None) -> bool:
        """
        Дождаться всех фоновых записей снапшота. True, если успели.
        """
        with self._pending_lock:
            pending = list(self._pending)
        for t in pending:
            t.join(timeout)
        with self._pending_lock:
            return not any(t in self._pending for t in pending)

    # -------------------------------------------------------------------------
    # Статистика / обслуживание
    # -------------------------------------------------------------------------
    def _counts(self) -> dict[str, int]:
        with self._lock:
            return {name: len(reg) for name, reg in self._registries.items()}

    def last_persisted(self) -> str | None:
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, UTC).isoformat()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            calls = list(self._registries[CALLS].values())
            polls = list(self._registries[POLLS].values())
            trackers = list(self._registries[LIVE_LOCATIONS].values())
            tabs = list(self._registries[BROWSER_TABS].values())
            timers = len(self._timers)
        return {
            "is_initialized": self._initialized,
            "calls": {
                "total": len(calls),
                "active": sum(1 for c in calls if c.status in ACTIVE_CALL_STATUSES),
            },
            "polls": {
                "total": len(polls),
                "total_votes": sum(p.total_votes for p in polls),
            },
            "live_locations": {
                "total": len(trackers),
                "active": sum(1 for t in trackers if t.status == TrackerStatus.active.value),
            },
            "browser_tabs": {
                "total": len(tabs),
                "open": sum(1 for t in tabs if t.status == TabStatus.open.value),
            },
            "active_timers": timers,
            "last_persisted": self.last_persisted(),
        }

    def clear_all_state(self) -> None:
        self._cancel_all_timers()
        with self._lock:
            for reg in self._registries.values():
                reg.clear()
        self.flush()
        self.persist_now()
        log.info("state_cleared")

    def close(self, timeout: float | None = 5.0) -> None:
        self._cancel_all_timers()
        self.flush(timeout)
        self.persist_now()
        log.info("state_store_closed", extra={"payload": self._counts()})
