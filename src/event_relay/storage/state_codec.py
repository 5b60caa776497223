"""
Кодек снапшота состояния.

Формат файла:
{
  "calls": {id: CallState},
  "polls": {id: PollState, votes = [[voter_id, VoteRecord], ...]},
  "live_locations": {id: LocationTracker},
  "browser_tabs": {id: TabRecord},
  "timestamp": ISO
}
"""

from __future__ import annotations

from dataclasses import asdict, fields
from typing import Any

from event_relay.domain.state import CallState, LocationTracker, PollState, TabRecord, VoteRecord

RECORD_TYPES: dict[str, type] = {
    "calls": CallState,
    "polls": PollState,
    "live_locations": LocationTracker,
    "browser_tabs": TabRecord,
}


def encode_votes(votes: dict[str, VoteRecord]) -> list[list[Any]]:
    return [[voter_id, asdict(vote)] for voter_id, vote in votes.items()]


def decode_votes(raw: Any) -> dict[str, VoteRecord]:
    """
    Список пар -> mapping. Старый формат (объект) тоже принимается.
    """
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        pairs = [p for p in raw if isinstance(p, (list, tuple)) and len(p) == 2]
    else:
        return {}

    votes: dict[str, VoteRecord] = {}
    for voter_id, vote in pairs:
        if isinstance(vote, dict):
            votes[str(voter_id)] = VoteRecord(
                selected_options=list(vote.get("selected_options") or []),
                voted_at=str(vote.get("voted_at") or ""),
            )
        else:
            votes[str(voter_id)] = VoteRecord()
    return votes


def record_to_dict(record: Any) -> dict[str, Any]:
    out = asdict(record)
    if isinstance(record, PollState):
        out["votes"] = encode_votes(record.votes)
    return out


def record_from_dict(cls: type, raw: dict[str, Any], *, record_id: str | None = None) -> Any:
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in known}
    if "id" not in kwargs and record_id is not None:
        kwargs["id"] = record_id
    if cls is PollState:
        kwargs["votes"] = decode_votes(raw.get("votes"))
        kwargs["total_votes"] = len(kwargs["votes"])
    return cls(**kwargs)


def encode_snapshot(registries: dict[str, dict[str, Any]], *, timestamp: str) -> dict[str, Any]:
    out: dict[str, Any] = {
        name: {rid: record_to_dict(rec) for rid, rec in registries.get(name, {}).items()}
        for name in RECORD_TYPES
    }
    out["timestamp"] = timestamp
    return out


def decode_snapshot(raw: dict[str, Any]) -> tuple[dict[str, dict[str, Any]], int]:
    """
    Снапшот -> реестры. Возвращает (реестры, количество пропущенных записей).
    """
    registries: dict[str, dict[str, Any]] = {name: {} for name in RECORD_TYPES}
    skipped = 0
    for name, cls in RECORD_TYPES.items():
        section = raw.get(name)
        if not isinstance(section, dict):
            continue
        for rid, item in section.items():
            if not isinstance(item, dict):
                skipped += 1
                continue
            try:
                registries[name][str(rid)] = record_from_dict(cls, item, record_id=str(rid))
            except (TypeError, ValueError):
                skipped += 1
    return registries, skipped
