"""
Записи состояния сессии (calls / polls / live locations / tabs).

Правила:
- владелец всех записей: StateStore, изменения только через его методы
- PollState.votes: единственный вложенный mapping (voter_id -> VoteRecord)
- таймеры/хэндлы в записи не попадают никогда
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CallState:
    id: str
    peer: str
    direction: str  # incoming|outgoing
    kind: str = "voice"  # voice|video
    status: str = "incoming"  # incoming|outgoing|active|ended|rejected|missed
    created_at: str = ""
    last_updated: str = ""
    started_at: str | None = None
    ended_at: str | None = None


@dataclass
class VoteRecord:
    selected_options: list[str] = field(default_factory=list)
    voted_at: str = ""


@dataclass
class PollState:
    id: str
    creator: str
    title: str = ""
    options: list[str] = field(default_factory=list)
    votes: dict[str, VoteRecord] = field(default_factory=dict)
    total_votes: int = 0
    created_at: str = ""
    last_updated: str = ""
    last_vote_at: str | None = None


@dataclass
class LocationTracker:
    id: str
    origin: str
    start_time: str = ""
    last_update: str | None = None
    update_count: int = 0
    status: str = "active"  # active|stopped
    last_location: dict[str, Any] | None = None
    created_at: str = ""
    last_updated: str = ""


@dataclass
class TabRecord:
    id: str
    url: str
    created_at: str = ""
    status: str = "open"  # open|closed
