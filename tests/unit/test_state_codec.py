from __future__ import annotations

from event_relay.domain.state import CallState, PollState, VoteRecord
from event_relay.storage.state_codec import (
    decode_snapshot,
    decode_votes,
    encode_snapshot,
    record_from_dict,
    record_to_dict,
)


def test_poll_votes_are_encoded_as_pairs() -> None:
    poll = PollState(
        id="p1",
        creator="1@c.us",
        options=["yes", "no"],
        votes={"2@c.us": VoteRecord(selected_options=["yes"], voted_at="t1")},
        total_votes=1,
    )

    raw = record_to_dict(poll)

    assert raw["votes"] == [["2@c.us", {"selected_options": ["yes"], "voted_at": "t1"}]]


def test_legacy_vote_mapping_is_accepted() -> None:
    votes = decode_votes({"2@c.us": {"selected_options": ["no"], "voted_at": "t2"}})
    assert votes == {"2@c.us": VoteRecord(selected_options=["no"], voted_at="t2")}
    assert decode_votes("garbage") == {}
    assert decode_votes([["only-one"], ["3@c.us", {"selected_options": []}]]) == {
        "3@c.us": VoteRecord()
    }


def test_total_votes_is_recomputed_from_votes() -> None:
    poll = record_from_dict(
        PollState,
        {"creator": "1@c.us", "votes": [["a", {"selected_options": ["x"]}]], "total_votes": 42},
        record_id="p1",
    )
    assert poll.id == "p1"
    assert poll.total_votes == 1


def test_unknown_fields_are_ignored_on_decode() -> None:
    call = record_from_dict(
        CallState,
        {"id": "c1", "peer": "1@c.us", "direction": "incoming", "timer": {"handle": 7}},
    )
    assert call == CallState(id="c1", peer="1@c.us", direction="incoming")


def test_snapshot_has_all_sections_and_skips_broken_records() -> None:
    call = CallState(id="c1", peer="1@c.us", direction="outgoing", status="outgoing")
    raw = encode_snapshot({"calls": {"c1": call}}, timestamp="2024-01-01T00:00:00+00:00")

    assert set(raw) == {"calls", "polls", "live_locations", "browser_tabs", "timestamp"}
    assert raw["polls"] == {}

    raw["browser_tabs"] = {"t1": "not-an-object", "t2": {"url": "https://x"}, "t3": {"id": "t3"}}
    registries, skipped = decode_snapshot(raw)

    assert registries["calls"]["c1"] == call
    assert list(registries["browser_tabs"]) == ["t2"]
    assert registries["browser_tabs"]["t2"].id == "t2"
    assert skipped == 2
