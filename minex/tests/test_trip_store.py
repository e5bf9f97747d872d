"""
Trip Store Tests.

Validates deduplication, forward-only status changes and the consistency of
the derived active list.
"""

from datetime import datetime, timedelta, timezone

import pytest

from minex.app.models.trip_enums import TripStatus
from minex.app.schemas.trip import Trip
from minex.app.services.trip_store import TripStore, dedupe_trips


def make_trip(token, status=TripStatus.OPEN, **fields):
    data = {
        "trip_token": token,
        "vehicle_id": 1,
        "destination": "Plant A",
        "material": "Ore",
        "departure_at": datetime(2024, 5, 1, 1, 0, tzinfo=timezone.utc),
        "status": status,
    }
    data.update(fields)
    return Trip(**data)


def test_add_trip_never_duplicates_a_token():
    """Test that adding a known token merges instead of appending."""
    store = TripStore()
    store.add_trip(make_trip("TRP-1"))
    store.add_trip(make_trip(" TRP-1 ", status=TripStatus.COMPLETED_PLANT, weight_kg=12000))

    assert len(store.trips) == 1
    assert store.get_trip_by_token("TRP-1").status == TripStatus.COMPLETED_PLANT


def test_dedupe_prefers_more_advanced_status():
    trips = dedupe_trips([
        make_trip("TRP-1", status=TripStatus.COMPLETED_PLANT, completion_pending=True, offline=True),
        make_trip("TRP-2"),
        make_trip("TRP-1", status=TripStatus.OPEN),
    ])

    assert [t.trip_token for t in trips] == ["TRP-1", "TRP-2"]
    assert trips[0].status == TripStatus.COMPLETED_PLANT
    assert trips[0].completion_pending is True


def test_dedupe_ties_break_on_updated_at():
    earlier = datetime(2024, 5, 1, 2, 0, tzinfo=timezone.utc)
    later = earlier + timedelta(minutes=5)

    trips = dedupe_trips([
        make_trip("TRP-1", destination="Plant A", updated_at=earlier),
        make_trip("TRP-1", destination="Plant B", updated_at=later),
    ])
    assert trips[0].destination == "Plant B"

    # Without timestamps the entry seen first stays
    trips = dedupe_trips([make_trip("TRP-1", destination="Plant A"), make_trip("TRP-1", destination="Plant B")])
    assert trips[0].destination == "Plant A"


def test_active_trips_follow_every_mutation():
    """Test that the active list always matches the trip list."""
    store = TripStore()
    store.set_trips([make_trip("TRP-1"), make_trip("TRP-2"), make_trip("TRP-3", status=TripStatus.CLOSED_FIELD)])
    assert [t.trip_token for t in store.active_trips] == ["TRP-1", "TRP-2"]

    store.update_trip("TRP-1", status=TripStatus.COMPLETED_PLANT, weight_kg=13200)
    assert [t.trip_token for t in store.active_trips] == ["TRP-2"]

    store.remove_trip("TRP-2")
    assert store.active_trips == ()
    assert [t.trip_token for t in store.trips] == ["TRP-1", "TRP-3"]


def test_update_ignores_backward_status():
    """Test that a completed trip cannot be reopened by an update."""
    store = TripStore()
    store.add_trip(make_trip("TRP-1", status=TripStatus.COMPLETED_PLANT))

    updated = store.update_trip("TRP-1", status="OPEN", completion_pending=False)

    assert updated.status == TripStatus.COMPLETED_PLANT
    assert store.active_trips == ()


def test_update_unknown_token_is_a_noop():
    store = TripStore()
    assert store.update_trip("TRP-X", completion_pending=True) is None
    assert store.trips == ()


def test_padded_token_finds_and_updates_trip():
    """Test that lookups and updates ignore whitespace around the token."""
    store = TripStore()
    store.add_trip(make_trip("ABC-123"))

    assert store.get_trip_by_token("  ABC-123  ").trip_token == "ABC-123"

    updated = store.update_trip(" ABC-123\n", completion_pending=True)

    assert updated is not None
    assert store.get_trip_by_token("ABC-123").completion_pending is True
    assert len(store.trips) == 1


def test_update_does_not_change_token():
    store = TripStore()
    store.add_trip(make_trip("TRP-1"))
    store.update_trip("TRP-1", trip_token="TRP-2", destination="Plant B")

    assert store.get_trip_by_token("TRP-2") is None
    assert store.get_trip_by_token("TRP-1").destination == "Plant B"


def test_replace_trip_keeps_position():
    """Test that confirming a provisional trip swaps it in place."""
    store = TripStore()
    store.set_trips([make_trip("TRP-1"), make_trip("LOCAL-A", offline=True), make_trip("TRP-3")])

    store.replace_trip("LOCAL-A", make_trip("TRP-2"))

    assert [t.trip_token for t in store.trips] == ["TRP-1", "TRP-2", "TRP-3"]
    assert store.get_trip_by_token("TRP-2").offline is False


def test_replace_trip_merges_when_server_token_already_known():
    store = TripStore()
    store.set_trips([make_trip("TRP-2"), make_trip("LOCAL-A", offline=True)])

    store.replace_trip("LOCAL-A", make_trip("TRP-2", status=TripStatus.COMPLETED_PLANT))

    assert [t.trip_token for t in store.trips] == ["TRP-2"]
    assert store.trips[0].status == TripStatus.COMPLETED_PLANT


def test_subscribers_see_consistent_snapshots():
    store = TripStore()
    seen = []
    unsubscribe = store.subscribe(seen.append)

    store.add_trip(make_trip("TRP-1"))
    store.update_trip("TRP-1", status=TripStatus.CLOSED_FIELD)
    unsubscribe()
    store.add_trip(make_trip("TRP-2"))

    assert len(seen) == 2
    for snapshot in seen:
        assert snapshot.active_trips == tuple(t for t in snapshot.trips if t.status == TripStatus.OPEN)


def test_failing_listener_does_not_break_mutation():
    store = TripStore()

    def broken(_):
        raise RuntimeError("render failed")

    store.subscribe(broken)
    store.add_trip(make_trip("TRP-1"))
    assert store.get_trip_by_token("TRP-1") is not None


def test_logout_resets_everything():
    store = TripStore()
    store.set_user({"id": 1, "role": "checker"})
    store.add_trip(make_trip("TRP-1"))

    store.logout()

    assert store.user is None
    assert not store.is_authenticated
    assert store.trips == ()
    assert store.active_trips == ()


@pytest.mark.parametrize("status", ["Pending", "pending", "OPEN"])
def test_wire_status_aliases(status):
    assert make_trip("TRP-1", status=status).status == TripStatus.OPEN
