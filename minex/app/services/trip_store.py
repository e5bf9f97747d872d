"""
In-memory trip store.

Single view of every known trip, whether it came from the server, from the
offline queue, or from a live action. Screens read it and subscribe to it.

Every mutation builds the new trip list and its derived "active" list first
and swaps both in one step, so a reader never sees them out of step.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from minex.app.models.trip_enums import TripStatus, can_transition
from minex.app.schemas.trip import Trip

logger = logging.getLogger("minex.store")


@dataclass(frozen=True)
class TripSnapshot:
    trips: Tuple[Trip, ...]
    active_trips: Tuple[Trip, ...]


TripListener = Callable[[TripSnapshot], None]


def normalize_token(token: Optional[str]) -> str:
    """QR scans can carry stray whitespace around the token."""
    return (token or "").strip()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def prefer_trip(existing: Trip, incoming: Trip) -> Trip:
    """
    Pick which of two entries with the same token to keep.

    The more advanced lifecycle state wins; on a tie the more recent
    updatedAt wins; otherwise the entry already held is kept.
    """
    if incoming.status.rank != existing.status.rank:
        return incoming if incoming.status.rank > existing.status.rank else existing

    existing_at = _as_utc(existing.updated_at)
    incoming_at = _as_utc(incoming.updated_at)
    if incoming_at is not None and (existing_at is None or incoming_at > existing_at):
        return incoming
    return existing


def dedupe_trips(trips: Iterable[Trip]) -> List[Trip]:
    """One entry per token; the winner takes the first occurrence's slot."""
    by_token: Dict[str, Trip] = {}
    for trip in trips:
        token = normalize_token(trip.trip_token)
        current = by_token.get(token)
        by_token[token] = trip if current is None else prefer_trip(current, trip)
    return list(by_token.values())


class TripStore:

    def __init__(self):
        self._trips: Tuple[Trip, ...] = ()
        self._active: Tuple[Trip, ...] = ()
        self._user: Optional[Dict[str, Any]] = None
        self._listeners: List[TripListener] = []

    # Reads

    @property
    def trips(self) -> Tuple[Trip, ...]:
        return self._trips

    @property
    def active_trips(self) -> Tuple[Trip, ...]:
        return self._active

    def snapshot(self) -> TripSnapshot:
        return TripSnapshot(self._trips, self._active)

    def get_trip_by_token(self, token: str) -> Optional[Trip]:
        index = self._index_of(token)
        return None if index is None else self._trips[index]

    # Session

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    def set_user(self, user: Optional[Dict[str, Any]]) -> None:
        self._user = user
        self._notify()

    def logout(self) -> None:
        """Full reset of session and trip state."""
        self._user = None
        self._commit([])

    # Mutations

    def set_trips(self, trips: Iterable[Trip]) -> None:
        self._commit(dedupe_trips(trips))

    def merge_trips(self, trips: Iterable[Trip]) -> None:
        self._commit(dedupe_trips(list(self._trips) + list(trips)))

    def add_trip(self, trip: Trip) -> Trip:
        """Add one trip; an existing entry with the same token is merged, not duplicated."""
        trips = list(self._trips)
        index = self._index_of(trip.trip_token)
        if index is None:
            trips.append(trip)
            kept = trip
        else:
            kept = prefer_trip(trips[index], trip)
            trips[index] = kept
        self._commit(trips)
        return kept

    def update_trip(self, token: str, updates: Optional[Dict[str, Any]] = None, **fields) -> Optional[Trip]:
        """
        Merge fields into the trip matching 'token'. No-op if there is none.

        Status changes that would move the trip backward are dropped.
        """
        index = self._index_of(token)
        if index is None:
            return None

        changes = dict(updates or {}, **fields)
        current = self._trips[index]

        new_token = changes.pop("trip_token", None)
        if new_token is not None and normalize_token(new_token) != current.trip_token:
            logger.warning(
                "Ignoring token change in update, use replace_trip",
                extra={"trip_token": current.trip_token, "new_token": new_token},
            )

        if "status" in changes and changes["status"] is not None:
            new_status = TripStatus.from_wire(changes["status"])
            if not can_transition(current.status, new_status):
                logger.warning(
                    "Ignoring backward status change",
                    extra={
                        "trip_token": current.trip_token,
                        "from": current.status.value,
                        "to": new_status.value,
                    },
                )
                changes.pop("status")

        updated = Trip.model_validate({**current.model_dump(), **changes})
        trips = list(self._trips)
        trips[index] = updated
        self._commit(trips)
        return updated

    def remove_trip(self, token: str) -> Optional[Trip]:
        index = self._index_of(token)
        if index is None:
            return None
        trips = list(self._trips)
        removed = trips.pop(index)
        self._commit(trips)
        return removed

    def replace_trip(self, old_token: str, trip: Trip) -> Trip:
        """
        Swap the entry under 'old_token' for 'trip', keeping its position.

        Used when the server confirms a trip that was created under a
        provisional token.
        """
        index = self._index_of(old_token)
        if index is None:
            return self.add_trip(trip)

        trips = list(self._trips)
        kept = trip
        other = self._index_of(trip.trip_token)
        if other is not None and other != index:
            kept = prefer_trip(trips[other], trip)
            trips.pop(other)
            if other < index:
                index -= 1
        trips[index] = kept
        self._commit(trips)
        return kept

    # Observers

    def subscribe(self, listener: TripListener) -> Callable[[], None]:
        """Register 'listener'; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Internals

    def _index_of(self, token: Optional[str]) -> Optional[int]:
        wanted = normalize_token(token)
        if not wanted:
            return None
        for i, trip in enumerate(self._trips):
            if normalize_token(trip.trip_token) == wanted:
                return i
        return None

    def _commit(self, trips: List[Trip]) -> None:
        trips = tuple(trips)
        active = tuple(t for t in trips if t.status == TripStatus.OPEN)
        self._trips, self._active = trips, active
        self._notify()

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Trip store listener failed")
