"""
Trip-related enumerations.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration."""
    OPEN = "OPEN"  # Opened at the mine, truck on the road
    CLOSED_FIELD = "CLOSED_FIELD"  # Closed in the field without a plant weighing
    COMPLETED_PLANT = "COMPLETED_PLANT"  # Weighed and completed at the plant
    ADJUSTED = "ADJUSTED"  # Corrected by the back office after a field close

    @classmethod
    def from_wire(cls, value) -> "TripStatus":
        """
        Translate any status vocabulary the API has used into the canonical one.

        Older protocol revisions send 'Pending' / 'Completed'.
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        return LEGACY_STATUS_MAP.get(normalized) or cls(normalized)

    @property
    def rank(self) -> int:
        """Lifecycle progress, used to pick a winner when merging duplicates."""
        return STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TripStatus.COMPLETED_PLANT, TripStatus.ADJUSTED)


LEGACY_STATUS_MAP = {
    "PENDING": TripStatus.OPEN,
    "COMPLETED": TripStatus.COMPLETED_PLANT,
}

STATUS_RANK = {
    TripStatus.OPEN: 0,
    TripStatus.CLOSED_FIELD: 1,
    TripStatus.COMPLETED_PLANT: 2,
    TripStatus.ADJUSTED: 3,
}

# Allowed forward moves; staying in place is always allowed
TRIP_TRANSITIONS = {
    TripStatus.OPEN: {TripStatus.CLOSED_FIELD, TripStatus.COMPLETED_PLANT},
    TripStatus.CLOSED_FIELD: {TripStatus.ADJUSTED},
    TripStatus.COMPLETED_PLANT: set(),
    TripStatus.ADJUSTED: set(),
}


def can_transition(current: TripStatus, new: TripStatus) -> bool:
    return new == current or new in TRIP_TRANSITIONS[current]


class OperationAction(str, enum.Enum):
    """Kind of user intent held in the offline queue."""
    START = "START"
    COMPLETE = "COMPLETE"
    CLOSE_FIELD = "CLOSE_FIELD"
