"""
Trip schemas.

Canonical trip representation plus the request bodies of the trip endpoints.
Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from minex.app.models.trip_enums import TripStatus


class Trip(BaseModel):
    """One truck movement from the mine to the plant."""
    trip_token: str
    id: Optional[int] = None
    vehicle_id: int
    destination: str
    material: str
    departure_at: datetime
    arrival_at: Optional[datetime] = None
    weight_kg: Optional[float] = None
    status: TripStatus = TripStatus.OPEN
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Local-only flags, never sent to the server
    offline: bool = False
    completion_pending: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> TripStatus:
        return TripStatus.from_wire(value)

    @field_validator("trip_token", mode="before")
    @classmethod
    def strip_token(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @property
    def is_active(self) -> bool:
        return self.status == TripStatus.OPEN

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StartTripRequest(BaseModel):
    """Body of POST /trip/start."""
    vehicle_id: int
    destination: str = Field(..., min_length=1)
    material: str = Field(..., min_length=1)
    trip_token: Optional[str] = None  # echoed from the QR payload when present

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CompleteTripRequest(BaseModel):
    """Body of POST /trip/complete."""
    trip_token: str = Field(..., min_length=1)
    weight_kg: int = Field(..., gt=0)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CloseTripRequest(BaseModel):
    """Body of POST /trip/close-field."""
    trip_token: str = Field(..., min_length=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def unwrap_trip_payload(data: Any) -> Any:
    """
    Strip the response envelope.

    The current API answers {status, trip}; older revisions answer a raw Trip.
    """
    if isinstance(data, dict) and isinstance(data.get("trip"), dict):
        return data["trip"]
    return data
