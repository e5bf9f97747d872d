"""
QR scan payload schema and input validation.

Malformed input is rejected here, before any network or queue interaction.
"""

import json
import math
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from minex.app.core.exceptions import InvalidInputError


class ScanPayload(BaseModel):
    """Decoded QR content."""
    trip_token: Optional[str] = None
    vehicle_id: Optional[int] = None
    destination: Optional[str] = None
    material: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator("trip_token", "destination", "material", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


def parse_scan_payload(raw: str) -> ScanPayload:
    """
    Parse a scanned QR string.

    A JSON object is read field by field; anything else that is not JSON is
    treated as a bare trip token.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidInputError("QR data unreadable")

    text = raw.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return ScanPayload(trip_token=text)

    if isinstance(data, (str, int)) and not isinstance(data, bool):
        return ScanPayload(trip_token=str(data))
    if not isinstance(data, dict):
        raise InvalidInputError("QR data unreadable")

    try:
        return ScanPayload.model_validate(data)
    except ValidationError as e:
        raise InvalidInputError("QR data unreadable", details={"errors": e.errors(include_url=False)})


def validate_weight(value: Any) -> int:
    """Return the weight in whole kilograms, or raise InvalidInputError."""
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError("Please enter a valid weight in kilograms")

    if math.isnan(weight) or math.isinf(weight) or weight <= 0:
        raise InvalidInputError("Please enter a valid weight in kilograms")

    # Half-up rounding, as the scale display does
    rounded = int(math.floor(weight + 0.5))
    if rounded <= 0:
        raise InvalidInputError("Please enter a valid weight in kilograms")
    return rounded
