"""
Trip endpoints of the remote backend.

Responses are translated into canonical Trip objects here, whatever protocol
revision produced them, so nothing downstream sees wire-shape differences.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from minex.app.api.client import ApiClient
from minex.app.core.config import settings
from minex.app.core.exceptions import ApiError
from minex.app.schemas.trip import (
    CloseTripRequest,
    CompleteTripRequest,
    StartTripRequest,
    Trip,
    unwrap_trip_payload,
)

logger = logging.getLogger("minex.api")


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today_range(now: Optional[datetime] = None, utc_offset_hours: int = None) -> Tuple[str, str]:
    """
    Start and end of the current site-local day, as UTC ISO timestamps.

    With the default UTC+7 offset, 00:00 local is 17:00 UTC of the day before.
    """
    offset = timedelta(
        hours=settings.site_utc_offset_hours if utc_offset_hours is None else utc_offset_hours
    )
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(timezone.utc) + offset
    start = datetime(local.year, local.month, local.day, tzinfo=timezone.utc) - offset
    end = start + timedelta(days=1)
    return _iso_utc(start), _iso_utc(end)


def parse_trip(response: httpx.Response) -> Trip:
    try:
        data = response.json()
    except ValueError:
        raise ApiError("Malformed trip payload", error_code="ERR_BAD_PAYLOAD")

    try:
        return Trip.model_validate(unwrap_trip_payload(data))
    except ValidationError as e:
        raise ApiError(
            "Malformed trip payload",
            error_code="ERR_BAD_PAYLOAD",
            details={"errors": e.errors(include_url=False)},
        )


class TripAPI:

    def __init__(self, client: ApiClient):
        self.client = client

    async def start_trip(self, request: StartTripRequest) -> Trip:
        response = await self.client.request("POST", "/trip/start", json=request.to_wire())
        return parse_trip(response)

    async def complete_trip(self, request: CompleteTripRequest) -> Trip:
        response = await self.client.request("POST", "/trip/complete", json=request.to_wire())
        return parse_trip(response)

    async def close_trip_in_field(self, trip_token: str) -> Trip:
        request = CloseTripRequest(trip_token=trip_token.strip())
        response = await self.client.request("POST", "/trip/close-field", json=request.to_wire())
        return parse_trip(response)

    async def get_trips(
        self,
        from_: Optional[str] = None,
        to: Optional[str] = None,
        date: Optional[str] = None,
    ) -> List[Trip]:
        """
        Trips in a time window. Defaults to today at the site.

        'date' (YYYY-MM-DD) selects a whole day instead of a from/to window.
        """
        if date is not None:
            params = {"date": date}
        else:
            if from_ is None or to is None:
                from_, to = today_range()
            params = {"from": from_, "to": to}

        response = await self.client.request("GET", "/trip", params=params)
        try:
            data = response.json()
        except ValueError:
            raise ApiError("Malformed trip list", error_code="ERR_BAD_PAYLOAD")
        if isinstance(data, dict):
            data = data.get("trips", [])

        trips = []
        for item in data or []:
            try:
                trips.append(Trip.model_validate(unwrap_trip_payload(item)))
            except ValidationError as e:
                logger.warning("Skipping malformed trip in list", extra={"error": str(e)})
        return trips

    async def get_trip_by_token(self, trip_token: str) -> Trip:
        """Single trip; 404 is retried since a just-created trip may lag behind."""
        token = quote(trip_token.strip(), safe="")
        response = await self.client.request("GET", f"/trip/{token}", retry_on_not_found=True)
        return parse_trip(response)
