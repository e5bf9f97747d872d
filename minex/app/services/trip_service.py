"""
Trip actions.

What the operator and checker screens call: scan handling, start, complete,
close in the field, and list refresh. Every action works online or offline;
an action the server cannot take right now is queued and shown as a
provisional trip until a sync pass confirms it.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from minex.app.api.trip_api import TripAPI
from minex.app.core.constants import LOCAL_TOKEN_PREFIX
from minex.app.core.exceptions import (
    ApiError,
    AuthenticationError,
    InsufficientPermissionsError,
    InvalidInputError,
)
from minex.app.models.enums import UserRole
from minex.app.models.trip_enums import OperationAction, TripStatus
from minex.app.schemas.offline import QueuedOperation, utcnow
from minex.app.schemas.scan import ScanPayload, parse_scan_payload, validate_weight
from minex.app.schemas.trip import CompleteTripRequest, StartTripRequest, Trip
from minex.app.services.connectivity import ConnectivityMonitor
from minex.app.services.offline_queue import OfflineQueue, QueueEntry
from minex.app.services.trip_locking import TripLockRegistry
from minex.app.services.trip_store import TripStore, normalize_token

logger = logging.getLogger("minex.trips")

OFFLINE_MESSAGE = "Trip will be synced when connection is restored"
NETWORK_MESSAGE = "Network error. Trip will be synced when connection is restored"


class OutcomeKind(str, enum.Enum):
    STARTED = "STARTED"
    QUEUED_OFFLINE = "QUEUED_OFFLINE"
    ALREADY_OPEN = "ALREADY_OPEN"
    COMPLETED = "COMPLETED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    CLOSED = "CLOSED"
    ALREADY_CLOSED = "ALREADY_CLOSED"
    READY_FOR_WEIGHT = "READY_FOR_WEIGHT"


@dataclass
class ActionOutcome:
    """Result of a user action, with the message the screen shows."""
    kind: OutcomeKind
    trip: Optional[Trip] = None
    message: str = ""


def _should_queue(error: ApiError) -> bool:
    """Network failures and server-side errors are worth a later retry."""
    return error.is_transient or error.status_code is None or error.status_code >= 500


def new_local_token() -> str:
    return f"{LOCAL_TOKEN_PREFIX}{uuid.uuid4().hex[:12].upper()}"


class TripService:

    def __init__(
        self,
        trip_api: TripAPI,
        store: TripStore,
        queue: OfflineQueue,
        connectivity: ConnectivityMonitor,
        locks: Optional[TripLockRegistry] = None,
    ):
        self.trip_api = trip_api
        self.store = store
        self.queue = queue
        self.connectivity = connectivity
        self.locks = locks or TripLockRegistry()

    # Scanning

    async def handle_scan(self, raw: str, role) -> ActionOutcome:
        """
        Route a scanned QR code by the signed-in role.

        Operators start a trip from the scan; checkers look the trip up and
        get it back ready for weight entry.
        """
        payload = parse_scan_payload(raw)
        user_role = UserRole.parse(role)

        if user_role == UserRole.OPERATOR:
            return await self.start_trip(payload)
        if user_role == UserRole.CHECKER:
            return await self.prepare_completion(payload.trip_token)
        raise InsufficientPermissionsError(
            "Your role does not have permission to scan QR codes",
            details={"role": role},
        )

    # Start

    async def start_trip(self, payload: ScanPayload) -> ActionOutcome:
        try:
            request = StartTripRequest(
                vehicle_id=payload.vehicle_id,
                destination=payload.destination,
                material=payload.material,
                trip_token=payload.trip_token,
            )
        except ValidationError as e:
            raise InvalidInputError(
                "QR code is missing trip details",
                details={"errors": e.errors(include_url=False)},
            )

        if request.trip_token:
            existing = self.store.get_trip_by_token(request.trip_token)
            if existing is not None and existing.status == TripStatus.OPEN:
                return ActionOutcome(
                    OutcomeKind.ALREADY_OPEN,
                    existing,
                    f"Trip {existing.trip_token} is already in progress. "
                    "Complete it before starting a new one.",
                )

        if not self.connectivity.is_connected:
            return await self._queue_start(request, OFFLINE_MESSAGE)

        try:
            trip = await self.trip_api.start_trip(request)
        except AuthenticationError:
            raise
        except ApiError as e:
            if e.is_conflict:
                known = self.store.get_trip_by_token(e.conflict_token) if e.conflict_token else None
                return ActionOutcome(OutcomeKind.ALREADY_OPEN, known, e.message)
            if not _should_queue(e):
                raise
            logger.warning("Start failed, queueing", extra={"error": e.message, "status": e.status_code})
            return await self._queue_start(request, NETWORK_MESSAGE)

        trip = self.store.add_trip(trip)
        logger.info("Trip started", extra={"trip_token": trip.trip_token, "vehicle_id": trip.vehicle_id})
        return ActionOutcome(
            OutcomeKind.STARTED,
            trip,
            f"Trip {trip.trip_token} has been created successfully",
        )

    async def _queue_start(self, request: StartTripRequest, message: str) -> ActionOutcome:
        now = utcnow()
        local_token = request.trip_token or new_local_token()
        await self.queue.append(QueuedOperation.start(request, now, local_token))

        trip = self.store.add_trip(
            Trip(
                trip_token=local_token,
                vehicle_id=request.vehicle_id,
                destination=request.destination,
                material=request.material,
                departure_at=now,
                status=TripStatus.OPEN,
                offline=True,
            )
        )
        return ActionOutcome(OutcomeKind.QUEUED_OFFLINE, trip, message)

    # Complete

    async def prepare_completion(self, trip_token: Optional[str]) -> ActionOutcome:
        """Look up a scanned trip and check that it can still be weighed."""
        token = normalize_token(trip_token)
        if not token:
            raise InvalidInputError("QR code is missing the trip token")

        token = await self.queue.resolve_token(token)
        trip = None
        if self.connectivity.is_connected and not self._is_provisional(token):
            try:
                trip = self.store.add_trip(await self.trip_api.get_trip_by_token(token))
            except AuthenticationError:
                raise
            except ApiError as e:
                logger.info("Trip lookup failed, using local copy", extra={"trip_token": token, "error": e.message})
        if trip is None:
            trip = self.store.get_trip_by_token(token)
        if trip is None:
            raise InvalidInputError("Trip not found", details={"trip_token": token})

        blocked = self._completion_blocked(trip)
        if blocked is not None:
            return blocked
        return ActionOutcome(OutcomeKind.READY_FOR_WEIGHT, trip)

    async def complete_trip(self, trip_token: str, weight) -> ActionOutcome:
        weight_kg = validate_weight(weight)
        token = normalize_token(trip_token)
        if not token:
            raise InvalidInputError("Trip token is required")

        token = await self.queue.resolve_token(token)
        async with self.locks.hold(token):
            # A sync pass may have confirmed the provisional trip meanwhile
            token = await self.queue.resolve_token(token)
            trip = self.store.get_trip_by_token(token)
            if trip is None and not self.connectivity.is_connected:
                raise InvalidInputError("Trip not found", details={"trip_token": token})
            if trip is not None:
                blocked = self._completion_blocked(trip)
                if blocked is not None:
                    return blocked
                self.store.update_trip(token, completion_pending=True)

            if not self.connectivity.is_connected or (trip is not None and trip.offline):
                return await self._queue_completion(token, weight_kg, OFFLINE_MESSAGE)

            try:
                completed = await self.trip_api.complete_trip(
                    CompleteTripRequest(trip_token=token, weight_kg=weight_kg)
                )
            except ApiError as e:
                if isinstance(e, AuthenticationError):
                    self.store.update_trip(token, completion_pending=False)
                    raise
                if e.is_conflict or e.is_not_found:
                    self.store.update_trip(token, completion_pending=False)
                    return ActionOutcome(
                        OutcomeKind.ALREADY_COMPLETED,
                        self.store.get_trip_by_token(token),
                        "This trip has already been completed",
                    )
                if _should_queue(e):
                    logger.warning("Completion failed, queueing", extra={"trip_token": token, "error": e.message})
                    return await self._queue_completion(token, weight_kg, NETWORK_MESSAGE)
                self.store.update_trip(token, completion_pending=False)
                raise

            trip = self._merge_confirmed(token, completed)
            logger.info("Trip completed", extra={"trip_token": token, "weight_kg": weight_kg})
            return ActionOutcome(
                OutcomeKind.COMPLETED,
                trip,
                f"Trip {token} completed successfully with {weight_kg / 1000:.2f} tons",
            )

    async def _queue_completion(self, token: str, weight_kg: int, message: str) -> ActionOutcome:
        now = utcnow()
        await self.queue.append(QueuedOperation.complete(token, weight_kg, now))
        trip = self.store.update_trip(
            token,
            status=TripStatus.COMPLETED_PLANT,
            weight_kg=weight_kg,
            arrival_at=now,
            offline=True,
            completion_pending=True,
        )
        return ActionOutcome(OutcomeKind.QUEUED_OFFLINE, trip, message)

    def _completion_blocked(self, trip: Trip) -> Optional[ActionOutcome]:
        if trip.completion_pending or trip.status.is_terminal:
            return ActionOutcome(
                OutcomeKind.ALREADY_COMPLETED,
                trip,
                "This trip has already been completed or is being completed. Please wait.",
            )
        if trip.status == TripStatus.CLOSED_FIELD:
            return ActionOutcome(OutcomeKind.ALREADY_CLOSED, trip, "This trip was closed in the field")
        return None

    # Close in field

    async def close_trip_in_field(self, trip_token: str) -> ActionOutcome:
        token = normalize_token(trip_token)
        if not token:
            raise InvalidInputError("Trip token is required")

        token = await self.queue.resolve_token(token)
        async with self.locks.hold(token):
            # A sync pass may have confirmed the provisional trip meanwhile
            token = await self.queue.resolve_token(token)
            trip = self.store.get_trip_by_token(token)
            if trip is None and not self.connectivity.is_connected:
                raise InvalidInputError("Trip not found", details={"trip_token": token})
            if trip is not None:
                if trip.status == TripStatus.CLOSED_FIELD:
                    return ActionOutcome(OutcomeKind.ALREADY_CLOSED, trip, "This trip was already closed")
                if trip.status != TripStatus.OPEN or trip.completion_pending:
                    return ActionOutcome(
                        OutcomeKind.ALREADY_COMPLETED, trip, "Only open trips can be closed in the field"
                    )

            if not self.connectivity.is_connected or (trip is not None and trip.offline):
                return await self._queue_close(token, OFFLINE_MESSAGE)

            try:
                closed = await self.trip_api.close_trip_in_field(token)
            except AuthenticationError:
                raise
            except ApiError as e:
                if e.is_conflict:
                    return ActionOutcome(
                        OutcomeKind.ALREADY_CLOSED, self.store.get_trip_by_token(token), e.message
                    )
                if _should_queue(e):
                    logger.warning("Field close failed, queueing", extra={"trip_token": token, "error": e.message})
                    return await self._queue_close(token, NETWORK_MESSAGE)
                raise

            trip = self._merge_confirmed(token, closed)
            logger.info("Trip closed in field", extra={"trip_token": token})
            return ActionOutcome(OutcomeKind.CLOSED, trip, f"Trip {token} closed in the field")

    async def _queue_close(self, token: str, message: str) -> ActionOutcome:
        await self.queue.append(QueuedOperation.close_field(token))
        trip = self.store.update_trip(token, status=TripStatus.CLOSED_FIELD, offline=True)
        return ActionOutcome(OutcomeKind.QUEUED_OFFLINE, trip, message)

    # Listing

    async def refresh_trips(self, date: Optional[str] = None) -> List[Trip]:
        """
        Reload today's trips (or those of 'date') from the server.

        Offline and completion-pending entries survive the reload; queued
        intent is applied on top of the fresh server data. Offline, the store
        is left as it is.
        """
        if not self.connectivity.is_connected:
            return list(self.store.trips)

        try:
            fetched = await self.trip_api.get_trips(date=date)
        except AuthenticationError:
            raise
        except ApiError as e:
            logger.warning("Trip refresh failed", extra={"error": e.message, "status": e.status_code})
            return list(self.store.trips)

        local_only = [t for t in self.store.trips if t.offline or t.completion_pending]
        self.store.set_trips(list(fetched) + local_only)
        self._apply_queued(await self.queue.read_all(), await self.queue.read_aliases())
        return list(self.store.trips)

    async def restore_offline_trips(self) -> int:
        """Rebuild provisional trips from the durable queue (app start)."""
        entries = await self.queue.read_all()
        restored = self._apply_queued(entries, await self.queue.read_aliases())
        if restored:
            logger.info("Restored offline trips", extra={"count": restored})
        return restored

    def _apply_queued(self, entries: Iterable[QueueEntry], aliases: Optional[Dict[str, str]] = None) -> int:
        applied = 0
        for entry in entries:
            if not isinstance(entry, QueuedOperation) or entry.kind is None:
                continue
            if entry.kind == OperationAction.START:
                trip = self._provisional_from_start(entry)
                if trip is not None:
                    self.store.add_trip(trip)
                    applied += 1
                continue

            token = entry.trip_token
            if not token:
                continue
            token = (aliases or {}).get(token, token)
            if entry.kind == OperationAction.COMPLETE:
                updated = self.store.update_trip(
                    token,
                    status=TripStatus.COMPLETED_PLANT,
                    weight_kg=entry.payload.get("weightKg"),
                    arrival_at=entry.payload.get("arrivalAt") or entry.created_at,
                    offline=True,
                    completion_pending=True,
                )
            else:
                updated = self.store.update_trip(token, status=TripStatus.CLOSED_FIELD, offline=True)
            if updated is not None:
                applied += 1
        return applied

    def _provisional_from_start(self, op: QueuedOperation) -> Optional[Trip]:
        payload = op.payload
        try:
            return Trip(
                trip_token=op.local_token,
                vehicle_id=payload.get("vehicleId"),
                destination=payload.get("destination"),
                material=payload.get("material"),
                departure_at=payload.get("departureAt") or op.created_at,
                status=TripStatus.OPEN,
                offline=True,
            )
        except ValidationError:
            logger.warning("Skipping unreadable queued start", extra={"op_id": op.op_id})
            return None

    # Internals

    def _is_provisional(self, token: str) -> bool:
        trip = self.store.get_trip_by_token(token)
        return token.startswith(LOCAL_TOKEN_PREFIX) or (trip is not None and trip.offline)

    def _merge_confirmed(self, token: str, trip: Trip) -> Trip:
        confirmed = trip.model_copy(update={"offline": False, "completion_pending": False})
        if self.store.get_trip_by_token(token) is not None:
            return self.store.update_trip(token, confirmed.model_dump())
        return self.store.add_trip(confirmed)
