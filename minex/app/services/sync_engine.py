"""
Offline sync engine.

Drains the durable queue against the backend on app start, on every
reconnect, and on pull-to-refresh, and writes each outcome back to the trip
store and the queue.

Sync pass:
1. Read every queued operation.
2. Replay STARTs, then COMPLETE / CLOSE_FIELD operations, in queue order.
3. Success and business conflicts (409, 404 on complete) resolve an operation;
   anything else keeps it for the next pass.
4. Write the kept operations back in one overwrite.

A pass never raises, and overlapping triggers collapse into the running pass.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from minex.app.api.trip_api import TripAPI
from minex.app.core.constants import LOCAL_TOKEN_PREFIX
from minex.app.core.exceptions import ApiError
from minex.app.models.trip_enums import OperationAction
from minex.app.schemas.offline import QueuedOperation
from minex.app.schemas.trip import CompleteTripRequest, StartTripRequest, Trip
from minex.app.services.offline_queue import OfflineQueue, QueueEntry
from minex.app.services.trip_locking import TripLockRegistry
from minex.app.services.trip_store import TripStore

logger = logging.getLogger("minex.sync")


@dataclass(frozen=True)
class SyncProgress:
    is_syncing: bool
    in_flight: int


@dataclass
class SyncReport:
    """Outcome counts of one pass."""
    synced: int = 0
    conflicts: int = 0
    retained: int = 0
    dead_lettered: int = 0
    passed_through: int = 0


SyncListener = Callable[[SyncProgress], None]

# Per-operation outcomes
DROP = "drop"
RETAIN = "retain"


class SyncEngine:

    def __init__(
        self,
        queue: OfflineQueue,
        trip_api: TripAPI,
        store: TripStore,
        locks: Optional[TripLockRegistry] = None,
    ):
        self.queue = queue
        self.trip_api = trip_api
        self.store = store
        self.locks = locks or TripLockRegistry()
        self._syncing = False
        self._in_flight = 0
        self._listeners: List[SyncListener] = []

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def sync_offline_trips(self) -> Optional[SyncReport]:
        """
        Run one sync pass.

        Returns the pass report, or None when a pass was already running
        (or the pass itself failed before it could report).
        """
        if self._syncing:
            logger.debug("Sync already running, trigger ignored")
            return None

        # Set before the first await so a concurrent trigger sees it
        self._syncing = True
        self._notify()
        try:
            return await self._run_pass()
        except Exception:
            logger.exception("Sync pass aborted")
            return None
        finally:
            self._syncing = False
            self._in_flight = 0
            self._notify()

    async def _run_pass(self) -> SyncReport:
        report = SyncReport()
        snapshot = await self.queue.read_all()
        if not snapshot:
            return report

        operations = [e for e in snapshot if isinstance(e, QueuedOperation) and e.kind is not None]
        starts = [op for op in operations if op.kind == OperationAction.START]
        targeted = [op for op in operations if op.kind != OperationAction.START]
        report.passed_through = len(snapshot) - len(operations)

        logger.info(
            "Sync pass started",
            extra={"starts": len(starts), "targeted": len(targeted), "queue_size": len(snapshot)},
        )
        self._set_in_flight(len(operations))

        dropped: Set[str] = set()
        # provisional token -> server token (None: start absorbed with no token)
        resolved_tokens: Dict[str, Optional[str]] = {}

        for op in starts:
            outcome = await self._guarded(self._replay_start, op, report, resolved_tokens)
            if outcome == DROP:
                dropped.add(op.op_id)
            self._set_in_flight(self._in_flight - 1)

        pending_starts = {op.local_token for op in starts if op.op_id not in dropped}

        for op in targeted:
            outcome = await self._guarded(
                self._replay_targeted, op, report, resolved_tokens, pending_starts
            )
            if outcome == DROP:
                dropped.add(op.op_id)
            self._set_in_flight(self._in_flight - 1)

        retained: List[QueueEntry] = [
            e for e in snapshot if not (isinstance(e, QueuedOperation) and e.op_id in dropped)
        ]
        report.retained = len(retained) - report.passed_through
        await self.queue.commit_pass(snapshot, retained)

        logger.info(
            "Sync pass finished",
            extra={
                "synced": report.synced,
                "conflicts": report.conflicts,
                "retained": report.retained,
                "dead_lettered": report.dead_lettered,
            },
        )
        return report

    async def _guarded(self, replay, op: QueuedOperation, report: SyncReport, *args) -> str:
        """Run one replay; any failure keeps the operation for the next pass."""
        try:
            return await replay(op, report, *args)
        except ApiError as e:
            self._record_failure(op, e)
            return RETAIN
        except Exception as e:
            logger.exception("Unexpected error replaying operation", extra={"op_id": op.op_id})
            self._record_failure(op, e)
            return RETAIN

    async def _replay_start(
        self,
        op: QueuedOperation,
        report: SyncReport,
        resolved_tokens: Dict[str, Optional[str]],
    ) -> str:
        local_token = op.local_token
        try:
            request = StartTripRequest.model_validate(op.payload)
        except ValidationError:
            await self._dead_letter(op, report, "invalid start payload")
            return DROP

        try:
            trip = await self.trip_api.start_trip(request)
        except ApiError as e:
            if not e.is_conflict:
                raise
            # A trip is already open for this vehicle on the server
            server_token = e.conflict_token
            resolved_tokens[local_token] = server_token
            if server_token and server_token != local_token:
                await self.queue.record_alias(local_token, server_token)
            self._settle_conflicting_start(local_token, server_token)
            report.conflicts += 1
            logger.info("Queued start already exists remotely", extra={"op_id": op.op_id})
            return DROP

        trip = trip.model_copy(update={"offline": False, "completion_pending": False})
        local = self.store.get_trip_by_token(local_token)
        if local is not None and local.status.rank > trip.status.rank:
            # Keep showing the later queued intent until it is replayed too
            trip = trip.model_copy(
                update={
                    "status": local.status,
                    "weight_kg": local.weight_kg,
                    "arrival_at": local.arrival_at,
                    "completion_pending": local.completion_pending,
                    "offline": True,
                }
            )
        resolved_tokens[local_token] = trip.trip_token
        if trip.trip_token != local_token:
            await self.queue.record_alias(local_token, trip.trip_token)
        self.store.replace_trip(local_token, trip)
        report.synced += 1
        return DROP

    def _settle_conflicting_start(self, local_token: str, server_token: Optional[str]) -> None:
        local = self.store.get_trip_by_token(local_token)
        if local is None or not local.offline:
            return
        if server_token == local_token:
            self.store.update_trip(local_token, offline=False)
        else:
            # The server's trip shows up with the next refresh
            self.store.remove_trip(local_token)

    async def _replay_targeted(
        self,
        op: QueuedOperation,
        report: SyncReport,
        resolved_tokens: Dict[str, Optional[str]],
        pending_starts: Set[str],
    ) -> str:
        token = op.trip_token
        if not token:
            await self._dead_letter(op, report, "missing trip token")
            return DROP

        if token in resolved_tokens:
            server_token = resolved_tokens[token]
            if server_token is None:
                await self._dead_letter(op, report, "start absorbed by a conflict without a server token")
                return DROP
            op.payload["tripToken"] = server_token
            token = server_token
        elif token in pending_starts:
            op.last_error = "waiting for queued start"
            return RETAIN
        else:
            # Queued against a provisional token whose start an earlier pass confirmed
            aliased = await self.queue.resolve_token(token)
            if aliased != token:
                op.payload["tripToken"] = aliased
                token = aliased
            elif token.startswith(LOCAL_TOKEN_PREFIX):
                await self._dead_letter(op, report, "no queued start for provisional trip")
                return DROP

        async with self.locks.hold(token):
            if op.kind == OperationAction.COMPLETE:
                return await self._replay_complete(op, token, report)
            return await self._replay_close(op, token, report)

    async def _replay_complete(self, op: QueuedOperation, token: str, report: SyncReport) -> str:
        try:
            request = CompleteTripRequest(trip_token=token, weight_kg=op.payload.get("weightKg"))
        except ValidationError:
            await self._dead_letter(op, report, "invalid completion payload")
            return DROP

        try:
            trip = await self.trip_api.complete_trip(request)
        except ApiError as e:
            if not (e.is_conflict or e.is_not_found):
                raise
            # Remote state already matches the intent
            self.store.update_trip(token, completion_pending=False, offline=False)
            report.conflicts += 1
            logger.info("Queued completion already applied remotely", extra={"op_id": op.op_id})
            return DROP

        self._merge_confirmed(token, trip)
        report.synced += 1
        return DROP

    async def _replay_close(self, op: QueuedOperation, token: str, report: SyncReport) -> str:
        try:
            trip = await self.trip_api.close_trip_in_field(token)
        except ApiError as e:
            if e.is_conflict:
                self.store.update_trip(token, offline=False)
                report.conflicts += 1
                return DROP
            if e.is_not_found:
                await self._dead_letter(op, report, "trip unknown to the server")
                return DROP
            raise

        self._merge_confirmed(token, trip)
        report.synced += 1
        return DROP

    def _merge_confirmed(self, token: str, trip: Trip) -> None:
        confirmed = trip.model_copy(update={"offline": False, "completion_pending": False})
        if self.store.get_trip_by_token(token) is not None:
            self.store.update_trip(token, confirmed.model_dump())
        else:
            self.store.add_trip(confirmed)

    async def _dead_letter(self, op: QueuedOperation, report: SyncReport, reason: str) -> None:
        await self.queue.dead_letter(op, reason)
        if op.kind == OperationAction.COMPLETE and op.trip_token:
            token = await self.queue.resolve_token(op.trip_token)
            self.store.update_trip(token, completion_pending=False)
        report.dead_lettered += 1

    def _record_failure(self, op: QueuedOperation, error: Exception) -> None:
        op.attempts += 1
        op.last_error = str(error)
        logger.warning(
            "Operation kept for next pass",
            extra={"op_id": op.op_id, "action": op.kind, "attempts": op.attempts, "error": str(error)},
        )

    def _set_in_flight(self, count: int) -> None:
        self._in_flight = max(count, 0)
        self._notify()

    def _notify(self) -> None:
        progress = SyncProgress(self._syncing, self._in_flight)
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception:
                logger.exception("Sync listener failed")
