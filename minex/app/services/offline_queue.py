"""
Durable offline operation queue.

Pending trip operations are persisted as one ordered JSON list under a single
storage key and are always read and overwritten as a whole. The list is small
(tens of entries) so whole-value rewrites are fine.

Known limitation: storage errors are logged and the in-memory flow goes on,
so an operation whose append failed is lost if the app restarts before it is
synced.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Union

from pydantic import ValidationError

from minex.app.core.constants import MAX_TOKEN_ALIASES, StorageKeys
from minex.app.schemas.offline import QueuedOperation
from minex.app.services.storage import LocalStorage

logger = logging.getLogger("minex.queue")

# Records that carry no recognizable marker are kept as raw dicts and
# written back untouched.
QueueEntry = Union[QueuedOperation, Dict[str, Any]]


def _decode(raw: Any) -> QueueEntry:
    if isinstance(raw, dict) and (raw.get("action") or raw.get("completionPending")):
        try:
            return QueuedOperation.model_validate(raw)
        except ValidationError as e:
            logger.warning("Unreadable queued operation kept as-is", extra={"error": str(e)})
    return raw


def _encode(entry: QueueEntry) -> Any:
    if isinstance(entry, QueuedOperation):
        return entry.to_storage()
    return entry


def _identity(entry: QueueEntry) -> str:
    if isinstance(entry, QueuedOperation):
        return f"op:{entry.op_id}"
    return "raw:" + json.dumps(entry, sort_keys=True, default=str)


class OfflineQueue:

    def __init__(self, storage: LocalStorage):
        self._storage = storage
        # Serializes every read-modify-write of the blob
        self._lock = asyncio.Lock()

    async def _load(self) -> List[Any]:
        stored = await self._storage.get_item(StorageKeys.OFFLINE_TRIPS)
        if stored is None:
            return []
        if not isinstance(stored, list):
            logger.error("Offline queue blob is not a list, ignoring it")
            return []
        return stored

    async def read_all(self) -> List[QueueEntry]:
        """Every queued entry, in insertion order."""
        return [_decode(raw) for raw in await self._load()]

    async def size(self) -> int:
        return len(await self._load())

    async def append(self, operation: QueuedOperation) -> bool:
        async with self._lock:
            stored = await self._load()
            stored.append(_encode(operation))
            saved = await self._storage.set_item(StorageKeys.OFFLINE_TRIPS, stored)

        if saved:
            logger.info(
                "Operation queued",
                extra={"op_id": operation.op_id, "action": operation.kind, "queue_size": len(stored)},
            )
        else:
            logger.warning(
                "Operation kept in memory only, it will be lost on restart",
                extra={"op_id": operation.op_id, "action": operation.kind},
            )
        return saved

    async def replace_all(self, entries: Iterable[QueueEntry]) -> bool:
        """Atomically overwrite the whole queue."""
        async with self._lock:
            return await self._storage.set_item(
                StorageKeys.OFFLINE_TRIPS, [_encode(e) for e in entries]
            )

    async def commit_pass(self, snapshot: List[QueueEntry], retained: List[QueueEntry]) -> bool:
        """
        Write back the entries a sync pass kept.

        Entries appended while the pass was running are not in 'snapshot' and
        are preserved after the retained ones.
        """
        async with self._lock:
            seen = {_identity(e) for e in snapshot}
            appended = [e for e in map(_decode, await self._load()) if _identity(e) not in seen]
            entries = list(retained) + appended
            return await self._storage.set_item(
                StorageKeys.OFFLINE_TRIPS, [_encode(e) for e in entries]
            )

    async def clear(self) -> bool:
        async with self._lock:
            return await self._storage.remove_item(StorageKeys.OFFLINE_TRIPS)

    async def dead_letter(self, operation: QueueEntry, reason: str) -> bool:
        """Park an operation that can never be delivered."""
        record = dict(_encode(operation))
        record["reason"] = reason
        record["deadLetteredAt"] = datetime.now(timezone.utc).isoformat()

        async with self._lock:
            stored = await self._storage.get_item(StorageKeys.DEAD_LETTER_OPS) or []
            stored.append(record)
            saved = await self._storage.set_item(StorageKeys.DEAD_LETTER_OPS, stored)

        logger.warning("Operation dead-lettered", extra={"reason": reason})
        return saved

    async def read_dead_letters(self) -> List[Dict[str, Any]]:
        return await self._storage.get_item(StorageKeys.DEAD_LETTER_OPS) or []

    # Provisional token aliases

    async def read_aliases(self) -> Dict[str, str]:
        stored = await self._storage.get_item(StorageKeys.TOKEN_ALIASES)
        return stored if isinstance(stored, dict) else {}

    async def record_alias(self, local_token: str, server_token: str) -> bool:
        """
        Remember the server token a provisional trip was confirmed under.

        Operations queued against the provisional token after its start was
        replayed are redirected through this map on later passes.
        """
        async with self._lock:
            aliases = await self.read_aliases()
            aliases.pop(local_token, None)
            aliases[local_token] = server_token
            # Insertion order is oldest first
            for stale in list(aliases)[:-MAX_TOKEN_ALIASES]:
                del aliases[stale]
            saved = await self._storage.set_item(StorageKeys.TOKEN_ALIASES, aliases)

        logger.info("Provisional token aliased", extra={"local_token": local_token, "trip_token": server_token})
        return saved

    async def resolve_token(self, token: str) -> str:
        """The server token for 'token' if it was a confirmed provisional one."""
        return (await self.read_aliases()).get(token, token)
