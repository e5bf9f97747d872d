"""
Local key-value storage service.

Async JSON key-value store on the device database. Storage failures are
logged and never raised: the UI must not stall on storage I/O, so reads
degrade to None and writes report False.
"""

import json
import logging
from typing import Any, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from minex.app.models.storage_entry import StorageEntry

logger = logging.getLogger("minex.storage")


class LocalStorage:

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_item(self, key: str) -> Optional[Any]:
        """Read and decode the value under 'key'."""
        try:
            async with self._session_factory() as session:
                entry = await session.get(StorageEntry, key)
                if entry is None:
                    return None
                return json.loads(entry.value)
        except (SQLAlchemyError, ValueError) as e:
            logger.error("Error reading storage key", extra={"key": key, "error": str(e)})
            return None

    async def set_item(self, key: str, value: Any) -> bool:
        """
        Replace the value under 'key'.

        The write is a single transaction: on failure it rolls back and the
        previous value stays in place.
        """
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Error encoding storage value", extra={"key": key, "error": str(e)})
            return False

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.merge(StorageEntry(key=key, value=encoded))
            return True
        except SQLAlchemyError as e:
            logger.error("Error writing storage key", extra={"key": key, "error": str(e)})
            return False

    async def remove_item(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(StorageEntry).where(StorageEntry.key == key))
            return True
        except SQLAlchemyError as e:
            logger.error("Error removing storage key", extra={"key": key, "error": str(e)})
            return False

    async def clear(self) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(StorageEntry))
            return True
        except SQLAlchemyError as e:
            logger.error("Error clearing storage", extra={"error": str(e)})
            return False
