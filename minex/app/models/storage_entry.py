"""
Local key-value storage model.

Each row is one persisted value (a JSON blob) under a string key, the way the
device's async storage keeps the offline queue and session credentials.
"""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from minex.app.db.session import Base


class StorageEntry(Base):
    """Persisted key-value entry."""
    __tablename__ = "local_storage"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<StorageEntry(key='{self.key}', size={len(self.value or '')})>"
