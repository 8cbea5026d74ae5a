# attendance_monitor/models/store_entry.py
from sqlalchemy import Column, DateTime, String, Text, func

from attendance_monitor.db.base import Base


class StoreEntry(Base):
    """
    One key of the local durable key-value store. Values are JSON documents.
    """

    __tablename__ = "store_entries"

    key = Column(String(128), primary_key=True)

    value = Column(
        Text,
        nullable=False,
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<StoreEntry key={self.key!r} updated_at={self.updated_at}>"
