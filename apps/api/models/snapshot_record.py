"""SnapshotRecord model for whole-record key/value persistence."""

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.sql import func

from database import Base


class SnapshotRecord(Base):
    """One serialized record (account, job or invite code) keyed within a namespace."""

    __tablename__ = "snapshot_records"

    namespace = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
