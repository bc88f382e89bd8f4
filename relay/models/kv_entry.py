"""Key/value rows backing bindings, fingerprints, deletions and customers."""

from sqlalchemy import Column, DateTime, String, Text

from relay.database import Base, utcnow


class KVEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
