"""Latest observed liveness per address."""
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from ipam.database import Base


class LivenessRecord(Base):
    """Single latest-known status row per address, overwritten every cycle."""
    __tablename__ = "liveness_records"

    id = Column(Integer, primary_key=True, index=True)
    ip_id = Column(Integer, ForeignKey("ip_addresses.id", ondelete="CASCADE"), nullable=False)
    segment_id = Column(Integer, ForeignKey("network_segments.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(15), nullable=False, unique=True)
    status = Column(String(20), nullable=False)  # online, offline, blocked, unknown
    response_time = Column(Float, nullable=True)  # ms
    mac_address = Column(String(17), nullable=True)
    previous_mac = Column(String(17), nullable=True)
    has_conflict = Column(Boolean, default=False, nullable=False)
    checked_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_liveness_records_segment", "segment_id"),
        Index("ix_liveness_records_conflict", "has_conflict"),
    )
