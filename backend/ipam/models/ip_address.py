from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ipam.database import Base

ADDRESS_STATUSES = ("free", "in_use", "reserved", "blocked", "gateway")


class IpAddress(Base):
    """One row per usable host address of a segment."""
    __tablename__ = "ip_addresses"

    id = Column(Integer, primary_key=True, index=True)
    segment_id = Column(Integer, ForeignKey("network_segments.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(15), nullable=False, unique=True)
    ip_int = Column(BigInteger, nullable=False)  # numeric form for ordering
    status = Column(String(20), nullable=False, default="free")  # free, in_use, reserved, blocked, gateway
    device_id = Column(Integer, nullable=True)
    hostname = Column(String(100), nullable=True)
    mac_address = Column(String(17), nullable=True)
    notes = Column(Text, nullable=True)
    reserved_until = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    segment = relationship("NetworkSegment", lazy="joined")

    __table_args__ = (
        Index("ix_ip_addresses_segment_int", "segment_id", "ip_int"),
        Index("ix_ip_addresses_status", "status"),
        Index("ix_ip_addresses_device", "device_id"),
    )
