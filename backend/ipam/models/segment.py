from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func
from ipam.database import Base


class NetworkSegment(Base):
    __tablename__ = "network_segments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    cidr = Column(String(18), nullable=False, unique=True)  # normalized, e.g. "192.168.1.0/24"
    vlan_id = Column(Integer, nullable=True, index=True)
    gateway = Column(String(15), nullable=True)
    dns_primary = Column(String(15), nullable=True)
    dns_secondary = Column(String(15), nullable=True)
    tags = Column(String(200), nullable=True)  # comma-separated: office, server, wifi, dmz
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
