from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict
from datetime import datetime
import ipaddress


def _check_ipv4(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    try:
        ipaddress.IPv4Address(v)
    except ValueError:
        raise ValueError(f"Invalid IPv4 address: {v}")
    return v


class SegmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    cidr: str
    vlan_id: Optional[int] = Field(default=None, ge=1, le=4094)
    gateway: Optional[str] = None
    dns_primary: Optional[str] = None
    dns_secondary: Optional[str] = None
    tags: Optional[str] = None
    description: Optional[str] = None

    @field_validator("gateway", "dns_primary", "dns_secondary")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        return _check_ipv4(v)


class SegmentUpdate(BaseModel):
    """CIDR is immutable; every other field may change."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    vlan_id: Optional[int] = Field(default=None, ge=1, le=4094)
    gateway: Optional[str] = None
    dns_primary: Optional[str] = None
    dns_secondary: Optional[str] = None
    tags: Optional[str] = None
    description: Optional[str] = None

    @field_validator("gateway", "dns_primary", "dns_secondary")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        return _check_ipv4(v)


class SegmentStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total: int = 0
    used: int = 0
    free: int = 0
    reserved: int = 0
    blocked: int = 0
    usage_percent: int = 0


class SegmentResponse(BaseModel):
    id: int
    name: str
    cidr: str
    vlan_id: Optional[int] = None
    gateway: Optional[str] = None
    dns_primary: Optional[str] = None
    dns_secondary: Optional[str] = None
    tags: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    stats: Optional[SegmentStats] = None

    model_config = {"from_attributes": True}


class SegmentCreated(SegmentResponse):
    ips_generated: int


class SegmentBreakdown(BaseModel):
    id: int
    name: str
    vlan_id: Optional[int] = None
    cidr: str
    total: int
    by_status: Dict[str, int]


class SegmentOverview(BaseModel):
    total_segments: int
    total_ips: int
    total_used: int
    total_free: int
    overall_usage_percent: int
    segments: List[SegmentBreakdown]
