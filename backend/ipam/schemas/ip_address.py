from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal
from datetime import datetime
import re

_MAC_RE = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")


def _check_mac(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    if not _MAC_RE.match(v):
        raise ValueError(f"Invalid MAC address: {v}")
    return v.upper().replace("-", ":")


class SegmentRef(BaseModel):
    id: int
    name: str
    vlan_id: Optional[int] = None
    cidr: str

    model_config = {"from_attributes": True}


class IpAddressResponse(BaseModel):
    id: int
    segment_id: int
    ip_address: str
    status: str
    device_id: Optional[int] = None
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    notes: Optional[str] = None
    reserved_until: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    segment: Optional[SegmentRef] = None

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    page: int
    limit: int
    total: int
    total_pages: int


class IpAddressPage(BaseModel):
    data: List[IpAddressResponse]
    pagination: Pagination


class IpAssign(BaseModel):
    device_id: Optional[int] = None
    hostname: Optional[str] = Field(default=None, max_length=100)
    mac_address: Optional[str] = None
    notes: Optional[str] = None
    status: Literal["in_use", "reserved"] = "in_use"
    reserved_until: Optional[datetime] = None

    @field_validator("mac_address")
    @classmethod
    def validate_mac(cls, v: Optional[str]) -> Optional[str]:
        return _check_mac(v)


class IpUpdate(BaseModel):
    status: Optional[Literal["free", "reserved", "blocked"]] = None
    hostname: Optional[str] = Field(default=None, max_length=100)
    mac_address: Optional[str] = None
    notes: Optional[str] = None
    reserved_until: Optional[datetime] = None

    @field_validator("mac_address")
    @classmethod
    def validate_mac(cls, v: Optional[str]) -> Optional[str]:
        return _check_mac(v)


class IpStatusOption(BaseModel):
    value: str
    label: str
    color: str
