from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Literal
from datetime import datetime


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LivenessResponse(_Camel):
    ip_address: str
    status: str
    response_time: Optional[float] = None
    mac: Optional[str] = None
    previous_mac: Optional[str] = None
    has_conflict: bool = False
    checked_at: Optional[datetime] = None


class SummaryResponse(_Camel):
    total: int = 0
    online: int = 0
    offline: int = 0
    blocked: int = 0
    unknown: int = 0
    conflicts: int = 0
    avg_response_time: Optional[float] = None


class SegmentScanResponse(_Camel):
    segment_id: int
    segment_name: str
    results: Dict[str, LivenessResponse]
    summary: SummaryResponse
    checked_at: datetime


class SingleProbeResponse(LivenessResponse):
    ip_id: int
    hostname: Optional[str] = None


class SweepRequest(BaseModel):
    subnet: str = Field(pattern=r"^\d{1,3}\.\d{1,3}\.\d{1,3}$", examples=["192.168.1"])


class SweepHost(_Camel):
    ip: str
    response_time: Optional[float] = None
    mac: Optional[str] = None


class SweepResponse(_Camel):
    subnet: str
    scanned: int
    hosts: List[SweepHost]


class MonitorSelect(BaseModel):
    segment_id: int


class VisibilitySignal(BaseModel):
    state: Literal["hidden", "visible"]


class MonitorStatus(_Camel):
    selected_segment_id: Optional[int] = None
    running: bool
    paused: bool
    cycles_completed: int
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None
