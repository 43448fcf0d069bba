from ipam.schemas.segment import (
    SegmentCreate, SegmentUpdate, SegmentResponse, SegmentCreated, SegmentStats, SegmentOverview,
)
from ipam.schemas.ip_address import IpAddressResponse, IpAddressPage, IpAssign, IpUpdate, IpStatusOption
from ipam.schemas.ping import (
    LivenessResponse, SummaryResponse, SegmentScanResponse, SingleProbeResponse,
    SweepRequest, SweepResponse, MonitorSelect, VisibilitySignal, MonitorStatus,
)

__all__ = [
    "SegmentCreate", "SegmentUpdate", "SegmentResponse", "SegmentCreated", "SegmentStats", "SegmentOverview",
    "IpAddressResponse", "IpAddressPage", "IpAssign", "IpUpdate", "IpStatusOption",
    "LivenessResponse", "SummaryResponse", "SegmentScanResponse", "SingleProbeResponse",
    "SweepRequest", "SweepResponse", "MonitorSelect", "VisibilitySignal", "MonitorStatus",
]
