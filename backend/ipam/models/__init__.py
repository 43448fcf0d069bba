from ipam.models.segment import NetworkSegment
from ipam.models.ip_address import IpAddress, ADDRESS_STATUSES
from ipam.models.liveness import LivenessRecord

__all__ = [
    "NetworkSegment",
    "IpAddress", "ADDRESS_STATUSES",
    "LivenessRecord",
]
