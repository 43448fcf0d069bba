"""
Address Space Manager
Owns network segments and their address pools: expands a CIDR into one
IpAddress row per usable host and is the only place address status changes.
"""
import ipaddress
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import select, func, delete, insert, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ipam.config import settings
from ipam.exceptions import (
    InvalidCidr, InvalidAddress, SegmentTooLarge, SegmentOverlap, SegmentInUse,
    SegmentNotFound, AddressNotFound, AddressStateError,
)
from ipam.models.segment import NetworkSegment
from ipam.models.ip_address import IpAddress
from ipam.models.liveness import LivenessRecord
from ipam.schemas.segment import SegmentCreate, SegmentUpdate
from ipam.schemas.ip_address import IpAssign, IpUpdate

logger = logging.getLogger(__name__)

MAX_PREFIX_LEN = 30  # /31 and /32 have no network/broadcast pair to exclude

IP_STATUS_OPTIONS = [
    {"value": "free", "label": "Free", "color": "green"},
    {"value": "in_use", "label": "In Use", "color": "blue"},
    {"value": "reserved", "label": "Reserved", "color": "orange"},
    {"value": "blocked", "label": "Blocked", "color": "red"},
    {"value": "gateway", "label": "Gateway", "color": "purple"},
]

# (from, to) pairs reachable through update_address; assign/release have their own rules
_UPDATE_TRANSITIONS = {
    ("free", "reserved"),
    ("free", "blocked"),
    ("blocked", "free"),
    ("reserved", "free"),
}


@dataclass(frozen=True)
class CidrPlan:
    network: ipaddress.IPv4Network

    @property
    def cidr(self) -> str:
        return str(self.network)

    @property
    def prefix(self) -> int:
        return self.network.prefixlen

    @property
    def first_usable(self) -> ipaddress.IPv4Address:
        return self.network.network_address + 1

    @property
    def last_usable(self) -> ipaddress.IPv4Address:
        return self.network.broadcast_address - 1

    @property
    def usable_hosts(self) -> int:
        return self.network.num_addresses - 2

    def contains(self, address: ipaddress.IPv4Address) -> bool:
        return self.first_usable <= address <= self.last_usable

    def hosts(self) -> Iterator[ipaddress.IPv4Address]:
        """Lazily yield network+1 .. broadcast-1."""
        start, end = int(self.first_usable), int(self.last_usable)
        for value in range(start, end + 1):
            yield ipaddress.IPv4Address(value)


def plan_cidr(cidr: str) -> CidrPlan:
    """Validate an IPv4 CIDR block and describe its usable host range.

    Host bits are masked off, so ``10.0.0.7/24`` plans ``10.0.0.0/24``.
    Raises InvalidCidr for malformed input, IPv6, a missing prefix, or a
    prefix longer than /30.
    """
    if not isinstance(cidr, str) or "/" not in cidr:
        raise InvalidCidr(f"Invalid CIDR format: {cidr!r}. Example: 192.168.1.0/24")
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as e:
        raise InvalidCidr(f"Invalid CIDR {cidr!r}: {e}")
    if network.version != 4:
        raise InvalidCidr(f"Only IPv4 segments are supported: {cidr!r}")
    if network.prefixlen > MAX_PREFIX_LEN:
        raise InvalidCidr(
            f"Prefix /{network.prefixlen} has no usable host range (maximum is /{MAX_PREFIX_LEN})"
        )
    return CidrPlan(network)


def _parse_ipv4(value: str, field: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(value)
    except ValueError:
        raise InvalidAddress(f"Invalid {field}: {value!r}")


def _usage_percent(used: int, total: int) -> int:
    return round(used / total * 100) if total > 0 else 0


# ── Segments ───────────────────────────────────────────────────────


async def create_segment(db: AsyncSession, payload: SegmentCreate) -> Tuple[NetworkSegment, int]:
    """Create a segment and its whole address pool in a single transaction."""
    plan = plan_cidr(payload.cidr)

    if plan.usable_hosts > settings.MAX_SEGMENT_HOSTS:
        raise SegmentTooLarge(
            f"Segment too large: {plan.usable_hosts} usable addresses "
            f"(maximum allowed is {settings.MAX_SEGMENT_HOSTS})"
        )

    gateway = None
    if payload.gateway:
        gateway = _parse_ipv4(payload.gateway, "gateway")
        if not plan.contains(gateway):
            raise InvalidAddress(f"Gateway {gateway} is outside the usable range of {plan.cidr}")

    existing = await db.execute(select(NetworkSegment.id, NetworkSegment.cidr))
    for seg_id, seg_cidr in existing.all():
        if plan.network.overlaps(ipaddress.ip_network(seg_cidr, strict=False)):
            raise SegmentOverlap(f"{plan.cidr} overlaps existing segment {seg_id} ({seg_cidr})")

    segment = NetworkSegment(
        name=payload.name,
        cidr=plan.cidr,
        vlan_id=payload.vlan_id,
        gateway=str(gateway) if gateway else None,
        dns_primary=payload.dns_primary,
        dns_secondary=payload.dns_secondary,
        tags=payload.tags,
        description=payload.description,
    )
    try:
        db.add(segment)
        await db.flush()
        rows = [
            {
                "segment_id": segment.id,
                "ip_address": str(host),
                "ip_int": int(host),
                "status": "gateway" if host == gateway else "free",
            }
            for host in plan.hosts()
        ]
        if rows:
            await db.execute(insert(IpAddress), rows)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(segment)
    logger.info("Created segment %s (%s) with %d addresses", segment.name, segment.cidr, len(rows))
    return segment, len(rows)


async def get_segment(db: AsyncSession, segment_id: int) -> NetworkSegment:
    result = await db.execute(select(NetworkSegment).where(NetworkSegment.id == segment_id))
    segment = result.scalar_one_or_none()
    if not segment:
        raise SegmentNotFound(segment_id)
    return segment


async def _status_counts(db: AsyncSession, segment_id: Optional[int] = None) -> Dict[int, Dict[str, int]]:
    query = select(IpAddress.segment_id, IpAddress.status, func.count(IpAddress.id)).group_by(
        IpAddress.segment_id, IpAddress.status
    )
    if segment_id is not None:
        query = query.where(IpAddress.segment_id == segment_id)
    counts: Dict[int, Dict[str, int]] = {}
    for seg_id, status, count in (await db.execute(query)).all():
        counts.setdefault(seg_id, {})[status] = count
    return counts


def _stats_from_counts(by_status: Dict[str, int]) -> dict:
    total = sum(by_status.values())
    used = by_status.get("in_use", 0)
    return {
        "total": total,
        "used": used,
        "free": by_status.get("free", 0),
        "reserved": by_status.get("reserved", 0),
        "blocked": by_status.get("blocked", 0),
        "usage_percent": _usage_percent(used, total),
    }


async def segment_stats(db: AsyncSession, segment_id: int) -> dict:
    counts = await _status_counts(db, segment_id)
    return _stats_from_counts(counts.get(segment_id, {}))


async def list_segments(db: AsyncSession, search: Optional[str] = None) -> List[Tuple[NetworkSegment, dict]]:
    query = select(NetworkSegment).order_by(NetworkSegment.created_at.desc(), NetworkSegment.id.desc())
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(
            NetworkSegment.name.ilike(pattern),
            NetworkSegment.cidr.ilike(pattern),
            NetworkSegment.tags.ilike(pattern),
        ))
    segments = (await db.execute(query)).scalars().all()
    counts = await _status_counts(db)
    return [(s, _stats_from_counts(counts.get(s.id, {}))) for s in segments]


async def segment_overview(db: AsyncSession) -> dict:
    """Totals across every segment plus a per-segment status breakdown."""
    segments = (await db.execute(select(NetworkSegment).order_by(NetworkSegment.id))).scalars().all()
    counts = await _status_counts(db)

    breakdown = []
    for s in segments:
        by_status = counts.get(s.id, {})
        breakdown.append({
            "id": s.id, "name": s.name, "vlan_id": s.vlan_id, "cidr": s.cidr,
            "total": sum(by_status.values()), "by_status": by_status,
        })

    total_ips = sum(b["total"] for b in breakdown)
    total_used = sum(b["by_status"].get("in_use", 0) for b in breakdown)
    return {
        "total_segments": len(segments),
        "total_ips": total_ips,
        "total_used": total_used,
        "total_free": sum(b["by_status"].get("free", 0) for b in breakdown),
        "overall_usage_percent": _usage_percent(total_used, total_ips),
        "segments": breakdown,
    }


async def update_segment(db: AsyncSession, segment_id: int, payload: SegmentUpdate) -> NetworkSegment:
    segment = await get_segment(db, segment_id)
    updates = payload.model_dump(exclude_unset=True)

    if "gateway" in updates and updates["gateway"] != segment.gateway:
        new_gateway = updates["gateway"]
        row = None
        if new_gateway:
            gw = _parse_ipv4(new_gateway, "gateway")
            if not plan_cidr(segment.cidr).contains(gw):
                raise InvalidAddress(f"Gateway {gw} is outside the usable range of {segment.cidr}")
            row = (await db.execute(
                select(IpAddress).where(IpAddress.segment_id == segment.id, IpAddress.ip_address == new_gateway)
            )).scalar_one()
            if row.status != "free":
                raise AddressStateError(f"Cannot make {new_gateway} the gateway while it is {row.status}")
        if segment.gateway:
            old = (await db.execute(select(IpAddress).where(
                IpAddress.segment_id == segment.id,
                IpAddress.ip_address == segment.gateway,
                IpAddress.status == "gateway",
            ))).scalar_one_or_none()
            if old:
                old.status = "free"
        if row is not None:
            row.status = "gateway"

    for key, value in updates.items():
        setattr(segment, key, value)
    await db.commit()
    await db.refresh(segment)
    return segment


async def delete_segment(db: AsyncSession, segment_id: int, force: bool = False) -> int:
    """Delete a segment with its addresses and cached liveness. Returns the address count."""
    segment = await get_segment(db, segment_id)

    in_use = (await db.execute(
        select(func.count(IpAddress.id)).where(IpAddress.segment_id == segment_id, IpAddress.status == "in_use")
    )).scalar() or 0
    if in_use and not force:
        raise SegmentInUse(f"Cannot delete segment. {in_use} IP(s) are still in use.")

    try:
        await db.execute(delete(LivenessRecord).where(LivenessRecord.segment_id == segment_id))
        removed = (await db.execute(delete(IpAddress).where(IpAddress.segment_id == segment_id))).rowcount
        await db.execute(delete(NetworkSegment).where(NetworkSegment.id == segment_id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Deleted segment %s (%s) and %d addresses", segment.name, segment.cidr, removed)
    return removed


# ── Addresses ──────────────────────────────────────────────────────


async def list_addresses(
    db: AsyncSession,
    segment_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[IpAddress], dict]:
    conditions = []
    if segment_id is not None:
        conditions.append(IpAddress.segment_id == segment_id)
    if status:
        conditions.append(IpAddress.status == status)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            IpAddress.ip_address.ilike(pattern),
            IpAddress.hostname.ilike(pattern),
            IpAddress.mac_address.ilike(pattern),
            IpAddress.notes.ilike(pattern),
        ))

    total = (await db.execute(select(func.count(IpAddress.id)).where(*conditions))).scalar() or 0
    rows = (await db.execute(
        select(IpAddress)
        .where(*conditions)
        .order_by(IpAddress.ip_int)
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()

    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }
    return list(rows), pagination


async def segment_addresses(db: AsyncSession, segment_id: int) -> List[IpAddress]:
    result = await db.execute(
        select(IpAddress).where(IpAddress.segment_id == segment_id).order_by(IpAddress.ip_int)
    )
    return list(result.scalars().all())


async def get_address(db: AsyncSession, ip_id: int) -> IpAddress:
    result = await db.execute(select(IpAddress).where(IpAddress.id == ip_id))
    ip = result.scalar_one_or_none()
    if not ip:
        raise AddressNotFound(ip_id)
    return ip


async def find_free(db: AsyncSession, segment_id: int, count: int = 10) -> List[IpAddress]:
    await get_segment(db, segment_id)
    result = await db.execute(
        select(IpAddress)
        .where(IpAddress.segment_id == segment_id, IpAddress.status == "free")
        .order_by(IpAddress.ip_int)
        .limit(count)
    )
    return list(result.scalars().all())


async def assign_address(db: AsyncSession, ip_id: int, payload: IpAssign) -> IpAddress:
    """free|reserved -> in_use, or free -> reserved."""
    ip = await get_address(db, ip_id)
    target = payload.status

    if ip.status in ("gateway", "blocked"):
        raise AddressStateError(f"Cannot assign IP with status: {ip.status}")
    if ip.status == "in_use":
        raise AddressStateError("IP is already in use")
    if ip.status == "reserved" and target == "reserved":
        raise AddressStateError("IP is already reserved")

    ip.status = target
    ip.device_id = payload.device_id
    ip.hostname = payload.hostname or ip.hostname
    ip.mac_address = payload.mac_address or ip.mac_address
    ip.notes = payload.notes or ip.notes
    ip.reserved_until = payload.reserved_until if target == "reserved" else None
    await db.commit()
    logger.info("Assigned %s (%s)", ip.ip_address, target)
    await db.refresh(ip)
    return ip


async def release_address(db: AsyncSession, ip_id: int) -> IpAddress:
    """in_use|reserved -> free, clearing every assignment field."""
    ip = await get_address(db, ip_id)
    if ip.status not in ("in_use", "reserved"):
        raise AddressStateError("IP is not currently assigned or reserved")

    ip.status = "free"
    ip.device_id = None
    ip.hostname = None
    ip.mac_address = None
    ip.notes = None
    ip.reserved_until = None
    await db.commit()
    logger.info("Released %s", ip.ip_address)
    await db.refresh(ip)
    return ip


async def update_address(db: AsyncSession, ip_id: int, payload: IpUpdate) -> IpAddress:
    ip = await get_address(db, ip_id)
    updates = payload.model_dump(exclude_unset=True)

    target = updates.pop("status", None)
    if target and target != ip.status:
        if (ip.status, target) not in _UPDATE_TRANSITIONS:
            raise AddressStateError(f"Cannot change status from {ip.status} to {target}")
        ip.status = target
        if target == "free":
            ip.device_id = None
            ip.reserved_until = None

    for key, value in updates.items():
        setattr(ip, key, value)
    await db.commit()
    await db.refresh(ip)
    return ip
