"""
Liveness Aggregator
Turns raw probe results into per-address status, flags MAC conflicts and
computes the batch summary. Pure: no I/O, no clock unless ``now`` is omitted.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from ipam.services.probe_executor import ProbeResult

ONLINE = "online"
OFFLINE = "offline"
BLOCKED = "blocked"
UNKNOWN = "unknown"

ASSIGNED_STATUSES = ("in_use", "reserved")


class AddressRow(Protocol):
    id: int
    ip_address: str
    status: str
    mac_address: Optional[str]


@dataclass
class AddressStatus:
    ip_address: str
    status: str
    response_time: Optional[float] = None
    mac: Optional[str] = None
    previous_mac: Optional[str] = None
    has_conflict: bool = False
    checked_at: Optional[datetime] = None
    ip_id: Optional[int] = None

    def state(self) -> tuple:
        """Every field except the timestamp."""
        return (self.ip_address, self.status, self.response_time, self.mac,
                self.previous_mac, self.has_conflict, self.ip_id)


@dataclass
class LivenessSummary:
    total: int = 0
    online: int = 0
    offline: int = 0  # offline + unknown: everything silent that is not blocked
    blocked: int = 0
    unknown: int = 0
    conflicts: int = 0
    avg_response_time: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


# (address row, probe result, previous status) -> treat the silent host as blocked?
BlockedPolicy = Callable[[AddressRow, ProbeResult, Optional[AddressStatus]], bool]


def default_blocked_policy(address: AddressRow, result: ProbeResult, previous: Optional[AddressStatus]) -> bool:
    """A silent host counts as blocked (ICMP filtered, host in use) when a TCP
    port answered, or when it is administratively assigned and a MAC was
    previously resolvable for it."""
    if result.filtered:
        return True
    assigned = getattr(address, "status", None) in ASSIGNED_STATUSES
    known_mac = (previous.mac if previous else None) or getattr(address, "mac_address", None)
    return bool(assigned and known_mac)


def never_blocked(address: AddressRow, result: ProbeResult, previous: Optional[AddressStatus]) -> bool:
    return False


def classify(
    address: AddressRow,
    result: ProbeResult,
    previous: Optional[AddressStatus],
    blocked_policy: BlockedPolicy = default_blocked_policy,
    now: Optional[datetime] = None,
) -> AddressStatus:
    checked_at = now or result.checked_at
    ip_id = getattr(address, "id", None)

    if result.alive:
        prior_mac = previous.mac if previous else None
        conflict = bool(prior_mac and result.mac and result.mac != prior_mac)
        return AddressStatus(
            ip_address=address.ip_address,
            status=ONLINE,
            response_time=result.response_time,
            mac=result.mac or prior_mac,
            previous_mac=prior_mac if conflict else None,
            has_conflict=conflict,
            checked_at=checked_at,
            ip_id=ip_id,
        )

    if previous is None:
        # Only a positive signal (a TCP port answered) can place a never-seen host
        status = BLOCKED if result.filtered and blocked_policy(address, result, None) else UNKNOWN
        return AddressStatus(
            ip_address=address.ip_address, status=status,
            mac=result.mac, checked_at=checked_at, ip_id=ip_id,
        )

    status = BLOCKED if blocked_policy(address, result, previous) else OFFLINE
    return AddressStatus(
        ip_address=address.ip_address,
        status=status,
        mac=result.mac or previous.mac,
        checked_at=checked_at,
        ip_id=ip_id,
    )


def summarize(records: Iterable[AddressStatus]) -> LivenessSummary:
    summary = LivenessSummary()
    times = []
    for rec in records:
        summary.total += 1
        if rec.status == ONLINE:
            summary.online += 1
        elif rec.status == BLOCKED:
            summary.blocked += 1
        else:
            summary.offline += 1
            if rec.status == UNKNOWN:
                summary.unknown += 1
        if rec.has_conflict:
            summary.conflicts += 1
        if rec.response_time is not None:
            times.append(rec.response_time)
    if times:
        summary.avg_response_time = round(sum(times) / len(times), 2)
    return summary


def aggregate(
    addresses: Iterable[AddressRow],
    probe_results: Iterable[ProbeResult],
    previous: Optional[Mapping[str, AddressStatus]] = None,
    blocked_policy: BlockedPolicy = default_blocked_policy,
    now: Optional[datetime] = None,
) -> Tuple[Dict[str, AddressStatus], LivenessSummary]:
    """Evaluate every address of a segment against one probe batch.

    Addresses without a probe result are treated as silent; results for
    addresses outside ``addresses`` are ignored.
    """
    previous = previous or {}
    now = now or datetime.now(timezone.utc)
    by_address = {r.address: r for r in probe_results}

    records: Dict[str, AddressStatus] = {}
    for address in addresses:
        result = by_address.get(address.ip_address) or ProbeResult(
            address=address.ip_address, alive=False, error="not probed", checked_at=now,
        )
        records[address.ip_address] = classify(
            address, result, previous.get(address.ip_address), blocked_policy, now,
        )
    return records, summarize(records.values())
