import ipaddress

import pytest
from sqlalchemy import func, select

from ipam.exceptions import (
    AddressNotFound, AddressStateError, InvalidAddress, InvalidCidr,
    SegmentInUse, SegmentNotFound, SegmentOverlap, SegmentTooLarge,
)
from ipam.models import IpAddress
from ipam.schemas.ip_address import IpAssign, IpUpdate
from ipam.schemas.segment import SegmentCreate, SegmentUpdate
from ipam.services import address_space
from ipam.services.address_space import plan_cidr
from ipam.services.liveness import AddressStatus
from ipam.services.status_cache import StatusCache


async def _create(db, cidr, name="lab", **kwargs):
    return await address_space.create_segment(db, SegmentCreate(name=name, cidr=cidr, **kwargs))


async def _rows(db, segment_id):
    return await address_space.segment_addresses(db, segment_id)


async def _count(db, segment_id):
    return (await db.execute(
        select(func.count(IpAddress.id)).where(IpAddress.segment_id == segment_id)
    )).scalar()


# ── CIDR planning ─────────────────────────────────────────────────────


@pytest.mark.parametrize("prefix", range(2, 31))
def test_plan_cidr_usable_host_count(prefix):
    plan = plan_cidr(f"10.0.0.0/{prefix}")
    assert plan.usable_hosts == 2 ** (32 - prefix) - 2
    assert plan.first_usable == plan.network.network_address + 1
    assert plan.last_usable == plan.network.broadcast_address - 1


def test_plan_cidr_slash_30():
    plan = plan_cidr("10.0.0.0/30")
    assert [str(h) for h in plan.hosts()] == ["10.0.0.1", "10.0.0.2"]


def test_plan_cidr_masks_host_bits():
    plan = plan_cidr("192.168.1.77/24")
    assert plan.cidr == "192.168.1.0/24"
    assert str(plan.first_usable) == "192.168.1.1"
    assert str(plan.last_usable) == "192.168.1.254"


def test_plan_cidr_contains_excludes_network_and_broadcast():
    plan = plan_cidr("10.1.0.0/29")
    assert not plan.contains(ipaddress.IPv4Address("10.1.0.0"))
    assert plan.contains(ipaddress.IPv4Address("10.1.0.1"))
    assert plan.contains(ipaddress.IPv4Address("10.1.0.6"))
    assert not plan.contains(ipaddress.IPv4Address("10.1.0.7"))


@pytest.mark.parametrize("cidr", [
    "10.0.0.0/31",
    "10.0.0.0/32",
    "10.0.0.0/33",
    "10.0.0.0",
    "300.1.1.0/24",
    "not-a-cidr",
    "fd00::/64",
    "",
])
def test_plan_cidr_rejects(cidr):
    with pytest.raises(InvalidCidr):
        plan_cidr(cidr)


# ── segment lifecycle ─────────────────────────────────────────────────


async def test_create_slash_30_generates_two_rows_with_gateway(db):
    segment, generated = await _create(db, "10.0.0.0/30", gateway="10.0.0.1")
    assert generated == 2

    rows = await _rows(db, segment.id)
    assert [(r.ip_address, r.status) for r in rows] == [
        ("10.0.0.1", "gateway"),
        ("10.0.0.2", "free"),
    ]


async def test_create_normalizes_cidr(db):
    segment, generated = await _create(db, "172.16.5.9/24")
    assert segment.cidr == "172.16.5.0/24"
    assert generated == 254


async def test_create_rejects_gateway_outside_range(db):
    with pytest.raises(InvalidAddress):
        await _create(db, "10.0.0.0/29", gateway="10.0.0.7")


async def test_create_rejects_oversized_segment(db):
    with pytest.raises(SegmentTooLarge):
        await _create(db, "10.0.0.0/19")


async def test_create_rejects_overlap_and_leaves_no_rows(db):
    first, _ = await _create(db, "10.0.0.0/24", name="a")

    with pytest.raises(SegmentOverlap):
        await _create(db, "10.0.0.128/25", name="b")
    with pytest.raises(SegmentOverlap):
        await _create(db, "10.0.0.0/23", name="c")

    total = (await db.execute(select(func.count(IpAddress.id)))).scalar()
    assert total == 254
    assert await _count(db, first.id) == 254


async def test_adjacent_segments_do_not_overlap(db):
    await _create(db, "10.0.0.0/25", name="low")
    _, generated = await _create(db, "10.0.0.128/25", name="high")
    assert generated == 126


async def test_get_missing_segment(db):
    with pytest.raises(SegmentNotFound):
        await address_space.get_segment(db, 999)


async def test_segment_stats_and_overview(db):
    segment, _ = await _create(db, "10.0.0.0/29", gateway="10.0.0.1")
    rows = await _rows(db, segment.id)
    await address_space.assign_address(db, rows[1].id, IpAssign(hostname="web01"))
    await address_space.assign_address(db, rows[2].id, IpAssign(status="reserved"))
    await address_space.update_address(db, rows[3].id, IpUpdate(status="blocked"))

    stats = await address_space.segment_stats(db, segment.id)
    assert stats == {
        "total": 6, "used": 1, "free": 2, "reserved": 1, "blocked": 1, "usage_percent": 17,
    }

    overview = await address_space.segment_overview(db)
    assert overview["total_segments"] == 1
    assert overview["total_ips"] == 6
    assert overview["total_used"] == 1
    assert overview["segments"][0]["by_status"]["gateway"] == 1


async def test_list_segments_search(db):
    await _create(db, "10.0.0.0/29", name="office", tags="office,wifi")
    await _create(db, "10.0.1.0/29", name="servers", tags="dmz")

    found = await address_space.list_segments(db, search="wifi")
    assert [s.name for s, _ in found] == ["office"]
    found = await address_space.list_segments(db, search="10.0.1")
    assert [s.name for s, _ in found] == ["servers"]
    assert len(await address_space.list_segments(db)) == 2


async def test_update_segment_moves_gateway(db):
    segment, _ = await _create(db, "10.0.0.0/29", gateway="10.0.0.1")

    updated = await address_space.update_segment(db, segment.id, SegmentUpdate(gateway="10.0.0.6"))
    assert updated.gateway == "10.0.0.6"
    statuses = {r.ip_address: r.status for r in await _rows(db, segment.id)}
    assert statuses["10.0.0.1"] == "free"
    assert statuses["10.0.0.6"] == "gateway"

    await address_space.update_segment(db, segment.id, SegmentUpdate(gateway=None))
    statuses = {r.ip_address: r.status for r in await _rows(db, segment.id)}
    assert "gateway" not in statuses.values()


async def test_update_segment_gateway_must_be_free(db):
    segment, _ = await _create(db, "10.0.0.0/29")
    rows = await _rows(db, segment.id)
    await address_space.assign_address(db, rows[0].id, IpAssign())

    with pytest.raises(AddressStateError):
        await address_space.update_segment(db, segment.id, SegmentUpdate(gateway="10.0.0.1"))


async def test_delete_refuses_while_in_use(db):
    segment, _ = await _create(db, "10.0.0.0/29")
    rows = await _rows(db, segment.id)
    await address_space.assign_address(db, rows[0].id, IpAssign())

    with pytest.raises(SegmentInUse):
        await address_space.delete_segment(db, segment.id)
    assert await _count(db, segment.id) == 6

    removed = await address_space.delete_segment(db, segment.id, force=True)
    assert removed == 6
    assert await _count(db, segment.id) == 0


async def test_delete_cascades_to_cached_liveness(db, session_factory):
    segment, _ = await _create(db, "10.0.0.0/30")
    rows = await _rows(db, segment.id)
    cache = StatusCache(session_factory)
    await cache.put(segment.id, [
        AddressStatus(ip_address=r.ip_address, status="online", ip_id=r.id) for r in rows
    ])

    await address_space.delete_segment(db, segment.id)

    assert await cache.get_segment(segment.id) == {}
    with pytest.raises(SegmentNotFound):
        await address_space.get_segment(db, segment.id)


# ── addresses ─────────────────────────────────────────────────────────


async def test_list_addresses_orders_numerically_and_paginates(db):
    segment, _ = await _create(db, "10.0.0.0/28")

    rows, pagination = await address_space.list_addresses(db, segment_id=segment.id, page=2, limit=5)
    assert [r.ip_address for r in rows] == [
        "10.0.0.6", "10.0.0.7", "10.0.0.8", "10.0.0.9", "10.0.0.10",
    ]
    assert pagination == {"page": 2, "limit": 5, "total": 14, "total_pages": 3}


async def test_list_addresses_filters(db):
    segment, _ = await _create(db, "10.0.0.0/29")
    rows = await _rows(db, segment.id)
    await address_space.assign_address(db, rows[2].id, IpAssign(hostname="printer-2f"))

    in_use, pagination = await address_space.list_addresses(db, status="in_use")
    assert [r.ip_address for r in in_use] == ["10.0.0.3"]
    assert pagination["total"] == 1

    found, _ = await address_space.list_addresses(db, search="PRINTER")
    assert [r.hostname for r in found] == ["printer-2f"]


async def test_find_free_skips_assigned(db):
    segment, _ = await _create(db, "10.0.0.0/29", gateway="10.0.0.1")
    rows = await _rows(db, segment.id)
    await address_space.assign_address(db, rows[1].id, IpAssign())

    free = await address_space.find_free(db, segment.id, count=2)
    assert [r.ip_address for r in free] == ["10.0.0.3", "10.0.0.4"]


async def test_get_missing_address(db):
    with pytest.raises(AddressNotFound):
        await address_space.get_address(db, 4242)


async def test_assign_then_release(db):
    segment, _ = await _create(db, "10.0.0.0/30")
    ip = (await _rows(db, segment.id))[1]

    assigned = await address_space.assign_address(
        db, ip.id, IpAssign(hostname="nas", mac_address="aa-bb-cc-dd-ee-01", device_id=7),
    )
    assert assigned.status == "in_use"
    assert assigned.mac_address == "AA:BB:CC:DD:EE:01"
    assert assigned.segment.cidr == "10.0.0.0/30"

    with pytest.raises(AddressStateError):
        await address_space.assign_address(db, ip.id, IpAssign())

    released = await address_space.release_address(db, ip.id)
    assert released.status == "free"
    assert released.hostname is None
    assert released.mac_address is None
    assert released.device_id is None


async def test_reserved_can_be_assigned_but_not_reserved_again(db):
    segment, _ = await _create(db, "10.0.0.0/30")
    ip = (await _rows(db, segment.id))[0]

    await address_space.assign_address(db, ip.id, IpAssign(status="reserved"))
    with pytest.raises(AddressStateError):
        await address_space.assign_address(db, ip.id, IpAssign(status="reserved"))

    assigned = await address_space.assign_address(db, ip.id, IpAssign(status="in_use"))
    assert assigned.status == "in_use"
    assert assigned.reserved_until is None


async def test_gateway_and_blocked_cannot_be_assigned(db):
    segment, _ = await _create(db, "10.0.0.0/30", gateway="10.0.0.1")
    gateway, other = await _rows(db, segment.id)
    await address_space.update_address(db, other.id, IpUpdate(status="blocked"))

    for ip in (gateway, other):
        with pytest.raises(AddressStateError):
            await address_space.assign_address(db, ip.id, IpAssign())


async def test_release_requires_assignment(db):
    segment, _ = await _create(db, "10.0.0.0/30")
    ip = (await _rows(db, segment.id))[0]
    with pytest.raises(AddressStateError):
        await address_space.release_address(db, ip.id)


@pytest.mark.parametrize("start,target,allowed", [
    ("free", "blocked", True),
    ("free", "reserved", True),
    ("blocked", "free", True),
    ("blocked", "reserved", False),
    ("in_use", "free", False),
    ("in_use", "blocked", False),
])
async def test_update_address_transitions(db, start, target, allowed):
    segment, _ = await _create(db, "10.0.0.0/30")
    ip = (await _rows(db, segment.id))[0]
    if start == "blocked":
        await address_space.update_address(db, ip.id, IpUpdate(status="blocked"))
    elif start == "in_use":
        await address_space.assign_address(db, ip.id, IpAssign())

    if allowed:
        updated = await address_space.update_address(db, ip.id, IpUpdate(status=target))
        assert updated.status == target
    else:
        with pytest.raises(AddressStateError):
            await address_space.update_address(db, ip.id, IpUpdate(status=target))


async def test_update_address_edits_fields_without_status(db):
    segment, _ = await _create(db, "10.0.0.0/30")
    ip = (await _rows(db, segment.id))[0]
    updated = await address_space.update_address(db, ip.id, IpUpdate(notes="rack 4", hostname="sw1"))
    assert updated.status == "free"
    assert updated.notes == "rack 4"
    assert updated.hostname == "sw1"
