from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, List, Optional
from ipam.database import get_db
from ipam.services import address_space
from ipam.services.poller import SegmentPoller
from ipam.services.status_cache import StatusCache
from ipam.services.subnet_sweep import SubnetSweeper
from ipam.schemas.ping import (
    LivenessResponse, SegmentScanResponse, SingleProbeResponse,
    SweepRequest, SweepResponse, MonitorSelect, VisibilitySignal, MonitorStatus,
)

router = APIRouter(prefix="/api/ping", tags=["Ping"])


def get_poller(request: Request) -> SegmentPoller:
    return request.app.state.poller


def get_status_cache(request: Request) -> StatusCache:
    return request.app.state.poller.cache


def get_sweeper(request: Request) -> SubnetSweeper:
    return request.app.state.sweeper


def _render(records) -> Dict[str, LivenessResponse]:
    return {ip: LivenessResponse.model_validate(rec) for ip, rec in records.items()}


@router.post("/segment/{segment_id}", response_model=SegmentScanResponse)
async def ping_segment(segment_id: int, poller: SegmentPoller = Depends(get_poller)):
    """Run one scan cycle now and return fresh statuses."""
    cycle = await poller.scan_now(segment_id)
    return {
        "segment_id": cycle.segment_id,
        "segment_name": cycle.segment_name,
        "results": _render(cycle.records),
        "summary": cycle.summary.to_dict(),
        "checked_at": cycle.checked_at,
    }


@router.get("/segment/{segment_id}/latest", response_model=Dict[str, LivenessResponse])
async def latest_for_segment(
    segment_id: int,
    db: AsyncSession = Depends(get_db),
    cache: StatusCache = Depends(get_status_cache),
):
    """Cached status without triggering a scan."""
    await address_space.get_segment(db, segment_id)
    return _render(await cache.get_segment(segment_id))


@router.get("/latest", response_model=Dict[str, LivenessResponse])
async def latest_all(cache: StatusCache = Depends(get_status_cache)):
    return _render(await cache.get_all())


@router.get("/conflicts", response_model=List[LivenessResponse])
async def list_conflicts(
    segment_id: Optional[int] = None,
    cache: StatusCache = Depends(get_status_cache),
):
    return [LivenessResponse.model_validate(rec) for rec in await cache.conflicts(segment_id)]


@router.post("/ip/{ip_id}", response_model=SingleProbeResponse)
async def ping_single_ip(ip_id: int, poller: SegmentPoller = Depends(get_poller)):
    ip, record = await poller.scan_address(ip_id)
    data = LivenessResponse.model_validate(record).model_dump()
    return SingleProbeResponse(**data, ip_id=ip.id, hostname=ip.hostname)


@router.post("/sweep", response_model=SweepResponse)
async def sweep_subnet(payload: SweepRequest, sweeper: SubnetSweeper = Depends(get_sweeper)):
    """Bootstrap sweep of .1-.254; returns only hosts that replied."""
    return await sweeper.sweep(payload.subnet)


# Continuous monitor control

@router.get("/monitor", response_model=MonitorStatus)
async def monitor_status(poller: SegmentPoller = Depends(get_poller)):
    return poller.status()


@router.post("/monitor/select", response_model=MonitorStatus)
async def monitor_select(
    payload: MonitorSelect,
    db: AsyncSession = Depends(get_db),
    poller: SegmentPoller = Depends(get_poller),
):
    await address_space.get_segment(db, payload.segment_id)
    await poller.start(payload.segment_id)
    return poller.status()


@router.post("/monitor/stop", response_model=MonitorStatus)
async def monitor_stop(poller: SegmentPoller = Depends(get_poller)):
    await poller.stop()
    return poller.status()


@router.post("/monitor/visibility", response_model=MonitorStatus)
async def monitor_visibility(payload: VisibilitySignal, poller: SegmentPoller = Depends(get_poller)):
    if payload.state == "hidden":
        poller.background()
    else:
        poller.foreground()
    return poller.status()
