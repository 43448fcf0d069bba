from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from ipam.database import get_db
from ipam.services import address_space
from ipam.schemas.segment import (
    SegmentCreate, SegmentUpdate, SegmentResponse, SegmentCreated, SegmentStats, SegmentOverview,
)

router = APIRouter(prefix="/api/segments", tags=["Segments"])


def _with_stats(segment, stats: dict) -> SegmentResponse:
    s = SegmentResponse.model_validate(segment)
    s.stats = SegmentStats(**stats)
    return s


@router.get("/", response_model=List[SegmentResponse])
async def list_segments(search: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    rows = await address_space.list_segments(db, search)
    return [_with_stats(segment, stats) for segment, stats in rows]


@router.post("/", response_model=SegmentCreated, status_code=201)
async def create_segment(payload: SegmentCreate, db: AsyncSession = Depends(get_db)):
    segment, generated = await address_space.create_segment(db, payload)
    data = SegmentResponse.model_validate(segment).model_dump()
    return SegmentCreated(**data, ips_generated=generated)


@router.get("/stats", response_model=SegmentOverview)
async def get_segment_stats(db: AsyncSession = Depends(get_db)):
    """Totals across all segments with a per-status breakdown."""
    return await address_space.segment_overview(db)


@router.get("/{segment_id}", response_model=SegmentResponse)
async def get_segment(segment_id: int, db: AsyncSession = Depends(get_db)):
    segment = await address_space.get_segment(db, segment_id)
    return _with_stats(segment, await address_space.segment_stats(db, segment_id))


@router.put("/{segment_id}", response_model=SegmentResponse)
async def update_segment(segment_id: int, payload: SegmentUpdate, db: AsyncSession = Depends(get_db)):
    segment = await address_space.update_segment(db, segment_id, payload)
    return _with_stats(segment, await address_space.segment_stats(db, segment_id))


@router.delete("/{segment_id}")
async def delete_segment(segment_id: int, force: bool = False, db: AsyncSession = Depends(get_db)):
    removed = await address_space.delete_segment(db, segment_id, force=force)
    return {"message": "Segment and all its IPs deleted successfully", "ips_deleted": removed}
