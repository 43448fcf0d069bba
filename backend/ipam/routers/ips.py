from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from ipam.database import get_db
from ipam.models.ip_address import ADDRESS_STATUSES
from ipam.services import address_space
from ipam.schemas.ip_address import (
    IpAddressResponse, IpAddressPage, IpAssign, IpUpdate, IpStatusOption,
)

router = APIRouter(prefix="/api/ips", tags=["IP Addresses"])


@router.get("/", response_model=IpAddressPage)
async def list_ips(
    segment_id: Optional[int] = None,
    status: Optional[str] = Query(default=None, pattern="^(" + "|".join(ADDRESS_STATUSES) + ")$"),
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    rows, pagination = await address_space.list_addresses(
        db, segment_id=segment_id, status=status, search=search, page=page, limit=limit,
    )
    return {"data": rows, "pagination": pagination}


@router.get("/statuses", response_model=List[IpStatusOption])
async def list_statuses():
    return address_space.IP_STATUS_OPTIONS


@router.get("/find-free", response_model=List[IpAddressResponse])
async def find_free_ips(
    segment_id: int,
    count: int = Query(default=10, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    return await address_space.find_free(db, segment_id, count)


@router.get("/{ip_id}", response_model=IpAddressResponse)
async def get_ip(ip_id: int, db: AsyncSession = Depends(get_db)):
    return await address_space.get_address(db, ip_id)


@router.put("/{ip_id}", response_model=IpAddressResponse)
async def update_ip(ip_id: int, payload: IpUpdate, db: AsyncSession = Depends(get_db)):
    return await address_space.update_address(db, ip_id, payload)


@router.post("/{ip_id}/assign", response_model=IpAddressResponse)
async def assign_ip(ip_id: int, payload: IpAssign, db: AsyncSession = Depends(get_db)):
    return await address_space.assign_address(db, ip_id, payload)


@router.post("/{ip_id}/release", response_model=IpAddressResponse)
async def release_ip(ip_id: int, db: AsyncSession = Depends(get_db)):
    return await address_space.release_address(db, ip_id)
