"""
Status Cache
Durable latest-known liveness per address. A segment's records are replaced
as a whole inside one transaction, so readers see either the previous cycle
or the new one, never a mix.
"""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, delete, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ipam.exceptions import CacheWriteFailure
from ipam.models.liveness import LivenessRecord
from ipam.services.liveness import AddressStatus

logger = logging.getLogger(__name__)


def _to_status(row: LivenessRecord) -> AddressStatus:
    return AddressStatus(
        ip_address=row.ip_address,
        status=row.status,
        response_time=row.response_time,
        mac=row.mac_address,
        previous_mac=row.previous_mac,
        has_conflict=bool(row.has_conflict),
        checked_at=row.checked_at,
        ip_id=row.ip_id,
    )


def _to_row(segment_id: int, rec: AddressStatus) -> dict:
    return {
        "ip_id": rec.ip_id,
        "segment_id": segment_id,
        "ip_address": rec.ip_address,
        "status": rec.status,
        "response_time": rec.response_time,
        "mac_address": rec.mac,
        "previous_mac": rec.previous_mac,
        "has_conflict": rec.has_conflict,
        "checked_at": rec.checked_at,
    }


class StatusCache:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_segment(self, segment_id: int) -> Dict[str, AddressStatus]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(LivenessRecord).where(LivenessRecord.segment_id == segment_id)
            )
            return {row.ip_address: _to_status(row) for row in result.scalars().all()}

    async def get_address(self, address: str) -> Optional[AddressStatus]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(LivenessRecord).where(LivenessRecord.ip_address == address)
            )
            row = result.scalar_one_or_none()
            return _to_status(row) if row else None

    async def get_all(self) -> Dict[str, AddressStatus]:
        async with self.session_factory() as db:
            result = await db.execute(select(LivenessRecord))
            return {row.ip_address: _to_status(row) for row in result.scalars().all()}

    async def conflicts(self, segment_id: Optional[int] = None) -> List[AddressStatus]:
        query = select(LivenessRecord).where(LivenessRecord.has_conflict == True)  # noqa: E712
        if segment_id is not None:
            query = query.where(LivenessRecord.segment_id == segment_id)
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(LivenessRecord.checked_at.desc()))
            return [_to_status(row) for row in result.scalars().all()]

    async def put(self, segment_id: int, records: Iterable[AddressStatus]) -> None:
        """Replace every cached record of ``segment_id`` with ``records``."""
        rows = [_to_row(segment_id, rec) for rec in records]
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    await db.execute(delete(LivenessRecord).where(LivenessRecord.segment_id == segment_id))
                    if rows:
                        await db.execute(insert(LivenessRecord), rows)
            except SQLAlchemyError as e:
                logger.warning("Status cache write for segment %s failed: %s", segment_id, e)
                raise CacheWriteFailure(f"Could not persist liveness for segment {segment_id}: {e}")

    async def put_address(self, segment_id: int, record: AddressStatus) -> None:
        """Insert or overwrite the record of a single address."""
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    await db.execute(delete(LivenessRecord).where(LivenessRecord.ip_address == record.ip_address))
                    await db.execute(insert(LivenessRecord), [_to_row(segment_id, record)])
            except SQLAlchemyError as e:
                logger.warning("Status cache write for %s failed: %s", record.ip_address, e)
                raise CacheWriteFailure(f"Could not persist liveness for {record.ip_address}: {e}")
