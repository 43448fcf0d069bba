"""
Polling Scheduler
Drives continuous scan cycles (probe -> aggregate -> cache write) for the
selected segment. Each cycle starts as soon as the previous one finishes;
the per-probe timeout is the only throttle.

All polling state (selected segment, per-segment in-flight flags, pause
state) lives on a SegmentPoller instance. Cancellation is cooperative: a
token is checked at the top of every iteration and again before a cycle's
results are committed. A stop lets the in-flight batch finish and commit
but starts nothing after it; a segment switch drops the old loop's results.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ipam.exceptions import CacheWriteFailure, ProbeConfigurationError, SegmentNotFound
from ipam.models.ip_address import IpAddress
from ipam.models.segment import NetworkSegment
from ipam.services import address_space
from ipam.services.liveness import (
    AddressStatus, BlockedPolicy, LivenessSummary, UNKNOWN,
    aggregate, classify, default_blocked_policy,
)
from ipam.services.probe_executor import ProbeExecutor
from ipam.services.status_cache import StatusCache

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 1.0


class CancelToken:
    """Cooperative stop flag for one polling loop.

    ``generation`` is the selection generation the loop was started under.
    """

    def __init__(self, generation: int = 0):
        self.generation = generation
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


@dataclass
class ScanCycle:
    segment_id: int
    in_flight: bool = False
    sequence: int = 0
    future: Optional[asyncio.Future] = None


@dataclass
class CycleResult:
    segment_id: int
    segment_name: str
    sequence: int
    records: Dict[str, AddressStatus]
    summary: LivenessSummary
    checked_at: datetime
    committed: bool = False


@dataclass
class _LoopStats:
    cycles_completed: int = 0
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None
    discarded: int = 0


async def _wait_first(*aws, timeout: Optional[float] = None):
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        await asyncio.wait(tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in tasks:
            if not t.done():
                t.cancel()


def _consume_exception(fut: asyncio.Future):
    if not fut.cancelled():
        fut.exception()


class SegmentPoller:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        executor: Optional[ProbeExecutor] = None,
        cache: Optional[StatusCache] = None,
        blocked_policy: BlockedPolicy = default_blocked_policy,
    ):
        self.session_factory = session_factory
        self.executor = executor or ProbeExecutor()
        self.cache = cache or StatusCache(session_factory)
        self.blocked_policy = blocked_policy

        self._cycles: Dict[int, ScanCycle] = {}
        self._selected: Optional[int] = None
        self._generation = 0
        self._token: Optional[CancelToken] = None
        self._task: Optional[asyncio.Task] = None
        self._foreground = asyncio.Event()
        self._foreground.set()
        self._commit_lock = asyncio.Lock()
        self.stats = _LoopStats()

    # ── State ──────────────────────────────────────────────────────

    @property
    def selected_segment_id(self) -> Optional[int]:
        return self._selected

    @property
    def running(self) -> bool:
        return (
            self._task is not None and not self._task.done()
            and self._token is not None and not self._token.cancelled
        )

    @property
    def paused(self) -> bool:
        return not self._foreground.is_set()

    def in_flight(self, segment_id: int) -> bool:
        cycle = self._cycles.get(segment_id)
        return bool(cycle and cycle.in_flight)

    def status(self) -> dict:
        return {
            "selected_segment_id": self._selected,
            "running": self.running,
            "paused": self.paused,
            "cycles_completed": self.stats.cycles_completed,
            "last_cycle_at": self.stats.last_cycle_at,
            "last_error": self.stats.last_error,
        }

    def _owns(self, segment_id: int, token: Optional[CancelToken]) -> bool:
        """May a cycle run under ``token`` write results for ``segment_id``?

        Ad-hoc scans carry no token and always may. A loop owns its segment
        for as long as the selection generation it started under is current.
        stop() and a restart of the same segment keep the generation, so the
        stopped loop's last cycle still commits; switching to another
        segment bumps it.
        """
        if token is None:
            return True
        return self._selected == segment_id and token.generation == self._generation

    # ── One cycle ──────────────────────────────────────────────────

    async def _load(self, segment_id: int) -> Tuple[NetworkSegment, List[IpAddress], Dict[str, AddressStatus]]:
        async with self.session_factory() as db:
            segment = await address_space.get_segment(db, segment_id)
            addresses = await address_space.segment_addresses(db, segment_id)
        previous = await self.cache.get_segment(segment_id)
        return segment, addresses, previous

    async def _execute(self, segment_id: int, sequence: int, token: Optional[CancelToken]) -> CycleResult:
        segment, addresses, previous = await self._load(segment_id)
        results = await self.executor.probe([a.ip_address for a in addresses])
        records, summary = aggregate(addresses, results, previous, self.blocked_policy)

        cycle = CycleResult(
            segment_id=segment_id,
            segment_name=segment.name,
            sequence=sequence,
            records=records,
            summary=summary,
            checked_at=datetime.now(timezone.utc),
        )

        async with self._commit_lock:
            if not self._owns(segment_id, token):
                self.stats.discarded += 1
                logger.info("Discarding cycle %d for segment %s: no longer selected", sequence, segment_id)
                return cycle
            # Records are created lazily: never-seen silent addresses stay uncached
            await self.cache.put(segment_id, [r for r in records.values() if r.status != UNKNOWN])
            cycle.committed = True

        if summary.conflicts:
            for rec in records.values():
                if rec.has_conflict:
                    logger.warning(
                        "IP CONFLICT detected: %s - current MAC %s, previous MAC %s",
                        rec.ip_address, rec.mac, rec.previous_mac,
                    )
        return cycle

    async def run_cycle(self, segment_id: int, token: Optional[CancelToken] = None) -> Optional[CycleResult]:
        """Run one probe/aggregate/commit cycle for ``segment_id``.

        Returns None without probing when a cycle for the segment is already
        in flight, or when ``token`` says this loop is no longer wanted.
        """
        if token is not None and (token.cancelled or not self._owns(segment_id, token)):
            return None

        cycle = self._cycles.setdefault(segment_id, ScanCycle(segment_id))
        if cycle.in_flight:
            logger.debug("Cycle for segment %s already in flight, skipping", segment_id)
            return None

        cycle.in_flight = True
        cycle.sequence += 1
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        cycle.future = future
        try:
            result = await self._execute(segment_id, cycle.sequence, token)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            cycle.in_flight = False

    async def scan_now(self, segment_id: int) -> CycleResult:
        """Synchronous scan; joins the in-flight cycle for the segment if any."""
        cycle = self._cycles.get(segment_id)
        if cycle and cycle.in_flight and cycle.future is not None:
            return await asyncio.shield(cycle.future)
        return await self.run_cycle(segment_id)

    async def scan_address(self, ip_id: int) -> Tuple[IpAddress, AddressStatus]:
        """Probe a single address and cache its status."""
        async with self.session_factory() as db:
            ip = await address_space.get_address(db, ip_id)
        previous = await self.cache.get_address(ip.ip_address)
        results = await self.executor.probe([ip.ip_address])
        record = classify(ip, results[0], previous, self.blocked_policy, datetime.now(timezone.utc))
        if record.status != UNKNOWN:
            await self.cache.put_address(ip.segment_id, record)
        return ip, record

    async def scan_all_segments(self):
        """Refresh every segment once, skipping the one the loop is polling."""
        async with self.session_factory() as db:
            result = await db.execute(select(NetworkSegment.id).order_by(NetworkSegment.id))
            segment_ids = result.scalars().all()

        for segment_id in segment_ids:
            if self.running and segment_id == self._selected:
                continue
            try:
                await self.scan_now(segment_id)
            except ProbeConfigurationError as e:
                logger.error("Full scan aborted: %s", e)
                return
            except SegmentNotFound:
                continue
            except Exception as e:
                logger.warning("Background scan of segment %s failed: %s", segment_id, e)

    # ── Continuous loop ────────────────────────────────────────────

    async def _loop(self, segment_id: int, token: CancelToken):
        logger.info("Continuous monitoring started for segment %s", segment_id)
        while not token.cancelled:
            if self.paused:
                await _wait_first(self._foreground.wait(), token.wait())
                continue

            cycle = self._cycles.get(segment_id)
            if cycle and cycle.in_flight and cycle.future is not None:
                # Another caller is scanning this segment; ride along
                await asyncio.wait([cycle.future])
                continue

            try:
                result = await self.run_cycle(segment_id, token)
            except ProbeConfigurationError as e:
                self.stats.last_error = str(e)
                logger.error("Monitoring of segment %s stopped: %s", segment_id, e)
                break
            except SegmentNotFound:
                logger.warning("Segment %s disappeared, monitoring stopped", segment_id)
                break
            except CacheWriteFailure as e:
                self.stats.last_error = str(e)
                await _wait_first(token.wait(), timeout=ERROR_BACKOFF_SECONDS)
                continue
            except Exception as e:
                self.stats.last_error = str(e)
                logger.exception("Scan cycle for segment %s failed", segment_id)
                await _wait_first(token.wait(), timeout=ERROR_BACKOFF_SECONDS)
                continue

            if result is not None and result.committed:
                self.stats.cycles_completed += 1
                self.stats.last_cycle_at = result.checked_at
                self.stats.last_error = None
            # Yield to the event loop, then go straight into the next cycle
            await asyncio.sleep(0)
        logger.info("Continuous monitoring stopped for segment %s", segment_id)

    def _select(self, segment_id: int) -> Optional[int]:
        previous = self._selected
        if previous != segment_id:
            self._generation += 1
        self._selected = segment_id
        return previous

    def _spawn(self, segment_id: int):
        self._token = CancelToken(self._generation)
        self._task = asyncio.create_task(
            self._loop(segment_id, self._token), name=f"segment-poller-{segment_id}",
        )

    async def start(self, segment_id: Optional[int] = None) -> bool:
        """Idle -> Running. Starting the segment that is already running is a no-op."""
        segment_id = segment_id if segment_id is not None else self._selected
        if segment_id is None:
            return False
        if self.running:
            if self._selected == segment_id:
                return False
            await self.select_segment(segment_id)
            return True
        async with self._commit_lock:
            self._select(segment_id)
        self._spawn(segment_id)
        return True

    async def stop(self, segment_id: Optional[int] = None) -> bool:
        """Let the in-flight cycle finish; schedule nothing after it."""
        if segment_id is not None and segment_id != self._selected:
            return False
        if self._token is None or self._token.cancelled:
            return False
        async with self._commit_lock:
            self._token.cancel()
        return True

    async def select_segment(self, segment_id: int):
        """Switch monitoring to ``segment_id``.

        Once this returns, no result computed by a loop for another segment
        will be written to the cache.
        """
        async with self._commit_lock:
            if self._token is not None:
                self._token.cancel()
            previous = self._select(segment_id)
        if previous != segment_id:
            logger.info("Monitoring switched from segment %s to %s", previous, segment_id)
        self._spawn(segment_id)

    def background(self):
        """Pause the loop (client hidden); cached status is kept."""
        self._foreground.clear()

    def foreground(self):
        self._foreground.set()

    async def close(self):
        await self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
