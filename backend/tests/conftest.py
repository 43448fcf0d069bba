"""Shared fixtures for the ipam test suite."""

import asyncio
import os
from typing import Dict, List, Optional, Set, Tuple

# Must be set before ipam.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FULL_SCAN_INTERVAL_SECONDS", "0")

import httpx
import pytest

from ipam.database import get_db, init_db, make_engine, make_session_factory
from ipam.exceptions import ProbeTransportError
from ipam.schemas.segment import SegmentCreate
from ipam.services import address_space
from ipam.services.poller import SegmentPoller
from ipam.services.probe_executor import ProbeExecutor, ProbeResult
from ipam.services.subnet_sweep import SubnetSweeper


class FakeProber:
    """Scriptable stand-in for the ICMP prober.

    Addresses registered with ``reply`` answer with the given RTT and MAC,
    everything else stays silent. ``gate`` holds every probe until it is set.
    """

    def __init__(self):
        self.replies: Dict[str, Tuple[float, Optional[str]]] = {}
        self.filtered: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    def reply(self, address: str, rtt: float = 1.0, mac: Optional[str] = None):
        self.replies[address] = (rtt, mac)

    def silence(self, address: str):
        self.replies.pop(address, None)

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    async def __call__(self, address: str, timeout: float) -> ProbeResult:
        self.calls.append(address)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if address in self.replies:
                rtt, mac = self.replies[address]
                return ProbeResult(address=address, alive=True, response_time=rtt, mac=mac)
            return ProbeResult(address=address, alive=False, filtered=address in self.filtered)
        finally:
            self.active -= 1


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ── database ──────────────────────────────────────────────────────────


@pytest.fixture()
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'ipam.db'}")
    await init_db(bind=eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def make_segment(session_factory):
    """Factory fixture creating a segment (and its pool) in its own session."""

    async def _make(cidr: str, name: str = "lab", **kwargs):
        async with session_factory() as session:
            segment, _ = await address_space.create_segment(
                session, SegmentCreate(name=name, cidr=cidr, **kwargs)
            )
        return segment

    return _make


# ── probing ───────────────────────────────────────────────────────────


@pytest.fixture()
def fake_prober():
    return FakeProber()


@pytest.fixture()
def executor(fake_prober):
    return ProbeExecutor(prober=fake_prober, concurrency=254, timeout_ms=5000)


@pytest.fixture()
async def poller(session_factory, executor):
    p = SegmentPoller(session_factory, executor=executor)
    yield p
    await p.close()


@pytest.fixture()
def systemic_error():
    return ProbeTransportError("ping executable not found", systemic=True)


# ── HTTP ──────────────────────────────────────────────────────────────


@pytest.fixture()
async def client(session_factory, poller, executor):
    """HTTPX client over the ASGI app; lifespan is not run."""
    from ipam.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.state.poller = poller
    app.state.sweeper = SubnetSweeper(executor=executor)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture()
def until():
    return wait_until
