"""
Probe Executor
Fans out one reachability probe per address, each under its own hard
timeout, and joins the whole batch before returning.
"""
import asyncio
import logging
import math
import platform
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional

from ipam.config import settings
from ipam.exceptions import ProbeConfigurationError, ProbeTransportError

logger = logging.getLogger(__name__)

IS_WINDOWS = platform.system().lower() == "windows"

MAC_RE = re.compile(r"([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}")
ARP_LOOKUP_TIMEOUT = 2.0

_UNREACHABLE_MARKERS = ("unreachable", "destination host", "network is unreachable")
_PRIVILEGE_MARKERS = ("operation not permitted", "permission denied")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProbeResult:
    address: str
    alive: bool
    response_time: Optional[float] = None  # ms
    mac: Optional[str] = None
    filtered: bool = False  # ICMP silent, but a TCP port answered
    error: Optional[str] = None
    systemic: bool = False
    checked_at: datetime = field(default_factory=_utcnow)


Prober = Callable[[str, float], Awaitable[ProbeResult]]


# ── Output parsing ─────────────────────────────────────────────────


def parse_ping_output(output: str, windows: bool = IS_WINDOWS) -> Optional[float]:
    """Return the round-trip time in ms, or None if no reply was reported."""
    if windows:
        # "Minimum = 1ms, Maximum = 3ms, Average = 2ms"
        avg_match = re.search(r"Average\s*=\s*(\d+)ms", output)
        if avg_match:
            return float(avg_match.group(1))
        # "Reply from 10.0.0.1: bytes=32 time<1ms TTL=64"
        time_match = re.search(r"time[=<]\s*(\d+(?:\.\d+)?)\s*ms", output)
        return float(time_match.group(1)) if time_match else None

    # Linux: "rtt min/avg/max/mdev = 0.123/0.456/0.789/0.123 ms"
    # BusyBox: "round-trip min/avg/max = 0.123/0.456/0.789 ms"
    rtt_match = re.search(r"(?:rtt|round-trip)\s+min/avg/max\S*\s*=\s*[\d.]+/([\d.]+)/", output)
    if rtt_match:
        return float(rtt_match.group(1))
    time_match = re.search(r"time[=<]\s*(\d+(?:\.\d+)?)\s*ms", output)
    return float(time_match.group(1)) if time_match else None


def is_unreachable(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _UNREACHABLE_MARKERS)


def parse_mac(output: str, address: str) -> Optional[str]:
    """Extract the MAC for ``address`` from `ip neigh` / `arp` output.

    Returned upper-case with colons; entries without a lladdr yield None.
    """
    for line in output.splitlines():
        tokens = [t.strip("()") for t in line.split()]
        if address not in tokens:
            continue
        match = MAC_RE.search(line)
        if match:
            return match.group(0).upper().replace("-", ":")
    return None


# ── Default ICMP prober ────────────────────────────────────────────


def build_ping_command(address: str, timeout: float) -> List[str]:
    if IS_WINDOWS:
        return ["ping", "-n", "1", "-w", str(max(1, int(timeout * 1000))), address]
    return ["ping", "-c", "1", "-n", "-W", str(max(1, math.ceil(timeout))), address]


async def _run(cmd: List[str]) -> tuple:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise ProbeTransportError(f"{cmd[0]} executable not found", systemic=True)
    except PermissionError as e:
        raise ProbeTransportError(f"not permitted to run {cmd[0]}: {e}", systemic=True)

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        raise
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def lookup_mac(address: str) -> Optional[str]:
    """Resolve a MAC from the local neighbour table; None if unknown."""
    commands = [["arp", "-a", address]] if IS_WINDOWS else [["ip", "neigh", "show", address], ["arp", "-n", address]]
    for cmd in commands:
        try:
            _, stdout, _ = await asyncio.wait_for(_run(cmd), timeout=ARP_LOOKUP_TIMEOUT)
        except (ProbeTransportError, asyncio.TimeoutError):
            continue
        mac = parse_mac(stdout, address)
        if mac:
            return mac
    return None


async def tcp_probe(address: str, ports: Iterable[int], timeout: float) -> bool:
    """True if any of ``ports`` accepts a TCP connection within ``timeout``."""

    async def _try(port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    results = await asyncio.gather(*[_try(p) for p in ports])
    return any(results)


def icmp_extra_budget(timeout: float) -> float:
    """Seconds icmp_probe may spend after the ICMP step: TCP fallback plus ARP."""
    extra = 0.0
    if settings.PING_TCP_FALLBACK:
        extra += timeout
    if settings.ARP_LOOKUP_ENABLED:
        extra += ARP_LOOKUP_TIMEOUT
    return extra


async def icmp_probe(address: str, timeout: float) -> ProbeResult:
    """One ICMP echo via the system ping, plus MAC resolution for live hosts.

    Only the echo itself is held to ``timeout``; a ping still running at the
    deadline counts as silent, so the TCP fallback gets its own window.
    """
    try:
        returncode, stdout, stderr = await asyncio.wait_for(
            _run(build_ping_command(address, timeout)), timeout=timeout,
        )
    except asyncio.TimeoutError:
        returncode, stdout, stderr = 1, "", ""

    if returncode not in (0, 1) and any(m in stderr.lower() for m in _PRIVILEGE_MARKERS):
        raise ProbeTransportError(stderr.strip() or "ping not permitted", systemic=True)

    rtt = parse_ping_output(stdout)
    alive = returncode == 0 and not (IS_WINDOWS and is_unreachable(stdout))
    result = ProbeResult(address=address, alive=alive, response_time=rtt if alive else None)

    if not alive and settings.PING_TCP_FALLBACK and not is_unreachable(stdout):
        result.filtered = await tcp_probe(address, settings.tcp_probe_ports, timeout)

    if (alive or result.filtered) and settings.ARP_LOOKUP_ENABLED:
        try:
            result.mac = await asyncio.wait_for(lookup_mac(address), timeout=ARP_LOOKUP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"MAC lookup for {address} timed out")
    return result


# ── Executor ───────────────────────────────────────────────────────


class ProbeExecutor:
    """Runs a batch of probes concurrently and returns once all have finished.

    Every probe resolves to a ProbeResult; timeouts and transport errors
    become ``alive=False``. Only a batch in which every probe failed for a
    systemic reason raises, as ProbeConfigurationError.

    Each probe is cut off at ``timeout + extra_budget(timeout)``. The default
    ICMP prober enforces the plain timeout on the echo itself and gets
    headroom for its TCP fallback and MAC lookup; custom probers get none
    unless ``extra_budget`` is given.
    """

    def __init__(
        self,
        prober: Optional[Prober] = None,
        concurrency: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        extra_budget: Optional[Callable[[float], float]] = None,
    ):
        self.prober = prober or icmp_probe
        self.concurrency = concurrency or settings.PING_CONCURRENCY
        self.timeout_ms = timeout_ms or settings.PING_TIMEOUT_MS
        if extra_budget is None and prober is None:
            extra_budget = icmp_extra_budget
        self.extra_budget = extra_budget

    def deadline(self, timeout: float) -> float:
        """Hard cut-off in seconds for one probe with the given timeout."""
        return timeout + (self.extra_budget(timeout) if self.extra_budget else 0.0)

    async def _probe_one(self, address: str, timeout: float) -> ProbeResult:
        try:
            return await asyncio.wait_for(self.prober(address, timeout), timeout=self.deadline(timeout))
        except asyncio.TimeoutError:
            return ProbeResult(address=address, alive=False, error="timeout")
        except ProbeTransportError as e:
            return ProbeResult(address=address, alive=False, error=str(e), systemic=e.systemic)
        except Exception as e:
            logger.debug(f"Probe {address} error: {e}")
            return ProbeResult(address=address, alive=False, error=str(e))

    async def probe(self, addresses: Iterable[str], timeout_ms: Optional[int] = None) -> List[ProbeResult]:
        batch = list(dict.fromkeys(addresses))
        if not batch:
            return []

        timeout = (timeout_ms or self.timeout_ms) / 1000
        semaphore = asyncio.Semaphore(self.concurrency)
        queue: asyncio.Queue = asyncio.Queue()

        async def worker(address: str):
            async with semaphore:
                result = await self._probe_one(address, timeout)
            queue.put_nowait(result)

        tasks = [asyncio.create_task(worker(a)) for a in batch]
        results: List[ProbeResult] = []
        try:
            while len(results) < len(batch):
                results.append(await queue.get())
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if all(r.systemic for r in results):
            raise ProbeConfigurationError(
                f"Cannot send reachability probes: {results[0].error}. "
                "Check that ping is installed and the service may send ICMP."
            )

        alive = sum(1 for r in results if r.alive)
        logger.debug("Probed %d addresses: %d alive", len(results), alive)
        return results
