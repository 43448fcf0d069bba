"""
Subnet Sweep Service
Bootstrapping tool: pings .1 - .254 of a /24 with a short timeout and
reports the hosts that replied, for seeding a segment's known hosts.
Independent of the continuous per-segment monitor.
"""
import ipaddress
import logging
from typing import Any, Dict, Optional

from ipam.config import settings
from ipam.exceptions import InvalidAddress, SweepInProgress
from ipam.services.probe_executor import ProbeExecutor

logger = logging.getLogger(__name__)


def sweep_targets(subnet: str) -> list:
    """``"192.168.1"`` -> ``["192.168.1.1", ..., "192.168.1.254"]``."""
    parts = subnet.strip().rstrip(".").split(".")
    if len(parts) != 3:
        raise InvalidAddress(f"Expected the first three octets of a subnet, got {subnet!r}")
    try:
        base = ipaddress.IPv4Address(".".join(parts + ["0"]))
    except ValueError:
        raise InvalidAddress(f"Invalid subnet prefix: {subnet!r}")
    return [str(base + i) for i in range(1, 255)]


class SubnetSweeper:
    def __init__(self, executor: Optional[ProbeExecutor] = None):
        self.executor = executor or ProbeExecutor(timeout_ms=settings.SWEEP_TIMEOUT_MS)
        self._scanning = False

    @property
    def scanning(self) -> bool:
        return self._scanning

    async def sweep(self, subnet: str) -> Dict[str, Any]:
        targets = sweep_targets(subnet)
        if self._scanning:
            raise SweepInProgress("A subnet sweep is already in progress")

        self._scanning = True
        prefix = ".".join(targets[0].split(".")[:3])
        logger.info(f"Starting subnet sweep for {prefix}.x")
        try:
            results = await self.executor.probe(targets)
        finally:
            self._scanning = False

        hosts = sorted(
            (r for r in results if r.alive),
            key=lambda r: int(ipaddress.IPv4Address(r.address)),
        )
        logger.info(f"Subnet sweep {prefix}.x complete: {len(hosts)} hosts replied")
        return {
            "subnet": prefix,
            "scanned": len(targets),
            "hosts": [
                {"ip": r.address, "response_time": r.response_time, "mac": r.mac}
                for r in hosts
            ],
        }
