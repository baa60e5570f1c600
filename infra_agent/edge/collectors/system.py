"""
Host Health Sampler.

Reads disk, memory, load and uptime and derives the healthy verdict
reported in every heartbeat.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

import psutil

from ...config import NodeRole

logger = logging.getLogger(__name__)

DISK_USAGE_CRITICAL = 90.0
MEMORY_USAGE_CRITICAL = 95.0
CPU_LOAD_CRITICAL = 98.0

NOMINAL_SUMMARY = "All systems nominal"

# check name -> operator-facing reason, in reporting order
CHECK_REASONS = {
    "disk": "Disk space critical",
    "memory": "Memory usage critical",
    "cpu": "CPU load critical",
    "caddy": "Caddy reload failed",
}


def format_uptime(seconds: float) -> str:
    """Render uptime as ``1d 2h 3m``, dropping leading zero units."""
    seconds = int(max(seconds, 0))
    days, seconds = divmod(seconds, 24 * 3600)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60

    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


@dataclass
class HealthSnapshot:
    """Point-in-time host health."""
    disk_used_pct: float
    mem_used_pct: float
    cpu_load_1m: float
    uptime_seconds: float
    role: NodeRole = NodeRole.SERVER
    last_reload_ok: bool = True

    @property
    def checks(self) -> dict[str, bool]:
        """Breached checks; True means the check failed."""
        checks = {
            "disk": self.disk_used_pct >= DISK_USAGE_CRITICAL,
            "memory": self.mem_used_pct >= MEMORY_USAGE_CRITICAL,
            "cpu": self.cpu_load_1m >= CPU_LOAD_CRITICAL,
        }
        if self.role == NodeRole.GATEWAY:
            checks["caddy"] = not self.last_reload_ok
        return checks

    @property
    def healthy(self) -> bool:
        return not any(self.checks.values())

    @property
    def summary(self) -> str:
        reasons = [CHECK_REASONS[name] for name, failed in self.checks.items() if failed]
        return ", ".join(reasons) if reasons else NOMINAL_SUMMARY

    @property
    def uptime(self) -> str:
        return format_uptime(self.uptime_seconds)

    def to_health_data(self) -> dict:
        """The ``health_data`` object of the heartbeat payload."""
        data = {
            "disk_usage": self.disk_used_pct,
            "mem_usage": self.mem_used_pct,
            "cpu_usage": self.cpu_load_1m,
            "uptime": self.uptime,
        }
        if self.role == NodeRole.GATEWAY:
            data["caddy_ok"] = self.last_reload_ok
        return data


class HealthSampler:
    """Samples host health using psutil."""

    def __init__(self, disk_path: str = "/"):
        """Initialize the sampler."""
        self.disk_path = disk_path

    async def collect(self, role: NodeRole, last_reload_ok: bool = True) -> HealthSnapshot:
        """Sample without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.sample, role, last_reload_ok)

    def sample(self, role: NodeRole, last_reload_ok: bool = True) -> HealthSnapshot:
        """Take a snapshot. A failed read reports 0 rather than raising."""
        return HealthSnapshot(
            disk_used_pct=self._read("disk usage", self._disk_usage),
            mem_used_pct=self._read("memory usage", self._memory_usage),
            cpu_load_1m=self._read("load average", self._load_1m),
            uptime_seconds=self._read("uptime", self._uptime),
            role=NodeRole(role),
            last_reload_ok=last_reload_ok,
        )

    def _read(self, name: str, reader: Callable[[], float]) -> float:
        try:
            return float(reader())
        except Exception as e:
            logger.debug(f"Failed to read {name}: {e}")
            return 0.0

    def _disk_usage(self) -> float:
        return psutil.disk_usage(self.disk_path).percent

    def _memory_usage(self) -> float:
        return psutil.virtual_memory().percent

    def _load_1m(self) -> float:
        return psutil.getloadavg()[0]

    def _uptime(self) -> float:
        return time.time() - psutil.boot_time()
