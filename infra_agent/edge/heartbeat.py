"""
Heartbeat Reporter.

Assembles the per-tick status report, delivers it to the control plane
and checks whether a newer agent has been published.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..config import Settings
from .collectors.system import HealthSampler
from .reconciler import ConfigReconciler
from .sender import ControlPlaneClient
from .state import AgentState

logger = logging.getLogger(__name__)

RFC3339_UTC = "%Y-%m-%dT%H:%M:%SZ"


def normalize_version(version: str) -> str:
    return version.strip().removeprefix("v")


class Heartbeater:
    """Sends one heartbeat per tick and triggers updates."""

    def __init__(
        self,
        client: ControlPlaneClient,
        reconciler: ConfigReconciler,
        sampler: HealthSampler,
        state: AgentState,
        agent_version: str,
        on_update: Optional[Callable[[str], None]] = None,
    ):
        """Initialize the heartbeater."""
        self.client = client
        self.reconciler = reconciler
        self.sampler = sampler
        self.state = state
        self.agent_version = agent_version
        self.on_update = on_update

        self._last_timestamp: Optional[datetime] = None

    def _timestamp(self) -> str:
        # Never report a time earlier than the previous heartbeat
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now.strftime(RFC3339_UTC)

    async def build_payload(self, settings: Settings) -> dict:
        """Assemble the heartbeat body for the current tick."""
        result = self.state.last_result
        snapshot = await self.sampler.collect(settings.node_type, last_reload_ok=result.ok)

        return {
            "node_id": settings.node_id,
            "git_sha": await self.reconciler.revision(),
            "agent_version": self.agent_version,
            "caddy_version": await self.reconciler.proxy_version(),
            "last_reload_ok": result.ok,
            "last_error": result.error_detail,
            "node_type": settings.node_type.value,
            "is_healthy": snapshot.healthy,
            "health_summary": snapshot.summary,
            "health_data": snapshot.to_health_data(),
            "timestamp": self._timestamp(),
        }

    async def tick(self, settings: Settings) -> None:
        """Send the heartbeat, then check for a newer agent."""
        payload = await self.build_payload(settings)

        result = await self.client.send_heartbeat(payload)
        if not result.success:
            logger.warning(f"Heartbeat failed: {result.error}")
        elif not payload["is_healthy"]:
            logger.info(f"Heartbeat sent, node unhealthy: {payload['health_summary']}")
        else:
            logger.debug("Heartbeat sent")

        await self.check_for_update()

    def update_available(self, latest: str) -> bool:
        """A published version different from the running one."""
        if not latest:
            return False
        return normalize_version(latest) != normalize_version(self.agent_version)

    async def check_for_update(self) -> Optional[str]:
        """Return the newer version, after handing it to ``on_update``."""
        latest = await self.client.latest_version()
        if not self.update_available(latest):
            return None

        logger.info(f"Triggering update {self.agent_version} -> {latest}")
        if self.on_update is not None:
            self.on_update(latest)
        return latest
