"""
infra-agent - Main Daemon.

Runs the fixed-interval reconcile/heartbeat loop next to the journal
shipper, and supervises at most one self-update at a time.
"""

import asyncio
import logging
import signal
import time
from typing import Callable, Optional

from .. import __version__
from ..config import NodeRole, Settings
from ..errors import ConfigError, UpdateError
from .collectors import HealthSampler, LogShipper
from .heartbeat import Heartbeater
from .reconciler import ConfigReconciler
from .sender import ControlPlaneClient, LogStream
from .state import AgentState
from .updater import SelfUpdater

logger = logging.getLogger(__name__)


class AgentRuntime:
    """
    Main agent daemon.

    Owns the shared state and every long-lived task. Ticks run strictly
    one after another: reconciliation (gateways only) completes before
    the heartbeat that reports it.
    """

    def __init__(
        self,
        settings_loader: Callable[[], Settings] = Settings.load,
        agent_version: str = __version__,
        state: Optional[AgentState] = None,
        reconciler: Optional[ConfigReconciler] = None,
        sampler: Optional[HealthSampler] = None,
        client: Optional[ControlPlaneClient] = None,
        log_stream: Optional[LogStream] = None,
        updater: Optional[SelfUpdater] = None,
    ):
        """Initialize the runtime from the first settings snapshot."""
        self.settings_loader = settings_loader
        self.settings = settings_loader()
        self.agent_version = agent_version
        self.state = state or AgentState()

        self.reconciler = reconciler or ConfigReconciler(
            self.state,
            config_dir=self.settings.config_dir,
            caddyfile=self.settings.caddyfile,
        )
        self.sampler = sampler or HealthSampler()
        self.client = client or ControlPlaneClient(
            self.settings.control_url,
            agent_version,
            timeout=self.settings.http_timeout,
        )
        self.log_stream = log_stream or LogStream(
            self.settings.control_url,
            self.settings.node_id,
            connect_timeout=self.settings.http_timeout,
        )
        self.updater = updater or SelfUpdater(
            service_name=self.settings.service_name,
            release_url_template=self.settings.release_url_template,
            timeout=self.settings.download_timeout,
            on_restart_failed=self._on_restart_failed,
        )
        self.heartbeater = Heartbeater(
            self.client,
            self.reconciler,
            self.sampler,
            self.state,
            agent_version,
            on_update=self.request_update,
        )
        self.shipper = LogShipper(self.log_stream)

        # State
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._update_task: Optional[asyncio.Task] = None

    @property
    def update_in_progress(self) -> bool:
        return self._update_task is not None and not self._update_task.done()

    def _check_identity(self):
        if not self.settings.node_id:
            raise ConfigError(
                "node-id is required. Set it with: infra-agent config set node-id <name>, "
                "pass --node-id, or set INFRA_NODE_ID."
            )

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or a platform without signal support
                pass

    async def start(self):
        """Start the agent and run until stopped."""
        self._check_identity()
        logger.info(f"infra-agent {self.agent_version} starting, node: {self.settings.node_id}")
        logger.info(f"Control plane: {self.settings.control_url}")

        self._running = True
        self._install_signal_handlers()

        if self.settings.node_type == NodeRole.GATEWAY:
            await self.reconciler.reconcile()

        self._tasks = [
            asyncio.create_task(self.shipper.run()),
            asyncio.create_task(self._tick_loop()),
        ]

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Agent tasks cancelled")
        finally:
            self._running = False
            for task in self._tasks:
                task.cancel()
            await self._close()

    async def stop(self):
        """Stop the agent; ``start()`` closes connections on its way out."""
        if not self._running:
            return
        logger.info("Stopping infra-agent...")
        self._running = False

        for task in self._tasks:
            task.cancel()

    async def _close(self):
        await self.client.close()
        await self.log_stream.close()
        logger.info("infra-agent stopped")

    async def _tick_loop(self):
        """Fixed-period loop; a slow tick delays the next one."""
        while self._running:
            started = time.monotonic()
            await self.tick()
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(self.settings.tick_interval - elapsed, 0))

    def _reload_settings(self) -> Settings:
        try:
            settings = self.settings_loader()
        except ConfigError as e:
            logger.warning(f"Keeping previous configuration: {e}")
            return self.settings

        self._apply_settings(settings)
        return settings

    def _apply_settings(self, settings: Settings):
        """Make the snapshot current for every component, not just the tick."""
        previous, self.settings = self.settings, settings
        if settings.control_url != previous.control_url:
            logger.info(f"Control plane changed: {previous.control_url} -> {settings.control_url}")
        self.client.retarget(settings.control_url)
        self.log_stream.retarget(settings.control_url, settings.node_id)
        self.reconciler.retarget(settings.config_dir, settings.caddyfile)

    async def tick(self):
        """One scheduling round: reconcile if needed, then heartbeat."""
        settings = self._reload_settings()
        try:
            if settings.node_type == NodeRole.GATEWAY and settings.auto_pull:
                await self.reconciler.reconcile()
            await self.heartbeater.tick(settings)
        except Exception as e:
            logger.error(f"Tick error: {e}", exc_info=True)

    def request_update(self, version: str) -> bool:
        """Start a detached self-update unless one is already running."""
        if self.update_in_progress:
            logger.debug(f"Update already in progress, ignoring {version}")
            return False
        self._update_task = asyncio.create_task(self._run_update(version))
        return True

    async def _run_update(self, version: str):
        try:
            await self.updater.self_update(version)
        except UpdateError as e:
            logger.error(f"Update to {version} failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected error updating to {version}: {e}", exc_info=True)

    def _on_restart_failed(self):
        # Exit and let the supervisor start the replaced binary
        logger.warning("Exiting so the supervisor restarts the new binary")
        asyncio.create_task(self.stop())


def run_agent(**overrides):
    """Run the agent with CLI overrides applied on every settings reload."""
    runtime = AgentRuntime(settings_loader=lambda: Settings.load(**overrides))

    try:
        asyncio.run(runtime.start())
    except KeyboardInterrupt:
        pass
