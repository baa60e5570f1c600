"""
Config Reconciler.

Brings the local Caddy configuration in line with its git remote:
fast-forward pull, validate, then reload. The previous configuration
keeps serving whenever any step fails.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..utils.process import CommandRunner, run_command
from .state import AgentState, ReconciliationResult

logger = logging.getLogger(__name__)

UP_TO_DATE_MARKERS = ("Already up to date", "Already up-to-date")
UNKNOWN_REVISION = "unknown"


@dataclass
class PullOutcome:
    """Result of a fast-forward pull."""
    updated: bool
    error: Optional[str] = None
    output: str = ""


@dataclass
class DriftStatus:
    """Local vs remote revision of the config checkout."""
    local: str
    remote: str

    @property
    def drift(self) -> bool:
        return self.remote != UNKNOWN_REVISION and self.local != self.remote


class ConfigReconciler:
    """Pulls, validates and activates the proxy configuration."""

    def __init__(
        self,
        state: AgentState,
        config_dir: Path = Path("/etc/caddy"),
        caddyfile: Path = Path("/etc/caddy/Caddyfile"),
        runner: CommandRunner = run_command,
        git_timeout: float = 60,
        caddy_timeout: float = 30,
    ):
        """Initialize the reconciler."""
        self.state = state
        self.config_dir = Path(config_dir)
        self.caddyfile = Path(caddyfile)
        self.runner = runner
        self.git_timeout = git_timeout
        self.caddy_timeout = caddy_timeout

    def retarget(self, config_dir: Path, caddyfile: Path):
        """Use another checkout and Caddyfile from the next command on."""
        self.config_dir = Path(config_dir)
        self.caddyfile = Path(caddyfile)

    def _git(self, *args: str):
        return self.runner(("git", "-C", str(self.config_dir)) + args, timeout=self.git_timeout)

    def _caddy(self, *args: str):
        return self.runner(("caddy",) + args, timeout=self.caddy_timeout)

    async def reconcile(self) -> ReconciliationResult:
        """Run one full pull/validate/activate cycle."""
        outcome = await self.pull()
        if outcome.error is not None:
            result = ReconciliationResult.failed(
                f"git pull failed: {outcome.error}",
                config_revision=await self.revision(),
            )
            self.state.record(result)
            return result
        return await self.validate_and_activate()

    async def pull(self) -> PullOutcome:
        """
        Fast-forward the config checkout.

        A diverged or conflicted checkout is reported and left alone so
        manual changes on the node are never clobbered.
        """
        result = await self._git("pull", "--ff-only")
        output = result.output.strip()

        if not result.success:
            logger.warning(f"Git pull failed (exit {result.exit_code}):\n{output}")
            return PullOutcome(updated=False, error=output or f"exit {result.exit_code}", output=output)

        if any(marker in output for marker in UP_TO_DATE_MARKERS):
            logger.debug("Config already up to date")
            return PullOutcome(updated=False, output=output)

        logger.info(f"Config updated via git pull:\n{output}")
        return PullOutcome(updated=True, output=output)

    async def validate_and_activate(self) -> ReconciliationResult:
        """Validate the on-disk config and reload Caddy only if it is valid."""
        revision = await self.revision()

        validate = await self._caddy("validate", "--config", str(self.caddyfile))
        if not validate.success:
            logger.error(f"Validation failed (exit {validate.exit_code}):\n{validate.output}")
            result = ReconciliationResult.failed(validate.output, config_revision=revision)
            self.state.record(result)
            return result

        reload = await self._caddy("reload", "--config", str(self.caddyfile))
        if not reload.success:
            logger.error(f"Reload failed (exit {reload.exit_code}):\n{reload.output}")
            result = ReconciliationResult.failed(reload.output, config_revision=revision)
            self.state.record(result)
            return result

        logger.info(f"Caddy reloaded successfully at {revision[:12] or 'unknown revision'}")
        result = ReconciliationResult.succeeded(config_revision=revision)
        self.state.record(result)
        return result

    async def revision(self) -> str:
        """Current checkout revision, empty when it cannot be read."""
        result = await self._git("rev-parse", "HEAD")
        return result.output.strip() if result.success else ""

    async def remote_revision(self) -> str:
        """Revision of the remote HEAD without fetching it."""
        result = await self._git("ls-remote", "origin", "HEAD")
        if not result.success:
            logger.warning(f"Failed to get remote revision: {result.output.strip()}")
            return UNKNOWN_REVISION
        parts = result.output.split()
        return parts[0] if parts else UNKNOWN_REVISION

    async def drift_status(self) -> DriftStatus:
        return DriftStatus(local=await self.revision(), remote=await self.remote_revision())

    async def proxy_version(self) -> str:
        result = await self._caddy("version")
        return result.output.strip() if result.success else ""
