"""
Self Updater.

Downloads a released agent binary, checks it, swaps it in for the
running executable and asks the supervisor for a restart.

The live executable is only touched by a single ``os.replace`` of a
fully downloaded and verified sibling file, so the host always has a
working binary at its usual path.
"""

import asyncio
import logging
import os
import platform
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import aiohttp

from ..errors import (
    DownloadError,
    ReplaceError,
    UnsupportedArchitectureError,
    UpdateError,
    VerificationError,
)
from ..utils.process import CommandRunner, run_command
from .heartbeat import normalize_version

logger = logging.getLogger(__name__)

# platform.machine() -> published artifact arch
SUPPORTED_ARCHES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

DEFAULT_RELEASE_URL = "https://github.com/uverustech/infra-agent/releases/download/v{tag}/{asset}"
CHUNK_SIZE = 64 * 1024


def host_arch(machine: Optional[str] = None) -> str:
    """Artifact architecture for this host; unsupported hosts raise."""
    machine = (machine or platform.machine()).lower()
    try:
        return SUPPORTED_ARCHES[machine]
    except KeyError:
        raise UnsupportedArchitectureError(f"unsupported architecture: {machine}") from None


def current_executable() -> Path:
    """
    Path of the running agent binary.

    Only a frozen build or an executable launcher can be replaced. When
    running from source (``python -m infra_agent``) ``argv[0]`` is a
    module file and updating in place would clobber it.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()

    argv0 = sys.argv[0] if sys.argv else ""
    found = shutil.which(argv0) if argv0 else None
    path = Path(found or argv0).resolve()
    if not argv0 or path.suffix == ".py" or not os.access(path, os.X_OK):
        raise UpdateError(f"not running from an installed executable ({path})")
    return path


@dataclass
class UpdateManifest:
    """What to fetch for one update."""
    target_version: str
    asset_name: str
    download_url: str


class SelfUpdater:
    """Replaces the running executable with a published release."""

    def __init__(
        self,
        agent_name: str = "infra-agent",
        service_name: str = "infra-agent",
        release_url_template: str = DEFAULT_RELEASE_URL,
        executable: Optional[Path] = None,
        timeout: float = 120,
        verify: bool = True,
        restart_delay: float = 1.0,
        runner: CommandRunner = run_command,
        on_restart_failed: Optional[Callable[[], None]] = None,
    ):
        """Initialize the updater."""
        self.agent_name = agent_name
        self.service_name = service_name
        self.release_url_template = release_url_template
        self.executable = Path(executable) if executable else None
        self.timeout = timeout
        self.verify = verify
        self.restart_delay = restart_delay
        self.runner = runner
        self.on_restart_failed = on_restart_failed

        self._restart_task: Optional[asyncio.Task] = None

    def manifest(self, target_version: str, machine: Optional[str] = None) -> UpdateManifest:
        tag = normalize_version(target_version)
        asset = f"{self.agent_name}-linux-{host_arch(machine)}"
        return UpdateManifest(
            target_version=tag,
            asset_name=asset,
            download_url=self.release_url_template.format(tag=tag, asset=asset),
        )

    async def self_update(self, target_version: str, restart: bool = True) -> None:
        """
        Install ``target_version`` over the running executable.

        Raises UpdateError (or a subclass) on any failure; in every such
        case the live executable is left as it was.
        """
        try:
            exe = self.executable or current_executable()
        except OSError as e:
            raise UpdateError(f"could not determine executable path: {e}") from e
        if not exe.is_file():
            raise UpdateError(f"executable not found at {exe}")

        manifest = self.manifest(target_version)
        tmp = exe.with_name(exe.name + ".NEW")

        logger.info(f"Downloading {manifest.asset_name} from {manifest.download_url}")
        try:
            await self._download(manifest.download_url, tmp)
            if self.verify:
                await self._verify(tmp, manifest.target_version)
        except BaseException:
            _remove(tmp)
            raise

        self._replace(tmp, exe)
        logger.info(f"Replaced {exe} with {manifest.target_version}")

        if restart:
            self._restart_task = asyncio.create_task(self._delayed_restart())

    async def _download(self, url: str, dest: Path) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise DownloadError(
                            f"download failed: HTTP {response.status} "
                            f"(release may not be published yet)"
                        )
                    # A leftover temp file would keep its old mode
                    _remove(dest)
                    fd = os.open(dest, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o755)
                    loop = asyncio.get_running_loop()
                    with os.fdopen(fd, "wb") as f:
                        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                            await loop.run_in_executor(None, f.write, chunk)
        except asyncio.TimeoutError as e:
            raise DownloadError("download timed out") from e
        except aiohttp.ClientError as e:
            raise DownloadError(f"download failed: {e}") from e
        except OSError as e:
            raise DownloadError(f"failed to write {dest}: {e}") from e

    async def _verify(self, binary: Path, target_version: str) -> None:
        result = await self.runner((str(binary), "version"), timeout=15)
        if not result.success:
            raise VerificationError(
                f"downloaded binary failed verification: exit {result.exit_code} "
                f"({result.output.strip()})"
            )
        if target_version not in result.output:
            raise VerificationError(
                f"downloaded binary reports unexpected version: {result.output.strip()!r}"
            )

    def _replace(self, tmp: Path, exe: Path) -> None:
        backup = exe.with_name(exe.name + ".OLD")
        _remove(backup)
        try:
            try:
                os.link(exe, backup)
            except OSError:
                shutil.copy2(exe, backup)
            os.replace(tmp, exe)
        except OSError as e:
            _remove(tmp)
            _remove(backup)
            raise ReplaceError(f"failed to replace binary: {e}") from e
        _remove(backup)

    async def _delayed_restart(self):
        await asyncio.sleep(self.restart_delay)
        if not await self.restart_service() and self.on_restart_failed is not None:
            self.on_restart_failed()

    async def restart_service(self) -> bool:
        """Ask systemd to restart the agent service."""
        logger.info(f"Restarting {self.service_name} service")
        result = await self.runner(
            ("sudo", "systemctl", "restart", self.service_name), timeout=30
        )
        if not result.success:
            logger.error(f"Failed to restart service via systemctl: {result.output.strip()}")
        return result.success


def _remove(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
