"""Shared fixtures and fakes for the infra-agent test suite."""

import os
from pathlib import Path

import pytest

from infra_agent.config import NodeRole, Settings
from infra_agent.edge.collectors.system import HealthSnapshot
from infra_agent.edge.sender import SendResult
from infra_agent.utils.process import CommandResult


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the host's INFRA_* environment and config files out of tests."""
    for key in list(os.environ):
        if key.startswith("INFRA_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("infra_agent.config.DEFAULT_CONFIG_DIR", tmp_path / "etc")


def make_settings(**overrides) -> Settings:
    overrides.setdefault("node_id", "node-1")
    return Settings.load(**overrides)


class FakeRunner:
    """
    Stands in for run_command.

    Responses are keyed by command name plus subcommand, e.g.
    ``"git pull"`` or ``"caddy validate"``; unknown commands succeed
    with ``default_output``.
    """

    def __init__(self, responses=None, default_output=""):
        self.responses = dict(responses or {})
        self.default_output = default_output
        self.calls = []

    @staticmethod
    def key(args) -> str:
        if args[0] == "git" and len(args) > 3:
            return f"git {args[3]}"
        if len(args) > 1:
            return f"{Path(args[0]).name} {args[1]}"
        return args[0]

    def called(self, key: str) -> int:
        return sum(1 for args in self.calls if self.key(args) == key)

    async def __call__(self, args, timeout=None):
        args = tuple(args)
        self.calls.append(args)
        exit_code, output = self.responses.get(self.key(args), (0, self.default_output))
        return CommandResult(args=args, exit_code=exit_code, output=output)


class FakeClient:
    """Records heartbeats; answers version checks from a list."""

    def __init__(self, versions=None, heartbeat_ok=True):
        self.versions = list(versions or [])
        self.heartbeat_ok = heartbeat_ok
        self.payloads = []
        self.control_url = ""
        self.version_checks = 0
        self.closed = False

    def retarget(self, control_url):
        self.control_url = control_url

    async def send_heartbeat(self, payload):
        self.payloads.append(payload)
        if self.heartbeat_ok:
            return SendResult(success=True, status_code=200)
        return SendResult(success=False, error="connection refused")

    async def latest_version(self):
        self.version_checks += 1
        if not self.versions:
            return ""
        return self.versions.pop(0) if len(self.versions) > 1 else self.versions[0]

    async def close(self):
        self.closed = True


class StubSampler:
    """Health sampler with fixed host readings."""

    def __init__(self, disk=10.0, mem=20.0, load=0.5, uptime=3600.0):
        self.readings = (disk, mem, load, uptime)

    def sample(self, role, last_reload_ok=True):
        disk, mem, load, uptime = self.readings
        return HealthSnapshot(
            disk_used_pct=disk,
            mem_used_pct=mem,
            cpu_load_1m=load,
            uptime_seconds=uptime,
            role=NodeRole(role),
            last_reload_ok=last_reload_ok,
        )

    async def collect(self, role, last_reload_ok=True):
        return self.sample(role, last_reload_ok)


@pytest.fixture
def runner():
    return FakeRunner()
