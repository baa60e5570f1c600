"""
Tests for the config reconciler.

Covers the pull/validate/reload gate ordering, how results land in the
shared state, and drift reporting. External tools are replaced by a
fake command runner.
"""

import logging

import pytest

from infra_agent.edge.reconciler import ConfigReconciler, DriftStatus
from infra_agent.edge.state import AgentState, ReconciliationResult

from conftest import FakeRunner

SHA = "3f2a9c0d1e7b4a6c8d9e0f1a2b3c4d5e6f7a8b9c"


class CountingState(AgentState):
    """AgentState that counts writes."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    def record(self, result: ReconciliationResult) -> None:
        self.writes += 1
        super().record(result)


@pytest.fixture
def state():
    return CountingState()


def make_reconciler(state, responses=None) -> tuple[ConfigReconciler, FakeRunner]:
    responses = {"git rev-parse": (0, SHA + "\n"), **(responses or {})}
    runner = FakeRunner(responses)
    return ConfigReconciler(state, runner=runner), runner


class TestValidateAndActivate:

    @pytest.mark.asyncio
    async def test_valid_config_is_reloaded(self, state):
        """Test that a valid config is reloaded and recorded as ok."""
        reconciler, runner = make_reconciler(state)

        result = await reconciler.validate_and_activate()

        assert result.ok is True
        assert result.error_detail == ""
        assert result.config_revision == SHA
        assert runner.called("caddy validate") == 1
        assert runner.called("caddy reload") == 1
        assert state.last_result == result

    @pytest.mark.asyncio
    async def test_validation_failure_never_reloads(self, state):
        """Test that reload is not attempted after a failed validation."""
        reconciler, runner = make_reconciler(
            state, {"caddy validate": (1, "Error: adapting config: unknown directive")}
        )

        result = await reconciler.validate_and_activate()

        assert result.ok is False
        assert "unknown directive" in result.error_detail
        assert runner.called("caddy reload") == 0

    @pytest.mark.asyncio
    async def test_reload_failure_captures_output(self, state):
        reconciler, runner = make_reconciler(
            state, {"caddy reload": (1, "Error: sending configuration to instance: connection refused")}
        )

        result = await reconciler.validate_and_activate()

        assert result.ok is False
        assert "connection refused" in result.error_detail
        assert state.last_result.ok is False

    @pytest.mark.asyncio
    async def test_result_is_recorded_exactly_once(self, state):
        reconciler, _ = make_reconciler(state, {"caddy reload": (1, "boom")})

        await reconciler.validate_and_activate()

        assert state.writes == 1

    @pytest.mark.asyncio
    async def test_uses_configured_caddyfile(self, state, tmp_path):
        runner = FakeRunner()
        reconciler = ConfigReconciler(state, caddyfile=tmp_path / "Caddyfile", runner=runner)

        await reconciler.validate_and_activate()

        validate = next(args for args in runner.calls if args[:2] == ("caddy", "validate"))
        assert validate == ("caddy", "validate", "--config", str(tmp_path / "Caddyfile"))


class TestPull:

    @pytest.mark.asyncio
    async def test_pull_is_fast_forward_only(self, state):
        reconciler, runner = make_reconciler(state)

        await reconciler.pull()

        assert ("git", "-C", "/etc/caddy", "pull", "--ff-only") in runner.calls

    @pytest.mark.asyncio
    async def test_already_up_to_date_is_not_an_error(self, state, caplog):
        """Test that a no-op pull is quiet and reports no update."""
        reconciler, _ = make_reconciler(state, {"git pull": (0, "Already up to date.\n")})

        with caplog.at_level(logging.DEBUG, logger="infra_agent.edge.reconciler"):
            outcome = await reconciler.pull()

        assert outcome.updated is False
        assert outcome.error is None
        levels = {r.levelno for r in caplog.records if r.name == "infra_agent.edge.reconciler"}
        assert levels == {logging.DEBUG}

    @pytest.mark.asyncio
    async def test_real_update_is_logged_at_info(self, state, caplog):
        output = "Updating 1a2b3c4..5d6e7f8\nFast-forward\n Caddyfile | 2 +-\n"
        reconciler, _ = make_reconciler(state, {"git pull": (0, output)})

        with caplog.at_level(logging.DEBUG, logger="infra_agent.edge.reconciler"):
            outcome = await reconciler.pull()

        assert outcome.updated is True
        assert any(r.levelno == logging.INFO and "Fast-forward" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_diverged_checkout_is_reported(self, state):
        reconciler, _ = make_reconciler(
            state, {"git pull": (128, "fatal: Not possible to fast-forward, aborting.")}
        )

        outcome = await reconciler.pull()

        assert outcome.updated is False
        assert "Not possible to fast-forward" in outcome.error


class TestReconcile:

    @pytest.mark.asyncio
    async def test_pull_failure_skips_activation(self, state):
        """Test that a failed pull leaves the running config alone."""
        reconciler, runner = make_reconciler(
            state, {"git pull": (1, "fatal: unable to access remote: Could not resolve host")}
        )

        result = await reconciler.reconcile()

        assert result.ok is False
        assert "Could not resolve host" in result.error_detail
        assert runner.called("caddy validate") == 0
        assert runner.called("caddy reload") == 0
        assert state.writes == 1

    @pytest.mark.asyncio
    async def test_repeated_pull_failures_never_reload(self, state):
        reconciler, runner = make_reconciler(state, {"git pull": (1, "diverged")})

        for _ in range(3):
            await reconciler.reconcile()

        assert runner.called("caddy reload") == 0

    @pytest.mark.asyncio
    async def test_successful_cycle(self, state):
        reconciler, runner = make_reconciler(state, {"git pull": (0, "Already up to date.")})

        result = await reconciler.reconcile()

        assert result.ok is True
        order = [FakeRunner.key(args) for args in runner.calls]
        assert order.index("git pull") < order.index("caddy validate") < order.index("caddy reload")


class TestRevisions:

    @pytest.mark.asyncio
    async def test_revision_empty_on_failure(self, state):
        reconciler, _ = make_reconciler(state, {"git rev-parse": (128, "fatal: not a git repository")})

        assert await reconciler.revision() == ""

    @pytest.mark.asyncio
    async def test_drift_detected(self, state):
        remote = "9" * 40
        reconciler, _ = make_reconciler(state, {"git ls-remote": (0, f"{remote}\tHEAD\n")})

        status = await reconciler.drift_status()

        assert status.local == SHA
        assert status.remote == remote
        assert status.drift is True

    @pytest.mark.asyncio
    async def test_unknown_remote_is_not_drift(self, state):
        reconciler, _ = make_reconciler(state, {"git ls-remote": (128, "fatal: could not read")})

        status = await reconciler.drift_status()

        assert status.remote == "unknown"
        assert status.drift is False

    def test_in_sync(self):
        assert DriftStatus(local=SHA, remote=SHA).drift is False

    @pytest.mark.asyncio
    async def test_proxy_version(self, state):
        reconciler, _ = make_reconciler(state, {"caddy version": (0, "v2.7.6 h1:abc=\n")})

        assert await reconciler.proxy_version() == "v2.7.6 h1:abc="
