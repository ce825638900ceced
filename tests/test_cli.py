"""Tests for the command-line interface."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from conftest import FakeAgent, FakeTracker, make_issue
from issuepilot import cli
from issuepilot.config import IssuePilotConfig, merge_config
from issuepilot.engine.collaborators import AgentResult
from issuepilot.errors import ConfigurationError
from issuepilot.transports.base import CommandResult


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def clean_env(monkeypatch):
    for var in (
        "ISSUEPILOT_OWNER",
        "ISSUEPILOT_REPO",
        "ISSUEPILOT_APPROVAL_MODE",
        "ISSUEPILOT_MERGE_STRATEGY",
        "ISSUEPILOT_TRACKER_FACTORY",
        "ISSUEPILOT_AGENT_FACTORY",
    ):
        monkeypatch.delenv(var, raising=False)


def _write_config(data) -> None:
    with open("issuepilot.config.json", "w", encoding="utf-8") as fh:
        json.dump(data, fh)


class TestValidateConfig:
    def test_valid(self, runner, clean_env):
        with runner.isolated_filesystem():
            _write_config({"tracker": {"owner": "acme", "repo": "widgets"}})
            result = runner.invoke(cli.main, ["validate-config"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_problems_listed(self, runner, clean_env):
        with runner.isolated_filesystem():
            _write_config({"engine": {"merge_strategy": "octopus"}})
            result = runner.invoke(cli.main, ["validate-config"])

        assert result.exit_code == 1
        assert "Configuration Problems" in result.output
        assert "octopus" in result.output

    def test_unreadable_file(self, runner, clean_env):
        with runner.isolated_filesystem():
            with open("broken.json", "w", encoding="utf-8") as fh:
                fh.write("{")
            result = runner.invoke(cli.main, ["validate-config", "--config", "broken.json"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_wrong_value_type_reported(self, runner, clean_env):
        with runner.isolated_filesystem():
            _write_config({"engine": {"ci_monitor_timeout_seconds": "abc"}})
            result = runner.invoke(cli.main, ["validate-config"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
        assert not isinstance(result.exception, TypeError)


class TestSend:
    def test_ok(self, runner, monkeypatch):
        send = AsyncMock(return_value=CommandResult(ok=True))
        monkeypatch.setattr(cli, "_send", send)

        result = runner.invoke(cli.main, ["send", "start", "--once", "--token", "abc"])

        assert result.exit_code == 0
        assert "start: ok" in result.output
        server_url, token, command = send.await_args.args
        assert server_url == "http://127.0.0.1:3001"
        assert token == "abc"
        assert command.once is True

    def test_failure_exits_nonzero(self, runner, monkeypatch):
        monkeypatch.setattr(
            cli, "_send", AsyncMock(return_value=CommandResult(ok=False, error="refused"))
        )

        result = runner.invoke(cli.main, ["send", "approve"])

        assert result.exit_code == 1
        assert "refused" in result.output

    def test_unknown_command_rejected(self, runner):
        result = runner.invoke(cli.main, ["send", "pause"])
        assert result.exit_code == 2


class TestRun:
    def test_once_with_auto_approval(self, runner, clean_env, monkeypatch):
        tracker, agent = FakeTracker([make_issue()]), FakeAgent()
        monkeypatch.setattr(cli, "build_collaborators", lambda config: (tracker, agent))

        with runner.isolated_filesystem():
            _write_config(
                {
                    "tracker": {"owner": "acme", "repo": "widgets"},
                    "engine": {"ci_poll_interval_seconds": 0},
                }
            )
            result = runner.invoke(cli.main, ["run", "--once", "--approval", "auto"])

        assert result.exit_code == 0, result.output
        assert tracker.closed == [42]
        assert tracker.disposed
        assert agent.disposed

    def test_failed_cycle_exits_nonzero(self, runner, clean_env, monkeypatch):
        tracker = FakeTracker([make_issue()])
        agent = FakeAgent([AgentResult(success=False, error="model offline")])
        monkeypatch.setattr(cli, "build_collaborators", lambda config: (tracker, agent))

        with runner.isolated_filesystem():
            _write_config({"tracker": {"owner": "acme", "repo": "widgets"}})
            result = runner.invoke(cli.main, ["run", "--once", "--approval", "auto"])

        assert result.exit_code == 1
        assert "Cycle failed" in result.output

    def test_invalid_config_exits(self, runner, clean_env):
        with runner.isolated_filesystem():
            result = runner.invoke(cli.main, ["run", "--once"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestBuildCollaborators:
    def _config(self, **plugins) -> IssuePilotConfig:
        return merge_config(IssuePilotConfig(), {"plugins": plugins})

    def test_missing_tracker_factory(self):
        with pytest.raises(ConfigurationError, match="tracker_factory"):
            cli.build_collaborators(self._config(agent_factory="unittest.mock:MagicMock"))

    def test_missing_agent_factory(self):
        with pytest.raises(ConfigurationError, match="agent_factory"):
            cli.build_collaborators(self._config(tracker_factory="unittest.mock:MagicMock"))

    def test_factories_called_with_config(self):
        config = self._config(
            tracker_factory="unittest.mock:MagicMock", agent_factory="unittest.mock:MagicMock"
        )

        tracker, agent = cli.build_collaborators(config)

        assert isinstance(tracker, MagicMock)
        assert isinstance(agent, MagicMock)
        assert tracker is not agent
