"""Tests for layered configuration loading and validation."""

from __future__ import annotations

import json

import pytest

from issuepilot.config import (
    IssuePilotConfig,
    env_overrides,
    load_config,
    load_object,
    merge_config,
    require_valid_config,
    validate_config,
)
from issuepilot.errors import ConfigurationError


def _write(tmp_path, data) -> str:
    path = tmp_path / "issuepilot.config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestLoadConfig:
    def test_defaults_when_nothing_set(self, tmp_path):
        config = load_config(tmp_path / "missing.json", env={})

        assert config.tracker.issue_labels == ["issuepilot"]
        assert config.tracker.exclude_labels == ["wontfix"]
        assert config.engine.poll_interval_seconds == 300
        assert config.engine.approval_mode == "cli"
        assert config.engine.merge_strategy == "squash"
        assert config.server.port == 3001

    def test_file_values(self, tmp_path):
        path = _write(
            tmp_path,
            {
                "tracker": {"owner": "acme", "repo": "widgets"},
                "engine": {"approval_mode": "auto", "commit_window": 5},
                "log_level": "debug",
            },
        )

        config = load_config(path, env={})

        assert config.tracker.owner == "acme"
        assert config.engine.approval_mode == "auto"
        assert config.engine.commit_window == 5
        assert config.log_level == "debug"

    def test_precedence_file_env_overrides(self, tmp_path):
        path = _write(tmp_path, {"tracker": {"owner": "file", "repo": "file"}})
        env = {"ISSUEPILOT_OWNER": "env", "ISSUEPILOT_REPO": "env"}

        config = load_config(path, overrides={"tracker": {"owner": "cli"}}, env=env)

        assert config.tracker.owner == "cli"
        assert config.tracker.repo == "env"

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{nope", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="valid JSON"):
            load_config(path, env={})

    def test_non_object_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="JSON object"):
            load_config(_write(tmp_path, [1, 2]), env={})

    def test_unknown_key_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError, match="colour"):
            load_config(_write(tmp_path, {"engine": {"colour": "red"}}), env={})

    def test_unknown_section_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown config section"):
            merge_config(IssuePilotConfig(), {"database": {}})

    def test_wrong_type_in_file_rejected(self, tmp_path):
        path = _write(tmp_path, {"engine": {"ci_monitor_timeout_seconds": "abc"}})

        with pytest.raises(ConfigurationError, match="ci_monitor_timeout_seconds must be a number"):
            load_config(path, env={})

    @pytest.mark.parametrize(
        "section, value",
        [
            ({"engine": {"delete_branch_on_merge": "yes"}}, "a boolean"),
            ({"engine": {"commit_window": 2.5}}, "an integer"),
            ({"engine": {"poll_interval_seconds": True}}, "a number"),
            ({"tracker": {"issue_labels": "bot"}}, "a list of strings"),
            ({"tracker": {"owner": 7}}, "a string"),
            ({"log_level": ["debug"]}, "a string"),
        ],
    )
    def test_type_mismatches(self, section, value):
        with pytest.raises(ConfigurationError, match=value):
            merge_config(IssuePilotConfig(), section)

    def test_integers_accepted_for_number_fields(self):
        config = merge_config(IssuePilotConfig(), {"engine": {"ci_poll_interval_seconds": 5}})

        assert config.engine.ci_poll_interval_seconds == 5.0
        assert isinstance(config.engine.ci_poll_interval_seconds, float)

    def test_dotenv_loaded_when_env_not_given(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("ISSUEPILOT_OWNER", "")
        monkeypatch.delenv("ISSUEPILOT_OWNER")
        (tmp_path / ".env").write_text("ISSUEPILOT_OWNER=dotenv-owner\n", encoding="utf-8")

        config = load_config()

        assert config.tracker.owner == "dotenv-owner"


class TestEnvOverrides:
    def test_parses_types(self):
        overrides = env_overrides(
            {
                "GITHUB_TOKEN": "ghp_x",
                "ISSUEPILOT_ISSUE_LABELS": "bot, auto ,",
                "ISSUEPILOT_MAX_BUDGET_USD": "2.5",
                "ISSUEPILOT_POLL_INTERVAL_SECONDS": "60",
                "ISSUEPILOT_DELETE_BRANCH_ON_MERGE": "false",
                "ISSUEPILOT_PORT": "8080",
                "ISSUEPILOT_APPROVAL_MODE": "auto",
                "ISSUEPILOT_LOG_LEVEL": "warn",
            }
        )

        assert overrides["tracker"] == {"token": "ghp_x", "issue_labels": ["bot", "auto"]}
        assert overrides["agent"] == {"max_budget_usd": 2.5}
        assert overrides["engine"] == {
            "poll_interval_seconds": 60.0,
            "approval_mode": "auto",
            "delete_branch_on_merge": False,
        }
        assert overrides["server"] == {"port": 8080}
        assert overrides["log_level"] == "warn"

    def test_invalid_values_ignored(self):
        overrides = env_overrides(
            {
                "ISSUEPILOT_PORT": "eighty",
                "ISSUEPILOT_APPROVAL_MODE": "sometimes",
                "ISSUEPILOT_MAX_BUDGET_USD": "lots",
            }
        )
        assert overrides == {}

    def test_plugin_factories(self):
        overrides = env_overrides(
            {"ISSUEPILOT_TRACKER_FACTORY": "a:b", "ISSUEPILOT_AGENT_FACTORY": "c:d"}
        )
        assert overrides["plugins"] == {"tracker_factory": "a:b", "agent_factory": "c:d"}


class TestValidate:
    def test_missing_repository(self):
        problems = validate_config(IssuePilotConfig())

        assert any("owner" in p for p in problems)
        assert any("repo" in p for p in problems)

    def test_bad_enums(self):
        config = merge_config(
            IssuePilotConfig(),
            {
                "tracker": {"owner": "o", "repo": "r"},
                "engine": {"approval_mode": "maybe", "merge_strategy": "octopus"},
            },
        )

        problems = validate_config(config)

        assert len(problems) == 2

    def test_require_valid_raises_with_all_problems(self):
        with pytest.raises(ConfigurationError) as info:
            require_valid_config(IssuePilotConfig())

        assert len(info.value.context["errors"]) == 2

    def test_valid(self):
        config = merge_config(IssuePilotConfig(), {"tracker": {"owner": "o", "repo": "r"}})
        assert require_valid_config(config) is config


class TestLoadObject:
    def test_resolves_attribute(self):
        assert load_object("json:dumps") is json.dumps

    def test_nested_attribute(self):
        assert load_object("issuepilot.config:IssuePilotConfig.__name__") == "IssuePilotConfig"

    @pytest.mark.parametrize("path", ["json", ":dumps", "json:"])
    def test_malformed(self, path):
        with pytest.raises(ConfigurationError, match="module:attr"):
            load_object(path)

    def test_missing_module(self):
        with pytest.raises(ConfigurationError, match="Cannot import"):
            load_object("no_such_module_xyz:thing")

    def test_missing_attribute(self):
        with pytest.raises(ConfigurationError, match="no attribute"):
            load_object("json:nothing_here")
