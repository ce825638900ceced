"""Layered configuration.

Precedence, lowest to highest: built-in defaults, a JSON config file,
environment variables (a ``.env`` file is loaded first), explicit
overrides from the command line.
"""

from __future__ import annotations

import importlib
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from issuepilot.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "issuepilot.config.json"

APPROVAL_MODES = ("cli", "auto")
MERGE_STRATEGIES = ("squash", "merge", "rebase")
PERMISSION_MODES = ("default", "bypassPermissions")
LOG_LEVELS = ("debug", "info", "warn", "error")


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class TrackerSettings:
    owner: str = ""
    repo: str = ""
    token: str = ""
    issue_labels: list[str] = field(default_factory=lambda: ["issuepilot"])
    exclude_labels: list[str] = field(default_factory=lambda: ["wontfix"])
    bot_username: str = "issuepilot-bot"


@dataclass
class AgentSettings:
    model: str = "claude-sonnet-4-5"
    max_budget_usd: float = 1.0
    allowed_tools: list[str] = field(
        default_factory=lambda: ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]
    )
    permission_mode: str = "default"


@dataclass
class EngineSettings:
    """Timing and policy knobs for the pipeline.

    Attributes:
        poll_interval_seconds: Wait between cycles in the run loop.
        working_directory: Repository checkout the agent operates on.
        approval_mode: ``"cli"`` waits for a decision; ``"auto"`` skips the gate.
        ci_poll_interval_seconds: Wait between verification polls.
        ci_monitor_timeout_seconds: Ceiling on the monitor step.
        merge_strategy: ``"squash"``, ``"merge"`` or ``"rebase"``.
        delete_branch_on_merge: Remove the feature branch after merging.
        commit_window: Number of recent commits included in the analysis.
    """

    poll_interval_seconds: float = 300.0
    working_directory: str = field(default_factory=os.getcwd)
    approval_mode: str = "cli"
    ci_poll_interval_seconds: float = 30.0
    ci_monitor_timeout_seconds: float = 3600.0
    merge_strategy: str = "squash"
    delete_branch_on_merge: bool = True
    commit_window: int = 10


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3001
    auth_token: str = ""


@dataclass
class PluginSettings:
    """Import paths (``module:attr``) of collaborator factories.

    Each factory is called with the full :class:`IssuePilotConfig` and
    returns a tracker or agent instance.
    """

    tracker_factory: str = ""
    agent_factory: str = ""


@dataclass
class IssuePilotConfig:
    log_level: str = "info"
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    plugins: PluginSettings = field(default_factory=PluginSettings)


_SECTIONS = {
    "tracker": TrackerSettings,
    "agent": AgentSettings,
    "engine": EngineSettings,
    "server": ServerSettings,
    "plugins": PluginSettings,
}


def _coerce(name: str, kind: str, value: Any) -> Any:
    """Check *value* against a field's declared type (as its annotation string)."""
    if kind == "bool":
        if isinstance(value, bool):
            return value
        expected = "a boolean"
    elif kind == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        expected = "an integer"
    elif kind == "float":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        expected = "a number"
    elif kind.startswith("list"):
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        expected = "a list of strings"
    else:
        if isinstance(value, str):
            return value
        expected = "a string"
    raise ConfigurationError(f"{name} must be {expected}, got {value!r}")


def _merge_section(name: str, section: Any, overrides: Mapping[str, Any]) -> Any:
    kinds = {f.name: str(f.type) for f in fields(section)}
    known = set(kinds)
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown {type(section).__name__} keys: {', '.join(unknown)}"
        )
    values = {
        key: _coerce(f"{name}.{key}", kinds[key], value)
        for key, value in overrides.items()
    }
    return replace(section, **values)


def merge_config(base: IssuePilotConfig, overrides: Mapping[str, Any]) -> IssuePilotConfig:
    """Return *base* with the sectioned *overrides* applied.

    Raises:
        ConfigurationError: On unknown sections or keys, or a value of the
            wrong type for its field.
    """
    config = replace(base)
    for key, value in overrides.items():
        if key == "log_level":
            config.log_level = _coerce("log_level", "str", value)
        elif key in _SECTIONS:
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"Config section '{key}' must be an object")
            setattr(config, key, _merge_section(key, getattr(config, key), value))
        else:
            raise ConfigurationError(f"Unknown config section: {key}")
    return config


def load_config_file(path: str | Path) -> dict[str, Any] | None:
    """Read a JSON config file, or return ``None`` when it does not exist.

    Raises:
        ConfigurationError: If the file is not a valid JSON object.
    """
    resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        return None
    try:
        data = json.loads(resolved.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(
            f"Failed to parse config file at {resolved}. Ensure it contains valid JSON."
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file at {resolved} must contain a JSON object")
    return data


def env_overrides(env: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """Extract config values from ``ISSUEPILOT_*`` environment variables.

    Only variables that are set produce overrides; unparseable numbers are
    ignored.
    """
    tracker: dict[str, Any] = {}
    token = env.get("GITHUB_TOKEN") or env.get("ISSUEPILOT_TRACKER_TOKEN")
    if token:
        tracker["token"] = token
    for key, var in (
        ("owner", "ISSUEPILOT_OWNER"),
        ("repo", "ISSUEPILOT_REPO"),
        ("bot_username", "ISSUEPILOT_BOT_USERNAME"),
    ):
        if env.get(var):
            tracker[key] = env[var]
    if "ISSUEPILOT_ISSUE_LABELS" in env:
        tracker["issue_labels"] = _to_list(env["ISSUEPILOT_ISSUE_LABELS"])
    if "ISSUEPILOT_EXCLUDE_LABELS" in env:
        tracker["exclude_labels"] = _to_list(env["ISSUEPILOT_EXCLUDE_LABELS"])

    agent: dict[str, Any] = {}
    if env.get("ISSUEPILOT_MODEL"):
        agent["model"] = env["ISSUEPILOT_MODEL"]
    if "ISSUEPILOT_MAX_BUDGET_USD" in env:
        try:
            agent["max_budget_usd"] = float(env["ISSUEPILOT_MAX_BUDGET_USD"])
        except ValueError:
            pass
    if env.get("ISSUEPILOT_PERMISSION_MODE") in PERMISSION_MODES:
        agent["permission_mode"] = env["ISSUEPILOT_PERMISSION_MODE"]

    engine: dict[str, Any] = {}
    for key, var in (
        ("poll_interval_seconds", "ISSUEPILOT_POLL_INTERVAL_SECONDS"),
        ("ci_poll_interval_seconds", "ISSUEPILOT_CI_POLL_INTERVAL_SECONDS"),
        ("ci_monitor_timeout_seconds", "ISSUEPILOT_CI_MONITOR_TIMEOUT_SECONDS"),
    ):
        if var in env:
            try:
                engine[key] = float(env[var])
            except ValueError:
                pass
    if env.get("ISSUEPILOT_WORKING_DIRECTORY"):
        engine["working_directory"] = env["ISSUEPILOT_WORKING_DIRECTORY"]
    if env.get("ISSUEPILOT_APPROVAL_MODE") in APPROVAL_MODES:
        engine["approval_mode"] = env["ISSUEPILOT_APPROVAL_MODE"]
    if env.get("ISSUEPILOT_MERGE_STRATEGY") in MERGE_STRATEGIES:
        engine["merge_strategy"] = env["ISSUEPILOT_MERGE_STRATEGY"]
    if "ISSUEPILOT_DELETE_BRANCH_ON_MERGE" in env:
        engine["delete_branch_on_merge"] = _to_bool(
            env["ISSUEPILOT_DELETE_BRANCH_ON_MERGE"], default=True
        )

    server: dict[str, Any] = {}
    if env.get("ISSUEPILOT_HOST"):
        server["host"] = env["ISSUEPILOT_HOST"]
    if "ISSUEPILOT_PORT" in env:
        try:
            server["port"] = int(env["ISSUEPILOT_PORT"])
        except ValueError:
            pass
    if env.get("ISSUEPILOT_AUTH_TOKEN"):
        server["auth_token"] = env["ISSUEPILOT_AUTH_TOKEN"]

    plugins: dict[str, Any] = {}
    if env.get("ISSUEPILOT_TRACKER_FACTORY"):
        plugins["tracker_factory"] = env["ISSUEPILOT_TRACKER_FACTORY"]
    if env.get("ISSUEPILOT_AGENT_FACTORY"):
        plugins["agent_factory"] = env["ISSUEPILOT_AGENT_FACTORY"]

    overrides: dict[str, Any] = {
        name: section
        for name, section in (
            ("tracker", tracker),
            ("agent", agent),
            ("engine", engine),
            ("server", server),
            ("plugins", plugins),
        )
        if section
    }
    if env.get("ISSUEPILOT_LOG_LEVEL") in LOG_LEVELS:
        overrides["log_level"] = env["ISSUEPILOT_LOG_LEVEL"]
    return overrides


def load_config(
    path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> IssuePilotConfig:
    """Build the effective configuration.

    Args:
        path: JSON config file; defaults to ``issuepilot.config.json`` in the
            current directory. A missing file is not an error.
        overrides: Sectioned values that win over everything else.
        env: Environment to read; defaults to ``os.environ`` after loading
            ``.env``.
    """
    if env is None:
        load_dotenv(".env")
        env = os.environ

    config = IssuePilotConfig()
    file_data = load_config_file(path or DEFAULT_CONFIG_PATH)
    if file_data is not None:
        config = merge_config(config, file_data)
    config = merge_config(config, env_overrides(env))
    if overrides:
        config = merge_config(config, overrides)
    return config


def validate_config(config: IssuePilotConfig) -> list[str]:
    """Return human-readable problems with *config* (empty when valid)."""
    errors: list[str] = []
    if not config.tracker.owner:
        errors.append("Tracker owner is required (set ISSUEPILOT_OWNER or tracker.owner)")
    if not config.tracker.repo:
        errors.append("Tracker repo is required (set ISSUEPILOT_REPO or tracker.repo)")
    if not config.tracker.issue_labels:
        errors.append("At least one issue label is required")
    if config.engine.approval_mode not in APPROVAL_MODES:
        errors.append(
            f"engine.approval_mode must be one of {APPROVAL_MODES}, "
            f"got '{config.engine.approval_mode}'"
        )
    if config.engine.merge_strategy not in MERGE_STRATEGIES:
        errors.append(
            f"engine.merge_strategy must be one of {MERGE_STRATEGIES}, "
            f"got '{config.engine.merge_strategy}'"
        )
    if config.agent.permission_mode not in PERMISSION_MODES:
        errors.append(
            f"agent.permission_mode must be one of {PERMISSION_MODES}, "
            f"got '{config.agent.permission_mode}'"
        )
    if config.engine.poll_interval_seconds < 0:
        errors.append("engine.poll_interval_seconds must be >= 0")
    if config.engine.ci_poll_interval_seconds < 0:
        errors.append("engine.ci_poll_interval_seconds must be >= 0")
    if config.engine.ci_monitor_timeout_seconds <= 0:
        errors.append("engine.ci_monitor_timeout_seconds must be > 0")
    if config.log_level not in LOG_LEVELS:
        errors.append(f"log_level must be one of {LOG_LEVELS}, got '{config.log_level}'")
    return errors


def require_valid_config(config: IssuePilotConfig) -> IssuePilotConfig:
    """Return *config* unchanged, or raise if it has problems.

    Raises:
        ConfigurationError: Listing every problem found.
    """
    errors = validate_config(config)
    if errors:
        raise ConfigurationError(
            "Invalid configuration: " + "; ".join(errors),
            context={"errors": errors},
        )
    return config


def load_object(path: str) -> Any:
    """Import ``module:attr`` and return the attribute.

    Raises:
        ConfigurationError: If the path is malformed or cannot be resolved.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Expected 'module:attr', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import module '{module_name}': {exc}") from exc
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise ConfigurationError(
                f"Module '{module_name}' has no attribute '{attr}'"
            ) from exc
    return obj
