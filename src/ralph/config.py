from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from ralph.constants import (
    BACKPRESSURE_POLICIES,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_BACKPRESSURE_POLICY,
    DEFAULT_ERROR_STRATEGY,
    DEFAULT_KEEPALIVE_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SUBSCRIBER_BUFFER,
    DEFAULT_TASKS_FILE,
    ERROR_STRATEGIES,
)
from ralph.models import (
    ConfigError,
    EventSettings,
    RunConfig,
    RunPaths,
    _coerce_float,
    _coerce_positive_int,
)

DEFAULT_POLICY: dict[str, Any] = {
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "error_handling": {
        "strategy": DEFAULT_ERROR_STRATEGY,
        "max_retries": DEFAULT_MAX_RETRIES,
    },
    "tasks_file": DEFAULT_TASKS_FILE,
    "agent": {
        "command": "",
        "check_command": "",
        "timeout_seconds": DEFAULT_AGENT_TIMEOUT_SECONDS,
    },
    "events": {
        "buffer_size": DEFAULT_SUBSCRIBER_BUFFER,
        "backpressure": DEFAULT_BACKPRESSURE_POLICY,
        "keepalive_seconds": DEFAULT_KEEPALIVE_SECONDS,
    },
}


def _load_run_policy(paths: RunPaths) -> dict[str, Any]:
    policy_path = paths.policy_path
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"could not load run policy {policy_path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"run policy {policy_path} must contain a mapping")
    return loaded


def _write_default_policy(paths: RunPaths) -> bool:
    if paths.policy_path.exists():
        return False
    paths.policy_path.parent.mkdir(parents=True, exist_ok=True)
    paths.policy_path.write_text(yaml.safe_dump(DEFAULT_POLICY, sort_keys=False), encoding="utf-8")
    return True


def _section(policy: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = policy.get(key)
    return value if isinstance(value, Mapping) else {}


def _normalize_strategy(value: Any) -> str:
    strategy = str(value or "").strip().lower()
    return strategy if strategy in ERROR_STRATEGIES else DEFAULT_ERROR_STRATEGY


def _validate_override(key: str, value: Any) -> Any:
    if key == "error_strategy":
        strategy = str(value).strip().lower()
        if strategy not in ERROR_STRATEGIES:
            raise ConfigError(f"error strategy must be one of {list(ERROR_STRATEGIES)}, got '{value}'")
        return strategy
    if key in {"max_iterations", "max_retries"}:
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
        if parsed <= 0:
            raise ConfigError(f"{key} must be > 0, got {parsed}")
        return parsed
    if key == "agent_timeout_seconds":
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"agent timeout must be a number, got {value!r}") from exc
    return str(value)


def load_run_config(
    base_path: Path | str,
    change_id: str,
    overrides: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Policy file values, then explicit ``overrides`` (None entries are ignored)."""
    change_id = str(change_id).strip()
    if not change_id:
        raise ConfigError("change id must not be empty")
    paths = RunPaths.for_base_path(base_path)
    policy = _load_run_policy(paths)
    error_handling = _section(policy, "error_handling")
    agent = _section(policy, "agent")

    values: dict[str, Any] = {
        "max_iterations": _coerce_positive_int(policy.get("max_iterations"), default=DEFAULT_MAX_ITERATIONS),
        "error_strategy": _normalize_strategy(error_handling.get("strategy")),
        "max_retries": _coerce_positive_int(error_handling.get("max_retries"), default=DEFAULT_MAX_RETRIES),
        "tasks_file": str(policy.get("tasks_file") or DEFAULT_TASKS_FILE),
        "agent_command": str(agent.get("command") or ""),
        "check_command": str(agent.get("check_command") or ""),
        "agent_timeout_seconds": max(
            0.0,
            _coerce_float(agent.get("timeout_seconds"), default=DEFAULT_AGENT_TIMEOUT_SECONDS),
        ),
    }
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key not in values:
            raise ConfigError(f"unknown run option '{key}'")
        values[key] = _validate_override(key, value)

    return RunConfig(change_id=change_id, base_path=paths.base_path, **values)


_OPTION_ALIASES = {
    "changeId": "change_id",
    "basePath": "base_path",
    "maxIterations": "max_iterations",
    "errorStrategy": "error_strategy",
    "maxRetries": "max_retries",
    "tasksFile": "tasks_file",
    "agentCommand": "agent_command",
    "checkCommand": "check_command",
    "agentTimeoutSeconds": "agent_timeout_seconds",
}


def run_config_from_options(options: Mapping[str, Any]) -> RunConfig:
    """Build a RunConfig from an orchestration-layer creation request."""
    normalized: dict[str, Any] = {}
    for key, value in options.items():
        normalized[_OPTION_ALIASES.get(str(key), str(key))] = value
    change_id = normalized.pop("change_id", "")
    base_path = normalized.pop("base_path", None)
    if base_path is None:
        raise ConfigError("basePath is required")
    return load_run_config(base_path, str(change_id or ""), normalized)


def load_event_settings(base_path: Path | str) -> EventSettings:
    policy = _load_run_policy(RunPaths.for_base_path(base_path))
    events = _section(policy, "events")
    backpressure = str(events.get("backpressure", DEFAULT_BACKPRESSURE_POLICY)).strip().lower()
    if backpressure not in BACKPRESSURE_POLICIES:
        backpressure = DEFAULT_BACKPRESSURE_POLICY
    keepalive = _coerce_float(events.get("keepalive_seconds"), default=DEFAULT_KEEPALIVE_SECONDS)
    if keepalive <= 0:
        keepalive = DEFAULT_KEEPALIVE_SECONDS
    return EventSettings(
        buffer_size=_coerce_positive_int(events.get("buffer_size"), default=DEFAULT_SUBSCRIBER_BUFFER),
        backpressure=backpressure,
        keepalive_seconds=keepalive,
    )
