from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from ralph.config import (
    DEFAULT_POLICY,
    _write_default_policy,
    load_event_settings,
    load_run_config,
    run_config_from_options,
)
from ralph.models import ConfigError, RunPaths


def _write_policy(repo: Path, policy: Any) -> Path:
    policy_path = repo / ".ralph" / "policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(yaml.safe_dump(policy, sort_keys=False), encoding="utf-8")
    return policy_path


def test_defaults_without_policy_file(tmp_path: Path) -> None:
    config = load_run_config(tmp_path, "add-parser")

    assert config.change_id == "add-parser"
    assert config.base_path == tmp_path.resolve()
    assert config.max_iterations == 10
    assert config.error_strategy == "analyze-retry"
    assert config.max_retries == 3
    assert config.tasks_file == "tasks.md"
    assert config.agent_command == ""


def test_policy_values_are_loaded(tmp_path: Path) -> None:
    _write_policy(
        tmp_path,
        {
            "max_iterations": 25,
            "error_handling": {"strategy": "skip", "max_retries": 2},
            "tasks_file": "openspec/tasks.md",
            "agent": {"command": "agent --print", "check_command": "make check", "timeout_seconds": 90},
        },
    )

    config = load_run_config(tmp_path, "add-parser")

    assert config.max_iterations == 25
    assert config.error_strategy == "skip"
    assert config.max_retries == 2
    assert config.tasks_file == "openspec/tasks.md"
    assert config.agent_command == "agent --print"
    assert config.check_command == "make check"
    assert config.agent_timeout_seconds == 90.0


def test_invalid_policy_values_fall_back_to_defaults(tmp_path: Path) -> None:
    _write_policy(
        tmp_path,
        {"max_iterations": -4, "error_handling": {"strategy": "pray", "max_retries": "many"}},
    )

    config = load_run_config(tmp_path, "add-parser")

    assert config.max_iterations == 10
    assert config.error_strategy == "analyze-retry"
    assert config.max_retries == 3


def test_explicit_overrides_win_and_none_is_ignored(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"max_iterations": 25})

    config = load_run_config(
        tmp_path,
        "add-parser",
        {"max_iterations": 4, "error_strategy": "ESCALATE", "max_retries": None},
    )

    assert config.max_iterations == 4
    assert config.error_strategy == "escalate"
    assert config.max_retries == 3


class TestRejectedInput:
    def test_empty_change_id(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="change id"):
            load_run_config(tmp_path, "  ")

    def test_unknown_override(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="unknown run option"):
            load_run_config(tmp_path, "c", {"colour": "blue"})

    @pytest.mark.parametrize(
        "override",
        [{"error_strategy": "pray"}, {"max_iterations": 0}, {"max_retries": "x"}],
    )
    def test_bad_explicit_values(self, tmp_path: Path, override: dict[str, Any]) -> None:
        with pytest.raises(ConfigError):
            load_run_config(tmp_path, "c", override)

    def test_malformed_policy_file(self, tmp_path: Path) -> None:
        policy_path = tmp_path / ".ralph" / "policy.yaml"
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text("max_iterations: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="could not load run policy"):
            load_run_config(tmp_path, "c")

    def test_policy_must_be_a_mapping(self, tmp_path: Path) -> None:
        _write_policy(tmp_path, ["not", "a", "mapping"])
        with pytest.raises(ConfigError, match="mapping"):
            load_run_config(tmp_path, "c")


def test_run_config_from_camel_case_options(tmp_path: Path) -> None:
    config = run_config_from_options(
        {
            "changeId": "add-parser",
            "basePath": str(tmp_path),
            "maxIterations": 7,
            "errorStrategy": "retry",
            "maxRetries": 5,
        }
    )

    assert config.change_id == "add-parser"
    assert config.max_iterations == 7
    assert config.error_strategy == "retry"
    assert config.max_retries == 5


def test_run_config_from_options_requires_base_path() -> None:
    with pytest.raises(ConfigError, match="basePath"):
        run_config_from_options({"changeId": "add-parser"})


def test_event_settings_from_policy(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"events": {"buffer_size": 8, "backpressure": "block", "keepalive_seconds": 2}})
    settings = load_event_settings(tmp_path)
    assert (settings.buffer_size, settings.backpressure, settings.keepalive_seconds) == (8, "block", 2.0)


def test_event_settings_fall_back_on_bad_values(tmp_path: Path) -> None:
    _write_policy(tmp_path, {"events": {"buffer_size": 0, "backpressure": "yolo", "keepalive_seconds": -1}})
    settings = load_event_settings(tmp_path)
    assert (settings.buffer_size, settings.backpressure, settings.keepalive_seconds) == (100, "drop_oldest", 15.0)


def test_write_default_policy_once(tmp_path: Path) -> None:
    paths = RunPaths.for_base_path(tmp_path)
    assert _write_default_policy(paths) is True
    assert yaml.safe_load(paths.policy_path.read_text(encoding="utf-8")) == DEFAULT_POLICY
    assert _write_default_policy(paths) is False
