"""Agent command execution: sentinel parsing, verification, timeouts, redaction."""

from __future__ import annotations

import shlex
import sys
import textwrap
from pathlib import Path

import pytest

from ralph.constants import DEFAULT_FIX_PLAN
from ralph.models import ConfigError, FailureAnalysis, IterationRequest, RunPaths, Task
from ralph.runners import (
    CommandExecutor,
    _redact_sensitive_text,
    build_analysis_prompt,
    build_prompt,
    parse_iteration_output,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return shlex.join([sys.executable, str(path)])


def _request(context_block: str = "") -> IterationRequest:
    return IterationRequest(
        run_id="add-parser",
        iteration=3,
        task=Task(id="1.2", description="Add grammar"),
        attempt=2,
        context_block=context_block,
    )


def _paths(tmp_path: Path) -> RunPaths:
    paths = RunPaths.for_base_path(tmp_path)
    paths.ensure()
    return paths


REPORTING_AGENT = """
import json
import os
import sys

prompt = sys.stdin.read()
report = {
    "taskComplete": True,
    "summary": "did " + os.environ["RALPH_TASK_ID"] + " attempt " + os.environ["RALPH_TASK_ATTEMPT"],
    "implemented": ["grammar.py"],
    "codebasePatterns": ["grammar lives in grammar.py"],
}
print("thinking...")
print("<RALPH_ITERATION_LOG_JSON>" + json.dumps(report) + "</RALPH_ITERATION_LOG_JSON>")
"""


# ---------------------------------------------------------------------------
# Parsing / prompt
# ---------------------------------------------------------------------------


def test_parse_iteration_output_extracts_sentinel_block() -> None:
    output = 'noise\n<RALPH_ITERATION_LOG_JSON>\n{"taskComplete": false}\n</RALPH_ITERATION_LOG_JSON>\n'
    assert parse_iteration_output(output) == {"taskComplete": False}


@pytest.mark.parametrize(
    "output",
    ["no block at all", "<RALPH_ITERATION_LOG_JSON>not json</RALPH_ITERATION_LOG_JSON>",
     "<RALPH_ITERATION_LOG_JSON>[1, 2]</RALPH_ITERATION_LOG_JSON>"],
)
def test_parse_iteration_output_tolerates_missing_or_bad_blocks(output: str) -> None:
    assert parse_iteration_output(output) == {}


def test_build_prompt_includes_task_and_context() -> None:
    prompt = build_prompt(_request(context_block="## Codebase Patterns\n- use pathlib"))
    assert prompt.startswith("# Task 1.2 (attempt 2)")
    assert "Add grammar" in prompt
    assert "- use pathlib" in prompt
    assert "<RALPH_ITERATION_LOG_JSON>" in prompt


def test_redaction_masks_secrets() -> None:
    text = "token=abc123 and key sk-abcdefghijklmnop"
    redacted = _redact_sensitive_text(text)
    assert "abc123" not in redacted
    assert "sk-abcdefghijklmnop" not in redacted
    assert "token=<redacted>" in redacted


# ---------------------------------------------------------------------------
# Command validation
# ---------------------------------------------------------------------------


class TestCommandValidation:
    def test_empty_command(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="agent command is empty"):
            CommandExecutor(_paths(tmp_path), command="  ")

    @pytest.mark.parametrize("command", ["agent | tee out", "agent; rm -rf x", "agent $(whoami)"])
    def test_shell_metacharacters_are_rejected(self, tmp_path: Path, command: str) -> None:
        with pytest.raises(ConfigError, match="shell metacharacters"):
            CommandExecutor(_paths(tmp_path), command=command)

    def test_missing_binary_is_a_config_error(self, tmp_path: Path) -> None:
        executor = CommandExecutor(_paths(tmp_path), command="ralph-test-no-such-binary-xyz")
        with pytest.raises(ConfigError, match="not found"):
            executor(_request())


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def test_successful_agent_report(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    executor = CommandExecutor(paths, command=_script(tmp_path, "agent.py", REPORTING_AGENT))

    result = executor(_request())

    assert result.claimed_complete is True
    assert result.summary == "did 1.2 attempt 2"
    assert result.implemented == ("grammar.py",)
    assert result.patterns == ("grammar lives in grammar.py",)
    assert result.failure is None
    assert result.verification is None
    assert "agent implement iteration=3 task=1.2" in paths.log_path.read_text(encoding="utf-8")


def test_nonzero_exit_is_a_runtime_failure(tmp_path: Path) -> None:
    agent = _script(
        tmp_path,
        "agent.py",
        """
        import sys
        sys.stdin.read()
        sys.stderr.write("ImportError: no module named grammar\\n")
        sys.exit(3)
        """,
    )
    result = CommandExecutor(_paths(tmp_path), command=agent)(_request())

    assert result.claimed_complete is False
    assert "exited with code 3" in result.error_message
    assert result.failure is not None
    assert result.failure.error_type == "runtime"
    assert "ImportError" in result.failure.root_cause


def test_reported_failure_analysis_is_used(tmp_path: Path) -> None:
    agent = _script(
        tmp_path,
        "agent.py",
        """
        import json
        import sys
        sys.stdin.read()
        report = {
            "taskComplete": False,
            "summary": "blocked",
            "failureAnalysis": {"rootCause": "fixture missing", "fixPlan": "add conftest", "errorType": "validation"},
        }
        print("<RALPH_ITERATION_LOG_JSON>" + json.dumps(report) + "</RALPH_ITERATION_LOG_JSON>")
        """,
    )
    result = CommandExecutor(_paths(tmp_path), command=agent)(_request())

    assert result.claimed_complete is False
    assert result.failure is not None
    assert result.failure.root_cause == "fixture missing"
    assert result.failure.fix_plan == "add conftest"
    assert result.failure.error_type == "validation"


def test_timeout_is_reported_as_failure(tmp_path: Path) -> None:
    agent = _script(
        tmp_path,
        "agent.py",
        """
        import time
        time.sleep(10)
        """,
    )
    result = CommandExecutor(_paths(tmp_path), command=agent, timeout_seconds=0.5)(_request())

    assert result.claimed_complete is False
    assert result.failure is not None
    assert result.failure.error_type == "timeout"


# ---------------------------------------------------------------------------
# Failure analysis pass
# ---------------------------------------------------------------------------


ANALYZING_AGENT = """
import json
import os
import sys

prompt = sys.stdin.read()
assert os.environ["RALPH_MODE"] == "analyze"
plan = "pin the grammar version" if "lexer table stale" in prompt else "regenerate the lexer"
report = {
    "failureAnalysis": {
        "rootCause": "import cycle between grammar and lexer",
        "fixPlan": plan,
        "errorType": "runtime",
    }
}
print("<RALPH_ITERATION_LOG_JSON>" + json.dumps(report) + "</RALPH_ITERATION_LOG_JSON>")
"""


def test_build_analysis_prompt_carries_error_and_previous_analysis() -> None:
    previous = FailureAnalysis(root_cause="lexer table stale", fix_plan="rebuild tables")
    prompt = build_analysis_prompt(_request(), "ImportError: grammar", previous)

    assert "ImportError: grammar" in prompt
    assert "root cause: lexer table stale" in prompt
    assert "fix plan: rebuild tables" in prompt
    assert "failureAnalysis" in prompt


def test_analyze_returns_agent_reported_analysis(tmp_path: Path) -> None:
    paths = _paths(tmp_path)
    executor = CommandExecutor(paths, command=_script(tmp_path, "agent.py", ANALYZING_AGENT))
    previous = FailureAnalysis(root_cause="lexer table stale", fix_plan="rebuild tables")

    analysis = executor.analyze(_request(), "ImportError: grammar", previous)

    assert analysis.root_cause == "import cycle between grammar and lexer"
    assert analysis.fix_plan == "pin the grammar version"
    assert analysis.error_type == "runtime"
    assert "agent analyze iteration=3 task=1.2" in paths.log_path.read_text(encoding="utf-8")


def test_analyze_falls_back_to_error_message_without_report(tmp_path: Path) -> None:
    agent = _script(tmp_path, "agent.py", "import sys\nsys.stdin.read()\nprint('no idea')\n")

    analysis = CommandExecutor(_paths(tmp_path), command=agent).analyze(_request(), "ImportError: grammar")

    assert analysis.root_cause == "ImportError: grammar"
    assert analysis.fix_plan == DEFAULT_FIX_PLAN
    assert analysis.error_type == "unknown"


class TestVerification:
    def test_passing_check_command(self, tmp_path: Path) -> None:
        check = _script(tmp_path, "check.py", "print('all good')\n")
        executor = CommandExecutor(
            _paths(tmp_path),
            command=_script(tmp_path, "agent.py", REPORTING_AGENT),
            check_command=check,
        )

        result = executor(_request())

        assert result.verification is not None
        assert result.verification.all_checks_passed is True
        assert result.verification.details == {"exitCode": 0}
        assert "all good" in result.verification.check_output

    def test_failing_check_disagrees_with_claim(self, tmp_path: Path) -> None:
        check = _script(
            tmp_path,
            "check.py",
            """
            import sys
            print("1 failed")
            sys.exit(1)
            """,
        )
        executor = CommandExecutor(
            _paths(tmp_path),
            command=_script(tmp_path, "agent.py", REPORTING_AGENT),
            check_command=check,
        )

        result = executor(_request())

        assert result.claimed_complete is True
        assert result.verification is not None
        assert result.verification.all_checks_passed is False
        assert result.verification.details == {"exitCode": 1}
