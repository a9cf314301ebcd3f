from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

from ralph.constants import (
    DEFAULT_FIX_PLAN,
    ERROR_TYPES,
    ITERATION_LOG_SENTINEL_PATTERN,
    MAX_CAPTURED_OUTPUT_CHARS,
)
from ralph.models import (
    ConfigError,
    FailureAnalysis,
    IterationRequest,
    IterationResult,
    RunPaths,
    VerificationEvidence,
)
from ralph.utils import _append_log, _compact_log_text, _utc_now


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>", redacted)
    return redacted


_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


def _split_command(command: str, *, label: str) -> list[str]:
    if _command_uses_shell_syntax(command):
        raise ConfigError(
            f"{label} contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise ConfigError(f"{label} could not be parsed: {exc}") from exc
    if not argv:
        raise ConfigError(f"{label} resolved to empty arguments")
    return argv


def _tail(text: str, limit: int = MAX_CAPTURED_OUTPUT_CHARS) -> str:
    stripped = text.strip()
    return stripped if len(stripped) <= limit else stripped[-limit:]


def parse_iteration_output(output: str) -> dict[str, Any]:
    """Return the JSON object inside the agent's sentinel block, or {}."""
    match = ITERATION_LOG_SENTINEL_PATTERN.search(output)
    if not match:
        return {}
    try:
        loaded = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _failure_from_structured(raw: Any, *, fallback_message: str, error_type: str) -> FailureAnalysis:
    if isinstance(raw, dict) and str(raw.get("rootCause", "")).strip():
        reported_type = str(raw.get("errorType", error_type)).strip()
        return FailureAnalysis(
            root_cause=str(raw["rootCause"]).strip(),
            fix_plan=str(raw.get("fixPlan") or DEFAULT_FIX_PLAN).strip(),
            error_message=str(raw.get("errorMessage") or fallback_message),
            error_type=reported_type if reported_type in ERROR_TYPES else "unknown",
        )
    return FailureAnalysis(
        root_cause=fallback_message,
        fix_plan=DEFAULT_FIX_PLAN,
        error_message=fallback_message,
        error_type=error_type,
    )


def build_prompt(request: IterationRequest) -> str:
    lines = [
        f"# Task {request.task.id} (attempt {request.attempt})",
        "",
        request.task.description,
        "",
    ]
    if request.context_block:
        lines.extend([request.context_block, ""])
    lines.append(
        "When finished, print a JSON object between <RALPH_ITERATION_LOG_JSON> and "
        "</RALPH_ITERATION_LOG_JSON> with keys: taskComplete, summary, implemented, "
        "codebasePatterns, failureAnalysis."
    )
    return "\n".join(lines) + "\n"


def build_analysis_prompt(
    request: IterationRequest,
    error_message: str,
    previous: FailureAnalysis | None = None,
) -> str:
    lines = [
        f"# Failure analysis for task {request.task.id} (attempt {request.attempt})",
        "",
        request.task.description,
        "",
        "The last attempt failed with:",
        "",
        error_message.strip() or "(no error output)",
        "",
    ]
    if previous is not None:
        lines.extend(
            [
                "The previous failure was analyzed as:",
                f"- root cause: {previous.root_cause}",
                f"- fix plan: {previous.fix_plan}",
                "",
                "If the same approach failed again, propose a different fix.",
                "",
            ]
        )
    lines.append(
        "Do not change any files. Print a JSON object between <RALPH_ITERATION_LOG_JSON> and "
        "</RALPH_ITERATION_LOG_JSON> with a failureAnalysis key holding rootCause, fixPlan, "
        "errorMessage and errorType (validation, runtime, timeout or unknown)."
    )
    return "\n".join(lines) + "\n"


class CommandExecutor:
    """Runs the configured agent command for one task attempt, then the check command."""

    def __init__(
        self,
        paths: RunPaths,
        *,
        command: str,
        check_command: str = "",
        timeout_seconds: float = 0.0,
        cwd: Path | None = None,
    ) -> None:
        if not command.strip():
            raise ConfigError("agent command is empty; set agent.command in .ralph/policy.yaml or pass --agent-command")
        self.paths = paths
        self.argv = _split_command(command, label="agent command")
        self.check_argv = _split_command(check_command, label="check command") if check_command.strip() else []
        self.timeout: float | None = None if timeout_seconds <= 0 else timeout_seconds
        self.cwd = Path(cwd) if cwd is not None else paths.base_path

    def _environment(self, request: IterationRequest) -> dict[str, str]:
        env = os.environ.copy()
        env["RALPH_RUN_ID"] = request.run_id
        env["RALPH_ITERATION"] = str(request.iteration)
        env["RALPH_TASK_ID"] = request.task.id
        env["RALPH_TASK_ATTEMPT"] = str(request.attempt)
        env["RALPH_STATE_DIR"] = str(self.paths.root)
        return env

    def _run_agent(self, request: IterationRequest, prompt: str, *, mode: str) -> subprocess.CompletedProcess[str]:
        _append_log(
            self.paths,
            (
                f"agent {mode} iteration={request.iteration} task={request.task.id} "
                f"attempt={request.attempt} command={_redact_sensitive_text(shlex.join(self.argv))}"
            ),
        )
        env = self._environment(request)
        env["RALPH_MODE"] = mode
        try:
            proc = subprocess.run(
                self.argv,
                cwd=self.cwd,
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"agent command not found: {self.argv[0]}") from exc
        if proc.stderr and proc.stderr.strip():
            _append_log(
                self.paths,
                f"agent stderr task={request.task.id}: {_compact_log_text(_redact_sensitive_text(proc.stderr))}",
            )
        return proc

    def __call__(self, request: IterationRequest) -> IterationResult:
        try:
            proc = self._run_agent(request, build_prompt(request), mode="implement")
        except subprocess.TimeoutExpired:
            message = f"agent timed out after {self.timeout:.0f}s"
            _append_log(self.paths, f"agent timeout iteration={request.iteration} task={request.task.id}")
            return IterationResult(
                claimed_complete=False,
                summary=message,
                failure=FailureAnalysis(
                    root_cause=message,
                    fix_plan="Split the task into smaller steps that finish within the timeout",
                    error_message=message,
                    error_type="timeout",
                ),
                error_message=message,
            )

        stdout = proc.stdout or ""
        structured = parse_iteration_output(stdout)
        claimed = proc.returncode == 0 and bool(structured.get("taskComplete", True))
        summary = str(structured.get("summary") or "").strip() or _compact_log_text(_tail(stdout) or "(no output)")
        patterns = tuple(str(item) for item in structured.get("codebasePatterns", []) if isinstance(item, str))
        implemented = tuple(str(item) for item in structured.get("implemented", []) if isinstance(item, str))

        failure = None
        error_message = ""
        if not claimed:
            if proc.returncode != 0:
                error_message = f"agent exited with code {proc.returncode}: {_compact_log_text(_tail(proc.stderr or stdout))}"
            else:
                error_message = f"agent reported task incomplete: {summary}"
            failure = _failure_from_structured(
                structured.get("failureAnalysis"),
                fallback_message=error_message,
                error_type="runtime",
            )

        return IterationResult(
            claimed_complete=claimed,
            summary=summary,
            verification=self._verify(request) if self.check_argv else None,
            failure=failure,
            patterns=patterns,
            implemented=implemented,
            error_message=error_message,
        )

    def analyze(
        self,
        request: IterationRequest,
        error_message: str,
        previous: FailureAnalysis | None = None,
    ) -> FailureAnalysis:
        """Ask the agent for a root cause and fix plan of the failed attempt.

        Falls back to the raw error message when the agent times out or does
        not report a usable ``failureAnalysis``.
        """
        try:
            proc = self._run_agent(
                request,
                build_analysis_prompt(request, error_message, previous),
                mode="analyze",
            )
        except subprocess.TimeoutExpired:
            _append_log(self.paths, f"agent analysis timeout iteration={request.iteration} task={request.task.id}")
            proc = None
        structured = parse_iteration_output(proc.stdout or "") if proc is not None else {}
        return _failure_from_structured(
            structured.get("failureAnalysis"),
            fallback_message=error_message,
            error_type="unknown",
        )

    def _verify(self, request: IterationRequest) -> VerificationEvidence:
        try:
            proc = subprocess.run(
                self.check_argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=self._environment(request),
                check=False,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"check command not found: {self.check_argv[0]}") from exc
        except subprocess.TimeoutExpired:
            return VerificationEvidence(
                all_checks_passed=False,
                check_output="check command timed out",
                collected_at=_utc_now(),
                details={"exitCode": None},
            )
        output = _redact_sensitive_text(_tail((proc.stdout or "") + (proc.stderr or "")))
        _append_log(
            self.paths,
            f"check finished task={request.task.id} exit={proc.returncode}",
        )
        return VerificationEvidence(
            all_checks_passed=proc.returncode == 0,
            check_output=output,
            collected_at=_utc_now(),
            details={"exitCode": proc.returncode},
        )
