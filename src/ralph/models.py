"""ralph data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph.constants import (
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_ERROR_STRATEGY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TASKS_FILE,
    ITERATIONS_ARCHIVE_DIRNAME,
    ITERATIONS_DIRNAME,
    LOCK_FILENAME,
    LOGS_DIRNAME,
    ORCHESTRATOR_LOG_FILENAME,
    POLICY_FILENAME,
    RALPH_DIRNAME,
    SESSION_FILENAME,
    STOP_FILENAME,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RalphError(RuntimeError):
    """Base class for infrastructure errors that abort the current iteration."""


class StateError(RalphError):
    """Raised when a persisted document cannot be loaded or validated."""


class SchemaVersionError(StateError):
    """Raised when a persisted document carries an unrecognized schema version."""

    def __init__(self, found: Any, supported: tuple[int, ...]) -> None:
        super().__init__(
            f"unsupported schemaVersion {found!r} (supported: {', '.join(str(v) for v in supported)})"
        )
        self.found = found
        self.supported = supported


class SessionIOError(RalphError):
    """Raised when reading or writing a persisted artifact fails at the OS level."""


class LockHeldError(RalphError):
    """Raised when another live process owns the run lock."""

    def __init__(self, record: "LockRecord", lock_path: Path) -> None:
        super().__init__(
            f"already running: lock held at {lock_path} "
            f"(pid={record.pid}, host={record.host or '<unknown>'}, "
            f"session={record.session_id}, since={record.timestamp})"
        )
        self.record = record
        self.lock_path = lock_path


class LockLostError(RalphError):
    """Raised when the current process no longer owns the run lock."""


class RunTerminalError(RalphError):
    """Raised when an operation needs a running session but the run has ended."""


class ConfigError(RalphError):
    """Raised when run configuration is invalid."""


class TaskFailure(Exception):
    """Domain failure of a task attempt.

    Executors may raise this instead of returning a failed ``IterationResult``;
    the state machine records it in the session context and never lets it
    escape as a process fault.
    """

    def __init__(self, message: str, *, analysis: "FailureAnalysis | None" = None) -> None:
        super().__init__(message)
        self.analysis = analysis


# ---------------------------------------------------------------------------
# Session document
# ---------------------------------------------------------------------------


@dataclass
class CurrentTask:
    id: str
    description: str
    attempt_count: int = 0


@dataclass
class ErrorHandling:
    strategy: str = DEFAULT_ERROR_STRATEGY
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(frozen=True)
class FailureRecord:
    iteration: int
    task_id: str
    root_cause: str
    fix_plan: str


@dataclass
class SessionContext:
    recent_failures: list[FailureRecord] = field(default_factory=list)
    codebase_patterns: list[str] = field(default_factory=list)


@dataclass
class SessionState:
    schema_version: int
    session_id: str
    change_id: str
    status: str
    iteration: int
    max_iterations: int
    error_handling: ErrorHandling
    context: SessionContext
    current_task: CurrentTask | None = None
    abandoned_tasks: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Iteration history
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailureAnalysis:
    root_cause: str
    fix_plan: str
    error_message: str = ""
    error_type: str = "unknown"


@dataclass(frozen=True)
class VerificationEvidence:
    all_checks_passed: bool
    check_output: str = ""
    collected_at: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IterationLog:
    schema_version: int
    session_id: str
    iteration: int
    task_id: str
    task_attempt: int
    timestamp: str
    status: str
    agent_claimed_complete: bool
    summary: str = ""
    verification_evidence: VerificationEvidence | None = None
    failure_analysis: FailureAnalysis | None = None
    codebase_patterns: tuple[str, ...] = ()
    implemented: tuple[str, ...] = ()
    duration_ms: int = 0
    commit_before: str = ""
    commit_after: str = ""

    @property
    def gates_disagree(self) -> bool:
        """True when the agent's claim and the external verification differ."""
        if self.verification_evidence is None:
            return False
        return self.agent_claimed_complete != self.verification_evidence.all_checks_passed


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockRecord:
    pid: int
    timestamp: str
    session_id: str
    host: str = ""
    process_start: str = ""


@dataclass(frozen=True)
class LockStatus:
    status: str  # "free" | "locked" | "stale"
    record: LockRecord | None = None

    @property
    def is_free(self) -> bool:
        return self.status == "free"

    @property
    def is_locked(self) -> bool:
        return self.status == "locked"

    @property
    def is_stale(self) -> bool:
        return self.status == "stale"


# ---------------------------------------------------------------------------
# Run configuration and execution boundary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunPaths:
    root: Path

    @classmethod
    def for_base_path(cls, base_path: Path | str) -> "RunPaths":
        return cls(root=Path(base_path).expanduser().resolve() / RALPH_DIRNAME)

    @property
    def base_path(self) -> Path:
        return self.root.parent

    @property
    def session_path(self) -> Path:
        return self.root / SESSION_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILENAME

    @property
    def stop_path(self) -> Path:
        return self.root / STOP_FILENAME

    @property
    def iterations_dir(self) -> Path:
        return self.root / ITERATIONS_DIRNAME

    @property
    def archive_dir(self) -> Path:
        return self.iterations_dir / ITERATIONS_ARCHIVE_DIRNAME

    @property
    def log_path(self) -> Path:
        return self.root / LOGS_DIRNAME / ORCHESTRATOR_LOG_FILENAME

    @property
    def policy_path(self) -> Path:
        return self.root / POLICY_FILENAME

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.iterations_dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RunConfig:
    change_id: str
    base_path: Path
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    error_strategy: str = DEFAULT_ERROR_STRATEGY
    max_retries: int = DEFAULT_MAX_RETRIES
    tasks_file: str = DEFAULT_TASKS_FILE
    agent_command: str = ""
    check_command: str = ""
    agent_timeout_seconds: float = DEFAULT_AGENT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class EventSettings:
    buffer_size: int
    backpressure: str
    keepalive_seconds: float


@dataclass(frozen=True)
class Task:
    id: str
    description: str
    done: bool = False


@dataclass(frozen=True)
class IterationRequest:
    run_id: str
    iteration: int
    task: Task
    attempt: int
    context_block: str


@dataclass(frozen=True)
class IterationResult:
    """What the agent reported for one attempt, plus optional verification."""
    claimed_complete: bool
    summary: str = ""
    verification: VerificationEvidence | None = None
    failure: FailureAnalysis | None = None
    patterns: tuple[str, ...] = ()
    implemented: tuple[str, ...] = ()
    error_message: str = ""


@dataclass(frozen=True)
class RunOutcome:
    status: str
    iterations: int
    message: str
    reclaimed_stale_lock: bool = False
