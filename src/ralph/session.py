"""ralph session: state document construction, validation, and crash-safe persistence."""

from __future__ import annotations

import logging
from typing import Any

from ralph.constants import (
    CURRENT_SCHEMA_VERSION,
    ERROR_STRATEGIES,
    RECENT_FAILURES_WINDOW,
    SESSION_STATUSES,
    SUPPORTED_SCHEMA_VERSIONS,
)
from ralph.models import (
    CurrentTask,
    ErrorHandling,
    FailureRecord,
    RunConfig,
    RunPaths,
    SchemaVersionError,
    SessionContext,
    SessionState,
    StateError,
)
from ralph.utils import (
    _generate_session_id,
    _read_json,
    _unlink_if_exists,
    _utc_now,
    _write_json_atomic,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Document <-> payload
# ---------------------------------------------------------------------------


def _session_to_payload(state: SessionState) -> dict[str, Any]:
    current_task = None
    if state.current_task is not None:
        current_task = {
            "id": state.current_task.id,
            "description": state.current_task.description,
            "attemptCount": state.current_task.attempt_count,
        }
    return {
        "schemaVersion": state.schema_version,
        "sessionId": state.session_id,
        "changeId": state.change_id,
        "status": state.status,
        "iteration": state.iteration,
        "maxIterations": state.max_iterations,
        "currentTask": current_task,
        "errorHandling": {
            "strategy": state.error_handling.strategy,
            "maxRetries": state.error_handling.max_retries,
        },
        "context": {
            "recentFailures": [
                {
                    "iteration": record.iteration,
                    "taskId": record.task_id,
                    "rootCause": record.root_cause,
                    "fixPlan": record.fix_plan,
                }
                for record in state.context.recent_failures
            ],
            "codebasePatterns": list(state.context.codebase_patterns),
        },
        "abandonedTasks": list(state.abandoned_tasks),
        "createdAt": state.created_at,
        "updatedAt": state.updated_at,
    }


def _require_int(payload: dict[str, Any], key: str, *, minimum: int) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise StateError(f"session.{key} must be an integer")
    if value < minimum:
        raise StateError(f"session.{key} must be >= {minimum}")
    return value


def _normalize_session(payload: dict[str, Any]) -> SessionState:
    version = payload.get("schemaVersion")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise SchemaVersionError(version, SUPPORTED_SCHEMA_VERSIONS)

    required = ("sessionId", "changeId", "status", "iteration", "maxIterations", "errorHandling", "context")
    missing = [key for key in required if key not in payload]
    if missing:
        raise StateError(f"session document missing required keys: {missing}")

    status = str(payload.get("status", "")).strip()
    if status not in SESSION_STATUSES:
        raise StateError(f"session.status must be one of {list(SESSION_STATUSES)}, got '{status}'")

    iteration = _require_int(payload, "iteration", minimum=0)
    max_iterations = _require_int(payload, "maxIterations", minimum=1)

    error_raw = payload.get("errorHandling")
    if not isinstance(error_raw, dict):
        raise StateError("session.errorHandling must be an object")
    strategy = str(error_raw.get("strategy", "")).strip()
    if strategy not in ERROR_STRATEGIES:
        raise StateError(f"session.errorHandling.strategy must be one of {list(ERROR_STRATEGIES)}, got '{strategy}'")
    max_retries = _require_int(error_raw, "maxRetries", minimum=1)

    context_raw = payload.get("context")
    if not isinstance(context_raw, dict):
        raise StateError("session.context must be an object")
    failures_raw = context_raw.get("recentFailures", [])
    patterns_raw = context_raw.get("codebasePatterns", [])
    if not isinstance(failures_raw, list) or not isinstance(patterns_raw, list):
        raise StateError("session.context.recentFailures and codebasePatterns must be lists")
    failures: list[FailureRecord] = []
    for entry in failures_raw[-RECENT_FAILURES_WINDOW:]:
        if not isinstance(entry, dict):
            raise StateError("session.context.recentFailures entries must be objects")
        failures.append(
            FailureRecord(
                iteration=int(entry.get("iteration", 0)),
                task_id=str(entry.get("taskId", "")),
                root_cause=str(entry.get("rootCause", "")),
                fix_plan=str(entry.get("fixPlan", "")),
            )
        )
    patterns: list[str] = []
    for raw_pattern in patterns_raw:
        pattern = str(raw_pattern)
        if pattern not in patterns:
            patterns.append(pattern)

    current_task = None
    task_raw = payload.get("currentTask")
    if task_raw is not None:
        if not isinstance(task_raw, dict) or not str(task_raw.get("id", "")).strip():
            raise StateError("session.currentTask must be null or an object with an id")
        current_task = CurrentTask(
            id=str(task_raw["id"]).strip(),
            description=str(task_raw.get("description", "")),
            attempt_count=_require_int(task_raw, "attemptCount", minimum=0),
        )

    abandoned_raw = payload.get("abandonedTasks", [])
    abandoned = [str(item) for item in abandoned_raw] if isinstance(abandoned_raw, list) else []

    return SessionState(
        schema_version=int(version),
        session_id=str(payload.get("sessionId", "")).strip(),
        change_id=str(payload.get("changeId", "")).strip(),
        status=status,
        iteration=iteration,
        max_iterations=max_iterations,
        error_handling=ErrorHandling(strategy=strategy, max_retries=max_retries),
        context=SessionContext(recent_failures=failures, codebase_patterns=patterns),
        current_task=current_task,
        abandoned_tasks=abandoned,
        created_at=str(payload.get("createdAt", "")),
        updated_at=str(payload.get("updatedAt", "")),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Owns ``session.json`` for one run directory."""

    def __init__(self, paths: RunPaths) -> None:
        self.paths = paths

    def create_initial_state(self, config: RunConfig, *, session_id: str | None = None) -> SessionState:
        now = _utc_now()
        return SessionState(
            schema_version=CURRENT_SCHEMA_VERSION,
            session_id=session_id or _generate_session_id(),
            change_id=config.change_id,
            status="running",
            iteration=0,
            max_iterations=config.max_iterations,
            error_handling=ErrorHandling(
                strategy=config.error_strategy,
                max_retries=config.max_retries,
            ),
            context=SessionContext(),
            current_task=None,
            created_at=now,
            updated_at=now,
        )

    def write_session(self, state: SessionState) -> None:
        payload = _session_to_payload(state)
        # Refuse to persist a document that could not be read back.
        _normalize_session(payload)
        _write_json_atomic(self.paths.session_path, payload)

    def read_session(self) -> SessionState | None:
        payload = _read_json(self.paths.session_path)
        if payload is None:
            return None
        try:
            return _normalize_session(payload)
        except SchemaVersionError:
            logger.error("session at %s has an unsupported schema version", self.paths.session_path)
            raise

    def delete_session(self) -> None:
        """Remove the document together with its lock and any stop request."""
        _unlink_if_exists(self.paths.session_path)
        _unlink_if_exists(self.paths.lock_path)
        _unlink_if_exists(self.paths.stop_path)
