"""ralph iterations: append-only iteration logs with listing, summaries, and retention."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any

from ralph.constants import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_RETAINED_ITERATIONS,
    DEFAULT_RETENTION_DAYS,
    ERROR_TYPES,
    ITERATION_LOG_FILENAME_PATTERN,
    ITERATION_STATUSES,
    ITERATIONS_ARCHIVE_DIRNAME,
    SUPPORTED_SCHEMA_VERSIONS,
)
from ralph.models import (
    FailureAnalysis,
    IterationLog,
    SchemaVersionError,
    SessionIOError,
    StateError,
    VerificationEvidence,
    _coerce_bool,
)
from ralph.utils import _read_json, _unlink_if_exists, _write_json_atomic

logger = logging.getLogger(__name__)


def _iteration_filename(iteration: int) -> str:
    return f"{iteration:04d}.json"


def _iteration_log_to_payload(log: IterationLog) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schemaVersion": log.schema_version,
        "sessionId": log.session_id,
        "iteration": log.iteration,
        "taskId": log.task_id,
        "taskAttempt": log.task_attempt,
        "timestamp": log.timestamp,
        "status": log.status,
        "agentClaimedComplete": log.agent_claimed_complete,
        "summary": log.summary,
        "codebasePatterns": list(log.codebase_patterns),
        "implemented": list(log.implemented),
        "durationMs": log.duration_ms,
    }
    if log.commit_before:
        payload["commitBefore"] = log.commit_before
    if log.commit_after:
        payload["commitAfter"] = log.commit_after
    if log.verification_evidence is not None:
        evidence = log.verification_evidence
        payload["verificationEvidence"] = {
            **evidence.details,
            "allChecksPassed": evidence.all_checks_passed,
            "checkOutput": evidence.check_output,
            "collectedAt": evidence.collected_at,
        }
    if log.failure_analysis is not None:
        analysis = log.failure_analysis
        payload["failureAnalysis"] = {
            "rootCause": analysis.root_cause,
            "fixPlan": analysis.fix_plan,
            "errorMessage": analysis.error_message,
            "errorType": analysis.error_type,
        }
    return payload


def _verification_from_payload(raw: Any) -> VerificationEvidence | None:
    if not isinstance(raw, dict):
        return None
    known = {"allChecksPassed", "checkOutput", "collectedAt"}
    return VerificationEvidence(
        all_checks_passed=_coerce_bool(raw.get("allChecksPassed")),
        check_output=str(raw.get("checkOutput", "")),
        collected_at=str(raw.get("collectedAt", "")),
        details={str(key): value for key, value in raw.items() if key not in known},
    )


def _failure_analysis_from_payload(raw: Any) -> FailureAnalysis | None:
    if not isinstance(raw, dict):
        return None
    error_type = str(raw.get("errorType", "unknown")).strip()
    if error_type not in ERROR_TYPES:
        error_type = "unknown"
    return FailureAnalysis(
        root_cause=str(raw.get("rootCause", "")),
        fix_plan=str(raw.get("fixPlan", "")),
        error_message=str(raw.get("errorMessage", "")),
        error_type=error_type,
    )


def _normalize_iteration_log(payload: dict[str, Any]) -> IterationLog:
    version = payload.get("schemaVersion")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise SchemaVersionError(version, SUPPORTED_SCHEMA_VERSIONS)
    status = str(payload.get("status", "")).strip()
    if status not in ITERATION_STATUSES:
        raise StateError(f"iteration.status must be one of {list(ITERATION_STATUSES)}, got '{status}'")
    try:
        iteration = int(payload["iteration"])
        task_attempt = int(payload.get("taskAttempt", 1))
        duration_ms = int(payload.get("durationMs", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise StateError(f"iteration log has invalid numeric fields: {exc}") from exc
    patterns = payload.get("codebasePatterns") or []
    implemented = payload.get("implemented") or []
    return IterationLog(
        schema_version=int(version),
        session_id=str(payload.get("sessionId", "")),
        iteration=iteration,
        task_id=str(payload.get("taskId", "")),
        task_attempt=task_attempt,
        timestamp=str(payload.get("timestamp", "")),
        status=status,
        agent_claimed_complete=_coerce_bool(payload.get("agentClaimedComplete")),
        summary=str(payload.get("summary") or ""),
        verification_evidence=_verification_from_payload(payload.get("verificationEvidence")),
        failure_analysis=_failure_analysis_from_payload(payload.get("failureAnalysis")),
        codebase_patterns=tuple(str(item) for item in patterns if isinstance(item, str)),
        implemented=tuple(str(item) for item in implemented if isinstance(item, str)),
        duration_ms=duration_ms,
        commit_before=str(payload.get("commitBefore") or ""),
        commit_after=str(payload.get("commitAfter") or ""),
    )


class IterationStore:
    """One immutable JSON document per iteration under ``iterations/``."""

    def __init__(self, iterations_dir: Path) -> None:
        self.iterations_dir = Path(iterations_dir)

    @property
    def archive_dir(self) -> Path:
        return self.iterations_dir / ITERATIONS_ARCHIVE_DIRNAME

    def save_iteration(self, log: IterationLog) -> Path:
        # A crash between this write and the session write re-runs the same
        # iteration number on resume; the retry replaces the orphaned log.
        path = self.iterations_dir / _iteration_filename(log.iteration)
        _write_json_atomic(path, _iteration_log_to_payload(log))
        return path

    def read_iteration(self, iteration: int) -> IterationLog | None:
        payload = _read_json(self.iterations_dir / _iteration_filename(iteration))
        if payload is None:
            return None
        return _normalize_iteration_log(payload)

    def _log_files(self) -> list[tuple[int, Path]]:
        try:
            entries = list(self.iterations_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise SessionIOError(f"failed to list {self.iterations_dir}: {exc}") from exc
        files: list[tuple[int, Path]] = []
        for entry in entries:
            match = ITERATION_LOG_FILENAME_PATTERN.match(entry.name)
            if match and entry.is_file():
                files.append((int(match.group(1)), entry))
        files.sort(key=lambda item: item[0])
        return files

    def list_iterations(
        self,
        *,
        task_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[IterationLog]:
        logs: list[IterationLog] = []
        for _number, path in self._log_files():
            payload = _read_json(path)
            if payload is None:
                continue
            try:
                log = _normalize_iteration_log(payload)
            except StateError as exc:
                logger.warning("skipping unreadable iteration log %s: %s", path, exc)
                continue
            if task_id is not None and log.task_id != task_id:
                continue
            if status is not None and log.status != status:
                continue
            logs.append(log)
        start = max(0, offset)
        end = None if limit is None else start + max(0, limit)
        return logs[start:end]

    def recent_summary(self, count: int = 5) -> dict[str, Any]:
        logs = self.list_iterations()
        stats = {
            "total": len(logs),
            "success": sum(1 for log in logs if log.status == "success"),
            "failed": sum(1 for log in logs if log.status == "failed"),
            "running": sum(1 for log in logs if log.status == "running"),
            "gateMismatches": sum(1 for log in logs if log.gates_disagree),
        }
        recent = logs[-count:] if count > 0 else []
        lines = [
            f"iteration {log.iteration} [{log.task_id}] {log.status}: {log.summary or '-'}"
            for log in recent
        ]
        return {"iterations": recent, "stats": stats, "summary": "\n".join(lines)}

    def last_failure(self) -> IterationLog | None:
        for log in reversed(self.list_iterations(status="failed")):
            if log.failure_analysis is not None:
                return log
        return None

    def task_failure_history(self, task_id: str, max_attempts: int = 3) -> list[FailureAnalysis]:
        analyses = [
            log.failure_analysis
            for log in self.list_iterations(task_id=task_id, status="failed")
            if log.failure_analysis is not None
        ]
        return analyses[-max_attempts:] if max_attempts > 0 else []

    def cleanup(
        self,
        *,
        keep: int = DEFAULT_RETAINED_ITERATIONS,
        max_age_days: int = DEFAULT_RETENTION_DAYS,
        dry_run: bool = False,
    ) -> dict[str, list[str]]:
        """Keep the newest ``keep`` logs, archive younger overflow, delete the rest."""
        files = self._log_files()
        now = time.time()
        max_age_seconds = max_age_days * 24 * 60 * 60
        result: dict[str, list[str]] = {"kept": [], "archived": [], "deleted": []}
        overflow = max(0, len(files) - max(0, keep))
        to_archive: list[Path] = []
        to_delete: list[Path] = []
        for index, (_number, path) in enumerate(files):
            if index >= overflow:
                result["kept"].append(path.name)
                continue
            try:
                age = now - path.stat().st_mtime
            except OSError as exc:
                raise SessionIOError(f"failed to stat {path}: {exc}") from exc
            if age < max_age_seconds:
                to_archive.append(path)
                result["archived"].append(path.name)
            else:
                to_delete.append(path)
                result["deleted"].append(path.name)
        if dry_run:
            return result
        if to_archive:
            try:
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                for path in to_archive:
                    os.replace(path, self.archive_dir / path.name)
            except OSError as exc:
                raise SessionIOError(f"failed to archive iteration logs: {exc}") from exc
        for path in to_delete:
            _unlink_if_exists(path)
        return result

    def clear(self) -> int:
        """Remove every live (non-archived) iteration log; return how many."""
        removed = 0
        for _number, path in self._log_files():
            if _unlink_if_exists(path):
                removed += 1
        return removed


def new_iteration_log(
    *,
    session_id: str,
    iteration: int,
    task_id: str,
    task_attempt: int,
    timestamp: str,
    status: str,
    agent_claimed_complete: bool,
    summary: str = "",
    verification_evidence: VerificationEvidence | None = None,
    failure_analysis: FailureAnalysis | None = None,
    codebase_patterns: tuple[str, ...] = (),
    implemented: tuple[str, ...] = (),
    duration_ms: int = 0,
    commit_before: str = "",
    commit_after: str = "",
) -> IterationLog:
    return IterationLog(
        schema_version=CURRENT_SCHEMA_VERSION,
        session_id=session_id,
        iteration=iteration,
        task_id=task_id,
        task_attempt=task_attempt,
        timestamp=timestamp,
        status=status,
        agent_claimed_complete=agent_claimed_complete,
        summary=summary,
        verification_evidence=verification_evidence,
        failure_analysis=failure_analysis,
        codebase_patterns=codebase_patterns,
        implemented=implemented,
        duration_ms=duration_ms,
        commit_before=commit_before,
        commit_after=commit_after,
    )
