"""ralph engine: the run state machine.

One :class:`RunStateMachine` drives a single run: it owns the run lock for
its whole lifetime, executes one task attempt per iteration and commits each
iteration as "iteration log first, session document second". Observers only
ever see committed state through the event bus.
"""

from __future__ import annotations

import copy
import functools
import logging
import threading
import time
from typing import Any, Callable

from ralph.constants import (
    DEFAULT_FIX_PLAN,
    EVENT_LOG,
    EVENT_RUN_STATUS,
    EVENT_TASK_ABANDONED,
    EVENT_TASK_COMPLETE,
    EVENT_TASK_GATE_MISMATCH,
    EVENT_TASK_START,
    TERMINAL_STATUSES,
)
from ralph.context import (
    add_failure_to_context,
    add_pattern_to_context,
    failure_record_from_analysis,
    render_context_block,
)
from ralph.events import EventBus
from ralph.iterations import IterationStore, _iteration_log_to_payload, new_iteration_log
from ralph.liveness import ProcessLiveness
from ralph.lock import LockGuard
from ralph.models import (
    CurrentTask,
    FailureAnalysis,
    IterationLog,
    IterationRequest,
    IterationResult,
    LockHeldError,
    LockLostError,
    RalphError,
    RunConfig,
    RunOutcome,
    RunPaths,
    RunTerminalError,
    SessionIOError,
    SessionState,
    StateError,
    Task,
    TaskFailure,
)
from ralph.session import SessionStore
from ralph.tasks import TaskSource
from ralph.utils import _append_log, _generate_session_id, _git_head_sha, _unlink_if_exists, _utc_now

logger = logging.getLogger(__name__)

Executor = Callable[[IterationRequest], IterationResult]
Analyzer = Callable[[IterationRequest, str, FailureAnalysis | None], FailureAnalysis]

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class RunStateMachine:
    def __init__(
        self,
        config: RunConfig,
        *,
        task_source: TaskSource,
        executor: Executor,
        events: EventBus | None = None,
        liveness: ProcessLiveness | None = None,
        analyzer: Analyzer | None = None,
        revision: Callable[[], str] | None = None,
    ) -> None:
        self.config = config
        self.run_id = config.change_id
        self.paths = RunPaths.for_base_path(config.base_path)
        self.store = SessionStore(self.paths)
        self.iterations = IterationStore(self.paths.iterations_dir)
        self.task_source = task_source
        self.executor = executor
        self.analyzer = analyzer
        self.events = events if events is not None else EventBus()
        self.revision = revision if revision is not None else functools.partial(_git_head_sha, self.paths.base_path)
        self.owner_id = _generate_session_id()
        self.lock = LockGuard(self.paths.lock_path, session_id=self.owner_id, liveness=liveness)
        self.state: SessionState | None = None
        self.last_message = ""
        self._lock_held = False
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Logging / events
    # ------------------------------------------------------------------

    def _log(self, level: str, message: str) -> None:
        _append_log(self.paths, f"[{self.run_id}] {level}: {message}")
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", self.run_id, message)
        self.events.emit(self.run_id, EVENT_LOG, level=level, message=message)

    def _announce_status(self, state: SessionState, message: str = "") -> None:
        self.events.emit(
            self.run_id,
            EVENT_RUN_STATUS,
            status=state.status,
            iteration=state.iteration,
            maxIterations=state.max_iterations,
            message=message,
        )
        if state.status in TERMINAL_STATUSES:
            self.events.close_run(self.run_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, resume: bool = True) -> SessionState:
        """Acquire the run lock and load (or create) the session document."""
        if self._lock_held and self.state is not None:
            return self.state
        try:
            self.paths.ensure()
        except OSError as exc:
            raise SessionIOError(f"failed to prepare {self.paths.root}: {exc}") from exc

        try:
            self.lock.acquire()
        except LockHeldError as exc:
            self._log("error", f"already running: pid={exc.record.pid} session={exc.record.session_id}")
            raise
        self._lock_held = True
        if self.lock.reclaimed_stale:
            holder = self.lock.reclaimed
            detail = f"pid={holder.pid}, since={holder.timestamp}" if holder else "unreadable record"
            self._log("warn", f"recovered stale lock ({detail})")

        try:
            state = self.store.read_session() if resume else None
            if state is not None and state.status in TERMINAL_STATUSES:
                raise RunTerminalError(
                    f"run {self.run_id} is already {state.status}; reset it or start without resume"
                )
            if state is None:
                if not resume:
                    removed = self.iterations.clear()
                    if removed:
                        self._log("info", f"discarded {removed} iteration log(s) from the previous session")
                _unlink_if_exists(self.paths.stop_path)
                state = self.store.create_initial_state(self.config, session_id=self.owner_id)
                self.store.write_session(state)
                self._log("info", f"run started session={state.session_id} max_iterations={state.max_iterations}")
            else:
                self._log("info", f"run resumed session={state.session_id} at iteration {state.iteration}")
        except BaseException:
            self._release()
            raise

        self.state = state
        self._announce_status(state)
        return state

    def _release(self) -> None:
        if not self._lock_held:
            return
        self._lock_held = False
        self.lock.release()

    def request_stop(self) -> None:
        self._stop_event.set()
        logger.info("[%s] stop requested", self.run_id)

    def stop_requested(self) -> bool:
        return self._stop_event.is_set() or self.paths.stop_path.exists()

    def _require_running(self) -> SessionState:
        if self.state is None or not self._lock_held:
            raise StateError(f"run {self.run_id} has not been started")
        if self.state.status != "running":
            raise RunTerminalError(f"run {self.run_id} is {self.state.status}")
        return self.state

    def _finish(self, status: str, message: str) -> None:
        assert self.state is not None
        final = copy.deepcopy(self.state)
        final.status = status
        final.updated_at = _utc_now()
        self.store.write_session(final)
        self.state = final
        self.last_message = message
        if status == "stopped":
            _unlink_if_exists(self.paths.stop_path)
        self._log("error" if status == "failed" else "info", f"run {status}: {message}")
        self._announce_status(final, message)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _select_task(self, state: SessionState) -> Task | None:
        abandoned = set(state.abandoned_tasks)
        if state.current_task is not None and state.current_task.id not in abandoned:
            task = self.task_source.get_task(state.current_task.id)
            if task is not None and not task.done:
                return task
        return self.task_source.next_task(exclude=abandoned)

    def _execute(self, request: IterationRequest) -> IterationResult:
        try:
            return self.executor(request)
        except TaskFailure as exc:
            return IterationResult(
                claimed_complete=False,
                summary=str(exc),
                failure=exc.analysis,
                error_message=str(exc),
            )

    def _analyze_failure(
        self,
        state: SessionState,
        request: IterationRequest,
        error_message: str,
        reported: FailureAnalysis,
    ) -> FailureAnalysis:
        """Run the dedicated analysis pass, seeded with the most recent recorded failure."""
        assert self.analyzer is not None
        previous: FailureAnalysis | None = None
        if state.context.recent_failures:
            last = state.context.recent_failures[-1]
            previous = FailureAnalysis(
                root_cause=last.root_cause,
                fix_plan=last.fix_plan,
                error_message="previous failure",
            )
        self._log("info", f"analyzing failure of task {request.task.id}")
        try:
            analysis = self.analyzer(request, error_message, previous)
        except TaskFailure as exc:
            self._log("warn", f"failure analysis unavailable for task {request.task.id}: {exc}")
            return reported
        if not analysis.root_cause.strip():
            return reported
        return analysis

    def _apply_error_strategy(
        self,
        state: SessionState,
        task: Task,
        attempt: int,
        failure: FailureAnalysis,
    ) -> bool:
        """Apply the configured strategy once retries are used up; return True if the task was abandoned."""
        max_retries = state.error_handling.max_retries
        if attempt < max_retries:
            self._log("warn", f"task {task.id} failed (attempt {attempt}/{max_retries}), retrying: {failure.root_cause}")
            return False

        strategy = state.error_handling.strategy
        if strategy == "retry":
            self._log("warn", f"task {task.id} failed {attempt} time(s), retrying: {failure.root_cause}")
            return False
        if strategy == "escalate":
            state.status = "failed"
            self.last_message = f"task {task.id} failed after {attempt} attempt(s): {failure.root_cause}"
            return False

        if strategy == "analyze-retry":
            add_pattern_to_context(
                state,
                f"Task {task.id} abandoned after {attempt} attempts: {failure.root_cause}",
            )
        if task.id not in state.abandoned_tasks:
            state.abandoned_tasks.append(task.id)
        state.current_task = None
        return True

    def run_iteration(self) -> bool:
        """Run one task attempt; return True while the run is still running."""
        state = self._require_running()
        if self.stop_requested():
            self._finish("stopped", "stop requested")
            return False
        try:
            self.lock.renew()
        except LockLostError:
            # The record now belongs to another owner.
            self._lock_held = False
            raise

        task = self._select_task(state)
        if task is None:
            if state.abandoned_tasks:
                self._finish(
                    "failed",
                    f"no task left to attempt; abandoned: {', '.join(state.abandoned_tasks)}",
                )
            else:
                self._finish("completed", "all tasks completed")
            return False
        if state.iteration >= state.max_iterations:
            self._finish("failed", f"max iterations reached ({state.max_iterations})")
            return False

        draft = copy.deepcopy(state)
        if draft.current_task is None or draft.current_task.id != task.id:
            draft.current_task = CurrentTask(id=task.id, description=task.description)
        draft.current_task.attempt_count += 1
        attempt = draft.current_task.attempt_count
        iteration = state.iteration + 1

        self.events.emit(
            self.run_id,
            EVENT_TASK_START,
            taskId=task.id,
            title=task.description,
            attempt=attempt,
            iteration=iteration,
        )
        self._log("info", f"iteration {iteration}: task {task.id} attempt {attempt}")
        request = IterationRequest(
            run_id=self.run_id,
            iteration=iteration,
            task=task,
            attempt=attempt,
            context_block=render_context_block(state),
        )
        commit_before = self.revision()
        started = time.monotonic()
        result = self._execute(request)
        duration_ms = int((time.monotonic() - started) * 1000)
        commit_after = self.revision()

        failure: FailureAnalysis | None = None
        abandoned = False
        if result.claimed_complete:
            for pattern in result.patterns:
                add_pattern_to_context(draft, pattern)
            draft.current_task = None
        else:
            message = result.error_message or result.summary or "task attempt failed"
            failure = result.failure or FailureAnalysis(
                root_cause=message,
                fix_plan=DEFAULT_FIX_PLAN,
                error_message=message,
            )
            if draft.error_handling.strategy == "analyze-retry" and self.analyzer is not None:
                failure = self._analyze_failure(state, request, message, failure)
            add_failure_to_context(draft, failure_record_from_analysis(iteration, task.id, failure))
            abandoned = self._apply_error_strategy(draft, task, attempt, failure)

        draft.iteration = iteration
        draft.updated_at = _utc_now()
        log = new_iteration_log(
            session_id=draft.session_id,
            iteration=iteration,
            task_id=task.id,
            task_attempt=attempt,
            timestamp=draft.updated_at,
            status="success" if result.claimed_complete else "failed",
            agent_claimed_complete=result.claimed_complete,
            summary=result.summary,
            verification_evidence=result.verification,
            failure_analysis=failure,
            codebase_patterns=tuple(result.patterns),
            implemented=tuple(result.implemented),
            duration_ms=duration_ms,
            commit_before=commit_before,
            commit_after=commit_after,
        )
        self.iterations.save_iteration(log)
        self.store.write_session(draft)
        self.state = draft

        if result.claimed_complete:
            self.task_source.mark_complete(task.id)
        elif abandoned and draft.error_handling.strategy == "skip":
            self.task_source.mark_skipped(task.id, failure.root_cause if failure else "")
        self._publish_iteration(log, task, abandoned=abandoned)

        if draft.status != "running":
            self._log("error", f"run failure at task {task.id}: {self.last_message}")
            self._announce_status(draft, self.last_message)
            return False
        return True

    def _publish_iteration(self, log: IterationLog, task: Task, *, abandoned: bool) -> None:
        level = "info" if log.status == "success" else "warn"
        self.events.emit(
            self.run_id,
            EVENT_LOG,
            level=level,
            message=f"iteration {log.iteration} {log.status}: {log.summary or '-'}",
            iteration=_iteration_log_to_payload(log),
        )
        verified: Any = None
        if log.verification_evidence is not None:
            verified = log.verification_evidence.all_checks_passed
        self.events.emit(
            self.run_id,
            EVENT_TASK_COMPLETE,
            taskId=task.id,
            iteration=log.iteration,
            success=log.status == "success",
            verified=verified,
        )
        if log.gates_disagree:
            self._log(
                "warn",
                f"task {task.id}: agent claimed complete={log.agent_claimed_complete} "
                f"but checks passed={verified}",
            )
            self.events.emit(
                self.run_id,
                EVENT_TASK_GATE_MISMATCH,
                taskId=task.id,
                iteration=log.iteration,
                agentClaimedComplete=log.agent_claimed_complete,
                allChecksPassed=verified,
            )
        if abandoned:
            reason = log.failure_analysis.root_cause if log.failure_analysis else ""
            self.events.emit(
                self.run_id,
                EVENT_TASK_ABANDONED,
                taskId=task.id,
                iteration=log.iteration,
                strategy=self.state.error_handling.strategy if self.state else "",
                reason=reason,
            )
            self._log("warn", f"task {task.id} abandoned: {reason}")

    def run(self, resume: bool = True) -> RunOutcome:
        """Drive the run to a terminal status; the lock is released on every exit path."""
        self.start(resume=resume)
        try:
            while self.run_iteration():
                pass
        except RalphError as exc:
            self._log("error", f"run aborted: {exc}")
            raise
        finally:
            self._release()
        assert self.state is not None
        return RunOutcome(
            status=self.state.status,
            iterations=self.state.iteration,
            message=self.last_message,
            reclaimed_stale_lock=self.lock.reclaimed_stale,
        )
