from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from ralph.config import (
    _write_default_policy,
    load_event_settings,
    load_run_config,
)
from ralph.constants import (
    DEFAULT_RETAINED_ITERATIONS,
    DEFAULT_RETENTION_DAYS,
    ERROR_STRATEGIES,
    ITERATION_STATUSES,
)
from ralph.engine import RunStateMachine
from ralph.events import EventBus
from ralph.iterations import IterationStore, _iteration_log_to_payload
from ralph.lock import LockGuard
from ralph.models import RalphError, RunPaths
from ralph.queries import (
    check_lock_status,
    get_state,
    iteration_summary,
    list_iteration_logs,
    request_stop,
)
from ralph.runners import CommandExecutor
from ralph.session import SessionStore
from ralph.tasks import ChecklistTaskSource
from ralph.utils import _append_log


def _paths(args: argparse.Namespace) -> RunPaths:
    return RunPaths.for_base_path(args.base_path)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        paths.ensure()
        wrote_policy = _write_default_policy(paths)
    except OSError as exc:
        print(f"ralph init: ERROR {exc}", file=sys.stderr)
        return 1
    print("ralph init")
    print(f"state_dir: {paths.root}")
    print(f"policy_file: {paths.policy_path} ({'created' if wrote_policy else 'kept'})")
    return 0


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        change_id = args.change_id
        if not change_id:
            existing = get_state(paths.base_path)
            change_id = existing.change_id if existing is not None else ""
        config = load_run_config(
            paths.base_path,
            change_id,
            {
                "max_iterations": args.max_iterations,
                "error_strategy": args.error_strategy,
                "max_retries": args.max_retries,
                "agent_command": args.agent_command,
                "check_command": args.check_command,
            },
        )
        executor = CommandExecutor(
            paths,
            command=config.agent_command,
            check_command=config.check_command,
            timeout_seconds=config.agent_timeout_seconds,
        )
        machine = RunStateMachine(
            config,
            task_source=ChecklistTaskSource(paths.base_path / config.tasks_file),
            executor=executor,
            events=EventBus.from_settings(load_event_settings(paths.base_path)),
            analyzer=executor.analyze,
        )
        outcome = machine.run(resume=not args.fresh)
    except KeyboardInterrupt:
        print("ralph run: interrupted; the session can be resumed with `ralph run`", file=sys.stderr)
        return 130
    except RalphError as exc:
        print(f"ralph run: ERROR {exc}", file=sys.stderr)
        return 1

    print("ralph run")
    print(f"change_id: {config.change_id}")
    print(f"status: {outcome.status}")
    print(f"iterations: {outcome.iterations}")
    if outcome.message:
        print(f"message: {outcome.message}")
    if outcome.reclaimed_stale_lock:
        print("note: recovered a stale lock left by a previous process")
    return 0 if outcome.status in {"completed", "stopped"} else 1


# ---------------------------------------------------------------------------
# status / logs
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        state = get_state(paths.base_path)
        lock = check_lock_status(paths.base_path)
        summary = iteration_summary(paths.base_path, count=0)
    except RalphError as exc:
        print(f"ralph status: ERROR {exc}", file=sys.stderr)
        return 1

    print("ralph status")
    print(f"state_dir: {paths.root}")
    if state is None:
        print("session: <none>")
    else:
        print(f"session_id: {state.session_id}")
        print(f"change_id: {state.change_id}")
        print(f"status: {state.status}")
        print(f"iteration: {state.iteration}/{state.max_iterations}")
        print(f"error_strategy: {state.error_handling.strategy} (max_retries={state.error_handling.max_retries})")
        if state.current_task is not None:
            print(
                f"current_task: {state.current_task.id} {state.current_task.description} "
                f"(attempt {state.current_task.attempt_count})"
            )
        else:
            print("current_task: <none>")
        if state.abandoned_tasks:
            print(f"abandoned_tasks: {', '.join(state.abandoned_tasks)}")
        print(f"codebase_patterns: {len(state.context.codebase_patterns)}")
        print(f"recent_failures: {len(state.context.recent_failures)}")
    print(f"lock: {lock.status}")
    if lock.record is not None:
        print(f"  pid: {lock.record.pid}")
        print(f"  host: {lock.record.host or '<unknown>'}")
        print(f"  since: {lock.record.timestamp}")
    stats = summary["stats"]
    print(
        f"iterations_logged: {stats['total']} "
        f"(success={stats['success']}, failed={stats['failed']}, gate_mismatches={stats['gateMismatches']})"
    )
    return 0


def _cmd_logs(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        logs = list_iteration_logs(
            paths.base_path,
            task_id=args.task_id,
            status=args.status,
            limit=args.limit,
            offset=args.offset,
        )
    except RalphError as exc:
        print(f"ralph logs: ERROR {exc}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps([_iteration_log_to_payload(log) for log in logs], indent=2))
        return 0
    if not logs:
        print("ralph logs: no iteration logs")
        return 0
    for log in logs:
        marker = " [gate mismatch]" if log.gates_disagree else ""
        print(
            f"{log.iteration:04d} {log.timestamp} task={log.task_id} attempt={log.task_attempt} "
            f"{log.status}{marker}: {log.summary or '-'}"
        )
        if log.failure_analysis is not None:
            print(f"     root cause: {log.failure_analysis.root_cause}")
    return 0


# ---------------------------------------------------------------------------
# stop / lock / reset / cleanup
# ---------------------------------------------------------------------------


def _cmd_stop(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        requested = request_stop(paths.base_path, reason=args.reason)
    except RalphError as exc:
        print(f"ralph stop: ERROR {exc}", file=sys.stderr)
        return 1
    if not requested:
        print("ralph stop: no running session")
        return 1
    print("ralph stop: stop requested; the run halts at its next iteration boundary")
    return 0


def _cmd_lock(args: argparse.Namespace) -> int:
    paths = _paths(args)
    action = args.action

    if action == "status":
        status = check_lock_status(paths.base_path)
        if status.is_free:
            print("ralph lock: no active lock")
            return 0
        print(f"ralph lock: {status.status}")
        record = status.record
        if record is None:
            print("  record: <unreadable>")
            return 0
        print(f"  pid: {record.pid}")
        print(f"  host: {record.host or '<unknown>'}")
        print(f"  session_id: {record.session_id}")
        print(f"  since: {record.timestamp}")
        return 0

    if action == "break":
        reason = args.reason or "manual break"
        try:
            message = LockGuard(paths.lock_path, session_id="").force_break(reason=reason)
        except RalphError as exc:
            print(f"ralph lock: ERROR {exc}", file=sys.stderr)
            return 1
        _append_log(paths, f"lock break: {message}")
        print(f"ralph lock: {message}")
        return 0

    print(f"ralph lock: unknown action '{action}'", file=sys.stderr)
    return 1


def _cmd_reset(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        lock = check_lock_status(paths.base_path)
        if lock.is_locked and not args.force:
            print(
                f"ralph reset: ERROR run is active (pid={lock.record.pid}); stop it first or pass --force",
                file=sys.stderr,
            )
            return 1
        SessionStore(paths).delete_session()
        removed = IterationStore(paths.iterations_dir).clear() if args.clear_logs else 0
    except RalphError as exc:
        print(f"ralph reset: ERROR {exc}", file=sys.stderr)
        return 1
    _append_log(paths, f"session reset (iteration logs removed: {removed})")
    print("ralph reset")
    print(f"state_dir: {paths.root}")
    print(f"iteration_logs_removed: {removed}")
    return 0


def _cmd_cleanup(args: argparse.Namespace) -> int:
    paths = _paths(args)
    try:
        result = IterationStore(paths.iterations_dir).cleanup(
            keep=args.keep,
            max_age_days=args.max_age_days,
            dry_run=args.dry_run,
        )
    except RalphError as exc:
        print(f"ralph cleanup: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"ralph cleanup{' (dry run)' if args.dry_run else ''}")
    for key in ("kept", "archived", "deleted"):
        print(f"{key}: {len(result[key])}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_base_path(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--base-path",
        default=".",
        help="Project directory that holds the .ralph state directory (default: .)",
    )


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {parsed}")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ralph run session command line interface")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Create the .ralph directory and a default policy file")
    _add_base_path(init)
    init.set_defaults(handler=_cmd_init)

    run = subparsers.add_parser("run", help="Run (or resume) the task loop until it reaches a terminal status")
    _add_base_path(run)
    run.add_argument("--change-id", default="", help="Change identifier (defaults to the existing session's)")
    run.add_argument("--max-iterations", type=_positive_int, default=None)
    run.add_argument("--error-strategy", choices=ERROR_STRATEGIES, default=None)
    run.add_argument("--max-retries", type=_positive_int, default=None)
    run.add_argument("--agent-command", default=None, help="Agent command (overrides agent.command)")
    run.add_argument("--check-command", default=None, help="Verification command (overrides agent.check_command)")
    run.add_argument("--fresh", action="store_true", help="Discard the previous session instead of resuming it")
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show session, lock, and iteration summary")
    _add_base_path(status)
    status.set_defaults(handler=_cmd_status)

    logs = subparsers.add_parser("logs", help="List iteration logs")
    _add_base_path(logs)
    logs.add_argument("--task-id", default=None)
    logs.add_argument("--status", choices=ITERATION_STATUSES, default=None)
    logs.add_argument("--limit", type=_positive_int, default=None)
    logs.add_argument("--offset", type=int, default=0)
    logs.add_argument("--json", action="store_true", help="Print raw iteration documents")
    logs.set_defaults(handler=_cmd_logs)

    stop = subparsers.add_parser("stop", help="Ask the running loop to stop at the next iteration boundary")
    _add_base_path(stop)
    stop.add_argument("--reason", default="", help="Recorded with the stop request")
    stop.set_defaults(handler=_cmd_stop)

    lock = subparsers.add_parser("lock", help="Inspect or break the run lock")
    _add_base_path(lock)
    lock.add_argument("action", choices=("status", "break"))
    lock.add_argument("--reason", default="", help="Audit reason for a forced break")
    lock.set_defaults(handler=_cmd_lock)

    reset = subparsers.add_parser("reset", help="Delete the session document, lock, and stop request")
    _add_base_path(reset)
    reset.add_argument("--force", action="store_true", help="Reset even while a live process holds the lock")
    reset.add_argument("--clear-logs", action="store_true", help="Also remove iteration logs")
    reset.set_defaults(handler=_cmd_reset)

    cleanup = subparsers.add_parser("cleanup", help="Archive or delete old iteration logs")
    _add_base_path(cleanup)
    cleanup.add_argument("--keep", type=int, default=DEFAULT_RETAINED_ITERATIONS)
    cleanup.add_argument("--max-age-days", type=int, default=DEFAULT_RETENTION_DAYS)
    cleanup.add_argument("--dry-run", action="store_true")
    cleanup.set_defaults(handler=_cmd_cleanup)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return int(handler(args))
