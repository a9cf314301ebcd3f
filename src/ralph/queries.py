"""Read-only views over a run directory, plus the cross-process stop request.

These never take the run lock: session and iteration documents are replaced
atomically, so a reader always sees a complete document.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ralph.iterations import IterationStore
from ralph.liveness import ProcessLiveness
from ralph.lock import LockGuard
from ralph.models import IterationLog, LockStatus, RunPaths, SessionState
from ralph.session import SessionStore
from ralph.utils import _append_log, _utc_now, _write_json_atomic


def get_state(base_path: Path | str) -> SessionState | None:
    return SessionStore(RunPaths.for_base_path(base_path)).read_session()


def list_iteration_logs(
    base_path: Path | str,
    *,
    task_id: str | None = None,
    status: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[IterationLog]:
    store = IterationStore(RunPaths.for_base_path(base_path).iterations_dir)
    return store.list_iterations(task_id=task_id, status=status, limit=limit, offset=offset)


def iteration_summary(base_path: Path | str, count: int = 5) -> dict[str, Any]:
    return IterationStore(RunPaths.for_base_path(base_path).iterations_dir).recent_summary(count)


def check_lock_status(base_path: Path | str, liveness: ProcessLiveness | None = None) -> LockStatus:
    paths = RunPaths.for_base_path(base_path)
    return LockGuard(paths.lock_path, session_id="", liveness=liveness).check()


def request_stop(base_path: Path | str, reason: str = "") -> bool:
    """Ask the process driving the run to stop at its next iteration boundary.

    Returns False when there is no running session to stop.
    """
    paths = RunPaths.for_base_path(base_path)
    state = SessionStore(paths).read_session()
    if state is None or state.status != "running":
        return False
    _write_json_atomic(
        paths.stop_path,
        {"requestedAt": _utc_now(), "sessionId": state.session_id, "reason": reason},
    )
    _append_log(paths, f"stop requested session={state.session_id} reason={reason or '-'}")
    return True
