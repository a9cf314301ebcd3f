"""ralph utility functions: timestamps, atomic JSON persistence, and the run log."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralph.models import RunPaths, SessionIOError, StateError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Timestamp / identity helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _generate_session_id() -> str:
    return f"sess-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# JSON persistence
# ---------------------------------------------------------------------------


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Replace ``path`` with ``payload`` so readers see the old or the new document.

    The temporary file lives in the destination directory so ``os.replace``
    stays on one filesystem. Any failure removes the temporary file and
    leaves the canonical document untouched.
    """
    rendered = json.dumps(payload, indent=2) + "\n"
    tmp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f"{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_path = Path(handle.name)
            handle.write(rendered)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        if tmp_path is not None:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("could not remove temporary file %s", tmp_path)
        raise SessionIOError(f"atomic write failed for {path}: {exc}") from exc


def _read_json(path: Path) -> dict[str, Any] | None:
    """Return the JSON object at ``path`` or None when the file does not exist."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise SessionIOError(f"failed to read {path}: {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"{path} must contain an object")
    return payload


def _unlink_if_exists(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise SessionIOError(f"failed to remove {path}: {exc}") from exc
    return True


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _git_head_sha(repo_root: Path) -> str:
    """Return the checked-out commit of ``repo_root``, or "" outside a git work tree."""
    head = _run_git(repo_root, ["rev-parse", "--verify", "--quiet", "HEAD"])
    if head.returncode != 0:
        return ""
    return head.stdout.strip()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(paths: RunPaths, message: str) -> None:
    log_path = paths.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
