"""Process liveness checks used to tell a held lock from a stale one.

A lock record names the process that wrote it. Whether that process is still
around is answered by a :class:`ProcessLiveness` backend:

* :class:`SignalLiveness` sends signal 0 (an existence check that delivers
  nothing) and reads the process start time from ``/proc`` when available.
* :class:`ProcessTableLiveness` asks the process table (``ps`` on POSIX,
  ``tasklist`` on Windows, where signal 0 would terminate the target).

The start token lets a lock holder be told apart from an unrelated process
that later received the same pid.
"""

from __future__ import annotations

import abc
import os
import subprocess
from pathlib import Path

PROCESS_TABLE_TIMEOUT_SECONDS = 2.0


class ProcessLiveness(abc.ABC):
    @abc.abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Return True if a process with ``pid`` currently exists."""

    def start_token(self, pid: int) -> str:
        """Return an opaque start-time token for ``pid``, or "" if unknown."""
        return ""


class SignalLiveness(ProcessLiveness):
    def __init__(self, proc_root: Path | str = "/proc") -> None:
        self._proc_root = Path(proc_root)

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user.
            return True
        except (OverflowError, ValueError):
            # Not representable as a pid_t, so no such process.
            return False
        except OSError:
            return False
        return True

    def start_token(self, pid: int) -> str:
        stat_path = self._proc_root / str(pid) / "stat"
        try:
            raw = stat_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
        # comm (field 2) may contain spaces; fields after the last ')' start at field 3.
        _, _, rest = raw.rpartition(")")
        fields = rest.split()
        if len(fields) < 20:
            return ""
        return fields[19]


class ProcessTableLiveness(ProcessLiveness):
    def __init__(self, *, timeout: float = PROCESS_TABLE_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    def _query(self, argv: list[str]) -> str | None:
        try:
            proc = subprocess.run(
                argv,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (FileNotFoundError, OSError, subprocess.TimeoutExpired):
            return None
        if proc.returncode != 0:
            return ""
        return proc.stdout

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        if os.name == "nt":
            output = self._query(["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"])
            return bool(output) and f'"{pid}"' in output
        output = self._query(["ps", "-p", str(pid), "-o", "pid="])
        return bool(output and output.strip())

    def start_token(self, pid: int) -> str:
        if os.name == "nt" or pid <= 0:
            return ""
        output = self._query(["ps", "-p", str(pid), "-o", "lstart="])
        return " ".join(output.split()) if output else ""


def default_liveness() -> ProcessLiveness:
    if os.name == "nt":
        return ProcessTableLiveness()
    return SignalLiveness()
