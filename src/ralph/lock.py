"""Run lock: one live owner per run, reclaimable after the owner dies."""

from __future__ import annotations

import json
import logging
import os
import socket
import tempfile
import uuid
from pathlib import Path
from typing import Any

from ralph.constants import LOCK_ACQUIRE_ATTEMPTS
from ralph.liveness import ProcessLiveness, default_liveness
from ralph.models import (
    LockHeldError,
    LockLostError,
    LockRecord,
    LockStatus,
    SessionIOError,
)
from ralph.utils import _unlink_if_exists, _utc_now, _write_json_atomic

logger = logging.getLogger(__name__)


def _lock_record_to_payload(record: LockRecord) -> dict[str, Any]:
    return {
        "pid": record.pid,
        "timestamp": record.timestamp,
        "sessionId": record.session_id,
        "host": record.host,
        "processStart": record.process_start,
    }


def _lock_record_from_payload(payload: dict[str, Any]) -> LockRecord | None:
    try:
        pid = int(payload["pid"])
    except (KeyError, TypeError, ValueError):
        return None
    session_id = str(payload.get("sessionId", "")).strip()
    timestamp = str(payload.get("timestamp", "")).strip()
    if not session_id or not timestamp:
        return None
    return LockRecord(
        pid=pid,
        timestamp=timestamp,
        session_id=session_id,
        host=str(payload.get("host", "")).strip(),
        process_start=str(payload.get("processStart", "")).strip(),
    )


def _read_lock_payload(lock_path: Path) -> dict[str, Any] | None:
    """Return the raw lock payload, {} when unreadable, None when absent."""
    try:
        text = lock_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError:
        return {}
    try:
        loaded = json.loads(text)
    except json.JSONDecodeError:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    """Publish a complete lock record, failing with FileExistsError if one exists.

    The record is written and synced under a temporary name first and then
    hard-linked into place, so other acquirers never observe a partial file.
    """
    rendered = json.dumps(payload, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(dir=lock_path.parent, prefix=f"{lock_path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o644)
        os.link(tmp_path, lock_path)
    finally:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("could not remove temporary lock file %s", tmp_path)


class LockGuard:
    """Cooperative mutual exclusion over one run's lock record.

    Liveness of the recorded owner decides between ``locked`` and ``stale``;
    there is no heartbeat timeout. A pid recycled by an unrelated process is
    detected when the backend can report process start tokens.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        session_id: str,
        liveness: ProcessLiveness | None = None,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.session_id = session_id
        self.liveness = liveness or default_liveness()
        self.reclaimed: LockRecord | None = None
        self.reclaimed_stale = False

    def _owns(self, record: LockRecord | None) -> bool:
        return (
            record is not None
            and record.pid == os.getpid()
            and record.session_id == self.session_id
        )

    def _classify(self, record: LockRecord) -> str:
        if not self.liveness.is_alive(record.pid):
            return "stale"
        if record.process_start:
            current = self.liveness.start_token(record.pid)
            if current and current != record.process_start:
                return "stale"
        return "locked"

    def check(self) -> LockStatus:
        payload = _read_lock_payload(self.lock_path)
        if payload is None:
            return LockStatus(status="free")
        record = _lock_record_from_payload(payload)
        if record is None:
            return LockStatus(status="stale")
        return LockStatus(status=self._classify(record), record=record)

    def acquire(self) -> LockRecord:
        pid = os.getpid()
        record = LockRecord(
            pid=pid,
            timestamp=_utc_now(),
            session_id=self.session_id,
            host=socket.gethostname(),
            process_start=self.liveness.start_token(pid),
        )
        payload = _lock_record_to_payload(record)
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionIOError(f"failed to create lock directory for {self.lock_path}: {exc}") from exc

        for _ in range(LOCK_ACQUIRE_ATTEMPTS):
            try:
                _write_lock_payload_exclusive(self.lock_path, payload)
                return record
            except FileExistsError:
                status = self.check()
                if status.is_free:
                    continue
                if status.is_locked:
                    if self._owns(status.record):
                        return status.record
                    raise LockHeldError(status.record, self.lock_path)
                self._reclaim_stale(status.record)
            except OSError as exc:
                raise SessionIOError(f"failed to acquire lock at {self.lock_path}: {exc}") from exc
        raise SessionIOError(
            f"failed to acquire lock at {self.lock_path} after {LOCK_ACQUIRE_ATTEMPTS} attempts"
        )

    def _reclaim_stale(self, record: LockRecord | None) -> None:
        # Move aside first so a concurrent acquirer cannot delete a fresh lock.
        aside = self.lock_path.with_name(f"{self.lock_path.name}.stale.{uuid.uuid4().hex[:8]}")
        try:
            os.replace(self.lock_path, aside)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise SessionIOError(f"failed to reclaim stale lock at {self.lock_path}: {exc}") from exc
        _unlink_if_exists(aside)
        self.reclaimed = record
        self.reclaimed_stale = True
        if record is None:
            logger.warning("reclaimed unreadable lock at %s", self.lock_path)
        else:
            logger.warning(
                "reclaimed stale lock at %s (pid=%s, session=%s, since=%s)",
                self.lock_path,
                record.pid,
                record.session_id,
                record.timestamp,
            )

    def renew(self) -> LockRecord:
        """Confirm ownership and refresh the lock timestamp."""
        payload = _read_lock_payload(self.lock_path)
        record = _lock_record_from_payload(payload) if payload else None
        if not self._owns(record):
            holder = f"pid={record.pid}, session={record.session_id}" if record else "none"
            raise LockLostError(f"lock at {self.lock_path} is no longer held by this run (holder: {holder})")
        renewed = LockRecord(
            pid=record.pid,
            timestamp=_utc_now(),
            session_id=record.session_id,
            host=record.host,
            process_start=record.process_start,
        )
        _write_json_atomic(self.lock_path, _lock_record_to_payload(renewed))
        return renewed

    def release(self) -> bool:
        """Remove the lock record unconditionally; return False if there was none."""
        return _unlink_if_exists(self.lock_path)

    def force_break(self, *, reason: str) -> str:
        """Forcibly remove the lock record and return an audit message."""
        payload = _read_lock_payload(self.lock_path)
        if payload is None:
            return "no lock to break"
        record = _lock_record_from_payload(payload)
        _unlink_if_exists(self.lock_path)
        if record is None:
            return f"lock broken: unreadable record, reason={reason}"
        return (
            f"lock broken: pid={record.pid}, host={record.host or '<unknown>'}, "
            f"session={record.session_id}, since={record.timestamp}, reason={reason}"
        )
