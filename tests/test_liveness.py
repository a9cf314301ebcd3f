from __future__ import annotations

import os
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from ralph.liveness import ProcessTableLiveness, SignalLiveness, default_liveness


def test_signal_liveness_sees_current_process() -> None:
    assert SignalLiveness().is_alive(os.getpid()) is True


@pytest.mark.parametrize("pid", [0, -1])
def test_non_positive_pids_are_never_alive(pid: int) -> None:
    assert SignalLiveness().is_alive(pid) is False
    assert ProcessTableLiveness().is_alive(pid) is False


def test_signal_liveness_treats_out_of_range_pid_as_dead() -> None:
    assert SignalLiveness().is_alive(99999999999) is False


def test_signal_liveness_treats_missing_process_as_dead() -> None:
    with mock.patch("ralph.liveness.os.kill", side_effect=ProcessLookupError):
        assert SignalLiveness().is_alive(4242) is False


def test_signal_liveness_treats_permission_error_as_alive() -> None:
    with mock.patch("ralph.liveness.os.kill", side_effect=PermissionError):
        assert SignalLiveness().is_alive(4242) is True


def test_start_token_reads_field_22_from_proc_stat(tmp_path: Path) -> None:
    proc_dir = tmp_path / "4242"
    proc_dir.mkdir()
    # comm contains a space and a ')' to exercise the last-paren split.
    fields = ["S"] + [str(n) for n in range(4, 30)]
    (proc_dir / "stat").write_text(f"4242 (my) proc) {' '.join(fields)}\n", encoding="utf-8")

    assert SignalLiveness(proc_root=tmp_path).start_token(4242) == "22"


def test_start_token_is_empty_without_proc_entry(tmp_path: Path) -> None:
    assert SignalLiveness(proc_root=tmp_path).start_token(4242) == ""


def test_process_table_liveness_parses_ps_output() -> None:
    completed = subprocess.CompletedProcess(args=["ps"], returncode=0, stdout=" 4242\n", stderr="")
    with mock.patch("ralph.liveness.os.name", "posix"), mock.patch(
        "ralph.liveness.subprocess.run", return_value=completed
    ):
        assert ProcessTableLiveness().is_alive(4242) is True


def test_process_table_liveness_reports_dead_on_empty_output() -> None:
    completed = subprocess.CompletedProcess(args=["ps"], returncode=1, stdout="", stderr="")
    with mock.patch("ralph.liveness.os.name", "posix"), mock.patch(
        "ralph.liveness.subprocess.run", return_value=completed
    ):
        assert ProcessTableLiveness().is_alive(4242) is False


def test_process_table_start_token_normalizes_whitespace() -> None:
    completed = subprocess.CompletedProcess(
        args=["ps"], returncode=0, stdout="Mon Oct  5 10:00:00 2026\n", stderr=""
    )
    with mock.patch("ralph.liveness.os.name", "posix"), mock.patch(
        "ralph.liveness.subprocess.run", return_value=completed
    ):
        assert ProcessTableLiveness().start_token(4242) == "Mon Oct 5 10:00:00 2026"


def test_default_liveness_is_signal_based_on_posix() -> None:
    with mock.patch("ralph.liveness.os.name", "posix"):
        assert isinstance(default_liveness(), SignalLiveness)
