from __future__ import annotations

import shutil
from pathlib import Path
from unittest import mock

import pytest

from ralph.utils import _git_head_sha, _run_git


def test_git_head_sha_outside_a_work_tree_is_empty(tmp_path: Path) -> None:
    assert _git_head_sha(tmp_path / "not-a-repo") == ""


def test_run_git_reports_missing_binary(tmp_path: Path) -> None:
    with mock.patch("ralph.utils.subprocess.run", side_effect=FileNotFoundError("git")):
        result = _run_git(tmp_path, ["status"])
    assert result.returncode == 127
    assert "git not found" in result.stderr
    with mock.patch("ralph.utils.subprocess.run", side_effect=FileNotFoundError("git")):
        assert _git_head_sha(tmp_path) == ""


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_head_sha_reads_checked_out_commit(tmp_path: Path) -> None:
    assert _run_git(tmp_path, ["init", "--quiet"]).returncode == 0
    assert _git_head_sha(tmp_path) == ""

    committed = _run_git(
        tmp_path,
        [
            "-c", "user.name=ralph",
            "-c", "user.email=ralph@example.com",
            "-c", "commit.gpgsign=false",
            "commit", "--allow-empty", "--quiet", "-m", "init",
        ],
    )
    assert committed.returncode == 0

    sha = _git_head_sha(tmp_path)
    assert len(sha) == 40
    assert sha == _run_git(tmp_path, ["rev-parse", "HEAD"]).stdout.strip()
