from __future__ import annotations

import textwrap
from pathlib import Path

from ralph.models import Task
from ralph.tasks import ChecklistTaskSource


def _tasks_file(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "tasks.md"
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


def test_lists_checklist_items_in_order(tmp_path: Path) -> None:
    path = _tasks_file(
        tmp_path,
        """
        # Tasks

        ## 1. Parser
        - [ ] 1.1 Add tokenizer
        - [x] 1.2: Add grammar
          * [ ] 1.3 Nested item
        - plain bullet
        - [ ] ~~1.4~~ Dropped (skipped: too big)
        """,
    )

    tasks = ChecklistTaskSource(path).list_tasks()

    assert tasks == [
        Task(id="1.1", description="Add tokenizer", done=False),
        Task(id="1.2", description="Add grammar", done=True),
        Task(id="1.3", description="Nested item", done=False),
    ]


def test_missing_file_has_no_tasks(tmp_path: Path) -> None:
    source = ChecklistTaskSource(tmp_path / "absent.md")
    assert source.list_tasks() == []
    assert source.next_task() is None


def test_next_task_skips_done_and_excluded(tmp_path: Path) -> None:
    path = _tasks_file(
        tmp_path,
        """
        - [x] 1 Done
        - [ ] 2 Hard
        - [ ] 3 Easy
        """,
    )
    source = ChecklistTaskSource(path)

    assert source.next_task().id == "2"
    assert source.next_task(exclude={"2"}).id == "3"
    assert source.get_task("1").done is True
    assert source.get_task("9") is None


def test_mark_complete_checks_the_box_and_keeps_other_lines(tmp_path: Path) -> None:
    path = _tasks_file(
        tmp_path,
        """
        # Tasks
        - [ ] 1 First
        - [ ] 2 Second
        """,
    )
    source = ChecklistTaskSource(path)

    assert source.mark_complete("1") is True
    assert path.read_text(encoding="utf-8") == "# Tasks\n- [x] 1 First\n- [ ] 2 Second\n"
    assert source.mark_complete("missing") is False


def test_mark_skipped_strikes_the_task_out(tmp_path: Path) -> None:
    path = _tasks_file(
        tmp_path,
        """
        - [ ] 1 First
        - [ ] 2 Second
        """,
    )
    source = ChecklistTaskSource(path)

    assert source.mark_skipped("1", "flaky fixture") is True

    assert path.read_text(encoding="utf-8").splitlines()[0] == "- [ ] ~~1~~ First (skipped: flaky fixture)"
    assert [task.id for task in source.list_tasks()] == ["2"]
