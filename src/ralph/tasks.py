"""Task sources: where the run finds its next unit of work."""

from __future__ import annotations

import abc
from collections.abc import Iterable
from pathlib import Path

from ralph.constants import TASK_CHECKBOX_PATTERN
from ralph.models import SessionIOError, Task


class TaskSource(abc.ABC):
    @abc.abstractmethod
    def list_tasks(self) -> list[Task]:
        ...

    @abc.abstractmethod
    def mark_complete(self, task_id: str) -> bool:
        ...

    @abc.abstractmethod
    def mark_skipped(self, task_id: str, reason: str) -> bool:
        ...

    def get_task(self, task_id: str) -> Task | None:
        for task in self.list_tasks():
            if task.id == task_id:
                return task
        return None

    def next_task(self, exclude: Iterable[str] = ()) -> Task | None:
        excluded = set(exclude)
        for task in self.list_tasks():
            if not task.done and task.id not in excluded:
                return task
        return None


def _split_task_body(body: str) -> tuple[str, str]:
    """``"1.2 Add parser"`` -> ``("1.2", "Add parser")``; a trailing ':' on the id is dropped."""
    head, _, rest = body.partition(" ")
    task_id = head.rstrip(":")
    return task_id, rest.strip()


class ChecklistTaskSource(TaskSource):
    """Markdown checklist (``- [ ] 1.1 Do the thing``) kept in the change's tasks file.

    Skipped tasks stay unchecked but are struck through so a later run does
    not pick them up again.
    """

    def __init__(self, tasks_path: Path) -> None:
        self.tasks_path = Path(tasks_path)

    def _read_lines(self) -> list[str]:
        try:
            return self.tasks_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise SessionIOError(f"failed to read {self.tasks_path}: {exc}") from exc

    def _write_lines(self, lines: list[str]) -> None:
        try:
            self.tasks_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            raise SessionIOError(f"failed to update {self.tasks_path}: {exc}") from exc

    def list_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for line in self._read_lines():
            match = TASK_CHECKBOX_PATTERN.match(line)
            if not match:
                continue
            body = match.group("body")
            if body.startswith("~~"):
                continue
            task_id, description = _split_task_body(body)
            if not task_id:
                continue
            tasks.append(Task(id=task_id, description=description, done=match.group("mark") in "xX"))
        return tasks

    def _rewrite_task(self, task_id: str, *, mark: str, body_suffix: str | None) -> bool:
        lines = self._read_lines()
        for index, line in enumerate(lines):
            match = TASK_CHECKBOX_PATTERN.match(line)
            if not match or match.group("body").startswith("~~"):
                continue
            current_id, description = _split_task_body(match.group("body"))
            if current_id != task_id:
                continue
            body = match.group("body")
            if body_suffix is not None:
                body = f"~~{task_id}~~ {description} {body_suffix}".rstrip()
            lines[index] = f"{match.group('prefix')}{mark}{match.group('suffix')}{body}"
            self._write_lines(lines)
            return True
        return False

    def mark_complete(self, task_id: str) -> bool:
        return self._rewrite_task(task_id, mark="x", body_suffix=None)

    def mark_skipped(self, task_id: str, reason: str) -> bool:
        return self._rewrite_task(task_id, mark=" ", body_suffix=f"(skipped: {reason})")
