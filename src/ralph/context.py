"""Working memory carried between iterations.

Everything here mutates or reads an in-memory :class:`SessionState`; the
caller decides when the document is persisted.
"""

from __future__ import annotations

from ralph.constants import RECENT_FAILURES_WINDOW
from ralph.models import FailureAnalysis, FailureRecord, SessionState


def add_failure_to_context(state: SessionState, record: FailureRecord) -> None:
    failures = state.context.recent_failures
    failures.append(record)
    while len(failures) > RECENT_FAILURES_WINDOW:
        failures.pop(0)


def add_pattern_to_context(state: SessionState, pattern: str) -> bool:
    """Record ``pattern`` once; return True if it was new."""
    text = str(pattern).strip()
    if not text or text in state.context.codebase_patterns:
        return False
    state.context.codebase_patterns.append(text)
    return True


def failure_record_from_analysis(iteration: int, task_id: str, analysis: FailureAnalysis) -> FailureRecord:
    return FailureRecord(
        iteration=iteration,
        task_id=task_id,
        root_cause=analysis.root_cause,
        fix_plan=analysis.fix_plan,
    )


def render_context_block(state: SessionState) -> str:
    lines: list[str] = []
    if state.context.codebase_patterns:
        lines.append("## Codebase Patterns")
        lines.extend(f"- {pattern}" for pattern in state.context.codebase_patterns)
    if state.context.recent_failures:
        if lines:
            lines.append("")
        lines.append("## Recent Failures")
        for record in state.context.recent_failures:
            lines.append(f"- iteration {record.iteration} [{record.task_id}]: {record.root_cause}")
            lines.append(f"  fix plan: {record.fix_plan}")
    return "\n".join(lines)
