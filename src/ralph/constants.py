"""ralph constants: statuses, strategies, on-disk layout, and defaults."""

from __future__ import annotations

import re

CURRENT_SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = (1,)

# ---------------------------------------------------------------------------
# On-disk layout (all relative to <base_path>/.ralph)
# ---------------------------------------------------------------------------

RALPH_DIRNAME = ".ralph"
SESSION_FILENAME = "session.json"
LOCK_FILENAME = ".lock"
STOP_FILENAME = "stop.request"
ITERATIONS_DIRNAME = "iterations"
ITERATIONS_ARCHIVE_DIRNAME = "archive"
LOGS_DIRNAME = "logs"
ORCHESTRATOR_LOG_FILENAME = "orchestrator.log"
POLICY_FILENAME = "policy.yaml"

# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

SESSION_STATUSES = ("running", "completed", "failed", "stopped")
TERMINAL_STATUSES = ("completed", "failed", "stopped")
ITERATION_STATUSES = ("success", "failed", "running")
ERROR_STRATEGIES = ("retry", "analyze-retry", "skip", "escalate")
ERROR_TYPES = ("validation", "runtime", "timeout", "unknown")
LOCK_STATES = ("free", "locked", "stale")

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_ERROR_STRATEGY = "analyze-retry"
DEFAULT_MAX_RETRIES = 3
DEFAULT_TASKS_FILE = "tasks.md"
DEFAULT_AGENT_TIMEOUT_SECONDS = 0.0
DEFAULT_FIX_PLAN = "Retry with careful attention to the error"

RECENT_FAILURES_WINDOW = 3
LOCK_ACQUIRE_ATTEMPTS = 3

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

EVENT_RUN_STATUS = "run:status"
EVENT_LOG = "log"
EVENT_TASK_START = "task:start"
EVENT_TASK_COMPLETE = "task:complete"
EVENT_TASK_ABANDONED = "task:abandoned"
EVENT_TASK_GATE_MISMATCH = "task:gate_mismatch"
EVENT_TYPES = (
    EVENT_RUN_STATUS,
    EVENT_LOG,
    EVENT_TASK_START,
    EVENT_TASK_COMPLETE,
    EVENT_TASK_ABANDONED,
    EVENT_TASK_GATE_MISMATCH,
)
LOG_LEVELS = ("info", "warn", "error")

BACKPRESSURE_POLICIES = ("drop_oldest", "block")
DEFAULT_BACKPRESSURE_POLICY = "drop_oldest"
DEFAULT_SUBSCRIBER_BUFFER = 100
DEFAULT_KEEPALIVE_SECONDS = 15.0
EVENT_QUEUE_DROP_WARN_INTERVAL = 50

# ---------------------------------------------------------------------------
# Iteration log retention
# ---------------------------------------------------------------------------

DEFAULT_RETAINED_ITERATIONS = 50
DEFAULT_RETENTION_DAYS = 30
ITERATION_LOG_FILENAME_PATTERN = re.compile(r"^(\d{4,})\.json$")

# ---------------------------------------------------------------------------
# Agent output / task list parsing
# ---------------------------------------------------------------------------

ITERATION_LOG_SENTINEL_PATTERN = re.compile(
    r"<RALPH_ITERATION_LOG_JSON>(.*?)</RALPH_ITERATION_LOG_JSON>", re.DOTALL
)
TASK_CHECKBOX_PATTERN = re.compile(
    r"^(?P<prefix>\s*[-*+]\s+\[)(?P<mark>[ xX])(?P<suffix>\]\s+)(?P<body>.+?)\s*$"
)
MAX_CAPTURED_OUTPUT_CHARS = 4000
