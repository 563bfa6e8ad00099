"""ralphci constants: exit codes, defaults, check presets, and file layout."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
CONFIG_SCHEMA_PATH = PACKAGE_DIR / "config_schema.json"

# ---------------------------------------------------------------------------
# Process exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_CIRCUIT_BREAKER = 2
EXIT_MAX_ITERATIONS = 2
EXIT_KILL_SWITCH = 3
EXIT_BUDGET_EXCEEDED = 4
EXIT_TIMEOUT = 5
EXIT_INTERRUPTED = 130

# Agent exit code reported when the per-iteration timeout fires (coreutils
# `timeout` convention) and when the agent binary cannot be started.
AGENT_TIMEOUT_EXIT_CODE = 124
AGENT_MISSING_EXIT_CODE = 127

# ---------------------------------------------------------------------------
# Terminal reasons and report events
# ---------------------------------------------------------------------------

REASON_SUCCESS = "success"
REASON_NO_PROGRESS = "no_progress"
REASON_SAME_ERROR = "same_error"
REASON_KILL_SWITCH = "kill_switch"
REASON_BUDGET_EXCEEDED = "budget_exceeded"
REASON_TIMEOUT = "timeout"
REASON_MAX_ITERATIONS = "max_iterations"

REPORT_EVENTS = (
    "iteration",
    "success",
    "failure",
    "circuit_breaker",
    "kill_switch",
    "budget_exceeded",
    "stalled",
    "max_iterations",
)

# Report event -> webhook subscription class that must be enabled for it.
WEBHOOK_EVENT_SUBSCRIPTIONS: dict[str, str] = {
    "success": "success",
    "failure": "failure",
    "circuit_breaker": "circuit_breaker",
    "kill_switch": "failure",
    "budget_exceeded": "failure",
    "stalled": "stalled",
    "max_iterations": "failure",
}
WEBHOOK_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Loop modes and defaults
# ---------------------------------------------------------------------------

LOOP_MODES = ("build", "polish")
DEFAULT_MODE = "build"
DEFAULT_MAX_ITERATIONS = 40
DEFAULT_TIMEOUT_MINUTES = 180.0
DEFAULT_ITERATION_TIMEOUT_MINUTES = 30.0
DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_KILL_SWITCH_VAR = "RALPH_ENABLED"
DEFAULT_BUDGET_MAX_USD = "50"
DEFAULT_LOG_RETENTION = 20
DEFAULT_NO_PROGRESS_THRESHOLD = 3
DEFAULT_SAME_ERROR_THRESHOLD = 5
DEFAULT_AGENT_MAX_TURNS = 30
DEFAULT_AGENT_PROMPT = (
    "Read .ralph/PLAN.md, find the first PENDING step, execute it, "
    "run checks, update PLAN.md."
)
DEFAULT_CLEANUP_KILL_PATTERNS = (
    "chromium.*--headless",
    "chrome.*--headless",
)
KILL_SWITCH_DISABLED_VALUES = frozenset({"false", "0"})
AGENT_TERMINATE_GRACE_SECONDS = 5.0

# Agent JSON output keys that may carry the iteration cost, first non-null wins.
AGENT_COST_KEY_PATHS: tuple[tuple[str, ...], ...] = (
    ("cost_usd",),
    ("total_cost_usd",),
    ("result", "cost_usd"),
)

# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

DEFAULT_CHECKS = ("build", "typecheck", "lint", "test")
CHECK_COMMAND_TIMEOUT_SECONDS = 1800
CHECK_OUTPUT_MAX_LINES = 20
PLAN_CHECK_NAME = "plan_complete"
PLAN_PENDING_MARKER = "PENDING:"
PLAN_DONE_MARKER = "DONE:"

LINT_CONFIG_CANDIDATES: tuple[tuple[str, str], ...] = (
    ("biome.json", "bunx biome check ."),
    ("biome.jsonc", "bunx biome check ."),
    (".eslintrc.json", "bunx eslint ."),
    (".eslintrc.js", "bunx eslint ."),
    ("eslint.config.js", "bunx eslint ."),
    ("eslint.config.mjs", "bunx eslint ."),
)
TEST_FILE_PATTERNS = ("*.test.*", "*.spec.*")
TEST_SCAN_EXCLUDED_DIRS = frozenset({"node_modules", ".git", ".ralph"})

# ---------------------------------------------------------------------------
# Workspace layout
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILENAME = "ralph.config.yaml"
STATE_DIRNAME = ".ralph"
LOG_DIRNAME = "logs"
PLAN_FILENAME = "PLAN.md"
DEFAULT_LOOP_ID = "0"
LOOP_ID_ENV_VAR = "RALPH_LOOP_ID"
LOOP_ID_SAFE_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
NO_GIT_REVISION = "no-git"
COMMIT_MESSAGE_TEMPLATE = "ralph-ci: loop {loop_id}, iteration {iteration}"
