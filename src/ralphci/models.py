"""ralphci data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from ralphci.constants import (
    DEFAULT_LOOP_ID,
    DEFAULT_MODE,
    LOG_DIRNAME,
    PLAN_FILENAME,
    STATE_DIRNAME,
)


def _coerce_decimal(value: Any) -> Decimal | None:
    """Return a finite Decimal for *value*, or None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float, str)):
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    else:
        return None
    if not parsed.is_finite():
        return None
    return parsed


class ConfigError(RuntimeError):
    """Raised when the harness configuration is missing or invalid."""


class StateError(RuntimeError):
    """Raised when loop state cannot be loaded or saved."""


class CorruptStateError(StateError):
    """Raised when a state file exists but cannot be parsed."""


class WorkspaceError(RuntimeError):
    """Raised when a workspace (git) operation fails."""


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunContext:
    """Per-loop paths, all derived from the project directory and loop id."""

    project_dir: Path
    loop_id: str = DEFAULT_LOOP_ID

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIRNAME

    @property
    def log_dir(self) -> Path:
        return self.state_dir / LOG_DIRNAME

    @property
    def state_path(self) -> Path:
        return self.state_dir / f"state_{self.loop_id}.json"

    @property
    def plan_path(self) -> Path:
        return self.state_dir / PLAN_FILENAME

    @property
    def run_log_path(self) -> Path:
        return self.log_dir / f"harness_{self.loop_id}.log"

    @property
    def report_path(self) -> Path:
        return self.state_dir / f"report_{self.loop_id}.json"

    @property
    def history_path(self) -> Path:
        return self.state_dir / f"report_history_{self.loop_id}.jsonl"

    def iteration_log_path(self, iteration: int) -> Path:
        return self.log_dir / f"loop_{self.loop_id}_iter_{iteration}.log"

    def iteration_check_path(self, iteration: int) -> Path:
        return self.log_dir / f"loop_{self.loop_id}_iter_{iteration}.check.json"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CircuitBreakerConfig:
    no_progress_threshold: int
    same_error_threshold: int


@dataclass(frozen=True)
class CheckSpec:
    name: str
    command: str
    skip_if_missing: str = ""


@dataclass(frozen=True)
class AgentConfig:
    command: tuple[str, ...]
    model: str
    max_turns: int
    allowed_tools: str
    prompt: str
    timeout_seconds: float


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    events: tuple[str, ...]


@dataclass(frozen=True)
class LoopConfig:
    mode: str
    max_iterations: int
    timeout_minutes: float
    iteration_timeout_minutes: float
    kill_switch_var: str
    budget_max_usd: Decimal
    log_retention: int
    circuit_breaker: CircuitBreakerConfig
    checks: tuple[str | CheckSpec, ...]
    agent: AgentConfig
    webhook: WebhookConfig
    cleanup_kill_patterns: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Loop state and per-iteration records
# ---------------------------------------------------------------------------


@dataclass
class LoopState:
    iteration: int = 0
    total_cost: Decimal = Decimal("0")
    no_progress_count: int = 0
    last_error: str = ""
    same_error_count: int = 0
    loop_id: str = DEFAULT_LOOP_ID
    mode: str = DEFAULT_MODE


@dataclass(frozen=True)
class CheckOutcome:
    name: str
    status: str
    duration_seconds: float = 0.0
    exit_code: int | None = None
    output: str = ""
    reason: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "status": self.status}
        if self.status != "skipped":
            payload["duration"] = self.duration_seconds
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        if self.output:
            payload["output"] = self.output
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class CheckResult:
    timestamp: str
    all_pass: bool
    mode: str
    checks: tuple[CheckOutcome, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def first_error(self) -> str:
        return self.errors[0] if self.errors else ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "all_pass": self.all_pass,
            "mode": self.mode,
            "checks": [check.to_payload() for check in self.checks],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class AgentResult:
    output: str
    exit_code: int
    timed_out: bool = False
    cost: Decimal | None = None
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """Point-in-time marker of the managed workspace.

    ``revision`` is the git HEAD when known.  ``files`` is only populated for
    workspaces outside git, as a (mtime, size) map keyed by relative path.
    """

    revision: str | None
    files: dict[str, tuple[float, int]] | None = None


@dataclass(frozen=True)
class IterationOutcome:
    start_revision: str | None
    end_revision: str | None
    files_changed: int
    iteration_cost: Decimal
    agent_exit_code: int
    timed_out: bool


@dataclass(frozen=True)
class BreakerDecision:
    tripped: bool
    reason: str = ""
    detail: str = ""


@dataclass(frozen=True)
class PlanProgress:
    done: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.done + self.pending

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 0.0
        return self.done / self.total

    @property
    def label(self) -> str:
        return f"{self.done}/{self.total}"


@dataclass(frozen=True)
class ReportEvent:
    event: str
    loop_id: str
    iteration: int = 0
    cost_usd: Decimal = Decimal("0")
    total_cost_usd: Decimal = Decimal("0")
    files_changed: int = 0
    plan: PlanProgress = field(default_factory=PlanProgress)
    exit_code: int | None = None
    reason: str = ""


@dataclass(frozen=True)
class LoopResult:
    exit_code: int
    reason: str
    iteration: int
    total_cost: Decimal
