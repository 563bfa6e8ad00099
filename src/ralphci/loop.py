"""ralphci control loop: the iteration state machine and its terminal conditions."""

from __future__ import annotations

import os
import subprocess
import time
from decimal import Decimal
from typing import Callable

from ralphci.agent import AgentInvoker
from ralphci.checks import CheckGate
from ralphci.constants import (
    EXIT_BUDGET_EXCEEDED,
    EXIT_CIRCUIT_BREAKER,
    EXIT_INTERRUPTED,
    EXIT_KILL_SWITCH,
    EXIT_MAX_ITERATIONS,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    KILL_SWITCH_DISABLED_VALUES,
    REASON_BUDGET_EXCEEDED,
    REASON_KILL_SWITCH,
    REASON_MAX_ITERATIONS,
    REASON_SUCCESS,
    REASON_TIMEOUT,
)
from ralphci.guards import BudgetGuard, CircuitBreaker, _normalize_cost
from ralphci.models import (
    CheckResult,
    CorruptStateError,
    IterationOutcome,
    LoopConfig,
    LoopResult,
    LoopState,
    ReportEvent,
    RunContext,
    WorkspaceError,
)
from ralphci.progress import ProgressTracker
from ralphci.report import Reporter
from ralphci.state import PersistentState
from ralphci.utils import _append_log, _rotate_iteration_logs, _write_json
from ralphci.workspace import Workspace


# ---------------------------------------------------------------------------
# Kill switch and exit cleanup
# ---------------------------------------------------------------------------


def _env_kill_switch(variable: str) -> Callable[[], bool]:
    """Return a probe that is True while *variable* leaves the loop enabled.

    An unset variable enables the loop; ``false`` or ``0`` disables it.
    """

    def _enabled() -> bool:
        raw_value = os.environ.get(variable)
        if raw_value is None:
            return True
        return raw_value.strip().lower() not in KILL_SWITCH_DISABLED_VALUES

    return _enabled


def _kill_orphaned_processes(patterns: tuple[str, ...]) -> list[str]:
    """Best-effort ``pkill -f`` of each pattern; returns the patterns that matched."""
    matched: list[str] = []
    for pattern in patterns:
        try:
            result = subprocess.run(
                ["pkill", "-f", pattern],
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError:
            continue
        if result.returncode == 0:
            matched.append(pattern)
    return matched


# ---------------------------------------------------------------------------
# Control loop
# ---------------------------------------------------------------------------


class ControlLoop:
    """Drives check -> agent -> measure -> guard -> commit until a terminal condition.

    Every collaborator is injectable; ``build`` wires the real ones from a
    ``LoopConfig``.  Each terminal condition persists the state first and then
    emits exactly one report event.
    """

    def __init__(
        self,
        context: RunContext,
        config: LoopConfig,
        *,
        store: PersistentState,
        check_gate: CheckGate,
        agent: AgentInvoker,
        tracker: ProgressTracker,
        workspace: Workspace,
        reporter: Reporter,
        is_enabled: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cleanup: Callable[[], object] | None = None,
        echo: bool = True,
    ) -> None:
        self.context = context
        self.config = config
        self.store = store
        self.check_gate = check_gate
        self.agent = agent
        self.tracker = tracker
        self.workspace = workspace
        self.reporter = reporter
        self.is_enabled = is_enabled or (lambda: True)
        self.clock = clock
        self.cleanup = cleanup
        self.echo = echo
        self.breaker = CircuitBreaker(config.circuit_breaker)
        self.budget = BudgetGuard(config.budget_max_usd)

    @classmethod
    def build(
        cls,
        context: RunContext,
        config: LoopConfig,
        *,
        is_enabled: Callable[[], bool] | None = None,
    ) -> ControlLoop:
        workspace = Workspace(context.project_dir)
        return cls(
            context,
            config,
            store=PersistentState(context, mode=config.mode),
            check_gate=CheckGate(context, config.checks, mode=config.mode),
            agent=AgentInvoker(context.project_dir, config.agent),
            tracker=ProgressTracker(workspace),
            workspace=workspace,
            reporter=Reporter(
                context,
                mode=config.mode,
                webhook=config.webhook,
                workspace=workspace,
            ),
            is_enabled=is_enabled or _env_kill_switch(config.kill_switch_var),
            cleanup=lambda: _kill_orphaned_processes(config.cleanup_kill_patterns),
        )

    def _log(self, message: str) -> None:
        _append_log(self.context, message, echo=self.echo)

    # -- state -------------------------------------------------------------

    def _load_state(self) -> LoopState:
        try:
            state = self.store.load()
        except CorruptStateError as exc:
            moved_to = self.store.quarantine()
            self._log(f"WARNING: corrupt state file reset to zero-state: {exc}")
            if moved_to is not None:
                self._log(f"WARNING: corrupt state preserved at {moved_to}")
            state = self.store.zero_state()
        state.mode = self.config.mode
        state.loop_id = self.context.loop_id
        return state

    def _save_best_effort(self, state: LoopState) -> None:
        try:
            self.store.save(state)
        except Exception as exc:
            self._log(f"WARNING: state save failed during abnormal exit: {exc}")

    # -- reporting ---------------------------------------------------------

    def _emit(
        self,
        event: str,
        state: LoopState,
        *,
        cost: Decimal = Decimal("0"),
        files_changed: int = 0,
        exit_code: int | None = None,
        reason: str = "",
    ) -> None:
        self.reporter.emit(
            ReportEvent(
                event=event,
                loop_id=self.context.loop_id,
                iteration=state.iteration,
                cost_usd=cost,
                total_cost_usd=state.total_cost,
                files_changed=files_changed,
                exit_code=exit_code,
                reason=reason,
            )
        )

    def _terminate(
        self,
        state: LoopState,
        *,
        event: str,
        exit_code: int,
        reason: str,
        cost: Decimal = Decimal("0"),
        files_changed: int = 0,
    ) -> LoopResult:
        self.store.save(state)
        self._emit(
            event,
            state,
            cost=cost,
            files_changed=files_changed,
            exit_code=exit_code,
            reason=reason,
        )
        return LoopResult(
            exit_code=exit_code,
            reason=reason,
            iteration=state.iteration,
            total_cost=state.total_cost,
        )

    # -- iteration steps ---------------------------------------------------

    def _run_checks(self, iteration: int) -> CheckResult:
        self._log("Running checks...")
        result = self.check_gate.run()
        try:
            _write_json(self.context.iteration_check_path(iteration), result.to_payload())
        except OSError as exc:
            self._log(f"WARN: could not write check result: {exc}")
        return result

    def _invoke_agent(self, iteration: int) -> IterationOutcome:
        before = self.tracker.snapshot()
        self._log(
            f"Running agent (timeout: {self.config.iteration_timeout_minutes:g}m, "
            f"model: {self.config.agent.model})..."
        )
        result = self.agent.invoke(
            self.config.agent.prompt,
            stderr_path=self.context.iteration_log_path(iteration),
        )
        if result.timed_out:
            self._log(f"Agent timed out after {self.config.iteration_timeout_minutes:g}m")
        elif result.exit_code != 0:
            self._log(f"Agent exited with code {result.exit_code}")
        else:
            self._log("Agent completed successfully")

        after = self.tracker.snapshot()
        try:
            files_changed = self.tracker.count_changed(before, after)
        except WorkspaceError as exc:
            self._log(f"WARN: progress detection failed, counting no changes: {exc}")
            files_changed = 0
        return IterationOutcome(
            start_revision=before.revision,
            end_revision=after.revision,
            files_changed=files_changed,
            iteration_cost=_normalize_cost(result.cost),
            agent_exit_code=result.exit_code,
            timed_out=result.timed_out,
        )

    def _commit(self, iteration: int) -> None:
        try:
            status = self.workspace.commit_all(loop_id=self.context.loop_id, iteration=iteration)
        except WorkspaceError as exc:
            self._log(f"WARN: {exc}")
            return
        self._log(status)

    def _polish_verify(self, outcome: IterationOutcome) -> None:
        self._log("Polish mode: verifying iteration changes...")
        verification = self.check_gate.run(include_plan=False)
        if verification.all_pass:
            self._log("Polish verification passed")
            return
        if not outcome.start_revision:
            self._log(
                f"WARN: polish verification failed ({verification.first_error}) "
                "but there is no start revision to revert to"
            )
            return
        self._log(
            f"Polish verification failed ({verification.first_error}); "
            f"reverting to {outcome.start_revision}"
        )
        try:
            self.workspace.reset_hard(outcome.start_revision)
        except WorkspaceError as exc:
            self._log(f"WARN: {exc}")

    # -- main loop ---------------------------------------------------------

    def _iterate(self, state: LoopState, started: float) -> LoopResult:
        config = self.config
        timeout_seconds = config.timeout_minutes * 60.0
        while state.iteration < config.max_iterations:
            if not self.is_enabled():
                self._log(f"Kill switch {config.kill_switch_var} is disabled. Exiting.")
                return self._terminate(
                    state,
                    event="kill_switch",
                    exit_code=EXIT_KILL_SWITCH,
                    reason=REASON_KILL_SWITCH,
                )

            elapsed = self.clock() - started
            if elapsed >= timeout_seconds:
                self._log(
                    f"Workflow timeout reached ({elapsed / 60.0:.1f} >= "
                    f"{config.timeout_minutes:g} min). Exiting."
                )
                return self._terminate(
                    state,
                    event="failure",
                    exit_code=EXIT_TIMEOUT,
                    reason=REASON_TIMEOUT,
                )

            if self.budget.exceeded(state):
                self._log(
                    f"Budget already exceeded: ${state.total_cost} > "
                    f"${config.budget_max_usd}. Exiting."
                )
                return self._terminate(
                    state,
                    event="budget_exceeded",
                    exit_code=EXIT_BUDGET_EXCEEDED,
                    reason=REASON_BUDGET_EXCEEDED,
                )

            state.iteration += 1
            iteration = state.iteration
            self._log(f"=== Iteration {iteration} / {config.max_iterations} ===")

            check_result = self._run_checks(iteration)
            if check_result.all_pass:
                self._log("All checks passed! Loop complete.")
                return self._terminate(
                    state,
                    event="success",
                    exit_code=EXIT_SUCCESS,
                    reason=REASON_SUCCESS,
                )
            self._log(f"Checks failed: {', '.join(check_result.errors)}")

            outcome = self._invoke_agent(iteration)
            exceeded = self.budget.charge(state, outcome.iteration_cost)
            self._log(
                f"Files changed: {outcome.files_changed}, "
                f"cost this iteration: ${outcome.iteration_cost}"
            )

            if exceeded:
                self._log(
                    f"Budget exceeded: ${state.total_cost} > ${config.budget_max_usd}. Exiting."
                )
                return self._terminate(
                    state,
                    event="budget_exceeded",
                    exit_code=EXIT_BUDGET_EXCEEDED,
                    reason=REASON_BUDGET_EXCEEDED,
                    cost=outcome.iteration_cost,
                    files_changed=outcome.files_changed,
                )

            decision = self.breaker.evaluate(
                state, outcome.files_changed, check_result.first_error
            )
            if outcome.files_changed == 0:
                self._log(
                    f"No progress detected ({state.no_progress_count} / "
                    f"{config.circuit_breaker.no_progress_threshold})"
                )
            if state.same_error_count > 0:
                self._log(
                    f"Same error repeated ({state.same_error_count} / "
                    f"{config.circuit_breaker.same_error_threshold}): {state.last_error}"
                )
            if decision.tripped:
                self._log(f"Circuit breaker tripped: {decision.detail}")
                return self._terminate(
                    state,
                    event="circuit_breaker",
                    exit_code=EXIT_CIRCUIT_BREAKER,
                    reason=decision.reason,
                    cost=outcome.iteration_cost,
                    files_changed=outcome.files_changed,
                )

            if outcome.files_changed > 0:
                self._commit(iteration)
                if config.mode == "polish":
                    self._polish_verify(outcome)

            self.store.save(state)
            self._emit(
                "iteration",
                state,
                cost=outcome.iteration_cost,
                files_changed=outcome.files_changed,
            )
            removed = _rotate_iteration_logs(self.context, retention=config.log_retention)
            if removed:
                self._log(f"Rotated {removed} old log files")

        self._log(f"Max iterations ({config.max_iterations}) reached without success.")
        return self._terminate(
            state,
            event="max_iterations",
            exit_code=EXIT_MAX_ITERATIONS,
            reason=REASON_MAX_ITERATIONS,
        )

    def run(self) -> LoopResult:
        config = self.config
        state = self._load_state()
        self._log(
            f"Ralph CI starting: mode={config.mode}, max_iter={config.max_iterations}, "
            f"budget=${config.budget_max_usd}"
        )
        self._log(
            f"Resuming from iteration {state.iteration}, accumulated cost=${state.total_cost}"
        )
        started = self.clock()
        try:
            result = self._iterate(state, started)
        except KeyboardInterrupt:
            self._log("Interrupted; saving state")
            self._save_best_effort(state)
            self._emit("failure", state, exit_code=EXIT_INTERRUPTED, reason="interrupted")
            raise
        except Exception as exc:
            self._log(f"Unexpected error: {type(exc).__name__}: {exc}")
            self._save_best_effort(state)
            self._emit("failure", state, reason=f"error: {type(exc).__name__}")
            raise
        finally:
            self._run_cleanup()
        self._log(f"Loop finished: reason={result.reason}, exit code {result.exit_code}")
        return result

    def _run_cleanup(self) -> None:
        if self.cleanup is None:
            return
        try:
            self.cleanup()
        except Exception as exc:
            self._log(f"WARN: exit cleanup failed: {exc}")
