"""ralphci check gate: the deterministic pass/fail verdict for one iteration."""

from __future__ import annotations

import fnmatch
import os
import subprocess
import time
from pathlib import Path

from ralphci.constants import (
    AGENT_TERMINATE_GRACE_SECONDS,
    AGENT_TIMEOUT_EXIT_CODE,
    CHECK_COMMAND_TIMEOUT_SECONDS,
    CHECK_OUTPUT_MAX_LINES,
    LINT_CONFIG_CANDIDATES,
    PLAN_CHECK_NAME,
    TEST_FILE_PATTERNS,
    TEST_SCAN_EXCLUDED_DIRS,
)
from ralphci.models import CheckOutcome, CheckResult, CheckSpec, RunContext
from ralphci.plan import _read_plan_progress
from ralphci.utils import (
    _append_log,
    _head_lines,
    _redact_sensitive_text,
    _stop_process_group,
    _utc_now,
)

_PRESET_COMMANDS: dict[str, CheckSpec] = {
    "build": CheckSpec(name="build", command="bun run build", skip_if_missing="package.json"),
    "typecheck": CheckSpec(
        name="typecheck", command="bunx tsc --noEmit", skip_if_missing="tsconfig.json"
    ),
    "test": CheckSpec(name="test", command="bun test"),
}


def _has_test_files(project_dir: Path) -> bool:
    for _dirpath, dirnames, filenames in os.walk(project_dir):
        dirnames[:] = [d for d in dirnames if d not in TEST_SCAN_EXCLUDED_DIRS]
        for fname in filenames:
            if any(fnmatch.fnmatch(fname, pattern) for pattern in TEST_FILE_PATTERNS):
                return True
    return False


def _detect_lint_command(project_dir: Path) -> str | None:
    for filename, command in LINT_CONFIG_CANDIDATES:
        if (project_dir / filename).is_file():
            return command
    return None


class CheckGate:
    """Runs the configured checks in order and folds them into a CheckResult.

    Preset names (``build``, ``typecheck``, ``lint``, ``test``) resolve to the
    bun toolchain with the same skip rules the harness has always used; mapping
    entries run their own shell command.  Only a literal zero exit passes.
    """

    def __init__(
        self,
        context: RunContext,
        checks: tuple[str | CheckSpec, ...],
        *,
        mode: str,
        command_timeout: float = CHECK_COMMAND_TIMEOUT_SECONDS,
        grace_seconds: float = AGENT_TERMINATE_GRACE_SECONDS,
        echo: bool = True,
    ) -> None:
        self.context = context
        self.checks = checks
        self.mode = mode
        self.command_timeout = command_timeout
        self.grace_seconds = grace_seconds
        self.echo = echo

    @property
    def project_dir(self) -> Path:
        return self.context.project_dir

    def _log(self, message: str) -> None:
        _append_log(self.context, message, echo=self.echo)

    # -- plan gate ---------------------------------------------------------

    def _plan_outcome(self) -> CheckOutcome:
        progress = _read_plan_progress(self.context.plan_path)
        if progress is None:
            self._log(f"  SKIP: {PLAN_CHECK_NAME} (no PLAN.md found)")
            return CheckOutcome(name=PLAN_CHECK_NAME, status="skipped", reason="no PLAN.md")
        if progress.pending > 0:
            self._log(f"  FAIL: {PLAN_CHECK_NAME} ({progress.pending} PENDING steps remain)")
            return CheckOutcome(
                name=PLAN_CHECK_NAME,
                status="fail",
                output=f"{progress.pending} PENDING steps in PLAN.md",
            )
        self._log(f"  PASS: {PLAN_CHECK_NAME} (no PENDING steps)")
        return CheckOutcome(name=PLAN_CHECK_NAME, status="pass")

    # -- command checks ----------------------------------------------------

    def _resolve(self, entry: str | CheckSpec) -> CheckSpec | CheckOutcome:
        if isinstance(entry, CheckSpec):
            return entry
        if entry == "lint":
            command = _detect_lint_command(self.project_dir)
            if command is None:
                self._log("  SKIP: lint (no linter config found)")
                return CheckOutcome(name="lint", status="skipped", reason="no linter config")
            return CheckSpec(name="lint", command=command)
        if entry == "test" and not _has_test_files(self.project_dir):
            self._log("  SKIP: test (no test files found)")
            return CheckOutcome(name="test", status="skipped", reason="no test files")
        preset = _PRESET_COMMANDS.get(entry)
        if preset is None:
            self._log(f"  WARN: unknown check '{entry}'")
            return CheckOutcome(name=entry, status="skipped", reason="unknown check")
        return preset

    def _run_spec(self, spec: CheckSpec) -> CheckOutcome:
        if spec.skip_if_missing and not (self.project_dir / spec.skip_if_missing).exists():
            self._log(f"  SKIP: {spec.name} ({spec.skip_if_missing} not found)")
            return CheckOutcome(
                name=spec.name,
                status="skipped",
                reason=f"{spec.skip_if_missing} not found",
            )

        self._log(f"  RUN:  {spec.name}")
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                spec.command,
                cwd=self.project_dir,
                shell=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            duration = round(time.monotonic() - started, 3)
            self._log(f"  FAIL: {spec.name} (could not start: {exc})")
            return CheckOutcome(
                name=spec.name,
                status="fail",
                duration_seconds=duration,
                output=_redact_sensitive_text(str(exc)),
                reason="command failed to start",
            )

        try:
            output, _ = process.communicate(timeout=self.command_timeout)
        except subprocess.TimeoutExpired:
            partial = _stop_process_group(process, grace_seconds=self.grace_seconds)
            duration = round(time.monotonic() - started, 3)
            self._log(f"  FAIL: {spec.name} (timed out after {self.command_timeout}s)")
            return CheckOutcome(
                name=spec.name,
                status="fail",
                duration_seconds=duration,
                exit_code=AGENT_TIMEOUT_EXIT_CODE,
                output=_redact_sensitive_text(_head_lines(partial, CHECK_OUTPUT_MAX_LINES)),
                reason=f"timed out after {self.command_timeout}s",
            )

        duration = round(time.monotonic() - started, 3)
        if process.returncode == 0:
            self._log(f"  PASS: {spec.name} ({duration}s)")
            return CheckOutcome(name=spec.name, status="pass", duration_seconds=duration)
        self._log(f"  FAIL: {spec.name} (exit {process.returncode}, {duration}s)")
        return CheckOutcome(
            name=spec.name,
            status="fail",
            duration_seconds=duration,
            exit_code=process.returncode,
            output=_redact_sensitive_text(
                _head_lines(output or "", CHECK_OUTPUT_MAX_LINES)
            ),
        )

    # -- entry point -------------------------------------------------------

    def run(self, *, include_plan: bool | None = None) -> CheckResult:
        """Run every check once; *include_plan* defaults to build mode."""
        if include_plan is None:
            include_plan = self.mode == "build"
        outcomes: list[CheckOutcome] = []
        if include_plan:
            outcomes.append(self._plan_outcome())
        for entry in self.checks:
            resolved = self._resolve(entry)
            if isinstance(resolved, CheckOutcome):
                outcomes.append(resolved)
            else:
                outcomes.append(self._run_spec(resolved))

        errors = tuple(outcome.name for outcome in outcomes if outcome.status == "fail")
        return CheckResult(
            timestamp=_utc_now(),
            all_pass=not errors,
            mode=self.mode,
            checks=tuple(outcomes),
            errors=errors,
        )
