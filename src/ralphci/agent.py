"""ralphci agent adapter: one bounded-time invocation of the coding agent."""

from __future__ import annotations

import json
import subprocess
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

from ralphci.constants import (
    AGENT_COST_KEY_PATHS,
    AGENT_MISSING_EXIT_CODE,
    AGENT_TERMINATE_GRACE_SECONDS,
    AGENT_TIMEOUT_EXIT_CODE,
)
from ralphci.models import AgentConfig, AgentResult, _coerce_decimal
from ralphci.utils import _redact_sensitive_text, _stop_process_group


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def _load_json_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text, parse_float=Decimal)
    except (json.JSONDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _extract_output_object(output: str) -> dict[str, Any] | None:
    stripped = output.strip()
    if not stripped:
        return None
    payload = _load_json_object(stripped)
    if payload is not None:
        return payload
    for raw_line in reversed(stripped.splitlines()):
        line = raw_line.strip()
        if not line.startswith("{"):
            continue
        payload = _load_json_object(line)
        if payload is not None:
            return payload
    return None


def _lookup_path(payload: dict[str, Any], key_path: tuple[str, ...]) -> Any:
    current: Any = payload
    for key in key_path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def parse_cost(output: str) -> Decimal | None:
    """Return the iteration cost reported in the agent's JSON output.

    The first non-null of ``cost_usd``, ``total_cost_usd`` and
    ``result.cost_usd`` wins.  Returns None when no usable number is present.
    """
    payload = _extract_output_object(output)
    if payload is None:
        return None
    for key_path in AGENT_COST_KEY_PATHS:
        value = _lookup_path(payload, key_path)
        if value is None:
            continue
        return _coerce_decimal(value)
    return None


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def _default_agent_argv(config: AgentConfig, prompt: str) -> list[str]:
    argv = [
        "claude",
        "--print",
        "--output-format",
        "json",
        "--model",
        config.model,
        "--max-turns",
        str(config.max_turns),
    ]
    if config.allowed_tools:
        argv.extend(["--allowedTools", config.allowed_tools])
    argv.append(prompt)
    return argv


def _render_agent_argv(config: AgentConfig, prompt: str) -> list[str]:
    if not config.command:
        return _default_agent_argv(config, prompt)
    replacements = {
        "{model}": config.model,
        "{max_turns}": str(config.max_turns),
        "{allowed_tools}": config.allowed_tools,
        "{prompt}": prompt,
    }
    argv: list[str] = []
    prompt_placed = False
    for token in config.command:
        if "{prompt}" in token:
            prompt_placed = True
        rendered = token
        for placeholder, value in replacements.items():
            rendered = rendered.replace(placeholder, value)
        argv.append(rendered)
    if not prompt_placed:
        argv.append(prompt)
    return argv


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class AgentInvoker:
    """Runs the agent in the project directory under a wall-clock timeout.

    Never raises for agent-side failures: a missing binary, a non-zero exit
    and a timeout are all reported through ``AgentResult``.
    """

    def __init__(
        self,
        project_dir: Path,
        config: AgentConfig,
        *,
        popen: Callable[..., subprocess.Popen[str]] = subprocess.Popen,
        grace_seconds: float = AGENT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.project_dir = project_dir
        self.config = config
        self._popen = popen
        self.grace_seconds = grace_seconds

    def argv(self, prompt: str) -> list[str]:
        return _render_agent_argv(self.config, prompt)

    def invoke(self, prompt: str, *, stderr_path: Path | None = None) -> AgentResult:
        argv = self.argv(prompt)
        started = time.monotonic()
        stderr_handle = None
        if stderr_path is not None:
            stderr_path.parent.mkdir(parents=True, exist_ok=True)
            stderr_handle = stderr_path.open("w", encoding="utf-8")
        try:
            try:
                process = self._popen(
                    argv,
                    cwd=self.project_dir,
                    shell=False,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_handle if stderr_handle is not None else subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as exc:
                if stderr_handle is not None:
                    stderr_handle.write(
                        _redact_sensitive_text(f"agent failed to start: {argv[0]}: {exc}\n")
                    )
                return AgentResult(
                    output="",
                    exit_code=AGENT_MISSING_EXIT_CODE,
                    duration_seconds=round(time.monotonic() - started, 3),
                )

            timed_out = False
            try:
                output, _ = process.communicate(timeout=self.config.timeout_seconds)
                exit_code = process.returncode
            except subprocess.TimeoutExpired:
                timed_out = True
                output = _stop_process_group(process, grace_seconds=self.grace_seconds)
                exit_code = AGENT_TIMEOUT_EXIT_CODE
        finally:
            if stderr_handle is not None:
                stderr_handle.close()

        output = output or ""
        return AgentResult(
            output=output,
            exit_code=int(exit_code),
            timed_out=timed_out,
            cost=parse_cost(output),
            duration_seconds=round(time.monotonic() - started, 3),
        )
