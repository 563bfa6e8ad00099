from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from ralphci.constants import (
    CONFIG_SCHEMA_PATH,
    DEFAULT_AGENT_MAX_TURNS,
    DEFAULT_AGENT_PROMPT,
    DEFAULT_BUDGET_MAX_USD,
    DEFAULT_CHECKS,
    DEFAULT_CLEANUP_KILL_PATTERNS,
    DEFAULT_CONFIG_FILENAME,
    DEFAULT_ITERATION_TIMEOUT_MINUTES,
    DEFAULT_KILL_SWITCH_VAR,
    DEFAULT_LOG_RETENTION,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODE,
    DEFAULT_MODEL,
    DEFAULT_NO_PROGRESS_THRESHOLD,
    DEFAULT_SAME_ERROR_THRESHOLD,
    DEFAULT_TIMEOUT_MINUTES,
    LOOP_ID_SAFE_PATTERN,
)
from ralphci.models import (
    AgentConfig,
    CheckSpec,
    CircuitBreakerConfig,
    ConfigError,
    LoopConfig,
    WebhookConfig,
    _coerce_decimal,
)


def _load_config_schema() -> dict[str, Any]:
    return json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))


def _resolve_config_path(project_dir: Path, raw_path: str | None) -> Path:
    if raw_path:
        candidate = Path(raw_path).expanduser()
        if not candidate.is_absolute():
            candidate = project_dir / candidate
        return candidate.resolve()
    return (project_dir / DEFAULT_CONFIG_FILENAME).resolve()


def _load_config_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"{path} not found")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} could not be parsed: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return loaded


def _validate_config_mapping(payload: dict[str, Any], *, path: Path) -> None:
    validator = Draft202012Validator(_load_config_schema())
    errors = sorted(validator.iter_errors(payload), key=lambda error: list(error.absolute_path))
    if not errors:
        return
    lines: list[str] = []
    for error in errors[:5]:
        location = ".".join(str(part) for part in error.absolute_path) or "<root>"
        lines.append(f"{location}: {error.message}")
    raise ConfigError(f"{path} is invalid: " + "; ".join(lines))


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _build_agent_command(raw_command: Any) -> tuple[str, ...]:
    if raw_command is None:
        return ()
    if isinstance(raw_command, list):
        return tuple(str(token) for token in raw_command)
    try:
        return tuple(shlex.split(str(raw_command)))
    except ValueError as exc:
        raise ConfigError(f"agent.command could not be parsed: {exc}") from exc


def _load_check_entries(raw_checks: Any) -> tuple[str | CheckSpec, ...]:
    if raw_checks is None:
        return DEFAULT_CHECKS
    entries: list[str | CheckSpec] = []
    seen: set[str] = set()
    for raw_entry in raw_checks:
        if isinstance(raw_entry, dict):
            entry: str | CheckSpec = CheckSpec(
                name=str(raw_entry["name"]).strip(),
                command=str(raw_entry["command"]).strip(),
                skip_if_missing=str(raw_entry.get("skip_if_missing", "") or "").strip(),
            )
            name = entry.name
        else:
            entry = str(raw_entry).strip()
            name = entry
        if name in seen:
            raise ConfigError(f"checks contains duplicate check '{name}'")
        seen.add(name)
        entries.append(entry)
    return tuple(entries)


def _build_loop_config(payload: dict[str, Any]) -> LoopConfig:
    breaker = _section(payload, "circuit_breaker")
    agent = _section(payload, "agent")
    webhook = _section(payload, "webhook")
    cleanup = _section(payload, "cleanup")

    budget = _coerce_decimal(payload.get("budget_max_usd", DEFAULT_BUDGET_MAX_USD))
    if budget is None or budget < 0:
        raise ConfigError("budget_max_usd must be a non-negative number")

    iteration_timeout_minutes = float(
        payload.get("iteration_timeout_minutes", DEFAULT_ITERATION_TIMEOUT_MINUTES)
    )
    model = str(payload.get("model", DEFAULT_MODEL)).strip()

    raw_patterns = cleanup.get("kill_patterns")
    if raw_patterns is None:
        kill_patterns = DEFAULT_CLEANUP_KILL_PATTERNS
    else:
        kill_patterns = tuple(str(pattern) for pattern in raw_patterns)

    return LoopConfig(
        mode=str(payload.get("mode", DEFAULT_MODE)),
        max_iterations=int(payload.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
        timeout_minutes=float(payload.get("timeout_minutes", DEFAULT_TIMEOUT_MINUTES)),
        iteration_timeout_minutes=iteration_timeout_minutes,
        kill_switch_var=str(payload.get("kill_switch", DEFAULT_KILL_SWITCH_VAR)),
        budget_max_usd=budget,
        log_retention=int(payload.get("log_retention", DEFAULT_LOG_RETENTION)),
        circuit_breaker=CircuitBreakerConfig(
            no_progress_threshold=int(
                breaker.get("no_progress_threshold", DEFAULT_NO_PROGRESS_THRESHOLD)
            ),
            same_error_threshold=int(
                breaker.get("same_error_threshold", DEFAULT_SAME_ERROR_THRESHOLD)
            ),
        ),
        checks=_load_check_entries(payload.get("checks")),
        agent=AgentConfig(
            command=_build_agent_command(agent.get("command")),
            model=model,
            max_turns=int(agent.get("max_turns", DEFAULT_AGENT_MAX_TURNS)),
            allowed_tools=str(agent.get("allowed_tools", "") or "").strip(),
            prompt=str(agent.get("prompt", DEFAULT_AGENT_PROMPT)),
            timeout_seconds=iteration_timeout_minutes * 60.0,
        ),
        webhook=WebhookConfig(
            url=str(webhook.get("url") or "").strip(),
            events=tuple(str(event) for event in webhook.get("events", []) or []),
        ),
        cleanup_kill_patterns=kill_patterns,
    )


def _load_loop_config(project_dir: Path, config_path: str | None = None) -> LoopConfig:
    path = _resolve_config_path(project_dir, config_path)
    payload = _load_config_mapping(path)
    _validate_config_mapping(payload, path=path)
    return _build_loop_config(payload)


def _validate_loop_id(loop_id: str) -> str:
    normalized = str(loop_id).strip()
    if not normalized or not LOOP_ID_SAFE_PATTERN.fullmatch(normalized):
        raise ConfigError(
            f"loop id must be a non-empty name using only [A-Za-z0-9._-], got '{loop_id}'"
        )
    return normalized
