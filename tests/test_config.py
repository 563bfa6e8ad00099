from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from ralphci.config import _load_loop_config, _validate_loop_id
from ralphci.models import CheckSpec, ConfigError


def _write_config(project: Path, payload: object, name: str = "ralph.config.yaml") -> Path:
    path = project / name
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_empty_config_uses_defaults(tmp_path: Path) -> None:
    (tmp_path / "ralph.config.yaml").write_text("", encoding="utf-8")

    config = _load_loop_config(tmp_path)

    assert config.mode == "build"
    assert config.max_iterations == 40
    assert config.timeout_minutes == 180
    assert config.kill_switch_var == "RALPH_ENABLED"
    assert config.budget_max_usd == Decimal("50")
    assert config.log_retention == 20
    assert config.circuit_breaker.no_progress_threshold == 3
    assert config.circuit_breaker.same_error_threshold == 5
    assert config.checks == ("build", "typecheck", "lint", "test")
    assert config.agent.command == ()
    assert config.agent.model == "claude-sonnet-4-6"
    assert config.agent.max_turns == 30
    assert config.agent.timeout_seconds == 30 * 60
    assert config.webhook.url == ""
    assert config.cleanup_kill_patterns == ("chromium.*--headless", "chrome.*--headless")


def test_config_values_are_loaded(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {
            "mode": "polish",
            "max_iterations": 5,
            "iteration_timeout_minutes": 2,
            "model": "claude-opus-4",
            "budget_max_usd": 12.5,
            "circuit_breaker": {"no_progress_threshold": 2, "same_error_threshold": 4},
            "checks": [
                "lint",
                {"name": "unit", "command": "pytest -q", "skip_if_missing": "pytest.ini"},
            ],
            "agent": {
                "command": "my-agent --model {model}",
                "allowed_tools": "Read,Edit",
                "prompt": "continue",
            },
            "webhook": {"url": "https://hooks.example.com/x", "events": ["success", "failure"]},
            "cleanup": {"kill_patterns": []},
        },
    )

    config = _load_loop_config(tmp_path)

    assert config.mode == "polish"
    assert config.max_iterations == 5
    assert config.budget_max_usd == Decimal("12.5")
    assert config.circuit_breaker.same_error_threshold == 4
    assert config.checks == (
        "lint",
        CheckSpec(name="unit", command="pytest -q", skip_if_missing="pytest.ini"),
    )
    assert config.agent.command == ("my-agent", "--model", "{model}")
    assert config.agent.allowed_tools == "Read,Edit"
    assert config.agent.prompt == "continue"
    assert config.agent.timeout_seconds == 120
    assert config.webhook.events == ("success", "failure")
    assert config.cleanup_kill_patterns == ()


def test_json_config_is_accepted_via_explicit_path(tmp_path: Path) -> None:
    (tmp_path / "ralph.config.json").write_text(
        json.dumps({"mode": "polish", "budget_max_usd": "7.25"}), encoding="utf-8"
    )

    config = _load_loop_config(tmp_path, "ralph.config.json")

    assert config.mode == "polish"
    assert config.budget_max_usd == Decimal("7.25")


def test_missing_config_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        _load_loop_config(tmp_path)


def test_unparseable_config_is_fatal(tmp_path: Path) -> None:
    (tmp_path / "ralph.config.yaml").write_text("mode: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="could not be parsed"):
        _load_loop_config(tmp_path)


def test_non_mapping_config_is_fatal(tmp_path: Path) -> None:
    (tmp_path / "ralph.config.yaml").write_text("- build\n- lint\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="must contain a mapping"):
        _load_loop_config(tmp_path)


@pytest.mark.parametrize(
    "payload",
    [
        {"mode": "sprint"},
        {"max_iterations": 0},
        {"budget_max_usd": -1},
        {"budget_max_usd": "fifty"},
        {"kill_switch": "not a var"},
        {"circuit_breaker": {"no_progress_threshold": 0}},
        {"checks": [{"name": "unit"}]},
        {"webhook": {"events": ["everything"]}},
        {"unexpected_key": True},
    ],
)
def test_schema_violations_are_fatal(tmp_path: Path, payload: dict) -> None:
    _write_config(tmp_path, payload)

    with pytest.raises(ConfigError, match="is invalid"):
        _load_loop_config(tmp_path)


def test_duplicate_check_names_are_rejected(tmp_path: Path) -> None:
    _write_config(tmp_path, {"checks": ["lint", {"name": "lint", "command": "ruff ."}]})

    with pytest.raises(ConfigError, match="duplicate check 'lint'"):
        _load_loop_config(tmp_path)


@pytest.mark.parametrize("loop_id", ["0", "feature-a", "nightly.2", "x_y"])
def test_valid_loop_ids(loop_id: str) -> None:
    assert _validate_loop_id(loop_id) == loop_id


@pytest.mark.parametrize("loop_id", ["", "../escape", "a b", "id/with/slash"])
def test_invalid_loop_ids(loop_id: str) -> None:
    with pytest.raises(ConfigError):
        _validate_loop_id(loop_id)
