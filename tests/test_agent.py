from __future__ import annotations

import shutil
import time
from decimal import Decimal
from pathlib import Path

import pytest

from ralphci.agent import AgentInvoker, parse_cost
from ralphci.models import AgentConfig

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="sh is not installed")


def _config(command: tuple[str, ...] = (), **overrides: object) -> AgentConfig:
    values: dict[str, object] = {
        "command": command,
        "model": "claude-sonnet-4-6",
        "max_turns": 30,
        "allowed_tools": "",
        "prompt": "do the next step",
        "timeout_seconds": 30.0,
    }
    values.update(overrides)
    return AgentConfig(**values)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Cost parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ('{"cost_usd": 0.42}', Decimal("0.42")),
        ('{"total_cost_usd": 1.5, "result": "ok"}', Decimal("1.5")),
        ('{"result": {"cost_usd": 0.1}}', Decimal("0.1")),
        ('{"cost_usd": null, "total_cost_usd": 2}', Decimal("2")),
        ('progress...\n{"type": "log"}\n{"cost_usd": 0.07}\n', Decimal("0.07")),
    ],
)
def test_parse_cost_reads_known_keys(output: str, expected: Decimal) -> None:
    assert parse_cost(output) == expected


@pytest.mark.parametrize(
    "output",
    ["", "plain text, no json", '{"result": "no cost here"}', '{"cost_usd": "n/a"}', "[0.5]"],
)
def test_parse_cost_returns_none_when_unusable(output: str) -> None:
    assert parse_cost(output) is None


def test_parse_cost_keeps_decimal_precision() -> None:
    cost = parse_cost('{"cost_usd": 0.1000000000000000055511151231257827}')
    assert cost == Decimal("0.1000000000000000055511151231257827")


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def test_default_argv_uses_claude_preset(tmp_path: Path) -> None:
    invoker = AgentInvoker(tmp_path, _config(allowed_tools="Read,Edit"))

    argv = invoker.argv("fix it")

    assert argv == [
        "claude",
        "--print",
        "--output-format",
        "json",
        "--model",
        "claude-sonnet-4-6",
        "--max-turns",
        "30",
        "--allowedTools",
        "Read,Edit",
        "fix it",
    ]


def test_custom_command_substitutes_placeholders(tmp_path: Path) -> None:
    invoker = AgentInvoker(
        tmp_path,
        _config(command=("my-agent", "--model={model}", "--turns", "{max_turns}", "-p", "{prompt}")),
    )

    assert invoker.argv("go") == ["my-agent", "--model=claude-sonnet-4-6", "--turns", "30", "-p", "go"]


def test_custom_command_appends_prompt_when_not_placed(tmp_path: Path) -> None:
    invoker = AgentInvoker(tmp_path, _config(command=("my-agent", "--json")))

    assert invoker.argv("go") == ["my-agent", "--json", "go"]


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


@needs_sh
def test_invoke_captures_output_and_cost(tmp_path: Path) -> None:
    invoker = AgentInvoker(
        tmp_path,
        _config(command=("sh", "-c", "printf '%s\\n' '{\"cost_usd\": 0.25}'")),
    )

    result = invoker.invoke("prompt")

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.cost == Decimal("0.25")
    assert '"cost_usd"' in result.output


@needs_sh
def test_invoke_writes_stderr_to_iteration_log(tmp_path: Path) -> None:
    log_path = tmp_path / ".ralph" / "logs" / "loop_0_iter_1.log"
    invoker = AgentInvoker(tmp_path, _config(command=("sh", "-c", "echo oops >&2; exit 3")))

    result = invoker.invoke("prompt", stderr_path=log_path)

    assert result.exit_code == 3
    assert result.cost is None
    assert log_path.read_text(encoding="utf-8").strip() == "oops"


@needs_sh
def test_invoke_runs_in_project_directory(tmp_path: Path) -> None:
    invoker = AgentInvoker(tmp_path, _config(command=("sh", "-c", "pwd")))

    result = invoker.invoke("prompt")

    assert Path(result.output.strip()).resolve() == tmp_path.resolve()


@needs_sh
def test_invoke_timeout_terminates_agent(tmp_path: Path) -> None:
    invoker = AgentInvoker(
        tmp_path,
        _config(command=("sh", "-c", "exec sleep 10"), timeout_seconds=0.3),
        grace_seconds=2.0,
    )

    started = time.monotonic()
    result = invoker.invoke("prompt")

    assert result.timed_out is True
    assert result.exit_code == 124
    assert time.monotonic() - started < 8


def test_invoke_missing_binary_reports_127(tmp_path: Path) -> None:
    log_path = tmp_path / "agent.log"
    invoker = AgentInvoker(tmp_path, _config(command=("ralphci-no-such-agent-binary",)))

    result = invoker.invoke("prompt", stderr_path=log_path)

    assert result.exit_code == 127
    assert result.timed_out is False
    assert result.output == ""
    assert "agent failed to start" in log_path.read_text(encoding="utf-8")


@needs_sh
def test_invoke_timeout_stops_agent_subprocesses(tmp_path: Path) -> None:
    invoker = AgentInvoker(
        tmp_path,
        _config(command=("sh", "-c", "sleep 8; echo done"), timeout_seconds=1.0),
        grace_seconds=1.0,
    )

    started = time.monotonic()
    result = invoker.invoke("prompt")
    elapsed = time.monotonic() - started

    assert result.timed_out is True
    assert result.exit_code == 124
    assert "done" not in result.output
    assert elapsed < 4


@needs_sh
def test_invoke_tolerates_undecodable_output(tmp_path: Path) -> None:
    invoker = AgentInvoker(tmp_path, _config(command=("sh", "-c", "printf '\\377\\376 bad'")))

    result = invoker.invoke("prompt")

    assert result.exit_code == 0
    assert result.output.endswith(" bad")
    assert "\ufffd" in result.output
    assert result.cost is None
