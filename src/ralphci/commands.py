"""ralphci command line interface."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from ralphci.checks import CheckGate
from ralphci.config import _load_loop_config, _validate_loop_id
from ralphci.constants import (
    DEFAULT_LOOP_ID,
    DEFAULT_MODE,
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    LOOP_ID_ENV_VAR,
    REPORT_EVENTS,
)
from ralphci.guards import _normalize_cost
from ralphci.loop import ControlLoop
from ralphci.models import (
    ConfigError,
    LoopConfig,
    ReportEvent,
    RunContext,
    StateError,
    _coerce_decimal,
)
from ralphci.report import Reporter
from ralphci.state import PersistentState, _state_to_payload
from ralphci.utils import _json_default


def _context_from_args(args: argparse.Namespace) -> RunContext:
    project_dir = Path(args.project_dir).expanduser().resolve()
    return RunContext(project_dir=project_dir, loop_id=_validate_loop_id(args.loop_id))


def _load_config_from_args(args: argparse.Namespace, context: RunContext) -> LoopConfig:
    return _load_loop_config(context.project_dir, args.config)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=_json_default))


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        context = _context_from_args(args)
        config = _load_config_from_args(args, context)
    except ConfigError as exc:
        print(f"ralphci run: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    loop = ControlLoop.build(context, config)
    try:
        result = loop.run()
    except KeyboardInterrupt:
        print("ralphci run: interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except StateError as exc:
        print(f"ralphci run: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    return result.exit_code


def _cmd_check(args: argparse.Namespace) -> int:
    try:
        context = _context_from_args(args)
        config = _load_config_from_args(args, context)
    except ConfigError as exc:
        print(f"ralphci check: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    gate = CheckGate(context, config.checks, mode=config.mode, echo=False)
    include_plan = False if args.no_plan else None
    result = gate.run(include_plan=include_plan)
    _print_json(result.to_payload())
    return 0 if result.all_pass else 1


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        context = _context_from_args(args)
    except ConfigError as exc:
        print(f"ralphci status: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    store = PersistentState(context, mode=DEFAULT_MODE)
    try:
        state = store.load()
    except StateError as exc:
        print(f"ralphci status: ERROR {exc}", file=sys.stderr)
        return 1
    payload = _state_to_payload(state)
    payload["state_file"] = str(store.path)
    payload["state_file_exists"] = store.path.exists()
    _print_json(payload)
    return 0


def _cmd_report(args: argparse.Namespace) -> int:
    try:
        context = _context_from_args(args)
        config = _load_config_from_args(args, context)
    except ConfigError as exc:
        print(f"ralphci report: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    total_cost = _coerce_decimal(args.total_cost)
    if total_cost is None or total_cost < 0:
        print("ralphci report: ERROR --total-cost must be a non-negative number", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    reporter = Reporter(context, mode=config.mode, webhook=config.webhook, echo=False)
    payload = reporter.emit(
        ReportEvent(
            event=args.event,
            loop_id=context.loop_id,
            iteration=args.iteration,
            cost_usd=_normalize_cost(args.cost),
            total_cost_usd=total_cost,
            files_changed=args.files_changed,
            exit_code=args.exit_code,
            reason=args.reason,
        )
    )
    if payload is None:
        return 1
    _print_json(payload)
    return 0


def _cmd_reset(args: argparse.Namespace) -> int:
    try:
        context = _context_from_args(args)
    except ConfigError as exc:
        print(f"ralphci reset: ERROR {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    store = PersistentState(context, mode=DEFAULT_MODE)
    if store.clear():
        print(f"ralphci reset: removed {store.path}")
    else:
        print(f"ralphci reset: no state file at {store.path}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_common_arguments(parser: argparse.ArgumentParser, *, with_config: bool) -> None:
    parser.add_argument(
        "--project-dir",
        default=".",
        help="Project directory managed by the loop (default: current directory)",
    )
    parser.add_argument(
        "--loop-id",
        default=os.environ.get(LOOP_ID_ENV_VAR, DEFAULT_LOOP_ID),
        help=f"Loop identifier scoping state, logs, and reports (default: ${LOOP_ID_ENV_VAR} or 0)",
    )
    if with_config:
        parser.add_argument(
            "--config",
            default=None,
            help="Path to the YAML/JSON config (default: ralph.config.yaml in the project dir)",
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ralphci autonomous iteration harness")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Loop the agent until checks pass or a guard trips")
    _add_common_arguments(run, with_config=True)
    run.set_defaults(handler=_cmd_run)

    check = subparsers.add_parser("check", help="Run the check gate once and print its JSON result")
    _add_common_arguments(check, with_config=True)
    check.add_argument(
        "--no-plan",
        action="store_true",
        help="Skip the PLAN.md completeness gate even in build mode",
    )
    check.set_defaults(handler=_cmd_check)

    status = subparsers.add_parser("status", help="Print the persisted loop state")
    _add_common_arguments(status, with_config=False)
    status.set_defaults(handler=_cmd_status)

    report = subparsers.add_parser("report", help="Record a report event and deliver webhooks")
    _add_common_arguments(report, with_config=True)
    report.add_argument("--event", required=True, choices=REPORT_EVENTS)
    report.add_argument("--iteration", type=int, default=0)
    report.add_argument("--cost", default="0")
    report.add_argument("--total-cost", default="0")
    report.add_argument("--files-changed", type=int, default=0)
    report.add_argument("--exit-code", type=int, default=None)
    report.add_argument("--reason", default="")
    report.set_defaults(handler=_cmd_report)

    reset = subparsers.add_parser("reset", help="Delete the persisted state for a loop id")
    _add_common_arguments(reset, with_config=False)
    reset.set_defaults(handler=_cmd_reset)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
