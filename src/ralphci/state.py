"""ralphci state: crash-safe persistence of loop progress."""

from __future__ import annotations

import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from ralphci.constants import LOOP_MODES
from ralphci.models import CorruptStateError, LoopState, RunContext, StateError
from ralphci.utils import _utc_compact, _utc_now, _write_json_atomic


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _state_to_payload(state: LoopState) -> dict[str, Any]:
    return {
        "iteration": state.iteration,
        "total_cost": str(state.total_cost),
        "no_progress_count": state.no_progress_count,
        "last_error": state.last_error,
        "same_error_count": state.same_error_count,
        "timestamp": _utc_now(),
        "mode": state.mode,
        "loop_id": state.loop_id,
    }


def _required_count(payload: dict[str, Any], key: str, *, path: Path) -> int:
    raw_value = payload.get(key, 0)
    if isinstance(raw_value, bool):
        raise CorruptStateError(f"state.{key} must be an integer in {path}")
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise CorruptStateError(f"state.{key} must be an integer in {path}") from exc
    if value < 0:
        raise CorruptStateError(f"state.{key} must be >= 0 in {path}")
    return value


def _state_from_payload(
    payload: dict[str, Any],
    *,
    path: Path,
    loop_id: str,
    default_mode: str,
) -> LoopState:
    raw_cost = payload.get("total_cost", "0")
    if isinstance(raw_cost, bool):
        raise CorruptStateError(f"state.total_cost must be a number in {path}")
    try:
        total_cost = Decimal(str(raw_cost).strip())
    except (InvalidOperation, ValueError) as exc:
        raise CorruptStateError(f"state.total_cost must be a number in {path}") from exc
    if not total_cost.is_finite() or total_cost < 0:
        raise CorruptStateError(f"state.total_cost must be a finite number >= 0 in {path}")

    raw_error = payload.get("last_error", "")
    last_error = "" if raw_error is None else str(raw_error)

    mode = str(payload.get("mode", default_mode)).strip()
    if mode not in LOOP_MODES:
        mode = default_mode

    return LoopState(
        iteration=_required_count(payload, "iteration", path=path),
        total_cost=total_cost,
        no_progress_count=_required_count(payload, "no_progress_count", path=path),
        last_error=last_error,
        same_error_count=_required_count(payload, "same_error_count", path=path),
        loop_id=loop_id,
        mode=mode,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PersistentState:
    """Durable record of one loop's progress, keyed by its loop id."""

    def __init__(self, context: RunContext, *, mode: str) -> None:
        self.context = context
        self.mode = mode

    @property
    def path(self) -> Path:
        return self.context.state_path

    def zero_state(self) -> LoopState:
        return LoopState(loop_id=self.context.loop_id, mode=self.mode)

    def load(self) -> LoopState:
        """Return the last committed state, or the zero-state when none exists.

        Raises ``CorruptStateError`` when a state file exists but cannot be
        parsed; callers decide whether to reset or abort.
        """
        path = self.path
        if not path.exists():
            return self.zero_state()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateError(f"state file could not be read: {path}: {exc}") from exc
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptStateError(f"state file is not valid JSON: {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise CorruptStateError(f"state file must contain an object: {path}")
        return _state_from_payload(
            payload,
            path=path,
            loop_id=self.context.loop_id,
            default_mode=self.mode,
        )

    def save(self, state: LoopState) -> None:
        """Atomically replace the canonical state file with *state*."""
        try:
            _write_json_atomic(self.path, _state_to_payload(state))
        except OSError as exc:
            raise StateError(f"state file could not be written: {self.path}: {exc}") from exc

    def quarantine(self) -> Path | None:
        """Move an unreadable state file aside and return its new location."""
        path = self.path
        if not path.exists():
            return None
        target = path.with_name(f"{path.name}.corrupt.{_utc_compact()}")
        os.replace(path, target)
        return target

    def clear(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True
