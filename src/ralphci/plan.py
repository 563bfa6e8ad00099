from __future__ import annotations

from pathlib import Path

from ralphci.constants import PLAN_DONE_MARKER, PLAN_PENDING_MARKER
from ralphci.models import PlanProgress


def _count_marker(text: str, marker: str) -> int:
    return sum(1 for line in text.splitlines() if marker in line)


def _read_plan_progress(plan_path: Path) -> PlanProgress | None:
    """Count PENDING/DONE steps in the plan file; None when there is no plan."""
    if not plan_path.exists():
        return None
    try:
        text = plan_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return PlanProgress(
        done=_count_marker(text, PLAN_DONE_MARKER),
        pending=_count_marker(text, PLAN_PENDING_MARKER),
    )


def _plan_progress_or_empty(plan_path: Path) -> PlanProgress:
    return _read_plan_progress(plan_path) or PlanProgress()
