"""ralphci guards: the circuit breaker and the budget ceiling."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from ralphci.constants import REASON_NO_PROGRESS, REASON_SAME_ERROR
from ralphci.models import (
    BreakerDecision,
    CircuitBreakerConfig,
    LoopState,
    _coerce_decimal,
)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    def __init__(self, config: CircuitBreakerConfig) -> None:
        self.config = config

    def evaluate(
        self,
        state: LoopState,
        files_changed: int,
        error_signature: str,
    ) -> BreakerDecision:
        """Update both streak counters on *state* and report the first trip.

        The no-progress streak grows on iterations that changed nothing.  The
        same-error streak grows while a non-empty signature repeats; any other
        signature becomes the new baseline with the streak reset to zero.
        """
        if files_changed == 0:
            state.no_progress_count += 1
        else:
            state.no_progress_count = 0

        if error_signature and error_signature == state.last_error:
            state.same_error_count += 1
        else:
            state.same_error_count = 0
            state.last_error = error_signature

        if state.no_progress_count >= self.config.no_progress_threshold:
            return BreakerDecision(
                tripped=True,
                reason=REASON_NO_PROGRESS,
                detail=f"no files changed for {state.no_progress_count} iteration(s)",
            )
        if state.same_error_count >= self.config.same_error_threshold:
            return BreakerDecision(
                tripped=True,
                reason=REASON_SAME_ERROR,
                detail=(
                    f"'{state.last_error}' repeated for "
                    f"{state.same_error_count} iteration(s)"
                ),
            )
        return BreakerDecision(tripped=False)


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


def _normalize_cost(raw_cost: Any) -> Decimal:
    """Non-negative finite cost, or zero for anything unusable."""
    cost = _coerce_decimal(raw_cost)
    if cost is None or cost < 0:
        return Decimal("0")
    return cost


class BudgetGuard:
    def __init__(self, budget_max_usd: Decimal) -> None:
        self.budget_max_usd = budget_max_usd

    def charge(self, state: LoopState, cost: Any) -> bool:
        """Add *cost* to the running total; True once the total exceeds the ceiling."""
        state.total_cost += _normalize_cost(cost)
        return self.exceeded(state)

    def exceeded(self, state: LoopState) -> bool:
        return state.total_cost > self.budget_max_usd
