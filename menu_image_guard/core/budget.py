"""
Global budget ledger for image generation.

Enforcement is two-phase: check_available() before a paid call and
commit_increment() after the artifact is stored. The two are separate
operations, so concurrent requests that all pass the check can push spend
past the cap by at most one unit each. Only the increment itself is atomic.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .policy import Collaborator, guard
from menu_image_guard.config.loader import BudgetConfig
from menu_image_guard.storage.models import BudgetState
from menu_image_guard.storage.repository import BudgetRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetStatus:
    """Human-facing summary of the ledger against the cap."""
    units_generated: int
    total_cost_spent: Decimal
    cap: Decimal
    unit_cost: Decimal
    last_updated: Optional[datetime]

    @property
    def remaining(self) -> Decimal:
        return max(self.cap - self.total_cost_spent, Decimal("0"))

    @property
    def exhausted(self) -> bool:
        return self.total_cost_spent + self.unit_cost > self.cap


class BudgetLedger:
    """Checks and records spend against the global cap."""

    def __init__(self, repository: BudgetRepository, config: BudgetConfig):
        self.repository = repository
        self.config = config

    def check_available(self) -> bool:
        """Whether one more unit fits under the cap.

        No ledger row yet counts as zero spend. Read failures fail open.
        """
        state = guard(Collaborator.BUDGET_READ, self.repository.get_state, fallback=None)
        if state is None:
            return True

        projected = state.total_cost_spent + self.config.unit_cost
        if projected > self.config.cap:
            logger.warning(
                f"Budget cap reached: ${state.total_cost_spent:.2f} / ${self.config.cap:.2f}"
            )
            return False
        return True

    def commit_increment(self) -> bool:
        """Record one generated unit. Failures are logged and swallowed.

        Returns:
            True if the increment was stored
        """
        state = guard(
            Collaborator.BUDGET_COMMIT,
            lambda: self.repository.increment(self.config.unit_cost),
            fallback=None,
        )
        if state is None:
            return False
        logger.info(
            f"Cost tracked: +${self.config.unit_cost:.2f} "
            f"(total ${state.total_cost_spent:.2f}, {state.units_generated} images)"
        )
        return True

    def status(self) -> BudgetStatus:
        """Current ledger figures. Raises if the store can't be read."""
        state: Optional[BudgetState] = self.repository.get_state()
        return BudgetStatus(
            units_generated=state.units_generated if state else 0,
            total_cost_spent=state.total_cost_spent if state else Decimal("0"),
            cap=self.config.cap,
            unit_cost=self.config.unit_cost,
            last_updated=state.last_updated if state else None,
        )
