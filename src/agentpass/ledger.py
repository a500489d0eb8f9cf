"""
Spending ledger queries.

Usage is recomputed from completed transactions on every call instead of
being kept as a running counter. Each transaction carries the period
boundaries that were current when it was created, so a window is the set of
completed transactions whose snapshot equals or follows the current start.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from .config import Settings
from .models import Agent
from .money import cents_to_float
from .store import Store


@dataclass(frozen=True)
class PeriodBoundaries:
    """Unix timestamps of the current daily and monthly window starts."""

    daily_start: int
    monthly_start: int


@dataclass
class SpendingUsage:
    daily_cents: int = 0
    monthly_cents: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily": cents_to_float(self.daily_cents),
            "monthly": cents_to_float(self.monthly_cents),
        }


@dataclass
class RemainingLimits:
    per_transaction_cents: int
    daily_cents: int
    monthly_cents: int

    @property
    def max_auto_approve_cents(self) -> int:
        return min(self.per_transaction_cents, self.daily_cents, self.monthly_cents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_transaction": cents_to_float(self.per_transaction_cents),
            "daily": cents_to_float(self.daily_cents),
            "monthly": cents_to_float(self.monthly_cents),
        }


def period_boundaries(now: float, tz: ZoneInfo) -> PeriodBoundaries:
    """Day starts at local midnight in ``tz``; month starts on the 1st in UTC."""
    local = datetime.fromtimestamp(now, tz)
    day_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    utc = datetime.fromtimestamp(now, timezone.utc)
    month_start = utc.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return PeriodBoundaries(
        daily_start=int(day_start.timestamp()),
        monthly_start=int(month_start.timestamp()),
    )


class SpendingLedger:
    """Read-side view of per-agent spend."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self._clock = clock

    def boundaries(self, now: Optional[float] = None) -> PeriodBoundaries:
        return period_boundaries(self._clock() if now is None else now, self.settings.timezone)

    def usage(self, agent_id: str, conn: Optional[sqlite3.Connection] = None) -> SpendingUsage:
        bounds = self.boundaries()
        daily, monthly = self.store.sum_completed(
            agent_id,
            daily_since=bounds.daily_start,
            monthly_since=bounds.monthly_start,
            conn=conn,
        )
        return SpendingUsage(daily_cents=daily, monthly_cents=monthly)

    def remaining(self, agent: Agent, usage: Optional[SpendingUsage] = None) -> RemainingLimits:
        """Remaining headroom per window, floored at zero."""
        usage = usage or self.usage(agent.id)
        return RemainingLimits(
            per_transaction_cents=agent.per_transaction_limit_cents,
            daily_cents=max(0, agent.daily_limit_cents - usage.daily_cents),
            monthly_cents=max(0, agent.monthly_limit_cents - usage.monthly_cents),
        )
