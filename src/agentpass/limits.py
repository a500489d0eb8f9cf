"""Limit decision engine and spending-limit validation."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .ledger import RemainingLimits, SpendingLedger, SpendingUsage
from .models import Agent, SpendingLimits, TriggerType
from .money import amount_to_cents, format_cents, has_cent_precision, limit_to_cents, to_decimal


DEFAULT_PER_TRANSACTION_LIMIT = "50"
DEFAULT_DAILY_LIMIT = "200"
DEFAULT_MONTHLY_LIMIT = "1000"


@dataclass
class LimitDecision:
    """Outcome of a spending check. A denial is a normal result, not an error."""

    allowed: bool
    reason: str
    trigger_type: Optional[TriggerType] = None
    usage: Optional[SpendingUsage] = None


def evaluate_limits(limits: SpendingLimits, amount_cents: int, usage: SpendingUsage) -> LimitDecision:
    """Check per-transaction, then daily, then monthly ceilings, in that order."""
    if amount_cents > limits.per_transaction_cents:
        return LimitDecision(
            allowed=False,
            reason=(
                f"Amount {format_cents(amount_cents)} exceeds per-transaction limit "
                f"of {format_cents(limits.per_transaction_cents)}"
            ),
            trigger_type=TriggerType.PER_TRANSACTION,
            usage=usage,
        )

    if usage.daily_cents + amount_cents > limits.daily_cents:
        remaining = max(0, limits.daily_cents - usage.daily_cents)
        return LimitDecision(
            allowed=False,
            reason=(
                f"Transaction would exceed daily limit of {format_cents(limits.daily_cents)}. "
                f"Remaining today: {format_cents(remaining)}"
            ),
            trigger_type=TriggerType.DAILY_LIMIT,
            usage=usage,
        )

    if usage.monthly_cents + amount_cents > limits.monthly_cents:
        remaining = max(0, limits.monthly_cents - usage.monthly_cents)
        return LimitDecision(
            allowed=False,
            reason=(
                f"Transaction would exceed monthly limit of {format_cents(limits.monthly_cents)}. "
                f"Remaining this month: {format_cents(remaining)}"
            ),
            trigger_type=TriggerType.MONTHLY_LIMIT,
            usage=usage,
        )

    return LimitDecision(allowed=True, reason="Within limits", usage=usage)


class LimitEngine:
    """Evaluates proposed spend against an agent's ceilings using live usage."""

    def __init__(self, ledger: SpendingLedger):
        self.ledger = ledger

    def check(
        self,
        agent: Agent,
        amount: Decimal | float | int | str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> LimitDecision:
        amount_cents = amount_to_cents(amount)
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")
        usage = self.ledger.usage(agent.id, conn=conn)
        return evaluate_limits(agent.limits, amount_cents, usage)

    def remaining(self, agent: Agent) -> RemainingLimits:
        return self.ledger.remaining(agent)

    def max_auto_approve(self, agent: Agent) -> int:
        """Largest amount (cents) that would currently pass without step-up."""
        return self.ledger.remaining(agent).max_auto_approve_cents


def validate_limit_cents(per_transaction_cents: int, daily_cents: int, monthly_cents: int) -> None:
    """Enforce per_transaction <= daily <= monthly on already-parsed values."""
    if per_transaction_cents > daily_cents:
        raise ValidationError("Per-transaction limit cannot exceed daily limit")
    if daily_cents > monthly_cents:
        raise ValidationError("Daily limit cannot exceed monthly limit")


def parse_limit(name: str, value: Decimal | float | int | str) -> int:
    dec = to_decimal(value)
    if dec <= 0:
        raise ValidationError(f"{name} limit must be positive")
    if not has_cent_precision(dec):
        raise ValidationError(f"{name} limit must have at most 2 decimal places")
    return limit_to_cents(dec)


def validate_limits(
    per_transaction: Decimal | float | int | str,
    daily: Decimal | float | int | str,
    monthly: Decimal | float | int | str,
    currency: str = "CAD",
) -> SpendingLimits:
    """Parse and validate a full set of limits; raises ValidationError."""
    limits = SpendingLimits(
        per_transaction_cents=parse_limit("Per-transaction", per_transaction),
        daily_cents=parse_limit("Daily", daily),
        monthly_cents=parse_limit("Monthly", monthly),
        currency=currency.upper(),
    )
    validate_limit_cents(limits.per_transaction_cents, limits.daily_cents, limits.monthly_cents)
    return limits


def default_limits(currency: str = "CAD") -> SpendingLimits:
    return validate_limits(
        DEFAULT_PER_TRANSACTION_LIMIT,
        DEFAULT_DAILY_LIMIT,
        DEFAULT_MONTHLY_LIMIT,
        currency=currency,
    )


def limits_from_mapping(
    values: Optional[dict],
    fallback: SpendingLimits,
) -> SpendingLimits:
    """Overlay ``per_transaction``/``daily``/``monthly`` keys on a fallback and validate."""
    values = values or {}
    limits = SpendingLimits(
        per_transaction_cents=(
            parse_limit("Per-transaction", values["per_transaction"])
            if values.get("per_transaction") is not None
            else fallback.per_transaction_cents
        ),
        daily_cents=(
            parse_limit("Daily", values["daily"])
            if values.get("daily") is not None
            else fallback.daily_cents
        ),
        monthly_cents=(
            parse_limit("Monthly", values["monthly"])
            if values.get("monthly") is not None
            else fallback.monthly_cents
        ),
        currency=(values.get("currency") or fallback.currency).upper(),
    )
    validate_limit_cents(limits.per_transaction_cents, limits.daily_cents, limits.monthly_cents)
    return limits
