"""Tests for the spending ledger and limit decision engine."""

from zoneinfo import ZoneInfo

import pytest

from agentpass.errors import ValidationError
from agentpass.ledger import SpendingUsage, period_boundaries
from agentpass.limits import (
    default_limits,
    evaluate_limits,
    limits_from_mapping,
    validate_limits,
)
from agentpass.models import SpendingLimits, TriggerType

from conftest import NOON_TORONTO


TORONTO = ZoneInfo("America/Toronto")
LIMITS = SpendingLimits(per_transaction_cents=5000, daily_cents=20000, monthly_cents=100000)


class TestEvaluateLimits:
    def test_within_limits(self):
        decision = evaluate_limits(LIMITS, 3000, SpendingUsage())
        assert decision.allowed
        assert decision.trigger_type is None

    @pytest.mark.parametrize("daily_used", [0, 19000, 25000])
    def test_over_per_transaction_always_per_transaction(self, daily_used):
        decision = evaluate_limits(LIMITS, 5001, SpendingUsage(daily_used, daily_used))
        assert not decision.allowed
        assert decision.trigger_type == TriggerType.PER_TRANSACTION
        assert decision.reason == "Amount $50.01 exceeds per-transaction limit of $50.00"

    def test_daily_limit(self):
        decision = evaluate_limits(LIMITS, 4000, SpendingUsage(daily_cents=17000, monthly_cents=17000))
        assert not decision.allowed
        assert decision.trigger_type == TriggerType.DAILY_LIMIT
        assert "Remaining today: $30.00" in decision.reason

    def test_monthly_limit(self):
        decision = evaluate_limits(LIMITS, 4000, SpendingUsage(daily_cents=0, monthly_cents=99000))
        assert not decision.allowed
        assert decision.trigger_type == TriggerType.MONTHLY_LIMIT
        assert "Remaining this month: $10.00" in decision.reason

    def test_exactly_at_limit_is_allowed(self):
        decision = evaluate_limits(LIMITS, 5000, SpendingUsage(daily_cents=15000, monthly_cents=15000))
        assert decision.allowed


class TestPeriodBoundaries:
    def test_daily_resets_at_local_midnight(self):
        bounds = period_boundaries(NOON_TORONTO, TORONTO)
        # 2026-03-15 00:00 EDT
        assert bounds.daily_start == 1773547200
        # 2026-03-01 00:00 UTC
        assert bounds.monthly_start == 1772323200

    def test_late_evening_utc_is_still_same_local_day(self):
        # 23:30 Toronto is already the next day in UTC
        late = NOON_TORONTO + 11 * 3600 + 1800
        assert period_boundaries(late, TORONTO).daily_start == 1773547200

    def test_next_local_day(self):
        assert period_boundaries(NOON_TORONTO + 12 * 3600, TORONTO).daily_start == 1773633600


class TestLimitValidation:
    def test_defaults(self):
        limits = default_limits()
        assert (limits.per_transaction_cents, limits.daily_cents, limits.monthly_cents) == (5000, 20000, 100000)

    def test_ordering_enforced(self):
        with pytest.raises(ValidationError, match="Per-transaction limit cannot exceed daily"):
            validate_limits("300", "200", "1000")
        with pytest.raises(ValidationError, match="Daily limit cannot exceed monthly"):
            validate_limits("50", "2000", "1000")

    @pytest.mark.parametrize("bad", ["0", "-5", "1.234", "abc"])
    def test_invalid_values(self, bad):
        with pytest.raises(ValidationError):
            validate_limits(bad, "200", "1000")

    def test_mapping_overlay_revalidates_merged_values(self):
        base = default_limits()
        merged = limits_from_mapping({"daily": "100"}, base)
        assert merged.daily_cents == 10000
        assert merged.per_transaction_cents == 5000
        with pytest.raises(ValidationError):
            limits_from_mapping({"daily": "40"}, base)

    @pytest.mark.parametrize("huge", ["1e40", "1" + "0" * 27])
    def test_huge_limits_rejected(self, huge):
        with pytest.raises(ValidationError):
            validate_limits("1", "2", huge)
        with pytest.raises(ValidationError):
            limits_from_mapping({"monthly": huge}, default_limits())


class TestLimitEngine:
    def test_only_completed_transactions_count(self, app, make_agent):
        agent, _ = make_agent()
        app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
        first = app.payments.request_credential(agent, "40", merchant_id="m-1")
        second = app.payments.request_credential(agent, "45", merchant_id="m-1")
        assert app.ledger.usage(agent.id) == SpendingUsage(0, 0)

        app.payments.complete_transaction(agent, first.transaction_id)
        app.payments.fail_transaction(agent, second.transaction_id)
        assert app.ledger.usage(agent.id) == SpendingUsage(4000, 4000)

    def test_refunds_stop_counting(self, app, make_agent):
        agent, _ = make_agent()
        app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
        approved = app.payments.request_credential(agent, "40", merchant_id="m-1")
        app.payments.complete_transaction(agent, approved.transaction_id)
        app.payments.refund_transaction(agent, approved.transaction_id)
        assert app.ledger.usage(agent.id) == SpendingUsage(0, 0)

    def test_daily_usage_resets_next_local_day(self, app, make_agent, clock):
        agent, _ = make_agent()
        app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
        approved = app.payments.request_credential(agent, "40", merchant_id="m-1")
        app.payments.complete_transaction(agent, approved.transaction_id)
        clock.advance(12 * 3600)
        usage = app.ledger.usage(agent.id)
        assert usage.daily_cents == 0
        assert usage.monthly_cents == 4000

    def test_remaining_floored_at_zero(self, app, make_agent):
        agent, _ = make_agent(per_transaction_limit="200")
        app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
        approved = app.payments.request_credential(agent, "200", merchant_id="m-1")
        app.payments.complete_transaction(agent, approved.transaction_id)
        remaining = app.limits.remaining(agent)
        assert remaining.daily_cents == 0
        assert remaining.monthly_cents == 80000
        assert app.limits.max_auto_approve(agent) == 0

    def test_non_positive_amount_rejected(self, app, make_agent):
        agent, _ = make_agent()
        with pytest.raises(ValidationError):
            app.limits.check(agent, "0")
