"""
Payment-credential requests from agents.

A request within limits creates a pending transaction and returns a freshly
minted single-use credential. A request the limit engine denies opens a
step-up for the owner instead. Both outcomes are return values.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from .card_tokens import CardTokenProvider, MintedCredential
from .config import Settings
from .errors import (
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    StateConflictError,
    ValidationError,
)
from .ledger import RemainingLimits
from .limits import LimitEngine
from .models import (
    Agent,
    ApprovalType,
    PaymentMethod,
    Permission,
    Transaction,
    TransactionStatus,
)
from .money import amount_to_cents, cents_to_float, has_cent_precision
from .notifications import STEP_UP_NOTIFICATION, NotificationService
from .stepup import StepUpWorkflow
from .store import Store


logger = logging.getLogger(__name__)

# Allowed transaction status moves
_TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED},
    TransactionStatus.FAILED: set(),
    TransactionStatus.REFUNDED: set(),
}


@dataclass
class PaymentApproved:
    transaction_id: str
    amount_cents: int
    currency: str
    credential: MintedCredential

    def to_dict(self) -> dict[str, Any]:
        body = {
            "status": "approved",
            "transaction_id": self.transaction_id,
            "amount": cents_to_float(self.amount_cents),
            "currency": self.currency,
        }
        body.update(self.credential.to_dict())
        return body


@dataclass
class StepUpRequired:
    step_up_id: str
    reason: str
    trigger_type: str
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_up_required": True,
            "step_up_id": self.step_up_id,
            "reason": self.reason,
            "trigger_type": self.trigger_type,
            "expires_at": self.expires_at,
        }


PaymentOutcome = Union[PaymentApproved, StepUpRequired]


class PaymentService:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        limits: LimitEngine,
        step_ups: StepUpWorkflow,
        notifications: NotificationService,
        provider: CardTokenProvider,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.limits = limits
        self.step_ups = step_ups
        self.notifications = notifications
        self.provider = provider
        self._clock = clock

    def add_payment_method(self, owner_id: str, label: str, is_default: bool = False) -> PaymentMethod:
        if not label:
            raise ValidationError("Payment method label is required")
        method = PaymentMethod(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            label=label,
            is_default=is_default,
            created_at=int(self._clock()),
        )
        self.store.insert_payment_method(method)
        return method

    def _resolve_payment_method(self, agent: Agent, payment_method_id: Optional[str]) -> str:
        if payment_method_id:
            method = self.store.get_payment_method(payment_method_id)
            if method is None or method.owner_id != agent.owner_id:
                raise NotFoundError("Payment method", payment_method_id)
            return method.id
        method = self.store.get_default_payment_method(agent.owner_id)
        if method is None:
            raise ValidationError("No payment method available for this wallet")
        return method.id

    def request_credential(
        self,
        agent: Agent,
        amount: Decimal | float | int | str,
        merchant_id: str,
        merchant_name: Optional[str] = None,
        items: Optional[list[dict[str, Any]]] = None,
        payment_method_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> PaymentOutcome:
        """Issue a credential within limits, or open a step-up when over them."""
        if not merchant_id:
            raise ValidationError("merchant_id is required")
        if not has_cent_precision(amount):
            raise ValidationError("Amount must have at most 2 decimal places")
        amount_cents = amount_to_cents(amount)
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")
        if currency and currency.upper() != agent.currency:
            raise ValidationError(f"Agent limits are in {agent.currency}, not {currency.upper()}")
        if not agent.is_active:
            raise PermissionDeniedError(f"Agent is {agent.status.value}")
        if not agent.has_permission(Permission.PURCHASE.value):
            raise PermissionDeniedError("Agent does not have the purchase permission")

        method_id = self._resolve_payment_method(agent, payment_method_id)
        now = int(self._clock())

        with self.store.transaction() as conn:
            decision = self.limits.check(agent, amount, conn=conn)
            if not decision.allowed:
                step_up = self.step_ups.open(
                    agent,
                    amount_cents,
                    decision,
                    merchant_id=merchant_id,
                    merchant_name=merchant_name,
                    items=items,
                    payment_method_id=method_id,
                    conn=conn,
                )
                tx = None
            else:
                bounds = self.limits.ledger.boundaries(now)
                tx = Transaction(
                    id=str(uuid.uuid4()),
                    agent_id=agent.id,
                    amount_cents=amount_cents,
                    currency=agent.currency,
                    merchant_id=merchant_id,
                    merchant_name=merchant_name,
                    status=TransactionStatus.PENDING,
                    approval_type=ApprovalType.AUTO,
                    payment_method_id=method_id,
                    daily_period_start=bounds.daily_start,
                    monthly_period_start=bounds.monthly_start,
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_transaction(tx, conn=conn)

        if tx is None:
            self.notifications.notify(
                agent.owner_id,
                STEP_UP_NOTIFICATION,
                {
                    "step_up_id": step_up.id,
                    "agent_id": agent.id,
                    "agent_name": agent.name,
                    "amount": cents_to_float(amount_cents),
                    "currency": agent.currency,
                    "merchant_id": merchant_id,
                    "merchant_name": merchant_name,
                    "reason": decision.reason,
                },
                idempotency_key=step_up.id,
            )
            return StepUpRequired(
                step_up_id=step_up.id,
                reason=decision.reason,
                trigger_type=step_up.trigger_type.value,
                expires_at=step_up.expires_at,
            )

        try:
            credential = self.provider.mint(method_id, merchant_id, amount_cents, agent.currency)
        except Exception as exc:
            logger.exception("Minting payment credential for transaction %s failed", tx.id)
            self.store.update_transaction_status(tx.id, TransactionStatus.FAILED, int(self._clock()))
            raise ProviderError(f"Payment credential minting failed: {exc}") from exc

        logger.info("Auto-approved %s %s for agent %s", cents_to_float(amount_cents), agent.currency, agent.id)
        return PaymentApproved(
            transaction_id=tx.id,
            amount_cents=amount_cents,
            currency=agent.currency,
            credential=credential,
        )

    def _move(self, agent: Agent, tx_id: str, target: TransactionStatus) -> Transaction:
        now = int(self._clock())
        with self.store.transaction() as conn:
            tx = self.store.get_transaction(tx_id, conn=conn)
            if tx is None or tx.agent_id != agent.id:
                raise NotFoundError("Transaction", tx_id)
            if target not in _TRANSACTION_TRANSITIONS[tx.status]:
                raise StateConflictError("Transaction", tx.status.value)
            self.store.update_transaction_status(tx.id, target, now, conn=conn)
            tx.status = target
            tx.updated_at = now
        logger.info("Transaction %s %s", tx.id, target.value)
        return tx

    def complete_transaction(self, agent: Agent, tx_id: str) -> Transaction:
        """Mark a purchase settled; only completed purchases count toward usage."""
        return self._move(agent, tx_id, TransactionStatus.COMPLETED)

    def fail_transaction(self, agent: Agent, tx_id: str) -> Transaction:
        return self._move(agent, tx_id, TransactionStatus.FAILED)

    def refund_transaction(self, agent: Agent, tx_id: str) -> Transaction:
        return self._move(agent, tx_id, TransactionStatus.REFUNDED)

    def remaining_limits(self, agent: Agent) -> RemainingLimits:
        return self.limits.remaining(agent)
