"""
Step-up approval for purchases the limit engine denied.

    pending -> approved | rejected | expired

Expiry is checked lazily whenever a request is read; there is no sweeper.
Terminal states never change. Approval creates the transaction; the agent
then collects a freshly minted payment credential by polling.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .card_tokens import CardTokenProvider
from .config import Settings
from .errors import ExpiredError, NotFoundError, ProviderError
from .grants import STEP_UP_TRANSITIONS, ensure_exhaustive, require_transition
from .ledger import SpendingLedger
from .limits import LimitDecision
from .models import (
    Agent,
    ApprovalType,
    StepUpRequest,
    StepUpStatus,
    Transaction,
    TransactionStatus,
)
from .money import cents_to_float
from .store import Store


logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "User rejected"


@dataclass
class PaymentStatus:
    """What an agent sees when polling a step-up or transaction id."""

    status: str
    request_id: str
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body = {"status": self.status, "request_id": self.request_id}
        body.update(self.fields)
        return body


class StepUpWorkflow:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        ledger: SpendingLedger,
        provider: CardTokenProvider,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.ledger = ledger
        self.provider = provider
        self._clock = clock
        self._status_handlers = {
            StepUpStatus.PENDING: self._pending_status,
            StepUpStatus.APPROVED: self._approved_status,
            StepUpStatus.REJECTED: self._rejected_status,
            StepUpStatus.EXPIRED: self._expired_status,
        }
        ensure_exhaustive(self._status_handlers, StepUpStatus, "step-up status handlers")

    def open(
        self,
        agent: Agent,
        amount_cents: int,
        decision: LimitDecision,
        merchant_id: str,
        merchant_name: Optional[str] = None,
        items: Optional[list[dict[str, Any]]] = None,
        payment_method_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> StepUpRequest:
        """Record a denied purchase awaiting the owner's decision."""
        now = int(self._clock())
        step_up = StepUpRequest(
            id=str(uuid.uuid4()),
            agent_id=agent.id,
            owner_id=agent.owner_id,
            amount_cents=amount_cents,
            currency=agent.currency,
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            items=list(items or []),
            reason=decision.reason,
            trigger_type=decision.trigger_type,
            requested_payment_method_id=payment_method_id,
            expires_at=now + self.settings.step_up_expiry_minutes * 60,
            created_at=now,
        )
        self.store.insert_step_up(step_up, conn=conn)
        logger.info(
            "Step-up %s opened for agent %s (%s)", step_up.id, agent.id, step_up.trigger_type.value
        )
        return step_up

    def _expire(self, step_up: StepUpRequest, conn: sqlite3.Connection) -> None:
        require_transition(STEP_UP_TRANSITIONS, "Step-up request", step_up.status, StepUpStatus.EXPIRED)
        step_up.status = StepUpStatus.EXPIRED
        self.store.update_step_up(step_up, conn=conn)

    def _refresh(self, step_up: StepUpRequest) -> StepUpRequest:
        """Lazily move an overdue pending request to expired."""
        if step_up.status != StepUpStatus.PENDING or not step_up.is_expired(self._clock()):
            return step_up
        with self.store.transaction() as conn:
            current = self.store.get_step_up(step_up.id, conn=conn)
            if current is not None and current.status == StepUpStatus.PENDING:
                self._expire(current, conn)
            return current or step_up

    def get_for_owner(self, step_up_id: str, owner_id: str) -> StepUpRequest:
        step_up = self.store.get_step_up(step_up_id)
        if step_up is None or step_up.owner_id != owner_id:
            raise NotFoundError("Step-up request", step_up_id)
        return self._refresh(step_up)

    def list_pending(self, owner_id: str) -> list[StepUpRequest]:
        return self.store.list_pending_step_ups(owner_id, int(self._clock()))

    def approve(
        self,
        step_up_id: str,
        owner_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Transaction:
        """
        Approve a pending request and create its transaction in the same commit.

        The chosen payment method, or else the one the agent originally asked
        for, is carried onto the transaction.
        """
        now = int(self._clock())
        expired = False
        tx: Optional[Transaction] = None
        with self.store.transaction() as conn:
            step_up = self.store.get_step_up(step_up_id, conn=conn)
            if step_up is None or step_up.owner_id != owner_id:
                raise NotFoundError("Step-up request", step_up_id)
            if step_up.status == StepUpStatus.PENDING and step_up.is_expired(now):
                self._expire(step_up, conn)
                expired = True
            else:
                require_transition(STEP_UP_TRANSITIONS, "Step-up request", step_up.status, StepUpStatus.APPROVED)
                method_id = payment_method_id or step_up.requested_payment_method_id
                if payment_method_id:
                    method = self.store.get_payment_method(payment_method_id, conn=conn)
                    if method is None or method.owner_id != owner_id:
                        raise NotFoundError("Payment method", payment_method_id)

                bounds = self.ledger.boundaries(now)
                tx = Transaction(
                    id=str(uuid.uuid4()),
                    agent_id=step_up.agent_id,
                    amount_cents=step_up.amount_cents,
                    currency=step_up.currency,
                    merchant_id=step_up.merchant_id,
                    merchant_name=step_up.merchant_name,
                    status=TransactionStatus.PENDING,
                    approval_type=ApprovalType.STEP_UP,
                    step_up_request_id=step_up.id,
                    payment_method_id=method_id,
                    daily_period_start=bounds.daily_start,
                    monthly_period_start=bounds.monthly_start,
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_transaction(tx, conn=conn)
                step_up.status = StepUpStatus.APPROVED
                step_up.approved_payment_method_id = method_id
                step_up.responded_at = now
                self.store.update_step_up(step_up, conn=conn)
        if expired:
            raise ExpiredError("Step-up request")

        logger.info("Step-up %s approved; transaction %s", step_up_id, tx.id)
        return tx

    def reject(self, step_up_id: str, owner_id: str, reason: Optional[str] = None) -> StepUpRequest:
        now = int(self._clock())
        expired = False
        with self.store.transaction() as conn:
            step_up = self.store.get_step_up(step_up_id, conn=conn)
            if step_up is None or step_up.owner_id != owner_id:
                raise NotFoundError("Step-up request", step_up_id)
            if step_up.status == StepUpStatus.PENDING and step_up.is_expired(now):
                self._expire(step_up, conn)
                expired = True
            else:
                require_transition(STEP_UP_TRANSITIONS, "Step-up request", step_up.status, StepUpStatus.REJECTED)
                step_up.status = StepUpStatus.REJECTED
                step_up.rejection_reason = reason or DEFAULT_REJECTION_REASON
                step_up.responded_at = now
                self.store.update_step_up(step_up, conn=conn)
        if expired:
            raise ExpiredError("Step-up request")

        logger.info("Step-up %s rejected", step_up_id)
        return step_up

    # Agent-side polling

    def status(self, request_id: str, agent: Agent) -> PaymentStatus:
        """
        Resolve a step-up or transaction id for the polling agent.

        Unknown ids and ids belonging to another agent both report not_found.
        """
        step_up = self.store.get_step_up(request_id)
        if step_up is not None:
            if step_up.agent_id != agent.id:
                return PaymentStatus(status="not_found", request_id=request_id)
            step_up = self._refresh(step_up)
            return self._status_handlers[step_up.status](step_up)

        tx = self.store.get_transaction(request_id)
        if tx is None or tx.agent_id != agent.id:
            return PaymentStatus(status="not_found", request_id=request_id)
        return PaymentStatus(
            status=tx.status.value,
            request_id=request_id,
            fields={
                "transaction_id": tx.id,
                "amount": cents_to_float(tx.amount_cents),
                "currency": tx.currency,
                "approval_type": tx.approval_type.value,
            },
        )

    def _pending_status(self, step_up: StepUpRequest) -> PaymentStatus:
        return PaymentStatus(
            status=StepUpStatus.PENDING.value,
            request_id=step_up.id,
            fields={"expires_at": step_up.expires_at},
        )

    def _approved_status(self, step_up: StepUpRequest) -> PaymentStatus:
        """Every poll of an approved request mints a new credential for the approved amount."""
        tx = self.store.get_transaction_for_step_up(step_up.id)
        if tx is None:
            raise NotFoundError("Transaction for step-up", step_up.id)
        method_id = step_up.approved_payment_method_id or step_up.requested_payment_method_id
        if not method_id:
            raise ProviderError("Approved step-up has no payment method")
        try:
            credential = self.provider.mint(method_id, step_up.merchant_id, step_up.amount_cents, step_up.currency)
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Minting payment credential for step-up %s failed", step_up.id)
            raise ProviderError(f"Payment credential minting failed: {exc}") from exc
        fields = {
            "transaction_id": tx.id,
            "amount": cents_to_float(step_up.amount_cents),
            "currency": step_up.currency,
            "merchant_id": step_up.merchant_id,
        }
        fields.update(credential.to_dict())
        return PaymentStatus(status=StepUpStatus.APPROVED.value, request_id=step_up.id, fields=fields)

    def _rejected_status(self, step_up: StepUpRequest) -> PaymentStatus:
        return PaymentStatus(
            status=StepUpStatus.REJECTED.value,
            request_id=step_up.id,
            fields={"rejection_reason": step_up.rejection_reason},
        )

    def _expired_status(self, step_up: StepUpRequest) -> PaymentStatus:
        return PaymentStatus(status=StepUpStatus.EXPIRED.value, request_id=step_up.id)
