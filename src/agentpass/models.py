"""Data model for agents, tokens, transactions, step-ups and grants."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .money import cents_to_float


class Permission(str, Enum):
    BROWSE = "browse"
    CART = "cart"
    PURCHASE = "purchase"
    HISTORY = "history"


VALID_PERMISSIONS = frozenset(p.value for p in Permission)


class AgentStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ApprovalType(str, Enum):
    AUTO = "auto"
    STEP_UP = "step_up"


class TriggerType(str, Enum):
    PER_TRANSACTION = "per_transaction"
    DAILY_LIMIT = "daily_limit"
    MONTHLY_LIMIT = "monthly_limit"


class StepUpStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class DeviceGrantStatus(str, Enum):
    PENDING_CLAIM = "pending_claim"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class CodeGrantStatus(str, Enum):
    PENDING_IDENTIFICATION = "pending_identification"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    USED = "used"


class WebhookEvent(str, Enum):
    TOKEN_REVOKED = "token.revoked"
    AGENT_DEACTIVATED = "agent.deactivated"
    AGENT_SECRET_ROTATED = "agent.secret_rotated"


VALID_WEBHOOK_EVENTS = frozenset(e.value for e in WebhookEvent)


@dataclass
class SpendingLimits:
    """Per-transaction, daily and monthly ceilings in cents."""

    per_transaction_cents: int
    daily_cents: int
    monthly_cents: int
    currency: str = "CAD"

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_transaction": cents_to_float(self.per_transaction_cents),
            "daily": cents_to_float(self.daily_cents),
            "monthly": cents_to_float(self.monthly_cents),
            "currency": self.currency,
        }


@dataclass
class Agent:
    """A delegate credential acting within limits on behalf of a wallet owner."""

    id: str
    owner_id: str
    client_id: str
    client_secret_hash: str
    name: str
    permissions: frozenset[str]
    per_transaction_limit_cents: int
    daily_limit_cents: int
    monthly_limit_cents: int
    currency: str = "CAD"
    description: Optional[str] = None
    status: AgentStatus = AgentStatus.ACTIVE
    last_used_at: Optional[int] = None
    secret_rotated_at: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    @property
    def limits(self) -> SpendingLimits:
        return SpendingLimits(
            per_transaction_cents=self.per_transaction_limit_cents,
            daily_cents=self.daily_limit_cents,
            monthly_cents=self.monthly_limit_cents,
            currency=self.currency,
        )

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def to_dict(self) -> dict[str, Any]:
        """Public view; never includes the secret hash."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "client_id": self.client_id,
            "name": self.name,
            "description": self.description,
            "permissions": sorted(self.permissions),
            "spending_limits": self.limits.to_dict(),
            "status": self.status.value,
            "last_used_at": self.last_used_at,
            "secret_rotated_at": self.secret_rotated_at,
            "created_at": self.created_at,
        }


@dataclass
class AccessTokenRecord:
    """Digest-only record of an issued bearer token."""

    token_hash: str
    agent_id: str
    scope: Optional[str]
    expires_at: int
    revoked_at: Optional[int] = None
    created_at: int = 0

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class Transaction:
    """A purchase against an agent's limits."""

    id: str
    agent_id: str
    amount_cents: int
    currency: str
    merchant_id: str
    daily_period_start: int
    monthly_period_start: int
    merchant_name: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    approval_type: ApprovalType = ApprovalType.AUTO
    step_up_request_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "amount": cents_to_float(self.amount_cents),
            "currency": self.currency,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "status": self.status.value,
            "approval_type": self.approval_type.value,
            "step_up_request_id": self.step_up_request_id,
            "created_at": self.created_at,
        }


@dataclass
class StepUpRequest:
    """Over-limit purchase waiting on the owner's decision."""

    id: str
    agent_id: str
    owner_id: str
    amount_cents: int
    currency: str
    merchant_id: str
    reason: str
    trigger_type: TriggerType
    expires_at: int
    merchant_name: Optional[str] = None
    items: list[dict[str, Any]] = field(default_factory=list)
    status: StepUpStatus = StepUpStatus.PENDING
    requested_payment_method_id: Optional[str] = None
    approved_payment_method_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: int = 0
    responded_at: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "amount": cents_to_float(self.amount_cents),
            "currency": self.currency,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "items": list(self.items),
            "reason": self.reason,
            "trigger_type": self.trigger_type.value,
            "status": self.status.value,
            "expires_at": self.expires_at,
        }


@dataclass
class PaymentMethod:
    id: str
    owner_id: str
    label: str
    is_default: bool = False
    created_at: int = 0


@dataclass
class DeviceGrant:
    """Device Authorization attempt (pull model)."""

    id: str
    user_code: str
    agent_name: str
    requested_permissions: frozenset[str]
    requested_limits: SpendingLimits
    expires_at: int
    agent_description: Optional[str] = None
    status: DeviceGrantStatus = DeviceGrantStatus.PENDING_CLAIM
    user_id: Optional[str] = None
    granted_permissions: Optional[frozenset[str]] = None
    granted_limits: Optional[SpendingLimits] = None
    agent_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    credentials_issued_at: Optional[int] = None
    created_at: int = 0
    responded_at: Optional[int] = None

    kind = "device"

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class CodeGrant:
    """Authorization Code + PKCE attempt (redirect model)."""

    id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    expires_at: int
    code_challenge_method: str = "S256"
    state: Optional[str] = None
    scope: Optional[str] = None
    status: CodeGrantStatus = CodeGrantStatus.PENDING_IDENTIFICATION
    code: Optional[str] = None
    user_id: Optional[str] = None
    approved_at: Optional[int] = None
    used_at: Optional[int] = None
    created_at: int = 0

    kind = "authorization_code"

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class OAuthClient:
    """A registered redirect-model client and its redirect URI allow-list."""

    client_id: str
    name: str
    redirect_uris: list[str]
    permissions: frozenset[str] = frozenset({Permission.BROWSE.value})
    created_at: int = 0


@dataclass
class WebhookSubscription:
    id: str
    merchant_id: str
    url: str
    secret: str
    events: frozenset[str]
    enabled: bool = True
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Registration view; the signing secret is never echoed back."""
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "url": self.url,
            "events": sorted(self.events),
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class DeliveryLog:
    id: str
    webhook_id: str
    event_type: str
    payload: str
    attempted_at: int
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "status_code": self.status_code,
            "response_body": self.response_body,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "attempted_at": self.attempted_at,
        }


@dataclass
class NotificationRecord:
    id: str
    user_id: str
    type: str
    source_id: Optional[str]
    status: str
    error: Optional[str] = None
    created_at: int = 0
