"""
agentpass: delegated payment credentials for AI agents.

An owner delegates bounded spending to an agent. Purchases inside the
limits get a single-use credential at once; anything over them waits for
the owner's approval. Revocation reaches subscribers via signed webhooks.
"""

__version__ = "0.1.0"

from .app import AgentPass
from .config import Settings
from .errors import (
    AgentPassError,
    CriticalPersistenceError,
    ExpiredError,
    NotFoundError,
    OAuthError,
    PermissionDeniedError,
    ProviderError,
    StateConflictError,
    ValidationError,
)
from .limits import LimitDecision, evaluate_limits
from .models import Agent, AgentStatus, Permission, SpendingLimits, Transaction, TransactionStatus
from .oauth import OAuthEndpoints, OAuthResponse
from .payments import PaymentApproved, PaymentService, StepUpRequired
from .stepup import PaymentStatus, StepUpWorkflow
from .tokens import TokenService
from .webhooks import WebhookDispatcher, sign_payload, verify_signature

__all__ = [
    "AgentPass", "Settings",
    "AgentPassError", "ValidationError", "NotFoundError", "PermissionDeniedError",
    "StateConflictError", "ExpiredError", "ProviderError", "CriticalPersistenceError", "OAuthError",
    "Agent", "AgentStatus", "Permission", "SpendingLimits", "Transaction", "TransactionStatus",
    "LimitDecision", "evaluate_limits",
    "TokenService", "OAuthEndpoints", "OAuthResponse",
    "PaymentService", "PaymentApproved", "StepUpRequired",
    "StepUpWorkflow", "PaymentStatus",
    "WebhookDispatcher", "sign_payload", "verify_signature",
]
