"""
Owner-side agent management.

Every lookup is scoped to the owner: an agent that exists but belongs to
someone else raises the same NotFoundError as one that does not exist.
Revocation is soft (status ``revoked``) and final.
"""

from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal
from typing import Callable, Iterable, Optional

from .credentials import CredentialVault, generate_client_secret, hash_secret
from .errors import NotFoundError, StateConflictError, ValidationError
from .limits import limits_from_mapping, validate_limits
from .models import Agent, AgentStatus, Transaction, VALID_PERMISSIONS
from .store import Store
from .tokens import TokenService
from .webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
_OWNER_SETTABLE_STATUSES = {AgentStatus.ACTIVE, AgentStatus.SUSPENDED}


def validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Agent name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Agent name must be at most {MAX_NAME_LENGTH} characters")
    return name


def validate_permissions(permissions: Iterable[str]) -> frozenset[str]:
    chosen = frozenset(permissions)
    if not chosen:
        raise ValidationError("At least one permission is required")
    unknown = chosen - VALID_PERMISSIONS
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    return chosen


class AgentService:
    def __init__(
        self,
        store: Store,
        vault: CredentialVault,
        tokens: TokenService,
        webhooks: WebhookDispatcher,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.vault = vault
        self.tokens = tokens
        self.webhooks = webhooks
        self._clock = clock

    def create(
        self,
        owner_id: str,
        name: str,
        permissions: Iterable[str],
        per_transaction_limit: Decimal | float | int | str,
        daily_limit: Decimal | float | int | str,
        monthly_limit: Decimal | float | int | str,
        currency: str = "CAD",
        description: Optional[str] = None,
    ) -> tuple[Agent, str]:
        """Register an agent directly. Returns the agent and its one-time client secret."""
        name = validate_name(name)
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        chosen = validate_permissions(permissions)
        limits = validate_limits(per_transaction_limit, daily_limit, monthly_limit, currency=currency)

        client_id, client_secret, secret_hash = self.vault.new_credentials()
        now = int(self._clock())
        agent = Agent(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            client_id=client_id,
            client_secret_hash=secret_hash,
            name=name,
            description=description,
            permissions=chosen,
            per_transaction_limit_cents=limits.per_transaction_cents,
            daily_limit_cents=limits.daily_cents,
            monthly_limit_cents=limits.monthly_cents,
            currency=limits.currency,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_agent(agent)
        logger.info("Created agent %s (%s) for owner %s", agent.id, agent.client_id, owner_id)
        return agent, client_secret

    def list_agents(self, owner_id: str, include_revoked: bool = False) -> list[Agent]:
        agents = self.store.list_agents(owner_id)
        if include_revoked:
            return agents
        return [a for a in agents if a.status != AgentStatus.REVOKED]

    def get(self, owner_id: str, agent_id: str) -> Agent:
        agent = self.store.get_agent(agent_id)
        if agent is None or agent.owner_id != owner_id:
            raise NotFoundError("Agent", agent_id)
        return agent

    def update(
        self,
        owner_id: str,
        agent_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        spending_limits: Optional[dict] = None,
        status: Optional[str] = None,
    ) -> Agent:
        """Patch an agent. Limits are re-validated against the merged values."""
        new_status = None
        if status is not None:
            try:
                new_status = AgentStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Invalid status: {status}") from exc
            if new_status not in _OWNER_SETTABLE_STATUSES:
                raise ValidationError("Status can only be set to active or suspended")
        new_name = validate_name(name) if name is not None else None
        new_permissions = validate_permissions(permissions) if permissions is not None else None

        now = int(self._clock())
        with self.store.transaction() as conn:
            agent = self.store.get_agent(agent_id, conn=conn)
            if agent is None or agent.owner_id != owner_id:
                raise NotFoundError("Agent", agent_id)
            if agent.status == AgentStatus.REVOKED:
                raise StateConflictError("Agent", agent.status.value, "Cannot modify a revoked agent")
            previous_status = agent.status

            if new_name is not None:
                agent.name = new_name
            if description is not None:
                agent.description = description or None
            if new_permissions is not None:
                agent.permissions = new_permissions
            if spending_limits:
                limits = limits_from_mapping(spending_limits, agent.limits)
                if limits.currency != agent.currency:
                    raise ValidationError("Currency cannot be changed")
                agent.per_transaction_limit_cents = limits.per_transaction_cents
                agent.daily_limit_cents = limits.daily_cents
                agent.monthly_limit_cents = limits.monthly_cents
            if new_status is not None:
                agent.status = new_status
            agent.updated_at = now
            self.store.update_agent(agent, conn=conn)

        if previous_status == AgentStatus.ACTIVE and agent.status == AgentStatus.SUSPENDED:
            logger.info("Agent %s suspended by owner", agent.id)
            self.webhooks.agent_deactivated(agent, reason="suspended_by_owner")
        return agent

    def revoke(self, owner_id: str, agent_id: str) -> Agent:
        """Revoke all tokens and mark the agent revoked. Irreversible."""
        now = int(self._clock())
        with self.store.transaction() as conn:
            agent = self.store.get_agent(agent_id, conn=conn)
            if agent is None or agent.owner_id != owner_id:
                raise NotFoundError("Agent", agent_id)
            if agent.status == AgentStatus.REVOKED:
                raise StateConflictError("Agent", agent.status.value, "Agent is already revoked")
            revoked_hashes = self.tokens.revoke_all(agent.id, conn=conn)
            agent.status = AgentStatus.REVOKED
            agent.updated_at = now
            self.store.update_agent(agent, conn=conn)

        logger.info("Agent %s revoked by owner", agent.id)
        for token_hash in revoked_hashes:
            self.webhooks.token_revoked(agent, token_hash, reason="owner_revoked")
        self.webhooks.agent_deactivated(agent, reason="revoked_by_owner")
        return agent

    def rotate_secret(self, owner_id: str, agent_id: str) -> tuple[Agent, str]:
        """Issue a new client secret; every existing token is revoked."""
        client_secret = generate_client_secret()
        secret_hash = hash_secret(client_secret)
        now = int(self._clock())
        with self.store.transaction() as conn:
            agent = self.store.get_agent(agent_id, conn=conn)
            if agent is None or agent.owner_id != owner_id:
                raise NotFoundError("Agent", agent_id)
            if agent.status == AgentStatus.REVOKED:
                raise StateConflictError("Agent", agent.status.value, "Cannot rotate the secret of a revoked agent")
            revoked_hashes = self.tokens.revoke_all(agent.id, conn=conn)
            agent.client_secret_hash = secret_hash
            agent.secret_rotated_at = now
            agent.updated_at = now
            self.store.update_agent(agent, conn=conn)

        logger.info("Rotated client secret for agent %s", agent.id)
        for token_hash in revoked_hashes:
            self.webhooks.token_revoked(agent, token_hash, reason="secret_rotated")
        self.webhooks.agent_secret_rotated(agent)
        return agent, client_secret

    def transactions(self, owner_id: str, agent_id: str, limit: int = 20) -> list[Transaction]:
        agent = self.get(owner_id, agent_id)
        return self.store.list_transactions(agent.id, limit=limit)
