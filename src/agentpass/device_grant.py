"""
Device Authorization grant (pull model).

An agent without user context asks for a grant and receives a device code
plus a short human-readable pairing code. The owner claims the pairing code
on a trusted surface, approves or rejects, and the agent polls the token
endpoint until the outcome is known. Polling before a decision yields
``authorization_pending``, which is a normal result.

    pending_claim -> pending -> approved | rejected | expired
"""

from __future__ import annotations

import logging
import re
import secrets
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .config import Settings
from .credentials import CredentialVault, hash_secret, generate_client_secret
from .errors import ExpiredError, NotFoundError, OAuthError, ValidationError
from .grants import (
    DEVICE_CODE_GRANT_TYPE,
    DEVICE_TRANSITIONS,
    GrantOutcome,
    ResolvedAgent,
    describe_grant,
    ensure_exhaustive,
    issue_for,
    parse_permissions,
    require_transition,
)
from .limits import default_limits, limits_from_mapping
from .models import Agent, AgentStatus, DeviceGrant, DeviceGrantStatus, Permission, SpendingLimits
from .notifications import ACCESS_REQUEST_NOTIFICATION, NotificationService
from .store import Store
from .tokens import TokenService


logger = logging.getLogger(__name__)

USER_CODE_PREFIX = "PFX"
# No 0/O, 1/I to keep codes readable aloud
USER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
USER_CODE_GROUP_LENGTH = 6
USER_CODE_ATTEMPTS = 10
MAX_AGENT_NAME_LENGTH = 100
_USER_CODE_RE = re.compile(r"^PFX([A-Z0-9]{6})([A-Z0-9]{6})$")


def generate_user_code() -> str:
    groups = [
        "".join(secrets.choice(USER_CODE_ALPHABET) for _ in range(USER_CODE_GROUP_LENGTH))
        for _ in range(2)
    ]
    return f"{USER_CODE_PREFIX}-{groups[0]}-{groups[1]}"


def normalize_user_code(raw: str) -> str:
    """Accept lower case, spaces and missing dashes; return ``PFX-XXXXXX-XXXXXX``."""
    compact = re.sub(r"[\s-]", "", raw or "").upper()
    match = _USER_CODE_RE.match(compact)
    if not match:
        raise ValidationError("Invalid pairing code format")
    return f"{USER_CODE_PREFIX}-{match.group(1)}-{match.group(2)}"


@dataclass
class DeviceAuthorization:
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_code": self.device_code,
            "user_code": self.user_code,
            "verification_uri": self.verification_uri,
            "verification_uri_complete": self.verification_uri_complete,
            "expires_in": self.expires_in,
            "interval": self.interval,
        }


class DeviceAuthorizationFlow:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        vault: CredentialVault,
        tokens: TokenService,
        notifications: NotificationService,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.vault = vault
        self.tokens = tokens
        self.notifications = notifications
        self._clock = clock
        self._poll_handlers = {
            DeviceGrantStatus.PENDING_CLAIM: self._poll_pending,
            DeviceGrantStatus.PENDING: self._poll_pending,
            DeviceGrantStatus.APPROVED: self._poll_approved,
            DeviceGrantStatus.REJECTED: self._poll_rejected,
            DeviceGrantStatus.EXPIRED: self._poll_expired,
        }
        ensure_exhaustive(self._poll_handlers, DeviceGrantStatus, "device poll handlers")

    @property
    def verification_uri(self) -> str:
        return f"{self.settings.app_url}/m/device"

    def start(
        self,
        agent_name: str,
        scope: Optional[str] = None,
        description: Optional[str] = None,
        spending_limits: Optional[dict] = None,
    ) -> DeviceAuthorization:
        """Create a grant awaiting a claim of its pairing code."""
        agent_name = (agent_name or "").strip()
        if not agent_name:
            raise OAuthError("invalid_request", "agent_name is required")
        if len(agent_name) > MAX_AGENT_NAME_LENGTH:
            raise OAuthError("invalid_request", f"agent_name must be at most {MAX_AGENT_NAME_LENGTH} characters")

        permissions = parse_permissions(scope)
        if scope and scope.strip() and not permissions:
            raise OAuthError("invalid_scope", "No valid permissions in scope")
        if not permissions:
            permissions = [Permission.BROWSE.value]

        try:
            limits = limits_from_mapping(spending_limits, default_limits(self.settings.default_currency))
        except ValidationError as exc:
            raise OAuthError("invalid_request", str(exc)) from exc

        now = int(self._clock())
        expires_in = self.settings.device_code_expiry_minutes * 60
        for attempt in range(USER_CODE_ATTEMPTS):
            grant = DeviceGrant(
                id=str(uuid.uuid4()),
                user_code=generate_user_code(),
                agent_name=agent_name,
                agent_description=description,
                requested_permissions=frozenset(permissions),
                requested_limits=limits,
                expires_at=now + expires_in,
                created_at=now,
            )
            try:
                self.store.insert_device_grant(grant)
                break
            except sqlite3.IntegrityError:
                logger.debug("Pairing code collision on attempt %d", attempt + 1)
        else:
            raise OAuthError("server_error", "Could not allocate a unique pairing code", status_code=500)

        logger.info("Created device authorization %s for agent '%s'", grant.id, agent_name)
        return DeviceAuthorization(
            device_code=grant.id,
            user_code=grant.user_code,
            verification_uri=self.verification_uri,
            verification_uri_complete=f"{self.verification_uri}?code={grant.user_code}",
            expires_in=expires_in,
            interval=self.settings.device_poll_interval,
        )

    def _expire(self, grant: DeviceGrant, conn: sqlite3.Connection) -> None:
        require_transition(DEVICE_TRANSITIONS, "Device authorization", grant.status, DeviceGrantStatus.EXPIRED)
        grant.status = DeviceGrantStatus.EXPIRED
        self.store.update_device_grant(grant, conn=conn)

    def claim(self, user_code: str, user_id: str) -> DeviceGrant:
        """Bind the pairing code to the owner and prompt them for approval. Succeeds once."""
        code = normalize_user_code(user_code)
        now = int(self._clock())
        expired = False
        with self.store.transaction() as conn:
            grant = self.store.get_device_grant_by_user_code(code, conn=conn)
            if grant is None:
                raise NotFoundError("Pairing code", code)
            if grant.status == DeviceGrantStatus.PENDING_CLAIM and grant.is_expired(now):
                self._expire(grant, conn)
                expired = True
            else:
                require_transition(DEVICE_TRANSITIONS, "Pairing code", grant.status, DeviceGrantStatus.PENDING)
                grant.status = DeviceGrantStatus.PENDING
                grant.user_id = user_id
                self.store.update_device_grant(grant, conn=conn)
        if expired:
            raise ExpiredError("Pairing code")

        logger.info("Device authorization %s claimed by user %s", grant.id, user_id)
        self.notifications.notify(
            user_id,
            ACCESS_REQUEST_NOTIFICATION,
            describe_grant(grant),
            idempotency_key=grant.id,
        )
        return grant

    def get_for_user(self, grant_id: str, user_id: str) -> DeviceGrant:
        """Fetch a grant the user has claimed; another user's grant looks absent."""
        grant = self.store.get_device_grant(grant_id)
        if grant is None or grant.user_id != user_id:
            raise NotFoundError("Device authorization", grant_id)
        if grant.status == DeviceGrantStatus.PENDING and grant.is_expired(self._clock()):
            with self.store.transaction() as conn:
                current = self.store.get_device_grant(grant_id, conn=conn)
                if current is not None and current.status == DeviceGrantStatus.PENDING:
                    self._expire(current, conn)
                    grant = current
        return grant

    def _narrow_permissions(self, grant: DeviceGrant, permissions: Optional[Iterable[str]]) -> frozenset[str]:
        if permissions is None:
            return grant.requested_permissions
        chosen = frozenset(permissions)
        if not chosen:
            raise ValidationError("At least one permission is required")
        if not chosen <= grant.requested_permissions:
            extra = ", ".join(sorted(chosen - grant.requested_permissions))
            raise ValidationError(f"Cannot grant permissions that were not requested: {extra}")
        return chosen

    def _lower_limits(self, grant: DeviceGrant, spending_limits: Optional[dict]) -> SpendingLimits:
        requested = grant.requested_limits
        limits = limits_from_mapping(spending_limits, requested)
        if limits.currency != requested.currency:
            raise ValidationError("Currency cannot be changed on approval")
        if (
            limits.per_transaction_cents > requested.per_transaction_cents
            or limits.daily_cents > requested.daily_cents
            or limits.monthly_cents > requested.monthly_cents
        ):
            raise ValidationError("Approved limits cannot exceed the requested limits")
        return limits

    def approve(
        self,
        grant_id: str,
        user_id: str,
        permissions: Optional[Iterable[str]] = None,
        spending_limits: Optional[dict] = None,
    ) -> Agent:
        """
        Approve a claimed grant, optionally narrowing permissions and lowering limits.

        Agent creation and grant resolution commit together.
        """
        client_id, _, secret_hash = self.vault.new_credentials()
        now = int(self._clock())
        expired = False
        agent: Optional[Agent] = None
        with self.store.transaction() as conn:
            grant = self.store.get_device_grant(grant_id, conn=conn)
            if grant is None or grant.user_id != user_id:
                raise NotFoundError("Device authorization", grant_id)
            if grant.status == DeviceGrantStatus.PENDING and grant.is_expired(now):
                self._expire(grant, conn)
                expired = True
            else:
                require_transition(
                    DEVICE_TRANSITIONS, "Device authorization", grant.status, DeviceGrantStatus.APPROVED
                )
                granted_permissions = self._narrow_permissions(grant, permissions)
                granted_limits = self._lower_limits(grant, spending_limits)
                agent = Agent(
                    id=str(uuid.uuid4()),
                    owner_id=user_id,
                    client_id=client_id,
                    client_secret_hash=secret_hash,
                    name=grant.agent_name,
                    description=grant.agent_description,
                    permissions=granted_permissions,
                    per_transaction_limit_cents=granted_limits.per_transaction_cents,
                    daily_limit_cents=granted_limits.daily_cents,
                    monthly_limit_cents=granted_limits.monthly_cents,
                    currency=granted_limits.currency,
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_agent(agent, conn=conn)
                grant.status = DeviceGrantStatus.APPROVED
                grant.granted_permissions = granted_permissions
                grant.granted_limits = granted_limits
                grant.agent_id = agent.id
                grant.responded_at = now
                self.store.update_device_grant(grant, conn=conn)
        if expired:
            raise ExpiredError("Device authorization")

        logger.info("Device authorization %s approved; created agent %s", grant_id, agent.id)
        return agent

    def reject(self, grant_id: str, user_id: str, reason: Optional[str] = None) -> DeviceGrant:
        now = int(self._clock())
        with self.store.transaction() as conn:
            grant = self.store.get_device_grant(grant_id, conn=conn)
            if grant is None or grant.user_id != user_id:
                raise NotFoundError("Device authorization", grant_id)
            require_transition(DEVICE_TRANSITIONS, "Device authorization", grant.status, DeviceGrantStatus.REJECTED)
            grant.status = DeviceGrantStatus.REJECTED
            grant.rejection_reason = reason or "User rejected"
            grant.responded_at = now
            self.store.update_device_grant(grant, conn=conn)
        logger.info("Device authorization %s rejected", grant_id)
        return grant

    # Polling

    def poll(self, device_code: str) -> GrantOutcome:
        """Token-endpoint view of a device grant."""
        if not device_code:
            raise OAuthError("invalid_request", "device_code is required")
        grant = self.store.get_device_grant(device_code)
        if grant is None:
            raise OAuthError("invalid_grant", "Unknown device_code")
        return self._poll_handlers[grant.status](grant)

    def _poll_pending(self, grant: DeviceGrant) -> GrantOutcome:
        if not grant.is_expired(self._clock()):
            return GrantOutcome(error="authorization_pending", description="The user has not yet approved this request")
        with self.store.transaction() as conn:
            current = self.store.get_device_grant(grant.id, conn=conn)
            if current is not None and current.status in (
                DeviceGrantStatus.PENDING_CLAIM,
                DeviceGrantStatus.PENDING,
            ):
                self._expire(current, conn)
        return self._poll_expired(grant)

    def _poll_rejected(self, grant: DeviceGrant) -> GrantOutcome:
        return GrantOutcome(error="access_denied", description="User denied the authorization request")

    def _poll_expired(self, grant: DeviceGrant) -> GrantOutcome:
        return GrantOutcome(error="expired_token", description="The authorization request has expired")

    def _poll_approved(self, grant: DeviceGrant) -> GrantOutcome:
        """Deliver the agent's client secret and a first access token, exactly once."""
        client_secret = generate_client_secret()
        secret_hash = hash_secret(client_secret)
        now = int(self._clock())
        with self.store.transaction() as conn:
            current = self.store.get_device_grant(grant.id, conn=conn)
            if current is None or current.credentials_issued_at is not None:
                raise OAuthError("invalid_grant", "Credentials for this device_code were already issued")
            agent = self.store.get_agent(current.agent_id, conn=conn) if current.agent_id else None
            if agent is None or agent.status != AgentStatus.ACTIVE:
                raise OAuthError("invalid_grant", "The approved agent is no longer active")
            agent.client_secret_hash = secret_hash
            agent.updated_at = now
            self.store.update_agent(agent, conn=conn)
            current.credentials_issued_at = now
            self.store.update_device_grant(current, conn=conn)
            response = issue_for(
                self.tokens,
                ResolvedAgent(agent=agent, grant_type=DEVICE_CODE_GRANT_TYPE, grant_id=current.id),
                conn=conn,
            )
        response.extra = {
            "client_id": agent.client_id,
            "client_secret": client_secret,
            "token_endpoint": self.settings.token_endpoint,
            "permissions": sorted(agent.permissions),
            "spending_limits": agent.limits.to_dict(),
        }
        logger.info("Issued credentials for device authorization %s", grant.id)
        return GrantOutcome(token=response)
