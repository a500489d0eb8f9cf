"""
Authorization Code + PKCE grant (redirect model).

    pending_identification -> pending_approval -> approved | rejected | expired
    approved -> used

A registered client sends the owner's browser to ``authorize()``, which
opens an anonymous session. Once the owner is identified the session is
bound to them and approval is requested. The approved code can be
exchanged exactly once, by the same client, with the verifier whose S256
hash was committed up front.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlencode, urlsplit

from .cache import TTLCache
from .config import Settings
from .credentials import UNUSABLE_SECRET_HASH
from .errors import ExpiredError, NotFoundError, OAuthError, ValidationError
from .grants import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    CODE_TRANSITIONS,
    ResolvedAgent,
    TokenResponse,
    describe_grant,
    issue_for,
    parse_permissions,
    require_transition,
)
from .limits import default_limits
from .models import Agent, AgentStatus, CodeGrant, CodeGrantStatus, OAuthClient, Permission
from .notifications import OAUTH_AUTHORIZATION_NOTIFICATION, NotificationService
from .store import Store
from .tokens import TokenService


logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGE_METHOD = "S256"
# RFC 7636: 43-128 characters from the unreserved set
_PKCE_VALUE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# Namespace for deterministic agent ids derived from (client_id, owner)
AGENT_NAMESPACE = uuid.UUID("7b1f9a52-4c1e-4d7e-9a0b-1f2d3c4b5a69")


def s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def redirect_uri_allowed(redirect_uri: str, allowed: Iterable[str]) -> bool:
    """Exact match, or a ``host:*`` pattern that accepts any port on the same scheme, host and path."""
    candidate = urlsplit(redirect_uri)
    if candidate.scheme not in ("http", "https") or not candidate.hostname:
        return False
    for pattern in allowed:
        if redirect_uri == pattern:
            return True
        if not pattern.split("://", 1)[-1].split("/", 1)[0].endswith(":*"):
            continue
        expected = urlsplit(pattern.replace(":*", "", 1))
        if (
            candidate.scheme == expected.scheme
            and candidate.hostname == expected.hostname
            and candidate.path == expected.path
            and candidate.query == expected.query
        ):
            return True
    return False


def agent_id_for(client_id: str, owner_id: str) -> str:
    return str(uuid.uuid5(AGENT_NAMESPACE, f"{client_id}:{owner_id}"))


def _with_query(uri: str, params: dict[str, Optional[str]]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{query}"


@dataclass
class AuthorizationSession:
    session_id: str
    grant_id: str
    expires_in: int


class AuthorizationCodeFlow:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        tokens: TokenService,
        notifications: NotificationService,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.notifications = notifications
        self._clock = clock
        self.sessions: TTLCache[str] = TTLCache(
            ttl_seconds=settings.auth_code_expiry_minutes * 60,
            clock=clock,
        )

    def register_client(
        self,
        client_id: str,
        name: str,
        redirect_uris: Iterable[str],
        permissions: Optional[Iterable[str]] = None,
    ) -> OAuthClient:
        uris = [uri for uri in redirect_uris if uri]
        if not client_id or not name:
            raise ValidationError("client_id and name are required")
        if not uris:
            raise ValidationError("At least one redirect URI is required")
        for uri in uris:
            parts = urlsplit(uri.replace(":*", "", 1))
            if parts.scheme not in ("http", "https") or not parts.hostname:
                raise ValidationError(f"Invalid redirect URI: {uri}")
        granted = frozenset(parse_permissions(list(permissions))) if permissions else frozenset({Permission.BROWSE.value})
        if not granted:
            raise ValidationError("No valid permissions for client")
        client = OAuthClient(
            client_id=client_id,
            name=name,
            redirect_uris=uris,
            permissions=granted,
            created_at=int(self._clock()),
        )
        self.store.upsert_oauth_client(client)
        return client

    def authorize(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: Optional[str] = SUPPORTED_CHALLENGE_METHOD,
        state: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> AuthorizationSession:
        """Validate the request and open an anonymous session for it."""
        client = self.store.get_oauth_client(client_id) if client_id else None
        if client is None:
            raise OAuthError("invalid_client", "Unknown client_id", status_code=401)
        if not redirect_uri or not redirect_uri_allowed(redirect_uri, client.redirect_uris):
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")
        if (code_challenge_method or SUPPORTED_CHALLENGE_METHOD) != SUPPORTED_CHALLENGE_METHOD:
            raise OAuthError("invalid_request", "Only the S256 code_challenge_method is supported")
        if not code_challenge or not _PKCE_VALUE_RE.match(code_challenge):
            raise OAuthError("invalid_request", "A valid code_challenge is required")
        if scope:
            requested = parse_permissions(scope)
            if not requested or not set(requested) & client.permissions:
                raise OAuthError("invalid_scope", "Requested scope is not available to this client")
            scope = " ".join(requested)

        now = int(self._clock())
        ttl = self.settings.auth_code_expiry_minutes * 60
        grant = CodeGrant(
            id=str(uuid.uuid4()),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=SUPPORTED_CHALLENGE_METHOD,
            state=state,
            scope=scope,
            expires_at=now + ttl,
            created_at=now,
        )
        self.store.insert_code_grant(grant)
        session_id = secrets.token_urlsafe(24)
        self.sessions.set(session_id, grant.id)
        logger.info("Authorization request %s opened for client %s", grant.id, client_id)
        return AuthorizationSession(session_id=session_id, grant_id=grant.id, expires_in=ttl)

    def _expire(self, grant: CodeGrant, conn) -> None:
        require_transition(CODE_TRANSITIONS, "Authorization request", grant.status, CodeGrantStatus.EXPIRED)
        grant.status = CodeGrantStatus.EXPIRED
        self.store.update_code_grant(grant, conn=conn)

    def identify(self, session_id: str, user_id: str) -> CodeGrant:
        """Bind the anonymous session to its owner and ask them to approve."""
        grant_id = self.sessions.pop(session_id)
        if grant_id is None:
            raise NotFoundError("Authorization session", session_id)
        now = int(self._clock())
        expired = False
        with self.store.transaction() as conn:
            grant = self.store.get_code_grant(grant_id, conn=conn)
            if grant is None:
                raise NotFoundError("Authorization request", grant_id)
            if grant.status == CodeGrantStatus.PENDING_IDENTIFICATION and grant.is_expired(now):
                self._expire(grant, conn)
                expired = True
            else:
                require_transition(
                    CODE_TRANSITIONS, "Authorization request", grant.status, CodeGrantStatus.PENDING_APPROVAL
                )
                grant.status = CodeGrantStatus.PENDING_APPROVAL
                grant.user_id = user_id
                self.store.update_code_grant(grant, conn=conn)
        if expired:
            raise ExpiredError("Authorization request")

        self.notifications.notify(
            user_id,
            OAUTH_AUTHORIZATION_NOTIFICATION,
            describe_grant(grant),
            idempotency_key=grant.id,
        )
        return grant

    def _load_owned(self, grant_id: str, user_id: str, conn) -> CodeGrant:
        grant = self.store.get_code_grant(grant_id, conn=conn)
        if grant is None or grant.user_id != user_id:
            raise NotFoundError("Authorization request", grant_id)
        return grant

    def approve(self, grant_id: str, user_id: str) -> str:
        """Approve and return the client redirect URL carrying the code."""
        now = int(self._clock())
        expired = False
        with self.store.transaction() as conn:
            grant = self._load_owned(grant_id, user_id, conn)
            if grant.status == CodeGrantStatus.PENDING_APPROVAL and grant.is_expired(now):
                self._expire(grant, conn)
                expired = True
            else:
                require_transition(CODE_TRANSITIONS, "Authorization request", grant.status, CodeGrantStatus.APPROVED)
                grant.status = CodeGrantStatus.APPROVED
                grant.code = secrets.token_urlsafe(32)
                grant.approved_at = now
                self.store.update_code_grant(grant, conn=conn)
        if expired:
            raise ExpiredError("Authorization request")
        logger.info("Authorization request %s approved", grant_id)
        return _with_query(grant.redirect_uri, {"code": grant.code, "state": grant.state})

    def reject(self, grant_id: str, user_id: str) -> str:
        with self.store.transaction() as conn:
            grant = self._load_owned(grant_id, user_id, conn)
            require_transition(CODE_TRANSITIONS, "Authorization request", grant.status, CodeGrantStatus.REJECTED)
            grant.status = CodeGrantStatus.REJECTED
            self.store.update_code_grant(grant, conn=conn)
        logger.info("Authorization request %s rejected", grant_id)
        return _with_query(
            grant.redirect_uri,
            {
                "error": "access_denied",
                "error_description": "The user denied the request",
                "state": grant.state,
            },
        )

    def _synthesize_agent(self, grant: CodeGrant, client: OAuthClient, now: int, conn) -> Agent:
        """One agent per (client, owner), created on first exchange and reused afterwards."""
        agent_id = agent_id_for(grant.client_id, grant.user_id)
        agent = self.store.get_agent(agent_id, conn=conn)
        if agent is not None:
            if agent.status != AgentStatus.ACTIVE:
                raise OAuthError("invalid_grant", "The agent for this client is not active")
            return agent
        limits = default_limits(self.settings.default_currency)
        agent = Agent(
            id=agent_id,
            owner_id=grant.user_id,
            client_id=f"{client.client_id}.{agent_id[:8]}",
            client_secret_hash=UNUSABLE_SECRET_HASH,
            name=client.name,
            permissions=client.permissions,
            per_transaction_limit_cents=limits.per_transaction_cents,
            daily_limit_cents=limits.daily_cents,
            monthly_limit_cents=limits.monthly_cents,
            currency=limits.currency,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_agent(agent, conn=conn)
        logger.info("Created agent %s for client %s", agent.id, client.client_id)
        return agent

    def exchange(
        self,
        code: str,
        code_verifier: str,
        client_id: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """Trade an approved code for a token. A code works exactly once."""
        if not code or not code_verifier or not client_id or not redirect_uri:
            raise OAuthError("invalid_request", "code, code_verifier, client_id and redirect_uri are required")
        client = self.store.get_oauth_client(client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client_id", status_code=401)

        now = int(self._clock())
        expired = False
        response: Optional[TokenResponse] = None
        with self.store.transaction() as conn:
            grant = self.store.get_code_grant_by_code(code, conn=conn)
            if grant is None:
                raise OAuthError("invalid_grant", "Invalid authorization code")
            if grant.status == CodeGrantStatus.USED:
                logger.warning("Replay of authorization code for request %s", grant.id)
                raise OAuthError("invalid_grant", "Authorization code has already been used")
            if grant.status != CodeGrantStatus.APPROVED:
                raise OAuthError("invalid_grant", f"Authorization request is {grant.status.value}")
            if grant.is_expired(now):
                self._expire(grant, conn)
                expired = True
            else:
                if grant.client_id != client_id:
                    raise OAuthError("invalid_grant", "client_id does not match the authorization request")
                if grant.redirect_uri != redirect_uri:
                    raise OAuthError("invalid_grant", "redirect_uri does not match the authorization request")
                if not _PKCE_VALUE_RE.match(code_verifier) or not hmac.compare_digest(
                    s256_challenge(code_verifier), grant.code_challenge
                ):
                    raise OAuthError("invalid_grant", "code_verifier does not match code_challenge")

                require_transition(CODE_TRANSITIONS, "Authorization request", grant.status, CodeGrantStatus.USED)
                grant.status = CodeGrantStatus.USED
                grant.used_at = now
                self.store.update_code_grant(grant, conn=conn)

                agent = self._synthesize_agent(grant, client, now, conn)
                response = issue_for(
                    self.tokens,
                    ResolvedAgent(
                        agent=agent,
                        grant_type=AUTHORIZATION_CODE_GRANT_TYPE,
                        scope=grant.scope,
                        grant_id=grant.id,
                    ),
                    conn=conn,
                )
        if expired:
            raise OAuthError("invalid_grant", "Authorization code has expired")
        return response
