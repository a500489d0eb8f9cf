"""
Token service: issue, verify, revoke and introspect agent access tokens.

Tokens are RS256 JWTs with a ``kid`` header. Verification tries RS256 first
and only then the legacy HS256 secret, so tokens minted before the key
migration keep working while no other algorithm is ever accepted. Only the
SHA-256 digest of an issued token is persisted.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt

from .config import Settings
from .keys import SIGNING_ALGORITHM, SigningKeys
from .ledger import SpendingLedger
from .models import AccessTokenRecord, Agent, AgentStatus
from .store import Store


logger = logging.getLogger(__name__)

LEGACY_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "client_id", "owner_id", "iat", "exp"]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class IssuedToken:
    token: str
    token_hash: str
    expires_at: int
    expires_in: int
    scope: Optional[str] = None


class TokenService:
    """Bearer-token lifecycle for agents."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        keys: SigningKeys,
        ledger: SpendingLedger,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.keys = keys
        self.ledger = ledger
        self._clock = clock

    @property
    def issuer(self) -> str:
        return self.settings.app_url

    def issue(
        self,
        agent: Agent,
        scope: Optional[str] = None,
        audience: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> IssuedToken:
        """Sign a token for the agent and persist its digest."""
        now = int(self._clock())
        expires_at = now + self.settings.access_token_expiry
        payload: dict[str, Any] = {
            "sub": agent.id,
            "client_id": agent.client_id,
            "owner_id": agent.owner_id,
            "permissions": sorted(agent.permissions),
            "iat": now,
            "exp": expires_at,
            "iss": self.issuer,
            "jti": secrets.token_urlsafe(16),
        }
        if scope:
            payload["scope"] = scope
        if audience:
            payload["aud"] = audience

        token = jwt.encode(
            payload,
            self.keys.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.keys.kid},
        )
        token_hash = hash_token(token)
        self.store.insert_token(
            AccessTokenRecord(
                token_hash=token_hash,
                agent_id=agent.id,
                scope=scope,
                expires_at=expires_at,
                created_at=now,
            ),
            conn=conn,
        )
        logger.info("Issued access token for agent %s (expires %s)", agent.id, expires_at)
        return IssuedToken(
            token=token,
            token_hash=token_hash,
            expires_at=expires_at,
            expires_in=expires_at - now,
            scope=scope,
        )

    def _decode(self, token: str, key: Any, algorithm: str, audience: Optional[str]) -> dict[str, Any]:
        payload = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            issuer=self.issuer,
            audience=audience,
            options={
                "require": _REQUIRED_CLAIMS,
                "verify_aud": audience is not None,
                # Time claims are checked against the service clock below
                "verify_exp": False,
                "verify_iat": False,
            },
        )
        if int(payload["exp"]) <= int(self._clock()):
            raise jwt.ExpiredSignatureError("Signature has expired")
        return payload

    def verify(self, token: str, audience: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for any invalid token."""
        if not token:
            return None
        try:
            return self._decode(token, self.keys.public_key, SIGNING_ALGORITHM, audience)
        except jwt.InvalidTokenError:
            pass

        if not self.settings.jwt_secret:
            return None
        try:
            payload = self._decode(token, self.settings.jwt_secret, LEGACY_ALGORITHM, audience)
        except jwt.InvalidTokenError:
            return None
        logger.debug("Accepted legacy %s token for %s", LEGACY_ALGORITHM, payload.get("sub"))
        return payload

    def is_revoked(self, token_hash: str) -> bool:
        record = self.store.get_token(token_hash)
        if record is None:
            # Untracked digests follow the configured policy (fail-open by default)
            return not self.settings.revocation_fail_open
        return record.is_revoked

    def revoke(self, token_hash: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Revoke one token by digest. Returns True only on the first revocation."""
        revoked = self.store.revoke_token(token_hash, int(self._clock()), conn=conn)
        if revoked:
            logger.info("Revoked access token %s...", token_hash[:12])
        return revoked

    def revoke_all(self, agent_id: str, conn: Optional[sqlite3.Connection] = None) -> list[str]:
        """Revoke every live token of the agent; returns the revoked digests."""
        hashes = self.store.revoke_agent_tokens(agent_id, int(self._clock()), conn=conn)
        if hashes:
            logger.info("Revoked %d access token(s) for agent %s", len(hashes), agent_id)
        return hashes

    def authenticate(self, token: str) -> Optional[tuple[Agent, dict[str, Any]]]:
        """Resolve a bearer token to its active agent and payload."""
        payload = self.verify(token)
        if payload is None or self.is_revoked(hash_token(token)):
            return None
        agent = self.store.get_agent(payload["sub"])
        if agent is None or agent.status != AgentStatus.ACTIVE:
            return None
        if agent.client_id != payload["client_id"]:
            return None
        return agent, payload

    def introspect(self, token: str) -> dict[str, Any]:
        """Resolve a token to its live authorization context."""
        resolved = self.authenticate(token)
        if resolved is None:
            return {"active": False}
        agent, payload = resolved
        usage = self.ledger.usage(agent.id)
        return {
            "active": True,
            "client_id": agent.client_id,
            "agent_id": agent.id,
            "owner_id": agent.owner_id,
            "permissions": sorted(agent.permissions),
            "scope": payload.get("scope"),
            "exp": payload["exp"],
            "iat": payload["iat"],
            "iss": payload.get("iss"),
            "token_type": "Bearer",
            "agent_status": agent.status.value,
            "spending_limits": agent.limits.to_dict(),
            "current_usage": usage.to_dict(),
        }
