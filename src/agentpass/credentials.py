"""
Credential Vault: client identifiers and secrets for agents.

Secrets are random, shown once, and stored only as Argon2id hashes.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import string
import time
from typing import Callable, Optional

from passlib.context import CryptContext

from .config import Settings
from .models import Agent, AgentStatus
from .store import Store


logger = logging.getLogger(__name__)

CLIENT_ID_PREFIX = "agent_"
CLIENT_SECRET_PREFIX = "sk_agent_"
# Stored for agents that authenticate through a redirect grant and never hold a secret
UNUSABLE_SECRET_HASH = "!"
_CLIENT_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
_CLIENT_ID_LENGTH = 12

# OWASP parameters for Argon2id: time_cost=2, memory_cost=19 MiB, parallelism=1
secret_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__time_cost=2,
    argon2__memory_cost=19456,
    argon2__parallelism=1,
    argon2__type="id",
)


def generate_client_id() -> str:
    suffix = "".join(secrets.choice(_CLIENT_ID_ALPHABET) for _ in range(_CLIENT_ID_LENGTH))
    return f"{CLIENT_ID_PREFIX}{suffix}"


def generate_client_secret() -> str:
    return f"{CLIENT_SECRET_PREFIX}{secrets.token_urlsafe(24)}"


def hash_secret(secret: str) -> str:
    return secret_context.hash(secret)


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Constant-time check of a presented secret against its stored hash."""
    if not secret or not secret_hash or secret_hash == UNUSABLE_SECRET_HASH:
        return False
    try:
        return secret_context.verify(secret, secret_hash)
    except ValueError:
        # Malformed or unrecognized hash in storage
        logger.warning("Stored client secret hash is not a recognized format")
        return False


class CredentialVault:
    """Verifies agent and introspection-client credentials."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self._clock = clock

    def new_credentials(self) -> tuple[str, str, str]:
        """Return (client_id, client_secret, client_secret_hash)."""
        client_secret = generate_client_secret()
        return generate_client_id(), client_secret, hash_secret(client_secret)

    def validate_agent_credentials(self, client_id: str, client_secret: str) -> Optional[Agent]:
        """
        Resolve an agent from its client credentials.

        Unknown client, non-active status and wrong secret all return None so
        callers cannot tell them apart. On success last_used_at is touched.
        """
        if not client_id or not client_secret:
            return None
        agent = self.store.get_agent_by_client_id(client_id)
        if agent is None:
            return None
        if agent.status != AgentStatus.ACTIVE:
            logger.warning("Credentials presented for %s agent %s", agent.status.value, agent.id)
            return None
        if not verify_secret(client_secret, agent.client_secret_hash):
            logger.warning("Invalid client secret for agent %s", agent.id)
            return None
        now = int(self._clock())
        self.store.touch_agent(agent.id, now)
        agent.last_used_at = now
        return agent

    def verify_introspection_client(self, client_id: Optional[str], client_secret: Optional[str]) -> bool:
        """Check the separate, narrower credential used by relying parties."""
        expected_id = self.settings.introspection_client_id
        expected_secret = self.settings.introspection_client_secret
        if not expected_id or not expected_secret or not client_id or not client_secret:
            return False
        id_ok = hmac.compare_digest(client_id.encode(), expected_id.encode())
        secret_ok = hmac.compare_digest(client_secret.encode(), expected_secret.encode())
        return id_ok and secret_ok
