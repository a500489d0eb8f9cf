"""Client Credentials grant (machine model): no grant record, token on success."""

from __future__ import annotations

import logging
from typing import Optional

from .credentials import CredentialVault
from .errors import OAuthError
from .grants import CLIENT_CREDENTIALS_GRANT_TYPE, ResolvedAgent, TokenResponse, issue_for
from .tokens import TokenService


logger = logging.getLogger(__name__)


class ClientCredentialsFlow:
    def __init__(self, vault: CredentialVault, tokens: TokenService):
        self.vault = vault
        self.tokens = tokens

    def resolve(self, client_id: Optional[str], client_secret: Optional[str], scope: Optional[str] = None) -> ResolvedAgent:
        if not client_id or not client_secret:
            raise OAuthError("invalid_request", "client_id and client_secret are required")
        agent = self.vault.validate_agent_credentials(client_id, client_secret)
        if agent is None:
            raise OAuthError("invalid_client", "Invalid client credentials", status_code=401)
        return ResolvedAgent(agent=agent, grant_type=CLIENT_CREDENTIALS_GRANT_TYPE, scope=scope)

    def exchange(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        scope: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> TokenResponse:
        resolved = self.resolve(client_id, client_secret, scope)
        response = issue_for(self.tokens, resolved, audience=audience)
        logger.info("Client credentials token issued for agent %s", resolved.agent.id)
        return response
