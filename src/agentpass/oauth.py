"""
Transport-free OAuth endpoints.

Each endpoint takes the decoded form body (and the ``Authorization`` header
where relevant) and returns an ``OAuthResponse``. Any HTTP framework can
mount these by copying status and JSON body onto its own response type.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import unquote

from .client_grant import ClientCredentialsFlow
from .code_grant import SUPPORTED_CHALLENGE_METHOD, AuthorizationCodeFlow
from .config import Settings
from .credentials import CredentialVault
from .device_grant import DeviceAuthorizationFlow
from .errors import AgentPassError, OAuthError, ValidationError
from .grants import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    CLIENT_CREDENTIALS_GRANT_TYPE,
    DEVICE_CODE_GRANT_TYPE,
)
from .keys import SIGNING_ALGORITHM, SigningKeys
from .models import VALID_PERMISSIONS
from .store import Store
from .tokens import TokenService, hash_token
from .webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)

API_PREFIX = "/api/agent/v1"
REVOCATION_REASON = "explicit_revocation"


@dataclass
class OAuthResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code < 400


def parse_basic_auth(authorization: Optional[str]) -> Optional[tuple[str, str]]:
    """Decode ``Basic base64(id:secret)``; None when absent or malformed."""
    if not authorization:
        return None
    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        return None
    # RFC 6749 2.3.1: both parts are form-urlencoded before joining
    return unquote(client_id), unquote(client_secret)


def _error(exc: OAuthError) -> OAuthResponse:
    return OAuthResponse(exc.status_code, exc.to_dict())


class OAuthEndpoints:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        vault: CredentialVault,
        tokens: TokenService,
        client_flow: ClientCredentialsFlow,
        device_flow: DeviceAuthorizationFlow,
        code_flow: AuthorizationCodeFlow,
        webhooks: WebhookDispatcher,
        keys: SigningKeys,
    ):
        self.settings = settings
        self.store = store
        self.vault = vault
        self.tokens = tokens
        self.client_flow = client_flow
        self.device_flow = device_flow
        self.code_flow = code_flow
        self.webhooks = webhooks
        self.keys = keys
        self._grant_handlers: dict[str, Callable[[Mapping[str, str], Optional[str]], OAuthResponse]] = {
            CLIENT_CREDENTIALS_GRANT_TYPE: self._client_credentials,
            AUTHORIZATION_CODE_GRANT_TYPE: self._authorization_code,
            DEVICE_CODE_GRANT_TYPE: self._device_code,
        }

    def _guarded(self, name: str, handler: Callable[[], OAuthResponse]) -> OAuthResponse:
        try:
            return handler()
        except OAuthError as exc:
            logger.info("%s endpoint returned %s", name, exc.error)
            return _error(exc)
        except ValidationError as exc:
            return _error(OAuthError("invalid_request", str(exc)))
        except AgentPassError as exc:
            logger.warning("%s endpoint failed: %s", name, exc)
            return _error(OAuthError("invalid_request", str(exc)))
        except Exception:
            logger.exception("Unexpected error in %s endpoint", name)
            return _error(OAuthError("server_error", "Internal server error", status_code=500))

    # Token endpoint

    def token(self, form: Mapping[str, str], authorization: Optional[str] = None) -> OAuthResponse:
        def handle() -> OAuthResponse:
            grant_type = form.get("grant_type")
            if not grant_type:
                raise OAuthError("invalid_request", "grant_type is required")
            handler = self._grant_handlers.get(grant_type)
            if handler is None:
                raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")
            return handler(form, authorization)

        return self._guarded("token", handle)

    def _client_credentials(self, form: Mapping[str, str], authorization: Optional[str]) -> OAuthResponse:
        basic = parse_basic_auth(authorization)
        client_id, client_secret = basic if basic else (form.get("client_id"), form.get("client_secret"))
        response = self.client_flow.exchange(
            client_id,
            client_secret,
            scope=form.get("scope"),
            audience=form.get("audience"),
        )
        return OAuthResponse(200, response.to_dict())

    def _authorization_code(self, form: Mapping[str, str], authorization: Optional[str]) -> OAuthResponse:
        basic = parse_basic_auth(authorization)
        client_id = basic[0] if basic else form.get("client_id")
        response = self.code_flow.exchange(
            code=form.get("code", ""),
            code_verifier=form.get("code_verifier", ""),
            client_id=client_id or "",
            redirect_uri=form.get("redirect_uri", ""),
        )
        return OAuthResponse(200, response.to_dict())

    def _device_code(self, form: Mapping[str, str], authorization: Optional[str]) -> OAuthResponse:
        outcome = self.device_flow.poll(form.get("device_code", ""))
        if not outcome.ok:
            body = {"error": outcome.error}
            if outcome.description:
                body["error_description"] = outcome.description
            return OAuthResponse(400, body)
        return OAuthResponse(200, outcome.token.to_dict())

    # Device authorization endpoint

    def device_authorization(self, form: Mapping[str, Any]) -> OAuthResponse:
        def handle() -> OAuthResponse:
            authorization = self.device_flow.start(
                agent_name=form.get("agent_name", ""),
                scope=form.get("scope"),
                description=form.get("agent_description"),
                spending_limits=form.get("spending_limits"),
            )
            return OAuthResponse(200, authorization.to_dict())

        return self._guarded("device_authorization", handle)

    # Introspection and revocation

    def introspect(self, form: Mapping[str, str], authorization: Optional[str] = None) -> OAuthResponse:
        def handle() -> OAuthResponse:
            credentials = parse_basic_auth(authorization)
            if credentials is None or not self.vault.verify_introspection_client(*credentials):
                raise OAuthError("invalid_client", "Invalid introspection client credentials", status_code=401)
            token = form.get("token")
            if not token:
                raise OAuthError("invalid_request", "token is required")
            return OAuthResponse(200, self.tokens.introspect(token))

        return self._guarded("introspect", handle)

    def revoke(self, form: Mapping[str, str], authorization: Optional[str] = None) -> OAuthResponse:
        """
        Revoke a token. The answer is the same whether or not the token was known.

        If client credentials are presented they must be valid.
        """

        def handle() -> OAuthResponse:
            basic = parse_basic_auth(authorization)
            client_id, client_secret = basic if basic else (form.get("client_id"), form.get("client_secret"))
            if client_id or client_secret:
                if self.vault.validate_agent_credentials(client_id or "", client_secret or "") is None:
                    raise OAuthError("invalid_client", "Invalid client credentials", status_code=401)

            token = form.get("token")
            if token:
                token_hash = hash_token(token)
                record = self.store.get_token(token_hash)
                if record is not None and self.tokens.revoke(token_hash):
                    agent = self.store.get_agent(record.agent_id)
                    if agent is not None:
                        self.webhooks.token_revoked(agent, token_hash, REVOCATION_REASON)
            return OAuthResponse(200, {"revoked": True})

        return self._guarded("revoke", handle)

    # Discovery

    def metadata(self) -> dict[str, Any]:
        base = f"{self.settings.app_url}{API_PREFIX}"
        return {
            "issuer": self.settings.app_url,
            "authorization_endpoint": f"{base}/oauth/authorize",
            "token_endpoint": self.settings.token_endpoint,
            "device_authorization_endpoint": f"{base}/oauth/device/code",
            "introspection_endpoint": f"{base}/oauth/introspect",
            "revocation_endpoint": f"{base}/oauth/revoke",
            "jwks_uri": f"{self.settings.app_url}/.well-known/jwks.json",
            "grant_types_supported": sorted(self._grant_handlers),
            "response_types_supported": ["code"],
            "code_challenge_methods_supported": [SUPPORTED_CHALLENGE_METHOD],
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
            "scopes_supported": sorted(VALID_PERMISSIONS),
        }

    def jwks(self) -> dict[str, Any]:
        return self.keys.jwks()
