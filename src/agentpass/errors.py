"""
agentpass error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (reject, surface status, restart, alert).
Expected domain outcomes (a denied spend, a pending step-up, an
authorization that is still pending) are return values, not exceptions.
"""

from __future__ import annotations

from typing import Optional


class AgentPassError(Exception):
    """Base error for all agentpass operations."""
    pass


class ValidationError(AgentPassError):
    """Input rejected before any state was mutated."""
    pass


class NotFoundError(AgentPassError):
    """Resource does not exist, or belongs to someone else."""
    def __init__(self, entity: str, identifier: str = ""):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found")


class PermissionDeniedError(AgentPassError):
    """Caller is authenticated but lacks the required permission or status."""
    pass


class StateConflictError(AgentPassError):
    """Requested transition is illegal from the current status."""
    def __init__(self, entity: str, status: str, message: Optional[str] = None):
        self.entity = entity
        self.status = status
        super().__init__(message or f"{entity} is {status}")


class ExpiredError(AgentPassError):
    """A time-boxed request passed its expiry; the caller must restart."""
    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(f"{entity} has expired")


class ProviderError(AgentPassError):
    """An external collaborator (card network, push transport) failed."""
    pass


class CriticalPersistenceError(AgentPassError):
    """A rotated upstream credential could not be saved. Manual recovery required."""
    def __init__(self, provider: str, attempts: int, cause: Optional[BaseException] = None):
        self.provider = provider
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Failed to persist rotated refresh credential for {provider} "
            f"after {attempts} attempts"
        )


# OAuth protocol errors
OAUTH_ERROR_CODES = frozenset({
    "invalid_request",
    "invalid_client",
    "invalid_grant",
    "invalid_scope",
    "unsupported_grant_type",
    "authorization_pending",
    "expired_token",
    "access_denied",
    "server_error",
})


class OAuthError(AgentPassError):
    """Error surfaced on the OAuth endpoints with a fixed vocabulary."""
    def __init__(self, error: str, description: str = "", status_code: int = 400):
        if error not in OAUTH_ERROR_CODES:
            raise ValueError(f"Unknown OAuth error code: {error}")
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body
