"""
Common substrate for the three authorization grant flows.

Device Authorization and Authorization Code grants are persisted records
(``AuthorizationGrant``, discriminated by ``kind``); Client Credentials has
no record. Every flow ends by producing a ``ResolvedAgent`` that
``issue_for()`` turns into a token response. Status changes go through the
guard tables below, which must name every member of their status enum.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import OAuthError, StateConflictError
from .models import (
    Agent,
    CodeGrant,
    CodeGrantStatus,
    DeviceGrant,
    DeviceGrantStatus,
    StepUpStatus,
    VALID_PERMISSIONS,
)
from .tokens import TokenService


AuthorizationGrant = Union[DeviceGrant, CodeGrant]

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
AUTHORIZATION_CODE_GRANT_TYPE = "authorization_code"
CLIENT_CREDENTIALS_GRANT_TYPE = "client_credentials"


def ensure_exhaustive(mapping: Mapping[Any, Any], enum_cls: type[Enum], name: str) -> None:
    """Fail at import time if a status table or handler map misses a member."""
    missing = set(enum_cls) - set(mapping)
    if missing:
        names = ", ".join(sorted(m.value for m in missing))
        raise RuntimeError(f"{name} does not handle: {names}")


DEVICE_TRANSITIONS: dict[DeviceGrantStatus, frozenset[DeviceGrantStatus]] = {
    DeviceGrantStatus.PENDING_CLAIM: frozenset({DeviceGrantStatus.PENDING, DeviceGrantStatus.EXPIRED}),
    DeviceGrantStatus.PENDING: frozenset({
        DeviceGrantStatus.APPROVED,
        DeviceGrantStatus.REJECTED,
        DeviceGrantStatus.EXPIRED,
    }),
    DeviceGrantStatus.APPROVED: frozenset(),
    DeviceGrantStatus.REJECTED: frozenset(),
    DeviceGrantStatus.EXPIRED: frozenset(),
}

CODE_TRANSITIONS: dict[CodeGrantStatus, frozenset[CodeGrantStatus]] = {
    CodeGrantStatus.PENDING_IDENTIFICATION: frozenset({
        CodeGrantStatus.PENDING_APPROVAL,
        CodeGrantStatus.EXPIRED,
    }),
    CodeGrantStatus.PENDING_APPROVAL: frozenset({
        CodeGrantStatus.APPROVED,
        CodeGrantStatus.REJECTED,
        CodeGrantStatus.EXPIRED,
    }),
    CodeGrantStatus.APPROVED: frozenset({CodeGrantStatus.USED, CodeGrantStatus.EXPIRED}),
    CodeGrantStatus.REJECTED: frozenset(),
    CodeGrantStatus.EXPIRED: frozenset(),
    CodeGrantStatus.USED: frozenset(),
}

STEP_UP_TRANSITIONS: dict[StepUpStatus, frozenset[StepUpStatus]] = {
    StepUpStatus.PENDING: frozenset({
        StepUpStatus.APPROVED,
        StepUpStatus.REJECTED,
        StepUpStatus.EXPIRED,
    }),
    StepUpStatus.APPROVED: frozenset(),
    StepUpStatus.REJECTED: frozenset(),
    StepUpStatus.EXPIRED: frozenset(),
}

ensure_exhaustive(DEVICE_TRANSITIONS, DeviceGrantStatus, "DEVICE_TRANSITIONS")
ensure_exhaustive(CODE_TRANSITIONS, CodeGrantStatus, "CODE_TRANSITIONS")
ensure_exhaustive(STEP_UP_TRANSITIONS, StepUpStatus, "STEP_UP_TRANSITIONS")


def can_transition(table: Mapping[Enum, frozenset], current: Enum, target: Enum) -> bool:
    return target in table[current]


def require_transition(table: Mapping[Enum, frozenset], entity: str, current: Enum, target: Enum) -> None:
    """Raise StateConflictError (carrying the current status) on an illegal move."""
    if not can_transition(table, current, target):
        raise StateConflictError(
            entity,
            current.value,
            f"{entity} is {current.value}; cannot move to {target.value}",
        )


def parse_permissions(scope: Optional[str | Iterable[str]]) -> list[str]:
    """Split a scope string (space or comma separated) into known permissions, in order."""
    if scope is None:
        return []
    raw = scope.replace(",", " ").split() if isinstance(scope, str) else list(scope)
    seen: list[str] = []
    for item in raw:
        if item in VALID_PERMISSIONS and item not in seen:
            seen.append(item)
    return seen


def narrow_scope(requested: Optional[str], permissions: Iterable[str]) -> str:
    """Token scope: requested scope intersected with the agent's permissions."""
    granted = set(permissions)
    if not requested:
        return " ".join(sorted(granted))
    narrowed = [p for p in requested.split() if p in granted]
    if not narrowed:
        raise OAuthError("invalid_scope", "Requested scope is not granted to this client")
    return " ".join(dict.fromkeys(narrowed))


@dataclass
class ResolvedAgent:
    """The common end state of every grant: an agent a token may be issued for."""

    agent: Agent
    grant_type: str
    scope: Optional[str] = None
    grant_id: Optional[str] = None


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        body.update(self.extra)
        return body


@dataclass
class GrantOutcome:
    """Result of a token request that may legitimately not be ready yet."""

    token: Optional[TokenResponse] = None
    error: Optional[str] = None
    description: str = ""

    @property
    def ok(self) -> bool:
        return self.token is not None


def issue_for(
    tokens: TokenService,
    resolved: ResolvedAgent,
    audience: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> TokenResponse:
    scope = narrow_scope(resolved.scope, resolved.agent.permissions)
    issued = tokens.issue(resolved.agent, scope=scope, audience=audience, conn=conn)
    return TokenResponse(
        access_token=issued.token,
        expires_in=issued.expires_in,
        scope=scope,
    )


def _describe_device(grant: DeviceGrant) -> dict[str, Any]:
    return {
        "kind": grant.kind,
        "id": grant.id,
        "status": grant.status.value,
        "user_code": grant.user_code,
        "agent_name": grant.agent_name,
        "requested_permissions": sorted(grant.requested_permissions),
        "requested_limits": grant.requested_limits.to_dict(),
        "expires_at": grant.expires_at,
    }


def _describe_code(grant: CodeGrant) -> dict[str, Any]:
    return {
        "kind": grant.kind,
        "id": grant.id,
        "status": grant.status.value,
        "client_id": grant.client_id,
        "scope": grant.scope,
        "expires_at": grant.expires_at,
    }


_DESCRIBERS = {
    DeviceGrant: _describe_device,
    CodeGrant: _describe_code,
}


def describe_grant(grant: AuthorizationGrant) -> dict[str, Any]:
    """Owner-facing summary of a pending grant."""
    describer = _DESCRIBERS.get(type(grant))
    if describer is None:
        raise TypeError(f"Unknown grant type: {type(grant).__name__}")
    return describer(grant)
