"""Wires the services together over one store and one set of settings."""

from __future__ import annotations

import time
from typing import Callable, Optional

import httpx

from .agents import AgentService
from .card_tokens import CardTokenProvider, SignedCardTokenProvider
from .client_grant import ClientCredentialsFlow
from .code_grant import AuthorizationCodeFlow
from .config import Settings
from .credentials import CredentialVault
from .device_grant import DeviceAuthorizationFlow
from .keys import SigningKeys, load_signing_keys
from .ledger import SpendingLedger
from .limits import LimitEngine
from .notifications import NotificationService, PushSender
from .oauth import OAuthEndpoints
from .payments import PaymentService
from .refresh import RefreshCredentialStore
from .stepup import StepUpWorkflow
from .store import Store
from .tokens import TokenService
from .webhooks import WebhookDispatcher


class AgentPass:
    """All services for one deployment. Close it to flush pending webhooks."""

    def __init__(
        self,
        settings: Settings,
        keys: Optional[SigningKeys] = None,
        push_sender: Optional[PushSender] = None,
        card_provider: Optional[CardTokenProvider] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = Store(settings.db_path)
        self.keys = keys or load_signing_keys(settings)

        self.vault = CredentialVault(self.store, settings, clock=clock)
        self.ledger = SpendingLedger(self.store, settings, clock=clock)
        self.limits = LimitEngine(self.ledger)
        self.tokens = TokenService(self.store, settings, self.keys, self.ledger, clock=clock)
        self.webhooks = WebhookDispatcher(self.store, settings, http_client=http_client, clock=clock)
        self.notifications = NotificationService(self.store, push_sender, clock=clock)
        self.card_provider = card_provider or SignedCardTokenProvider(settings, clock=clock)

        self.agents = AgentService(self.store, self.vault, self.tokens, self.webhooks, clock=clock)
        self.step_ups = StepUpWorkflow(self.store, settings, self.ledger, self.card_provider, clock=clock)
        self.payments = PaymentService(
            self.store,
            settings,
            self.limits,
            self.step_ups,
            self.notifications,
            self.card_provider,
            clock=clock,
        )

        self.client_flow = ClientCredentialsFlow(self.vault, self.tokens)
        self.device_flow = DeviceAuthorizationFlow(
            self.store, settings, self.vault, self.tokens, self.notifications, clock=clock
        )
        self.code_flow = AuthorizationCodeFlow(self.store, settings, self.tokens, self.notifications, clock=clock)
        self.oauth = OAuthEndpoints(
            settings,
            self.store,
            self.vault,
            self.tokens,
            self.client_flow,
            self.device_flow,
            self.code_flow,
            self.webhooks,
            self.keys,
        )
        self.refresh = RefreshCredentialStore(self.store, clock=clock)

    @classmethod
    def from_env(cls, **kwargs) -> "AgentPass":
        return cls(Settings.from_env(), **kwargs)

    def close(self) -> None:
        self.webhooks.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
