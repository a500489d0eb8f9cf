"""Shared fixtures: a manual clock, settings on tmp_path and a wired AgentPass."""

import json

import httpx
import pytest

from agentpass.app import AgentPass
from agentpass.config import Settings
from agentpass.keys import SigningKeys


# 2026-03-15 12:00 in Toronto (16:00 UTC)
NOON_TORONTO = 1773590400
LEGACY_SECRET = "legacy-hs256-secret-for-tests-0123456789"
PAYMENT_SECRET = "payment-token-secret-for-tests-0123456789"
INTROSPECTION_ID = "relying-party"
INTROSPECTION_SECRET = "relying-party-secret"


class ManualClock:
    def __init__(self, now: float = NOON_TORONTO):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, user_id, type, payload):
        if self.fail:
            raise ConnectionError("push gateway unavailable")
        self.sent.append((user_id, type, payload))


class WebhookSink:
    """httpx MockTransport handler that records requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok" if self.status_code < 400 else "boom")

    def events(self):
        return [json.loads(r.content)["event"] for r in self.requests]


@pytest.fixture(scope="session")
def signing_keys():
    return SigningKeys.generate()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "agentpass.sqlite3",
        jwt_secret=LEGACY_SECRET,
        payment_token_secret=PAYMENT_SECRET,
        introspection_client_id=INTROSPECTION_ID,
        introspection_client_secret=INTROSPECTION_SECRET,
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def sink():
    return WebhookSink()


@pytest.fixture
def app(settings, signing_keys, clock, sender, sink):
    http_client = httpx.Client(transport=httpx.MockTransport(sink))
    services = AgentPass(
        settings,
        keys=signing_keys,
        push_sender=sender,
        http_client=http_client,
        clock=clock,
    )
    yield services
    services.close()


@pytest.fixture
def make_agent(app):
    """Create an agent with sensible defaults; returns (agent, client_secret)."""

    def _make(**overrides):
        params = dict(
            owner_id="owner-1",
            name="Shopping Assistant",
            permissions=["browse", "purchase"],
            per_transaction_limit="50",
            daily_limit="200",
            monthly_limit="1000",
            currency="CAD",
        )
        params.update(overrides)
        return app.agents.create(**params)

    return _make
