"""Tests for the device authorization grant."""

import pytest

from agentpass.device_grant import generate_user_code, normalize_user_code
from agentpass.errors import ExpiredError, NotFoundError, OAuthError, StateConflictError, ValidationError
from agentpass.limits import default_limits
from agentpass.models import DeviceGrant, DeviceGrantStatus
from agentpass.notifications import ACCESS_REQUEST_NOTIFICATION


def insert_grant(app, clock, user_code="PFX-ABCDEF-GH2345", **overrides):
    fields = dict(
        id="device-code-1",
        user_code=user_code,
        agent_name="Grocery Bot",
        requested_permissions=frozenset({"browse", "purchase"}),
        requested_limits=default_limits(),
        expires_at=int(clock()) + 900,
        created_at=int(clock()),
    )
    fields.update(overrides)
    grant = DeviceGrant(**fields)
    app.store.insert_device_grant(grant)
    return grant


class TestUserCodes:
    def test_generated_format(self):
        code = generate_user_code()
        assert normalize_user_code(code) == code
        assert code.startswith("PFX-")
        assert len(code) == len("PFX-XXXXXX-XXXXXX")

    def test_normalization_is_forgiving(self):
        assert normalize_user_code("pfx abcdef gh2345") == "PFX-ABCDEF-GH2345"
        assert normalize_user_code("PFXABCDEFGH2345") == "PFX-ABCDEF-GH2345"

    def test_malformed_code_rejected(self):
        with pytest.raises(ValidationError):
            normalize_user_code("ABC-123")


class TestDeviceFlow:
    def test_start(self, app):
        started = app.device_flow.start("Grocery Bot", scope="browse purchase")
        body = started.to_dict()
        assert body["expires_in"] == 900
        assert body["interval"] == 5
        assert body["verification_uri"] == "http://localhost:3000/m/device"
        assert body["verification_uri_complete"].endswith(started.user_code)
        grant = app.store.get_device_grant(started.device_code)
        assert grant.status == DeviceGrantStatus.PENDING_CLAIM
        assert grant.requested_permissions == frozenset({"browse", "purchase"})

    def test_start_validation(self, app):
        with pytest.raises(OAuthError) as exc_info:
            app.device_flow.start("")
        assert exc_info.value.error == "invalid_request"
        with pytest.raises(OAuthError) as exc_info:
            app.device_flow.start("Bot", scope="teleport")
        assert exc_info.value.error == "invalid_scope"
        with pytest.raises(OAuthError):
            app.device_flow.start("Bot", spending_limits={"per_transaction": "500"})

    def test_default_scope_is_browse(self, app):
        started = app.device_flow.start("Bot")
        assert app.store.get_device_grant(started.device_code).requested_permissions == frozenset({"browse"})

    def test_poll_before_claim_is_pending(self, app):
        started = app.device_flow.start("Bot")
        outcome = app.device_flow.poll(started.device_code)
        assert not outcome.ok
        assert outcome.error == "authorization_pending"

    def test_unknown_device_code(self, app):
        with pytest.raises(OAuthError) as exc_info:
            app.device_flow.poll("nope")
        assert exc_info.value.error == "invalid_grant"

    def test_pairing_code_claims_exactly_once(self, app, clock, sender):
        grant = insert_grant(app, clock)
        claimed = app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        assert claimed.status == DeviceGrantStatus.PENDING
        assert claimed.user_id == "owner-1"
        assert sender.sent[0][1] == ACCESS_REQUEST_NOTIFICATION

        with pytest.raises(StateConflictError) as exc_info:
            app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-2")
        assert exc_info.value.status == "pending"
        assert app.store.get_device_grant(grant.id).user_id == "owner-1"

    def test_unknown_pairing_code(self, app):
        with pytest.raises(NotFoundError):
            app.device_flow.claim("PFX-ZZZZZZ-ZZZZZZ", "owner-1")

    def test_expired_pairing_code(self, app, clock):
        insert_grant(app, clock)
        clock.advance(901)
        with pytest.raises(ExpiredError):
            app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        assert app.device_flow.poll("device-code-1").error == "expired_token"

    def test_approve_then_poll_delivers_credentials_once(self, app, clock):
        insert_grant(app, clock)
        app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        agent = app.device_flow.approve(
            "device-code-1",
            "owner-1",
            permissions=["browse"],
            spending_limits={"per_transaction": "20"},
        )
        assert agent.permissions == frozenset({"browse"})
        assert agent.per_transaction_limit_cents == 2000
        assert agent.daily_limit_cents == 20000

        outcome = app.device_flow.poll("device-code-1")
        assert outcome.ok
        body = outcome.token.to_dict()
        assert body["client_id"] == agent.client_id
        assert body["client_secret"].startswith("sk_agent_")
        assert body["scope"] == "browse"
        assert app.tokens.verify(body["access_token"])["sub"] == agent.id
        assert app.vault.validate_agent_credentials(agent.client_id, body["client_secret"]) is not None

        with pytest.raises(OAuthError) as exc_info:
            app.device_flow.poll("device-code-1")
        assert exc_info.value.error == "invalid_grant"

    def test_approval_cannot_widen(self, app, clock):
        insert_grant(app, clock, requested_permissions=frozenset({"browse"}))
        app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        with pytest.raises(ValidationError):
            app.device_flow.approve("device-code-1", "owner-1", permissions=["browse", "purchase"])
        with pytest.raises(ValidationError):
            app.device_flow.approve("device-code-1", "owner-1", spending_limits={"daily": "500"})
        assert app.store.get_device_grant("device-code-1").status == DeviceGrantStatus.PENDING

    def test_only_claiming_owner_can_approve(self, app, clock):
        insert_grant(app, clock)
        app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        with pytest.raises(NotFoundError):
            app.device_flow.approve("device-code-1", "owner-2")

    def test_rejection_polls_access_denied(self, app, clock):
        insert_grant(app, clock)
        app.device_flow.claim("PFX-ABCDEF-GH2345", "owner-1")
        app.device_flow.reject("device-code-1", "owner-1")
        assert app.device_flow.poll("device-code-1").error == "access_denied"
        with pytest.raises(StateConflictError):
            app.device_flow.approve("device-code-1", "owner-1")
