"""Tests for owner-side agent management."""

import pytest

from agentpass.errors import NotFoundError, StateConflictError, ValidationError
from agentpass.models import AgentStatus


class TestCreate:
    def test_create_returns_one_time_secret(self, app, make_agent):
        agent, secret = make_agent()
        assert secret.startswith("sk_agent_")
        stored = app.store.get_agent(agent.id)
        assert stored.client_secret_hash != secret
        assert stored.permissions == frozenset({"browse", "purchase"})
        assert stored.limits.to_dict()["daily"] == 200.0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"name": "x" * 101},
            {"permissions": []},
            {"permissions": ["browse", "teleport"]},
            {"per_transaction_limit": "300"},
            {"daily_limit": "2000"},
        ],
    )
    def test_validation(self, make_agent, overrides):
        with pytest.raises(ValidationError):
            make_agent(**overrides)


class TestQueries:
    def test_other_owner_sees_not_found(self, app, make_agent):
        agent, _ = make_agent()
        with pytest.raises(NotFoundError):
            app.agents.get("owner-2", agent.id)

    def test_list_hides_revoked_by_default(self, app, make_agent):
        keep, _ = make_agent(name="Keep")
        gone, _ = make_agent(name="Gone")
        app.agents.revoke("owner-1", gone.id)
        assert [a.id for a in app.agents.list_agents("owner-1")] == [keep.id]
        assert len(app.agents.list_agents("owner-1", include_revoked=True)) == 2


class TestUpdate:
    def test_limits_revalidated_against_merged_values(self, app, make_agent):
        agent, _ = make_agent()
        updated = app.agents.update("owner-1", agent.id, spending_limits={"daily": "100"})
        assert updated.daily_limit_cents == 10000
        with pytest.raises(ValidationError):
            app.agents.update("owner-1", agent.id, spending_limits={"daily": "40"})
        assert app.store.get_agent(agent.id).daily_limit_cents == 10000

    def test_status_restricted(self, app, make_agent):
        agent, _ = make_agent()
        with pytest.raises(ValidationError):
            app.agents.update("owner-1", agent.id, status="revoked")

    def test_suspend_dispatches_deactivated(self, app, make_agent, sink):
        app.webhooks.register("merchant-1", "https://merchant.example/hooks", ["agent.deactivated"])
        agent, _ = make_agent()
        updated = app.agents.update("owner-1", agent.id, status="suspended")
        app.webhooks.drain()
        assert updated.status == AgentStatus.SUSPENDED
        assert sink.events() == ["agent.deactivated"]

    def test_revoked_agent_cannot_be_modified(self, app, make_agent):
        agent, _ = make_agent()
        app.agents.revoke("owner-1", agent.id)
        with pytest.raises(StateConflictError):
            app.agents.update("owner-1", agent.id, name="Back again")
        with pytest.raises(StateConflictError):
            app.agents.revoke("owner-1", agent.id)
        with pytest.raises(StateConflictError):
            app.agents.rotate_secret("owner-1", agent.id)


class TestRevokeAndRotate:
    def test_revoke_kills_tokens(self, app, make_agent, sink):
        app.webhooks.register("merchant-1", "https://merchant.example/hooks", ["token.revoked", "agent.deactivated"])
        agent, secret = make_agent()
        token = app.client_flow.exchange(agent.client_id, secret).access_token
        app.agents.revoke("owner-1", agent.id)
        app.webhooks.drain()
        assert app.tokens.authenticate(token) is None
        assert app.vault.validate_agent_credentials(agent.client_id, secret) is None
        assert sorted(sink.events()) == ["agent.deactivated", "token.revoked"]

    def test_rotate_secret(self, app, make_agent, sink, clock):
        app.webhooks.register("merchant-1", "https://merchant.example/hooks", ["agent.secret_rotated"])
        agent, old_secret = make_agent()
        token = app.client_flow.exchange(agent.client_id, old_secret).access_token
        rotated, new_secret = app.agents.rotate_secret("owner-1", agent.id)
        app.webhooks.drain()
        assert new_secret != old_secret
        assert rotated.secret_rotated_at == int(clock())
        assert app.tokens.authenticate(token) is None
        assert app.vault.validate_agent_credentials(agent.client_id, old_secret) is None
        assert app.vault.validate_agent_credentials(agent.client_id, new_secret) is not None
        assert sink.events() == ["agent.secret_rotated"]

    def test_transactions_listed_for_owner(self, app, make_agent):
        agent, _ = make_agent()
        app.payments.add_payment_method("owner-1", "Visa 4242", is_default=True)
        app.payments.request_credential(agent, "12.50", merchant_id="m-1")
        [tx] = app.agents.transactions("owner-1", agent.id)
        assert tx.amount_cents == 1250
        with pytest.raises(NotFoundError):
            app.agents.transactions("owner-2", agent.id)
