"""Tests for the token service."""

import jwt

from agentpass.tokens import hash_token

from conftest import LEGACY_SECRET


def legacy_claims(agent, now, **extra):
    claims = {
        "sub": agent.id,
        "client_id": agent.client_id,
        "owner_id": agent.owner_id,
        "permissions": sorted(agent.permissions),
        "iat": int(now),
        "exp": int(now) + 600,
        "iss": "http://localhost:3000",
    }
    claims.update(extra)
    return claims


class TestIssueAndVerify:
    def test_issue_then_verify_recovers_claims(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent, scope="purchase")
        payload = app.tokens.verify(issued.token)
        assert payload["sub"] == agent.id
        assert payload["owner_id"] == agent.owner_id
        assert payload["client_id"] == agent.client_id
        assert payload["permissions"] == ["browse", "purchase"]
        assert payload["scope"] == "purchase"
        assert issued.expires_in == 3600

    def test_header_carries_kid(self, app, make_agent, signing_keys):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        header = jwt.get_unverified_header(issued.token)
        assert header["alg"] == "RS256"
        assert header["kid"] == signing_keys.kid

    def test_only_digest_is_stored(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        record = app.store.get_token(hash_token(issued.token))
        assert record is not None
        assert record.agent_id == agent.id
        assert app.store.get_token(issued.token) is None

    def test_expired_token_rejected(self, app, make_agent, clock):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        clock.advance(3600)
        assert app.tokens.verify(issued.token) is None

    def test_audience_is_checked_when_requested(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent, audience="merchant-api")
        assert app.tokens.verify(issued.token, audience="merchant-api") is not None
        assert app.tokens.verify(issued.token, audience="other-api") is None

    def test_garbage_rejected(self, app):
        assert app.tokens.verify("") is None
        assert app.tokens.verify("not.a.jwt") is None


class TestLegacyFallback:
    def test_legacy_hs256_token_still_verifies(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), LEGACY_SECRET, algorithm="HS256")
        payload = app.tokens.verify(token)
        assert payload is not None
        assert payload["sub"] == agent.id

    def test_unrecognized_scheme_rejected(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), LEGACY_SECRET, algorithm="HS512")
        assert app.tokens.verify(token) is None

    def test_unsigned_token_rejected(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), None, algorithm="none")
        assert app.tokens.verify(token) is None

    def test_legacy_disabled_without_secret(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), LEGACY_SECRET, algorithm="HS256")
        app.settings.jwt_secret = None
        assert app.tokens.verify(token) is None

    def test_missing_required_claim_rejected(self, app, make_agent, clock):
        agent, _ = make_agent()
        claims = legacy_claims(agent, clock())
        del claims["owner_id"]
        token = jwt.encode(claims, LEGACY_SECRET, algorithm="HS256")
        assert app.tokens.verify(token) is None


class TestRevocation:
    def test_revoke_then_introspect_inactive(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        assert app.tokens.introspect(issued.token)["active"] is True
        assert app.tokens.revoke(issued.token_hash) is True
        assert app.tokens.revoke(issued.token_hash) is False
        assert app.tokens.introspect(issued.token) == {"active": False}

    def test_revoke_all(self, app, make_agent):
        agent, _ = make_agent()
        first = app.tokens.issue(agent)
        second = app.tokens.issue(agent)
        revoked = app.tokens.revoke_all(agent.id)
        assert set(revoked) == {first.token_hash, second.token_hash}
        assert app.tokens.authenticate(first.token) is None
        assert app.tokens.authenticate(second.token) is None

    def test_untracked_token_fails_open_by_default(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), LEGACY_SECRET, algorithm="HS256")
        assert app.tokens.authenticate(token) is not None

    def test_untracked_token_rejected_when_fail_closed(self, app, make_agent, clock):
        agent, _ = make_agent()
        token = jwt.encode(legacy_claims(agent, clock()), LEGACY_SECRET, algorithm="HS256")
        app.settings.revocation_fail_open = False
        assert app.tokens.authenticate(token) is None


class TestIntrospection:
    def test_live_context(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        result = app.tokens.introspect(issued.token)
        assert result["active"] is True
        assert result["agent_id"] == agent.id
        assert result["agent_status"] == "active"
        assert result["spending_limits"] == {
            "per_transaction": 50.0,
            "daily": 200.0,
            "monthly": 1000.0,
            "currency": "CAD",
        }
        assert result["current_usage"] == {"daily": 0.0, "monthly": 0.0}

    def test_suspended_agent_token_inactive(self, app, make_agent):
        agent, _ = make_agent()
        issued = app.tokens.issue(agent)
        app.agents.update(agent.owner_id, agent.id, status="suspended")
        assert app.tokens.introspect(issued.token) == {"active": False}
        app.agents.update(agent.owner_id, agent.id, status="active")
        assert app.tokens.introspect(issued.token)["active"] is True
