"""Tests for the authorization code + PKCE grant."""

from urllib.parse import parse_qs, urlsplit

import pytest

from agentpass.code_grant import agent_id_for, redirect_uri_allowed, s256_challenge
from agentpass.credentials import UNUSABLE_SECRET_HASH
from agentpass.errors import ExpiredError, NotFoundError, OAuthError, StateConflictError, ValidationError
from agentpass.models import CodeGrantStatus
from agentpass.notifications import OAUTH_AUTHORIZATION_NOTIFICATION


VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
REDIRECT = "https://merchant.example.com/callback"


@pytest.fixture
def client(app):
    return app.code_flow.register_client(
        "merchant-app",
        "Merchant App",
        [REDIRECT, "http://localhost:*/callback"],
        permissions=["browse", "cart"],
    )


def approved_code(app, client, redirect_uri=REDIRECT, scope=None, state="xyz"):
    session = app.code_flow.authorize(
        client.client_id, redirect_uri, s256_challenge(VERIFIER), state=state, scope=scope
    )
    app.code_flow.identify(session.session_id, "owner-1")
    location = app.code_flow.approve(session.grant_id, "owner-1")
    query = parse_qs(urlsplit(location).query)
    assert query["state"] == [state]
    return query["code"][0], session


class TestPkce:
    def test_rfc7636_example(self):
        assert s256_challenge(VERIFIER) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestRedirectUris:
    def test_exact_match(self):
        assert redirect_uri_allowed(REDIRECT, [REDIRECT])
        assert not redirect_uri_allowed(REDIRECT + "/extra", [REDIRECT])

    def test_port_wildcard(self):
        allowed = ["http://localhost:*/callback"]
        assert redirect_uri_allowed("http://localhost:8123/callback", allowed)
        assert redirect_uri_allowed("http://localhost/callback", allowed)
        assert not redirect_uri_allowed("http://localhost:8123/other", allowed)
        assert not redirect_uri_allowed("https://localhost:8123/callback", allowed)
        assert not redirect_uri_allowed("http://evil.example:8123/callback", allowed)


class TestAuthorizationCodeFlow:
    def test_register_client_validates(self, app):
        with pytest.raises(ValidationError):
            app.code_flow.register_client("c", "C", [])
        with pytest.raises(ValidationError):
            app.code_flow.register_client("c", "C", ["ftp://example.com/cb"])

    def test_authorize_rejects_unknown_client(self, app):
        with pytest.raises(OAuthError) as exc_info:
            app.code_flow.authorize("nobody", REDIRECT, s256_challenge(VERIFIER))
        assert exc_info.value.error == "invalid_client"

    def test_authorize_rejects_unregistered_redirect(self, app, client):
        with pytest.raises(OAuthError) as exc_info:
            app.code_flow.authorize(client.client_id, "https://evil.example/cb", s256_challenge(VERIFIER))
        assert exc_info.value.error == "invalid_request"

    def test_authorize_rejects_plain_challenge(self, app, client):
        with pytest.raises(OAuthError):
            app.code_flow.authorize(client.client_id, REDIRECT, VERIFIER, code_challenge_method="plain")

    def test_full_flow(self, app, client, sender):
        code, session = approved_code(app, client, scope="browse")
        assert sender.sent[0][1] == OAUTH_AUTHORIZATION_NOTIFICATION

        response = app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        assert response.scope == "browse"
        payload = app.tokens.verify(response.access_token)
        agent = app.store.get_agent(payload["sub"])
        assert agent.id == agent_id_for(client.client_id, "owner-1")
        assert agent.owner_id == "owner-1"
        assert agent.permissions == frozenset({"browse", "cart"})
        assert agent.client_secret_hash == UNUSABLE_SECRET_HASH

    def test_code_replay_is_invalid_grant(self, app, client):
        code, session = approved_code(app, client)
        app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        with pytest.raises(OAuthError) as exc_info:
            app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        assert exc_info.value.error == "invalid_grant"
        assert app.store.count_active_tokens(agent_id_for(client.client_id, "owner-1"), 0) == 1

    def test_verifier_mismatch(self, app, client):
        code, session = approved_code(app, client)
        with pytest.raises(OAuthError) as exc_info:
            app.code_flow.exchange(code, "x" * 43, client.client_id, REDIRECT)
        assert exc_info.value.error == "invalid_grant"
        # a failed attempt does not burn the code
        assert app.store.get_code_grant(session.grant_id).status == CodeGrantStatus.APPROVED

    def test_redirect_uri_must_match(self, app, client):
        code, _ = approved_code(app, client, redirect_uri="http://localhost:5173/callback")
        with pytest.raises(OAuthError):
            app.code_flow.exchange(code, VERIFIER, client.client_id, "http://localhost:5174/callback")
        response = app.code_flow.exchange(code, VERIFIER, client.client_id, "http://localhost:5173/callback")
        assert response.access_token

    def test_session_is_single_use(self, app, client):
        session = app.code_flow.authorize(client.client_id, REDIRECT, s256_challenge(VERIFIER))
        app.code_flow.identify(session.session_id, "owner-1")
        with pytest.raises(NotFoundError):
            app.code_flow.identify(session.session_id, "owner-2")

    def test_only_identified_owner_can_approve(self, app, client):
        session = app.code_flow.authorize(client.client_id, REDIRECT, s256_challenge(VERIFIER))
        app.code_flow.identify(session.session_id, "owner-1")
        with pytest.raises(NotFoundError):
            app.code_flow.approve(session.grant_id, "owner-2")

    def test_rejection_redirects_with_access_denied(self, app, client):
        session = app.code_flow.authorize(client.client_id, REDIRECT, s256_challenge(VERIFIER), state="s1")
        app.code_flow.identify(session.session_id, "owner-1")
        location = app.code_flow.reject(session.grant_id, "owner-1")
        query = parse_qs(urlsplit(location).query)
        assert query["error"] == ["access_denied"]
        assert query["state"] == ["s1"]
        with pytest.raises(StateConflictError):
            app.code_flow.approve(session.grant_id, "owner-1")

    def test_expired_code(self, app, client, clock):
        code, session = approved_code(app, client)
        clock.advance(10 * 60 + 1)
        with pytest.raises(OAuthError) as exc_info:
            app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        assert exc_info.value.error == "invalid_grant"
        assert app.store.get_code_grant(session.grant_id).status == CodeGrantStatus.EXPIRED

    def test_expired_before_approval(self, app, client, clock):
        session = app.code_flow.authorize(client.client_id, REDIRECT, s256_challenge(VERIFIER))
        app.code_flow.identify(session.session_id, "owner-1")
        clock.advance(10 * 60 + 1)
        with pytest.raises(ExpiredError):
            app.code_flow.approve(session.grant_id, "owner-1")

    def test_repeat_authorization_reuses_agent(self, app, client):
        code, _ = approved_code(app, client)
        first = app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        code, _ = approved_code(app, client)
        second = app.code_flow.exchange(code, VERIFIER, client.client_id, REDIRECT)
        assert app.tokens.verify(first.access_token)["sub"] == app.tokens.verify(second.access_token)["sub"]
