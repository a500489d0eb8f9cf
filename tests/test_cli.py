"""CLI tests: every command runs against a database under tmp_path."""

import json
import re

import pytest
from click.testing import CliRunner

from agentpass.cli import main

from conftest import PAYMENT_SECRET


@pytest.fixture
def runner(tmp_path):
    return CliRunner(
        env={
            "AGENTPASS_DB_PATH": str(tmp_path / "agentpass.sqlite3"),
            "AGENTPASS_KEY_PATH": "",
            "AGENTPASS_OWNER": "owner-1",
            "PAYMENT_TOKEN_SECRET": PAYMENT_SECRET,
            "AGENT_JWT_RSA_PRIVATE_KEY_PEM": "",
        }
    )


def field(output, label):
    match = re.search(rf"{label}:\s+(\S+)", output)
    assert match, output
    return match.group(1)


def json_tail(output):
    """The JSON document printed last; stderr lines may precede it."""
    return json.loads(output[output.index("{"):])


def create_agent(runner, *extra):
    result = runner.invoke(
        main, ["agent", "create", "--name", "Shopping Assistant", "-p", "browse,purchase", *extra]
    )
    assert result.exit_code == 0, result.output
    return field(result.output, "Agent created"), field(result.output, "Client ID"), field(result.output, "Client secret")


def issue_token(runner, client_id, client_secret):
    result = runner.invoke(main, ["token", "issue", "--client-id", client_id, "--client-secret", client_secret])
    assert result.exit_code == 0, result.output
    return json_tail(result.output)["access_token"]


class TestSetup:
    def test_init_persists_signing_key(self, runner, tmp_path):
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0, result.output
        assert "Initialized agentpass" in result.output
        assert (tmp_path / "agentpass.sqlite3").exists()
        assert (tmp_path / "signing_key.pem").exists()

        kid = re.search(r"kid (\S+)\)", result.output).group(1)
        jwks = json.loads(runner.invoke(main, ["jwks"]).output)
        assert [key["kid"] for key in jwks["keys"]] == [kid]

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestAgentCommands:
    def test_create_and_list(self, runner):
        agent_id, client_id, secret = create_agent(runner)
        assert secret.startswith("sk_agent_")

        result = runner.invoke(main, ["agent", "list"])
        assert result.exit_code == 0
        assert agent_id in result.output
        assert "never" in result.output

        other = runner.invoke(main, ["agent", "list", "--owner", "owner-2"])
        assert "No agents found" in other.output

    def test_invalid_limits_fail_cleanly(self, runner):
        result = runner.invoke(main, ["agent", "create", "--name", "Bot", "--per-tx", "500"])
        assert result.exit_code == 1
        assert "❌" in result.output

    def test_unknown_agent(self, runner):
        result = runner.invoke(main, ["agent", "show", "does-not-exist"])
        assert result.exit_code == 1
        assert "❌ Agent not found" in result.output

    def test_suspend_then_activate(self, runner):
        agent_id, client_id, secret = create_agent(runner)
        token = issue_token(runner, client_id, secret)

        assert runner.invoke(main, ["agent", "suspend", agent_id]).exit_code == 0
        introspection = json.loads(runner.invoke(main, ["token", "introspect", token]).output)
        assert introspection == {"active": False}

        assert runner.invoke(main, ["agent", "activate", agent_id]).exit_code == 0
        introspection = json.loads(runner.invoke(main, ["token", "introspect", token]).output)
        assert introspection["active"] is True

    def test_revoke_requires_confirmation(self, runner):
        agent_id, _, _ = create_agent(runner)
        aborted = runner.invoke(main, ["agent", "revoke", agent_id], input="n\n")
        assert aborted.exit_code == 1
        confirmed = runner.invoke(main, ["agent", "revoke", agent_id, "--yes"])
        assert confirmed.exit_code == 0, confirmed.output
        again = runner.invoke(main, ["agent", "revoke", agent_id, "--yes"])
        assert again.exit_code == 1
        assert "already revoked" in again.output

    def test_rotate_secret_invalidates_old_secret(self, runner):
        agent_id, client_id, secret = create_agent(runner)
        result = runner.invoke(main, ["agent", "rotate-secret", agent_id])
        assert result.exit_code == 0, result.output
        stale = runner.invoke(main, ["token", "issue", "--client-id", client_id, "--client-secret", secret])
        assert stale.exit_code == 1
        assert "Invalid client credentials" in stale.output


class TestPurchaseCommands:
    def test_purchase_and_step_up(self, runner):
        _, client_id, secret = create_agent(runner)
        token = issue_token(runner, client_id, secret)
        assert runner.invoke(main, ["payment-method", "add", "--label", "Visa 4242", "--default"]).exit_code == 0

        approved = runner.invoke(main, ["purchase", "--token", token, "--amount", "30", "--merchant", "m-1"])
        assert approved.exit_code == 0, approved.output
        assert json_tail(approved.output)["status"] == "approved"

        over = runner.invoke(main, ["purchase", "--token", token, "--amount", "75", "--merchant", "m-1"])
        assert over.exit_code == 0, over.output
        assert "Owner approval required" in over.output
        step_up_id = json_tail(over.output)["step_up_id"]

        listed = runner.invoke(main, ["step-up", "list"])
        assert step_up_id in listed.output

        result = runner.invoke(main, ["step-up", "approve", step_up_id])
        assert result.exit_code == 0, result.output
        assert "75.00 CAD" in result.output

        status = runner.invoke(main, ["step-up", "status", "--token", token, step_up_id])
        assert json_tail(status.output)["status"] == "approved"

    def test_purchase_with_bad_token(self, runner):
        result = runner.invoke(main, ["purchase", "--token", "garbage", "--amount", "5", "--merchant", "m-1"])
        assert result.exit_code == 1
        assert "Invalid or revoked access token" in result.output


class TestDeviceCommands:
    def test_full_device_flow(self, runner):
        started = runner.invoke(main, ["device", "start", "--name", "Grocery Bot"])
        assert started.exit_code == 0, started.output
        body = json.loads(started.output)

        pending = runner.invoke(main, ["device", "poll", body["device_code"]])
        assert pending.exit_code == 1
        assert json.loads(pending.output)["error"] == "authorization_pending"

        claimed = runner.invoke(main, ["device", "claim", body["user_code"].lower()])
        assert claimed.exit_code == 0, claimed.output
        assert "Grocery Bot" in claimed.output

        approved = runner.invoke(main, ["device", "approve", body["device_code"]])
        assert approved.exit_code == 0, approved.output

        delivered = runner.invoke(main, ["device", "poll", body["device_code"]])
        assert delivered.exit_code == 0, delivered.output
        assert json.loads(delivered.output)["client_secret"].startswith("sk_agent_")

    def test_claiming_twice_fails(self, runner):
        body = json.loads(runner.invoke(main, ["device", "start", "--name", "Bot"]).output)
        assert runner.invoke(main, ["device", "claim", body["user_code"]]).exit_code == 0
        again = runner.invoke(main, ["device", "claim", body["user_code"], "--owner", "owner-2"])
        assert again.exit_code == 1
        assert "❌" in again.output


class TestWebhookCommands:
    def test_register_logs_and_unregister(self, runner):
        result = runner.invoke(
            main,
            ["webhook", "register", "--merchant", "m-1", "--url", "https://merchant.example/hooks",
             "--secret", "whsec-test"],
        )
        assert result.exit_code == 0, result.output
        assert field(result.output, "Secret") == "whsec-test"
        assert "agent.deactivated, agent.secret_rotated, token.revoked" in result.output

        assert "No deliveries yet" in runner.invoke(main, ["webhook", "logs", "m-1"]).output
        assert runner.invoke(main, ["webhook", "unregister", "m-1"]).exit_code == 0
        missing = runner.invoke(main, ["webhook", "unregister", "m-1"])
        assert missing.exit_code == 1
        assert "No webhook registered for m-1" in missing.output

    def test_rejects_unknown_event(self, runner):
        result = runner.invoke(
            main,
            ["webhook", "register", "--merchant", "m-1", "--url", "https://merchant.example/hooks",
             "--event", "payment.teleported"],
        )
        assert result.exit_code == 1
        assert "Unsupported webhook events" in result.output
