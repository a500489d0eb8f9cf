"""
agentpass CLI: operator tooling for delegated agent payments.

Commands:
    agentpass init        Create the data directory, database and signing key
    agentpass agent       Create, inspect, suspend, revoke agents; rotate secrets
    agentpass token       Issue, introspect and revoke access tokens
    agentpass jwks        Print the public signing keys
    agentpass purchase    Request a payment credential as an agent
    agentpass step-up     Review over-limit purchases
    agentpass device      Drive the device authorization flow
    agentpass webhook     Manage merchant webhook registrations
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import click

from . import __version__
from .app import AgentPass
from .config import Settings
from .errors import AgentPassError
from .models import VALID_PERMISSIONS, VALID_WEBHOOK_EVENTS
from .money import cents_to_float, format_cents
from .payments import StepUpRequired


OWNER_ENV = "AGENTPASS_OWNER"
DEFAULT_OWNER = "local"
KEY_FILENAME = "signing_key.pem"


def _settings() -> Settings:
    settings = Settings.from_env()
    if settings.key_path is None:
        # The CLI runs once per command, so the key must outlive the process
        settings.key_path = settings.db_path.parent / KEY_FILENAME
    return settings


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


@contextmanager
def _services() -> Iterator[AgentPass]:
    try:
        app = AgentPass(_settings())
    except AgentPassError as exc:
        _fail(f"Configuration error: {exc}")
    try:
        yield app
    except AgentPassError as exc:
        _fail(str(exc))
    finally:
        app.close()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def _split(values: tuple[str, ...]) -> list[str]:
    """Accept repeated options and comma-separated lists alike."""
    items: list[str] = []
    for value in values:
        items.extend(part.strip() for part in value.split(",") if part.strip())
    return items


def _when(ts: Optional[int]) -> str:
    if not ts:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


owner_option = click.option(
    "--owner",
    default=lambda: os.getenv(OWNER_ENV, DEFAULT_OWNER),
    show_default=f"env {OWNER_ENV} or '{DEFAULT_OWNER}'",
    help="Wallet owner id",
)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """agentpass: scoped, rate-limited payment credentials for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init():
    """Create the data directory, database and signing key."""
    with _services() as app:
        settings = app.settings
        kid = app.keys.kid
    click.echo("✅ Initialized agentpass")
    click.echo(f"   Database:    {settings.db_path}")
    click.echo(f"   Signing key: {settings.key_path} (kid {kid})")


@main.command()
def jwks():
    """Print the public signing keys as a JWK Set."""
    with _services() as app:
        _echo_json(app.oauth.jwks())


# ── Agents ────────────────────────────────────────────────────────

@main.group("agent")
def agent_group():
    """Agent lifecycle operations."""
    pass


@agent_group.command("create")
@owner_option
@click.option("--name", required=True, help="Display name (1-100 characters)")
@click.option(
    "--permission", "-p", "permissions", multiple=True, default=("browse",),
    help=f"Permission to grant; repeatable or comma-separated ({', '.join(sorted(VALID_PERMISSIONS))})",
)
@click.option("--per-tx", default="50", show_default=True, help="Per-transaction limit")
@click.option("--daily", default="200", show_default=True, help="Daily limit")
@click.option("--monthly", default="1000", show_default=True, help="Monthly limit")
@click.option("--currency", default=None, help="Limit currency (default from settings)")
@click.option("--description", default=None, help="Optional description")
def agent_create(owner, name, permissions, per_tx, daily, monthly, currency, description):
    """Register an agent and print its one-time client secret."""
    with _services() as app:
        agent, secret = app.agents.create(
            owner_id=owner,
            name=name,
            permissions=_split(permissions),
            per_transaction_limit=per_tx,
            daily_limit=daily,
            monthly_limit=monthly,
            currency=currency or app.settings.default_currency,
            description=description,
        )
    click.echo(f"✅ Agent created: {agent.id}")
    click.echo(f"   Client ID:     {agent.client_id}")
    click.echo(f"   Client secret: {secret}")
    click.echo("   Store the secret now; it cannot be shown again.")
    click.echo(f"   Permissions:   {', '.join(sorted(agent.permissions))}")
    click.echo(
        f"   Limits:        {format_cents(agent.per_transaction_limit_cents)}/tx, "
        f"{format_cents(agent.daily_limit_cents)}/day, "
        f"{format_cents(agent.monthly_limit_cents)}/month {agent.currency}"
    )


@agent_group.command("list")
@owner_option
@click.option("--all", "include_revoked", is_flag=True, help="Include revoked agents")
def agent_list(owner, include_revoked):
    """List the owner's agents."""
    with _services() as app:
        agents = app.agents.list_agents(owner, include_revoked=include_revoked)
    if not agents:
        click.echo("No agents found")
        return
    for agent in agents:
        click.echo(
            f"{agent.id}  {agent.status.value:<9}  {agent.client_id}  {agent.name}  "
            f"(last used {_when(agent.last_used_at)})"
        )


@agent_group.command("show")
@owner_option
@click.argument("agent_id")
def agent_show(owner, agent_id):
    """Show one agent with its remaining limits and recent transactions."""
    with _services() as app:
        agent = app.agents.get(owner, agent_id)
        data = agent.to_dict()
        data["remaining_limits"] = app.payments.remaining_limits(agent).to_dict()
        data["recent_transactions"] = [tx.to_dict() for tx in app.agents.transactions(owner, agent_id)]
    _echo_json(data)


@agent_group.command("suspend")
@owner_option
@click.argument("agent_id")
def agent_suspend(owner, agent_id):
    """Suspend an agent; its tokens stop working until it is reactivated."""
    with _services() as app:
        agent = app.agents.update(owner, agent_id, status="suspended")
    click.echo(f"✓ Agent suspended: {agent.id}")


@agent_group.command("activate")
@owner_option
@click.argument("agent_id")
def agent_activate(owner, agent_id):
    """Reactivate a suspended agent."""
    with _services() as app:
        agent = app.agents.update(owner, agent_id, status="active")
    click.echo(f"✓ Agent active: {agent.id}")


@agent_group.command("revoke")
@owner_option
@click.argument("agent_id")
@click.confirmation_option(prompt="Revoking is permanent. Continue?")
def agent_revoke(owner, agent_id):
    """Permanently revoke an agent and all of its tokens."""
    with _services() as app:
        agent = app.agents.revoke(owner, agent_id)
    click.echo(f"✓ Agent revoked: {agent.id}")


@agent_group.command("rotate-secret")
@owner_option
@click.argument("agent_id")
def agent_rotate_secret(owner, agent_id):
    """Issue a new client secret; existing tokens are revoked."""
    with _services() as app:
        agent, secret = app.agents.rotate_secret(owner, agent_id)
    click.echo(f"✓ Secret rotated for agent {agent.id}")
    click.echo(f"  Client secret: {secret}")


# ── Tokens ────────────────────────────────────────────────────────

@main.group("token")
def token_group():
    """Access token operations."""
    pass


@token_group.command("issue")
@click.option("--client-id", required=True, help="Agent client id")
@click.option("--client-secret", prompt=True, hide_input=True, help="Agent client secret")
@click.option("--scope", default=None, help="Space-separated scope to narrow the token to")
@click.option("--audience", default=None, help="Optional audience claim")
def token_issue(client_id, client_secret, scope, audience):
    """Exchange client credentials for an access token."""
    with _services() as app:
        response = app.client_flow.exchange(client_id, client_secret, scope=scope, audience=audience)
    _echo_json(response.to_dict())


@token_group.command("introspect")
@click.argument("token")
def token_introspect(token):
    """Show the live authorization context of a token."""
    with _services() as app:
        _echo_json(app.tokens.introspect(token))


@token_group.command("revoke")
@click.argument("token")
def token_revoke(token):
    """Revoke a token."""
    with _services() as app:
        response = app.oauth.revoke({"token": token})
    if not response.ok:
        _fail(response.body.get("error_description") or response.body.get("error"))
    click.echo("✓ Token revoked")


# ── Payments ──────────────────────────────────────────────────────

@main.group("payment-method")
def payment_method_group():
    """Owner payment methods."""
    pass


@payment_method_group.command("add")
@owner_option
@click.option("--label", required=True, help="Label, e.g. 'Visa 4242'")
@click.option("--default", "is_default", is_flag=True, help="Make this the default method")
def payment_method_add(owner, label, is_default):
    """Add a payment method for the owner."""
    with _services() as app:
        method = app.payments.add_payment_method(owner, label, is_default=is_default)
    click.echo(f"✓ Payment method added: {method.id}")


def _authenticate(app: AgentPass, token: str):
    resolved = app.tokens.authenticate(token)
    if resolved is None:
        _fail("Invalid or revoked access token")
    return resolved[0]


@main.command()
@click.option("--token", required=True, envvar="AGENTPASS_TOKEN", help="Agent access token")
@click.option("--amount", required=True, help="Purchase amount")
@click.option("--merchant", required=True, help="Merchant id")
@click.option("--merchant-name", default=None, help="Merchant display name")
@click.option("--payment-method", default=None, help="Payment method id (default method otherwise)")
def purchase(token, amount, merchant, merchant_name, payment_method):
    """Request a payment credential as an agent."""
    with _services() as app:
        agent = _authenticate(app, token)
        outcome = app.payments.request_credential(
            agent,
            amount,
            merchant_id=merchant,
            merchant_name=merchant_name,
            payment_method_id=payment_method,
        )
    if isinstance(outcome, StepUpRequired):
        click.echo(f"⏳ Owner approval required: {outcome.reason}", err=True)
    _echo_json(outcome.to_dict())


@main.group("step-up")
def step_up_group():
    """Review purchases that exceeded an agent's limits."""
    pass


@step_up_group.command("list")
@owner_option
def step_up_list(owner):
    """List pending step-up requests."""
    with _services() as app:
        pending = app.step_ups.list_pending(owner)
    if not pending:
        click.echo("No pending step-up requests")
        return
    for step_up in pending:
        click.echo(
            f"{step_up.id}  {format_cents(step_up.amount_cents)} {step_up.currency}  "
            f"{step_up.merchant_name or step_up.merchant_id}  {step_up.reason}  "
            f"(expires {_when(step_up.expires_at)})"
        )


@step_up_group.command("approve")
@owner_option
@click.argument("step_up_id")
@click.option("--payment-method", default=None, help="Payment method id to charge")
def step_up_approve(owner, step_up_id, payment_method):
    """Approve a step-up request."""
    with _services() as app:
        tx = app.step_ups.approve(step_up_id, owner, payment_method_id=payment_method)
    click.echo(f"✅ Approved: transaction {tx.id} for {cents_to_float(tx.amount_cents):.2f} {tx.currency}")


@step_up_group.command("reject")
@owner_option
@click.argument("step_up_id")
@click.option("--reason", default=None, help="Reason shown to the agent")
def step_up_reject(owner, step_up_id, reason):
    """Reject a step-up request."""
    with _services() as app:
        step_up = app.step_ups.reject(step_up_id, owner, reason=reason)
    click.echo(f"✓ Rejected: {step_up.id} ({step_up.rejection_reason})")


@step_up_group.command("status")
@click.option("--token", required=True, envvar="AGENTPASS_TOKEN", help="Agent access token")
@click.argument("request_id")
def step_up_status(token, request_id):
    """Poll a step-up or transaction as the agent that requested it."""
    with _services() as app:
        agent = _authenticate(app, token)
        status = app.step_ups.status(request_id, agent)
    _echo_json(status.to_dict())


# ── Device authorization ──────────────────────────────────────────

@main.group("device")
def device_group():
    """Device authorization flow."""
    pass


@device_group.command("start")
@click.option("--name", "agent_name", required=True, help="Agent name")
@click.option("--scope", default=None, help="Requested permissions, space-separated")
@click.option("--description", default=None, help="Agent description")
def device_start(agent_name, scope, description):
    """Start a device authorization and print the pairing code."""
    with _services() as app:
        response = app.oauth.device_authorization(
            {"agent_name": agent_name, "scope": scope, "agent_description": description}
        )
    if not response.ok:
        _fail(response.body.get("error_description") or response.body["error"])
    _echo_json(response.body)


@device_group.command("claim")
@owner_option
@click.argument("user_code")
def device_claim(owner, user_code):
    """Claim a pairing code as the owner."""
    with _services() as app:
        grant = app.device_flow.claim(user_code, owner)
    click.echo(f"✓ Claimed: {grant.id}")
    click.echo(f"  Agent:       {grant.agent_name}")
    click.echo(f"  Permissions: {', '.join(sorted(grant.requested_permissions))}")


@device_group.command("approve")
@owner_option
@click.argument("grant_id")
@click.option("--permission", "-p", "permissions", multiple=True, help="Narrow the granted permissions")
def device_approve(owner, grant_id, permissions):
    """Approve a claimed device authorization."""
    with _services() as app:
        agent = app.device_flow.approve(grant_id, owner, permissions=_split(permissions) or None)
    click.echo(f"✅ Approved: agent {agent.id} ({agent.client_id})")


@device_group.command("reject")
@owner_option
@click.argument("grant_id")
@click.option("--reason", default=None)
def device_reject(owner, grant_id, reason):
    """Reject a claimed device authorization."""
    with _services() as app:
        app.device_flow.reject(grant_id, owner, reason=reason)
    click.echo(f"✓ Rejected: {grant_id}")


@device_group.command("poll")
@click.argument("device_code")
def device_poll(device_code):
    """Poll the token endpoint for a device code."""
    with _services() as app:
        response = app.oauth.token(
            {"grant_type": "urn:ietf:params:oauth:grant-type:device_code", "device_code": device_code}
        )
    _echo_json(response.body)
    if not response.ok:
        sys.exit(1)


# ── Webhooks ──────────────────────────────────────────────────────

@main.group("webhook")
def webhook_group():
    """Merchant webhook registrations."""
    pass


@webhook_group.command("register")
@click.option("--merchant", required=True, help="Merchant id")
@click.option("--url", required=True, help="Delivery URL")
@click.option(
    "--event", "events", multiple=True, default=tuple(sorted(VALID_WEBHOOK_EVENTS)),
    help="Event type; repeatable (default: all)",
)
@click.option("--secret", default=None, help="Signing secret (generated if omitted)")
def webhook_register(merchant, url, events, secret):
    """Register or replace the merchant's webhook."""
    with _services() as app:
        subscription, signing_secret = app.webhooks.register(merchant, url, _split(events), secret=secret)
    click.echo(f"✓ Webhook registered: {subscription.id}")
    click.echo(f"  Events: {', '.join(sorted(subscription.events))}")
    click.echo(f"  Secret: {signing_secret}")


@webhook_group.command("unregister")
@click.argument("merchant")
def webhook_unregister(merchant):
    """Remove the merchant's webhook."""
    with _services() as app:
        removed = app.webhooks.unregister(merchant)
    if not removed:
        _fail(f"No webhook registered for {merchant}")
    click.echo(f"✓ Webhook removed for {merchant}")


@webhook_group.command("logs")
@click.argument("merchant")
@click.option("--limit", type=int, default=20, show_default=True)
def webhook_logs(merchant, limit):
    """Show recent delivery attempts for the merchant's webhook."""
    with _services() as app:
        logs = app.webhooks.delivery_logs(merchant, limit=limit)
    if not logs:
        click.echo("No deliveries yet")
        return
    for log in logs:
        outcome = log.status_code if log.status_code is not None else log.error
        click.echo(f"{_when(log.attempted_at)}  {log.event_type:<22}  {outcome}  {log.duration_ms}ms")


if __name__ == "__main__":
    main()
