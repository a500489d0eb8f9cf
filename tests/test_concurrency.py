"""Races between concurrent callers sharing one database."""

from concurrent.futures import ThreadPoolExecutor

from agentpass.errors import AgentPassError, StateConflictError
from agentpass.models import DeviceGrantStatus, TransactionStatus
from agentpass.payments import PaymentApproved, StepUpRequired

from test_device_grant import insert_grant


def run_concurrently(fn, args):
    outcomes = []
    with ThreadPoolExecutor(max_workers=len(args)) as pool:
        futures = [pool.submit(fn, arg) for arg in args]
        for future in futures:
            try:
                outcomes.append(future.result())
            except AgentPassError as exc:
                outcomes.append(exc)
    return outcomes


def test_pairing_code_claimed_by_exactly_one_owner(app, clock):
    insert_grant(app, clock)
    owners = [f"owner-{n}" for n in range(8)]
    outcomes = run_concurrently(lambda owner: app.device_flow.claim("PFX-ABCDEF-GH2345", owner), owners)

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(winners) == 1
    assert all(isinstance(o, StateConflictError) for o in outcomes if o not in winners)
    grant = app.store.get_device_grant("device-code-1")
    assert grant.status == DeviceGrantStatus.PENDING
    assert grant.user_id == winners[0].user_id


def test_step_up_approved_once(app, make_agent):
    agent, _ = make_agent()
    app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
    outcome = app.payments.request_credential(agent, "75", merchant_id="m-1")
    assert isinstance(outcome, StepUpRequired)

    outcomes = run_concurrently(lambda _: app.step_ups.approve(outcome.step_up_id, agent.owner_id), range(6))

    approved = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(approved) == 1
    assert len(app.store.list_transactions(agent.id)) == 1



def test_transaction_completed_once(app, make_agent):
    agent, _ = make_agent()
    app.payments.add_payment_method(agent.owner_id, "Visa 4242", is_default=True)
    outcome = app.payments.request_credential(agent, "40", merchant_id="m-1")
    assert isinstance(outcome, PaymentApproved)

    outcomes = run_concurrently(lambda _: app.payments.complete_transaction(agent, outcome.transaction_id), range(6))

    completed = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(completed) == 1
    assert all(isinstance(o, StateConflictError) for o in outcomes if o not in completed)
    assert app.store.get_transaction(outcome.transaction_id).status == TransactionStatus.COMPLETED
    assert app.payments.remaining_limits(agent).daily_cents == 16000
