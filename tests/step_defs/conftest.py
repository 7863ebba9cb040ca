"""Shared BDD step definitions for all feature files.

Step definitions live here (not in common_steps.py) because pytest-bdd
registers step fixtures in the caller module's locals. Only conftest.py
modules are auto-discovered by pytest, so shared steps MUST be defined
here for pytest-bdd to find them across all test files in this directory.

All parametric steps use parsers.parse(); plain strings match exactly.
"""
from decimal import Decimal

import pytest
from pytest_bdd import given, parsers, then, when

from storefront.models import CallbackEvent, Payment
from tests.fixtures.merchant import REFERENCE_PAYMENT_ID
from tests.step_defs.common_steps import _post_signed_callback


@pytest.fixture
def context():
    return {}


# ── Given ──────────────────────────────────────────────────────────────────────

@given(parsers.parse('a payment "{pid}" exists in "{status}" status'))
def create_payment(pid, status, db_session):
    gateway_payment_id = REFERENCE_PAYMENT_ID if status in ("completed", "refunded") else None
    existing = db_session.get(Payment, pid)
    if existing:
        existing.status = status
        existing.gateway_payment_id = gateway_payment_id
        db_session.commit()
        return existing
    payment = Payment(
        id=pid,
        amount=Decimal("100.00"),
        product_info="Test Product",
        buyer_name="John",
        buyer_email="john@example.com",
        buyer_phone="9999999999",
        status=status,
        gateway_payment_id=gateway_payment_id,
    )
    db_session.add(payment)
    db_session.commit()
    return payment


@given("the fake gateway times out")
def gateway_times_out(fake_gateway):
    fake_gateway.timeout = True


@given(parsers.parse("the fake gateway answers with status {code:d}"))
def gateway_answers_with_status(code, fake_gateway):
    fake_gateway.status_code = code
    fake_gateway.body = {"status": 0, "msg": "Service unavailable"}


@given("the fake gateway answers with a non-JSON body")
def gateway_answers_with_html(fake_gateway):
    fake_gateway.body = "<html>maintenance</html>"


@given("the fake gateway declines the request")
def gateway_declines(fake_gateway):
    fake_gateway.body = {"status": 0, "msg": "Refund failed"}


@given("the fake gateway answers with a JSON list")
def gateway_answers_with_list(fake_gateway):
    fake_gateway.body = [{"status": 1}]


@given("the fake gateway answers slowly")
def gateway_answers_slowly(fake_gateway):
    fake_gateway.delay = 0.3


# ── When ───────────────────────────────────────────────────────────────────────

@when(parsers.parse('the gateway posts a signed "{status}" callback for payment "{pid}"'))
def post_signed_callback(status, pid, client, context):
    response = _post_signed_callback(client, status, pid)
    context["response"] = response
    context.setdefault("responses", []).append(response)


# ── Then ───────────────────────────────────────────────────────────────────────

@then(parsers.parse("the response status should be {code:d}"))
def check_status_code(code, context):
    assert context["response"].status_code == code, (
        f"Expected {code}, got {context['response'].status_code}: "
        f"{context['response'].text}"
    )


@then(parsers.parse('the response error should be "{expected}"'))
def check_response_error(expected, context):
    body = context["response"].json()
    assert body.get("error") == expected, f"Expected error {expected!r} in body: {body}"


@then(parsers.parse('the response field "{name}" should be "{expected}"'))
def check_response_field(name, expected, context):
    body = context["response"].json()
    assert str(body.get(name)) == expected, (
        f"Expected {name}={expected!r}, got {body.get(name)!r}"
    )


@then("the response body should indicate it was an idempotent response")
def check_idempotent_flag(context):
    body = context["response"].json()
    assert body.get("idempotent") is True, f"Expected idempotent=true in body: {body}"


@then(parsers.parse('the payment "{pid}" status should be "{expected}"'))
def check_payment_status(pid, expected, db_session):
    db_session.expire_all()
    payment = db_session.get(Payment, pid)
    assert payment is not None, f"Payment {pid!r} not found"
    assert payment.status == expected, (
        f"Expected status {expected!r}, got {payment.status!r}"
    )


@then(parsers.parse('there should be exactly {n:d} callback events for payment "{pid}"'))
def count_callback_events(n, pid, db_session):
    db_session.expire_all()
    events = db_session.query(CallbackEvent).filter(CallbackEvent.txnid == pid).all()
    assert len(events) == n, f"Expected {n} events for {pid!r}, found {len(events)}"


@then(parsers.parse(
    'the callback event for payment "{pid}" should have processing_status "{status}"'
))
def check_event_status(pid, status, db_session):
    db_session.expire_all()
    event = db_session.query(CallbackEvent).filter(CallbackEvent.txnid == pid).one()
    assert event.processing_status == status, (
        f"Expected processing_status={status!r}, got {event.processing_status!r}"
    )


@then("all responses should have a 2xx status")
def all_responses_2xx(context):
    for resp in context.get("responses", []):
        assert 200 <= resp.status_code < 300, (
            f"Got non-2xx: {resp.status_code}: {resp.text}"
        )


@then(parsers.parse('the fake gateway should have received command "{command}" for "{var1}"'))
def check_gateway_command(command, var1, fake_gateway):
    form = fake_gateway.last_form
    assert form["command"] == command, f"Expected command {command!r}, got {form!r}"
    assert form["var1"] == var1, f"Expected var1 {var1!r}, got {form['var1']!r}"


@then("the fake gateway should not have been called")
def check_gateway_not_called(fake_gateway):
    assert fake_gateway.requests == [], f"Gateway was called {len(fake_gateway.requests)} times"


@then("the fake gateway should have been called exactly once")
def check_gateway_called_once(fake_gateway):
    assert len(fake_gateway.requests) == 1, f"Gateway was called {len(fake_gateway.requests)} times"
