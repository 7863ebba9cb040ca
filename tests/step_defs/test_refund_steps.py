from urllib.parse import parse_qsl

from pytest_bdd import given, parsers, scenarios, then, when

from tests.helpers.concurrency import send_concurrent_requests

scenarios("refunds.feature")


def _refund_url(pid):
    return f"/payments/{pid}/refund"


@given(parsers.parse('I request a refund for payment "{pid}"'))
@when(parsers.parse('I request a refund for payment "{pid}"'))
def request_refund(pid, client, context):
    context["response"] = client.post(_refund_url(pid))


@when(parsers.parse('I request a refund with reference "{token}" for payment "{pid}"'))
def request_refund_with_reference(pid, token, client, context):
    context["response"] = client.post(_refund_url(pid), json={"token": token})


@when(parsers.parse('I ask the store to check payment "{pid}" with the gateway'))
def check_with_gateway(pid, client, context):
    context["response"] = client.post(f"/payments/{pid}/verify")


@then(parsers.parse('the refund request should carry the amount "{amount}"'))
def check_refund_amount(amount, fake_gateway):
    assert fake_gateway.last_form["var3"] == amount, fake_gateway.last_form


@then(parsers.parse('the refund request should carry the reference "{token}"'))
def check_refund_reference(token, fake_gateway):
    assert fake_gateway.last_form["var2"] == token, fake_gateway.last_form


@given("the fake gateway recovers")
def gateway_recovers(fake_gateway):
    fake_gateway.timeout = False


@when(parsers.parse('{n:d} refund requests for payment "{pid}" arrive at once'))
def concurrent_refunds(n, pid, client, context):
    results = send_concurrent_requests(client=client, url=_refund_url(pid), n=n)
    context["responses"] = [r for r in results if not isinstance(r, Exception)]
    assert len(context["responses"]) == n, results


@then(parsers.parse("exactly {n:d} of the refund responses should have status {code:d}"))
def count_refund_statuses(n, code, context):
    codes = [r.status_code for r in context["responses"]]
    assert codes.count(code) == n, codes


@then(parsers.parse("the other refund responses should have status {code:d}"))
def check_other_refund_statuses(code, context):
    codes = sorted(r.status_code for r in context["responses"])
    assert codes == sorted([200] + [code] * (len(codes) - 1)), codes


@then(parsers.parse('every refund request should carry the reference "{token}"'))
def check_every_refund_reference(token, fake_gateway):
    tokens = [dict(parse_qsl(r.content.decode("utf-8")))["var2"] for r in fake_gateway.requests]
    assert tokens and all(t == token for t in tokens), tokens
