"""Payment orchestrator: state transitions, outcomes and post-authorization guards."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.core.exceptions import (
    BusinessDecline,
    GatewayClientError,
    GatewayServerError,
    OperationNotAllowed,
)
from app.core.state_machine import PaymentState as S
from app.schemas.mastercard import GatewaySession
from app.services.payment_orchestrator import PaymentFailure, PaymentSuccess, StepUpRequired
from gateway_stub import acs_result_body, enrollment_id_echo, order_body, txn_body

SESSION = GatewaySession(id="SESSION0001", version="v1")


# ──────────────────────────────────────────────────────────────────────
#  Hosted session, no 3DS
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scenario_1001_pay_without_step_up(orchestrator, gateway, make_order):
    order = make_order(order_id="1001", total="20.00", currency="EUR")
    gateway.add("PUT", "order/1001/transaction/1", (200, txn_body("1001", "1", "20.00", "EUR")))

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.states == [S.INIT, S.SUBMIT_PAYMENT, S.SUCCESS]
    assert order.status == "completed"
    assert order.is_captured is True
    assert order.transaction_id == "1"
    assert order.get_meta("payment_ref") == "1"
    assert gateway.paths() == ["order/1001/transaction/1"]
    assert gateway.calls[0].body["apiOperation"] == "PAY"


@pytest.mark.asyncio
async def test_authorize_mode_leaves_order_processing(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(capture=False)
    order = make_order()
    gateway.add(
        "PUT",
        "order/1001/transaction/1",
        (200, txn_body("1001", "1", "20.00", "EUR", order_status="AUTHORIZED", txn_type="AUTHORIZATION")),
    )

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentSuccess)
    assert gateway.calls[0].body["apiOperation"] == "AUTHORIZE"
    assert order.status == "processing"
    assert order.is_captured is False


@pytest.mark.asyncio
async def test_decline_fails_order_with_note(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add(
        "PUT",
        "order/1001/transaction/1",
        (200, txn_body("1001", "1", "20.00", "EUR", result="FAILURE", order_status="FAILED")),
    )

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentFailure)
    assert outcome.reason == "Payment was declined."
    assert outcome.states == [S.INIT, S.SUBMIT_PAYMENT, S.FAILED]
    assert order.status == "failed"
    assert order.failure_reason == "Payment was declined."
    assert order.notes[-1].body == "Mastercard payment failed: Payment was declined."


@pytest.mark.asyncio
async def test_amount_mismatch_in_pay_response_fails_order(orchestrator, gateway, make_order):
    order = make_order(total="20.00")
    gateway.add(
        "PUT",
        "order/1001/transaction/1",
        (200, txn_body("1001", "1", "2.00", "EUR", order_amount="2.00")),
    )

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentFailure)
    assert outcome.reason == "Amount does not match."
    assert order.status == "failed"
    assert order.is_captured is False


@pytest.mark.asyncio
async def test_attempt_counter_is_persisted_before_the_call_and_never_reused(
    orchestrator, gateway, make_order, store
):
    order = make_order()
    seen = []

    def respond(request: httpx.Request) -> httpx.Response:
        txn_ref = request.url.path.rsplit("/", 1)[1]
        seen.append((txn_ref, store.saved_meta[-1].get("txn_attempt")))
        result = "FAILURE" if txn_ref == "1" else "SUCCESS"
        return httpx.Response(200, json=txn_body("1001", txn_ref, "20.00", "EUR", result=result))

    gateway.add("PUT", "order/1001/transaction/*", respond)

    first = await orchestrator.start_hosted_session(order, SESSION)
    second = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(first, PaymentFailure)
    assert isinstance(second, PaymentSuccess)
    assert seen == [("1", 1), ("2", 2)]
    assert order.get_meta("txn_attempt") == 2


@pytest.mark.asyncio
async def test_already_paid_order_is_not_submitted_again(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"txn_attempt": 1, "payment_ref": "1"})

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.replayed is True
    assert gateway.calls == []
    assert order.get_meta("txn_attempt") == 1


@pytest.mark.asyncio
async def test_gateway_client_error_propagates_after_note(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add(
        "PUT",
        "order/1001/transaction/1",
        (400, {"error": {"cause": "INVALID_REQUEST", "explanation": "Session expired"}}),
    )

    with pytest.raises(GatewayClientError):
        await orchestrator.start_hosted_session(order, SESSION)

    assert order.status == "pending"
    assert order.notes[-1].body == "Mastercard gateway error: INVALID_REQUEST: Session expired"


# ──────────────────────────────────────────────────────────────────────
#  3-D Secure
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scenario_1002_enrollment_not_proceed_never_pays(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order(order_id="1002")
    gateway.add("PUT", "3DSecureId/3DS-*", enrollment_id_echo(redirect=False, recommendation="DO_NOT_PROCEED"))

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentFailure)
    assert outcome.states == [S.INIT, S.ENROLLMENT_CHECK, S.FAILED]
    assert order.status == "failed"
    assert gateway.transaction_calls("1002") == []


@pytest.mark.asyncio
async def test_not_enrolled_card_pays_with_three_ds_id(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order()
    gateway.add("PUT", "3DSecureId/3DS-*", enrollment_id_echo(redirect=False))
    gateway.add("PUT", "order/1001/transaction/1", (200, txn_body("1001", "1", "20.00", "EUR")))

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.states == [S.INIT, S.ENROLLMENT_CHECK, S.SUBMIT_PAYMENT, S.SUCCESS]
    enrollment_call, pay_call = gateway.calls
    assert enrollment_call.body["order"] == {"amount": "20.00", "currency": "EUR"}
    assert pay_call.body["3DSecureId"] == enrollment_call.path.split("/", 1)[1]


@pytest.mark.asyncio
async def test_enrolled_card_suspends_for_step_up(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order()
    gateway.add("PUT", "3DSecureId/3DS-*", enrollment_id_echo(redirect=True))

    outcome = await orchestrator.start_hosted_session(order, SESSION)

    assert isinstance(outcome, StepUpRequired)
    assert outcome.states == [S.INIT, S.ENROLLMENT_CHECK, S.AWAITING_STEPUP]
    assert outcome.redirect.method == "POST"
    assert outcome.redirect.url == "https://acs.issuer.example/pareq"
    assert outcome.redirect.fields["PaReq"] == "PAREQ-BLOB"

    term = urlparse(outcome.redirect.fields["TermUrl"])
    query = parse_qs(term.query)
    assert query["order_id"] == ["1001"]
    assert query["process_acs_result"] == ["1"]
    assert query["3DSecureId"] == [outcome.three_ds_id]
    assert query["session_id"] == ["SESSION0001"]

    assert order.get_meta("three_ds_id") == outcome.three_ds_id
    assert order.status == "pending"
    assert gateway.transaction_calls("1001") == []


@pytest.mark.asyncio
async def test_resumed_step_up_pays_with_authentication(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order(meta={"three_ds_id": "3DS-abc", "session_id": "SESSION0001", "session_version": "v1"})
    gateway.add("POST", "3DSecureId/3DS-abc", (200, acs_result_body("3DS-abc")))
    gateway.add("PUT", "order/1001/transaction/1", (200, txn_body("1001", "1", "20.00", "EUR")))

    outcome = await orchestrator.resume_step_up(order, "3DS-abc", "PARES-BLOB")

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.states == [S.AWAITING_STEPUP, S.STEPUP_RESULT, S.SUBMIT_PAYMENT, S.SUCCESS]
    pay_body = gateway.calls[-1].body
    assert pay_body["3DSecureId"] == "3DS-abc"
    assert pay_body["authentication"]["acsEci"] == "05"
    assert pay_body["session"] == {"id": "SESSION0001", "version": "v1"}
    assert order.get_meta("three_ds_id") is None
    assert order.status == "completed"


@pytest.mark.asyncio
async def test_step_up_result_not_proceed_never_pays(orchestrator_factory, gateway, make_order):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order(meta={"three_ds_id": "3DS-abc"})
    gateway.add("POST", "3DSecureId/3DS-abc", (200, acs_result_body("3DS-abc", recommendation="DO_NOT_PROCEED")))

    outcome = await orchestrator.resume_step_up(order, "3DS-abc", "PARES-BLOB", SESSION)

    assert isinstance(outcome, PaymentFailure)
    assert outcome.states == [S.AWAITING_STEPUP, S.STEPUP_RESULT, S.FAILED]
    assert gateway.transaction_calls("1001") == []


@pytest.mark.asyncio
async def test_forged_three_ds_id_is_rejected_without_remote_call(
    orchestrator_factory, gateway, make_order, alerts
):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order(meta={"three_ds_id": "3DS-abc"})

    outcome = await orchestrator.resume_step_up(order, "3DS-forged", "PARES-BLOB", SESSION)

    assert isinstance(outcome, PaymentFailure)
    assert outcome.states == [S.AWAITING_STEPUP, S.FAILED]
    assert gateway.calls == []
    assert len(alerts.alerts) == 1


@pytest.mark.asyncio
async def test_step_up_survives_gateway_outage_on_pay(orchestrator_factory, gateway, make_order, alerts):
    orchestrator = orchestrator_factory(threedsecure=True)
    order = make_order(meta={"three_ds_id": "3DS-abc", "session_id": "SESSION0001", "session_version": "v1"})
    gateway.add("POST", "3DSecureId/3DS-abc", (200, acs_result_body("3DS-abc")))
    gateway.add("PUT", "order/1001/transaction/1", (503, {"error": {"cause": "SERVER_BUSY"}}))
    gateway.add("PUT", "order/1001/transaction/2", (200, txn_body("1001", "2", "20.00", "EUR")))

    with pytest.raises(GatewayServerError):
        await orchestrator.resume_step_up(order, "3DS-abc", "PARES-BLOB")

    assert order.status == "pending"
    assert order.get_meta("three_ds_id") == "3DS-abc"

    outcome = await orchestrator.resume_step_up(order, "3DS-abc", "PARES-BLOB")

    assert isinstance(outcome, PaymentSuccess)
    assert order.get_meta("three_ds_id") is None
    assert order.transaction_id == "2"
    assert alerts.alerts == []


# ──────────────────────────────────────────────────────────────────────
#  Hosted checkout
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_begin_hosted_checkout_stores_success_indicator(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add(
        "POST",
        "session",
        (200, {"result": "SUCCESS", "session": {"id": "SESSION0002"}, "successIndicator": "ind-42"}),
    )

    checkout = await orchestrator.begin_hosted_checkout(order)

    assert checkout.session.id == "SESSION0002"
    assert order.get_meta("success_indicator") == "ind-42"
    interaction = gateway.calls[0].body["interaction"]
    assert interaction["operation"] == "PURCHASE"
    assert interaction["returnUrl"] == "https://shop.example/api/v1/mastercard/return?order_id=1001"


@pytest.mark.asyncio
@pytest.mark.parametrize("meta", [{"success_indicator": "ind-42"}, {}])
async def test_result_indicator_mismatch_fails_without_remote_call(
    orchestrator, gateway, make_order, alerts, meta
):
    order = make_order(meta=meta)

    outcome = await orchestrator.complete_hosted_checkout(order, "forged")

    assert isinstance(outcome, PaymentFailure)
    assert outcome.reason == "Result indicator mismatch"
    assert order.status == "failed"
    assert gateway.calls == []
    assert alerts.alerts[0]["title"] == "Mastercard result indicator mismatch"


@pytest.mark.asyncio
async def test_result_indicator_mismatch_does_not_fail_a_paid_order(orchestrator, gateway, make_order):
    order = make_order(status="completed", meta={"success_indicator": "ind-42", "captured": True})

    outcome = await orchestrator.complete_hosted_checkout(order, "forged")

    assert isinstance(outcome, PaymentFailure)
    assert order.status == "completed"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_non_ascii_result_indicator_is_a_mismatch(orchestrator, gateway, make_order, alerts):
    order = make_order(meta={"success_indicator": "ind-42"})

    outcome = await orchestrator.complete_hosted_checkout(order, "évil")

    assert isinstance(outcome, PaymentFailure)
    assert order.status == "failed"
    assert order.notes[-1].body == "Mastercard payment failed: Result indicator mismatch"
    assert gateway.calls == []
    assert len(alerts.alerts) == 1


@pytest.mark.asyncio
async def test_matching_result_indicator_reconciles_from_gateway(orchestrator, gateway, make_order):
    order = make_order(meta={"success_indicator": "ind-42"})
    gateway.add(
        "GET",
        "order/1001",
        (
            200,
            order_body(
                "1001", "20.00", "EUR", status="CAPTURED",
                transactions=[txn_body("1001", "8f1c", "20.00", "EUR")],
            ),
        ),
    )

    outcome = await orchestrator.complete_hosted_checkout(order, "ind-42")

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.states == [S.INIT, S.SUCCESS]
    assert order.status == "completed"
    assert order.transaction_id == "8f1c"
    assert order.get_meta("payment_ref") == "8f1c"
    assert gateway.paths() == ["order/1001"]


@pytest.mark.asyncio
async def test_hosted_checkout_reload_does_not_reapply(orchestrator, gateway, make_order):
    order = make_order(status="completed", meta={"success_indicator": "ind-42", "captured": True})

    outcome = await orchestrator.complete_hosted_checkout(order, "ind-42")

    assert isinstance(outcome, PaymentSuccess)
    assert outcome.replayed
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_hosted_checkout_amount_mismatch_alerts_and_fails(orchestrator, gateway, make_order, alerts):
    order = make_order(meta={"success_indicator": "ind-42"})
    gateway.add("GET", "order/1001", (200, order_body("1001", "0.01", "EUR", transactions=[])))

    outcome = await orchestrator.complete_hosted_checkout(order, "ind-42")

    assert isinstance(outcome, PaymentFailure)
    assert order.status == "failed"
    assert alerts.alerts[0]["title"] == "Mastercard amount/currency mismatch"


@pytest.mark.asyncio
async def test_hosted_checkout_gateway_result_failure(orchestrator, gateway, make_order):
    order = make_order(meta={"success_indicator": "ind-42"})
    gateway.add("GET", "order/1001", (200, order_body("1001", "20.00", "EUR", status="FAILED", result="FAILURE")))

    outcome = await orchestrator.complete_hosted_checkout(order, "ind-42")

    assert isinstance(outcome, PaymentFailure)
    assert outcome.reason == "Payment was declined."


# ──────────────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reconcile_order_marks_authorized_order_processing(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add(
        "GET",
        "order/1001",
        (
            200,
            order_body(
                "1001", "20.00", "EUR", status="AUTHORIZED",
                transactions=[txn_body("1001", "1", "20.00", "EUR", txn_type="AUTHORIZATION")],
            ),
        ),
    )

    outcome = await orchestrator.reconcile_order(order)

    assert isinstance(outcome, PaymentSuccess)
    assert order.status == "processing"
    assert order.get_meta("payment_ref") == "1"


@pytest.mark.asyncio
async def test_reconcile_order_notes_unreadable_gateway_order(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add("GET", "order/1001", (200, {"result": "SUCCESS", "id": "1001"}))

    outcome = await orchestrator.reconcile_order(order)

    assert isinstance(outcome, PaymentFailure)
    assert order.status == "pending"
    assert order.notes[-1].body == (
        "Mastercard notification: unreadable gateway order "
        "(Gateway response missing order amount), order left pending"
    )


@pytest.mark.asyncio
async def test_reconcile_order_notes_gateway_outage_and_reraises(orchestrator, gateway, make_order):
    order = make_order()
    gateway.add("GET", "order/1001", (503, {"error": {"cause": "SERVER_BUSY"}}))

    with pytest.raises(GatewayServerError):
        await orchestrator.reconcile_order(order)

    assert order.status == "pending"
    assert order.notes[-1].body.startswith("Mastercard gateway error: ")


# ──────────────────────────────────────────────────────────────────────
#  Post-authorization
# ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_capture_happens_at_most_once(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"payment_ref": "1", "captured": False})
    gateway.add(
        "PUT",
        "order/1001/transaction/capture-1",
        (200, txn_body("1001", "capture-1", "20.00", "EUR", txn_type="CAPTURE")),
    )

    txn = await orchestrator.capture(order)

    assert txn.id == "capture-1"
    assert order.is_captured
    assert order.status == "completed"
    assert order.get_meta("capture_ref") == "capture-1"
    assert order.notes[-1].body == "Mastercard payment CAPTURED (ID: capture-1, Auth Code: AUTH42)"

    with pytest.raises(OperationNotAllowed):
        await orchestrator.capture(order)
    assert len(gateway.calls_to("order/1001/transaction/capture-")) == 1


@pytest.mark.asyncio
async def test_capture_rejected_when_flag_already_set(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"payment_ref": "1", "captured": True})

    with pytest.raises(OperationNotAllowed, match="already captured"):
        await orchestrator.capture(order)

    assert gateway.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["pending", "failed", "completed"])
async def test_capture_requires_processing_status(orchestrator, gateway, make_order, status):
    order = make_order(status=status, meta={"payment_ref": "1"})

    with pytest.raises(OperationNotAllowed):
        await orchestrator.capture(order)

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_capture_decline_leaves_order_untouched(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"payment_ref": "1"})
    gateway.add(
        "PUT",
        "order/1001/transaction/capture-1",
        (200, txn_body("1001", "capture-1", "20.00", "EUR", result="FAILURE", order_status="AUTHORIZED")),
    )

    with pytest.raises(BusinessDecline):
        await orchestrator.capture(order)

    assert order.status == "processing"
    assert order.is_captured is False


@pytest.mark.asyncio
async def test_void_of_capture_7(orchestrator, gateway, make_order):
    order = make_order(
        order_id="1",
        status="completed",
        meta={"payment_ref": "7", "capture_ref": "capture-7", "captured": True},
    )
    gateway.add(
        "PUT",
        "order/1/transaction/void-capture-7",
        (200, txn_body("1", "void-capture-7", "20.00", "EUR", txn_type="VOID", order_status="AUTHORIZED")),
    )

    txn = await orchestrator.void(order)

    call = gateway.calls[0]
    assert call.path == "order/1/transaction/void-capture-7"
    assert call.body["transaction"]["targetTransactionId"] == "capture-7"
    assert call.body["transaction"]["reference"] == "void-capture-7"
    assert txn.id == "void-capture-7"
    assert order.status == "completed"
    assert order.is_captured is False
    assert order.get_meta("voided_refs") == ["capture-7"]

    with pytest.raises(OperationNotAllowed, match="already voided"):
        await orchestrator.void(order)
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_void_of_authorization_targets_payment_ref(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"payment_ref": "3"})
    gateway.add(
        "PUT",
        "order/1001/transaction/void-3",
        (200, txn_body("1001", "void-3", "20.00", "EUR", txn_type="VOID", order_status="CANCELLED")),
    )

    await orchestrator.void(order)

    assert gateway.calls[0].body["transaction"]["targetTransactionId"] == "3"


@pytest.mark.asyncio
async def test_refund_defaults_to_order_total(orchestrator, gateway, make_order):
    order = make_order(status="completed", meta={"payment_ref": "1", "captured": True})
    gateway.add(
        "PUT",
        "order/1001/transaction/refund-1",
        (200, txn_body("1001", "refund-1", "20.00", "EUR", txn_type="REFUND", order_status="REFUNDED")),
    )

    txn = await orchestrator.refund(order, reason="damaged")

    call = gateway.calls[0]
    assert call.body["transaction"] == {"amount": "20.00", "currency": "EUR", "reference": "refund-1"}
    assert txn.id == "refund-1"
    assert order.notes[-1].body == "Mastercard registered refund 20.00 EUR (ID: refund-1) Reason: damaged"

    with pytest.raises(OperationNotAllowed, match="already refunded"):
        await orchestrator.refund(order)
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_refund_may_not_exceed_total(orchestrator, gateway, make_order):
    order = make_order(status="completed", meta={"payment_ref": "1", "captured": True})

    with pytest.raises(OperationNotAllowed):
        await orchestrator.refund(order, amount="20.01")

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_refund_requires_captured_funds(orchestrator, gateway, make_order):
    order = make_order(status="processing", meta={"payment_ref": "1", "captured": False})

    with pytest.raises(OperationNotAllowed):
        await orchestrator.refund(order)

    assert gateway.calls == []
