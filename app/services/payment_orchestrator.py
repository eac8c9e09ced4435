"""
Payment orchestration state machine.

Drives one payment attempt per invocation:

    INIT ─► SUBMIT_PAYMENT ─► SUCCESS | FAILED                 (3DS disabled)
    INIT ─► ENROLLMENT_CHECK ─► SUBMIT_PAYMENT ─► ...          (card not enrolled)
    INIT ─► ENROLLMENT_CHECK ─► AWAITING_STEPUP                (suspend, redirect to ACS)
    AWAITING_STEPUP ─► STEPUP_RESULT ─► SUBMIT_PAYMENT ─► ...  (resumed on return)

Hosted checkout is a separate path: the gateway's own page takes the card,
the browser comes back with a result indicator which must equal the success
indicator stored when the checkout session was created. Only then is the
gateway asked for the authoritative order.

Suspension state (3DS id, session, attempt counter, success indicator) is
persisted on the order between invocations. Business failures become a
PaymentFailure outcome; transport failures propagate after an order note.
"""

import hmac
import logging
from decimal import Decimal
from typing import Any, List, Optional, Protocol, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict

from app.core.config import GatewayConfig
from app.core.exceptions import (
    BusinessDecline,
    ExternalServiceError,
    GatewayClientError,
    GatewayServerError,
    OperationNotAllowed,
    ResponseShapeError,
    ValidationMismatch,
)
from app.core.state_machine import PaymentState, validate_transition
from app.models.order import (
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PROCESSING,
    Order,
)
from app.schemas.mastercard import (
    RESULT_SUCCESS,
    CheckoutSession,
    GatewaySession,
    GatewayTransaction,
    StepUpRedirect,
    ThreeDSecureContext,
    TransactionDeclined,
)
from app.services.checkout_builder import CheckoutBuilder
from app.services.mastercard_service import MastercardGatewayService
from app.services.reconciliation import (
    META_CAPTURE_REF,
    META_CAPTURED,
    META_PAYMENT_REF,
    META_REFUNDED_REFS,
    META_SESSION_ID,
    META_SESSION_VERSION,
    META_SUCCESS_INDICATOR,
    META_THREE_DS_ID,
    META_VOIDED_REFS,
    allocate_attempt,
    apply_payment,
    capture_reference,
    format_amount,
    to_fixed_point,
)

logger = logging.getLogger(__name__)

TAMPER_MESSAGE = "Result indicator mismatch"


class OrderStore(Protocol):
    async def get(self, order_id: str) -> Optional[Order]: ...

    async def save(self, order: Order) -> None: ...


class AlertSink(Protocol):
    async def send_critical_alert(
        self, title: str, alert: str, platform: Optional[str] = None
    ) -> Any: ...


# ──────────────────────────────────────────────────────────────────────
#  Outcomes
# ──────────────────────────────────────────────────────────────────────


class PaymentSuccess(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    order: Order
    states: List[PaymentState]
    replayed: bool = False


class PaymentFailure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    order: Order
    reason: str
    states: List[PaymentState]


class StepUpRequired(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    order: Order
    redirect: StepUpRedirect
    three_ds_id: str
    states: List[PaymentState]


PaymentOutcome = Union[PaymentSuccess, PaymentFailure, StepUpRequired]


class _Run:
    """Transition log for one invocation."""

    def __init__(self, start: PaymentState = PaymentState.INIT):
        self.current = start
        self.history: List[PaymentState] = [start]

    def move(self, new: PaymentState) -> None:
        validate_transition(self.current, new)
        self.current = new
        self.history.append(new)


class PaymentOrchestrator:
    def __init__(
        self,
        config: GatewayConfig,
        client: MastercardGatewayService,
        orders: OrderStore,
        alerts: Optional[AlertSink] = None,
    ):
        self.config = config
        self.client = client
        self.orders = orders
        self.alerts = alerts

    # ──────────────────────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────────────────────

    def return_url(self, order_id: str, **params: str) -> str:
        query = urlencode({"order_id": order_id, **params})
        separator = "&" if "?" in self.config.return_url else "?"
        return f"{self.config.return_url}{separator}{query}"

    def _replayed(self, order: Order) -> PaymentSuccess:
        logger.info(
            f"[mastercard] order {order.id} already {order.status}, skipping payment submission"
        )
        return PaymentSuccess(order=order, states=[PaymentState.INIT], replayed=True)

    async def _fail(self, order: Order, run: _Run, reason: str) -> PaymentFailure:
        run.move(PaymentState.FAILED)
        order.status = ORDER_STATUS_FAILED
        order.failure_reason = reason
        order.add_note(f"Mastercard payment failed: {reason}")
        await self.orders.save(order)
        logger.warning(
            f"[mastercard] order {order.id} failed: {reason} "
            f"(states: {' -> '.join(s.value for s in run.history)})"
        )
        return PaymentFailure(order=order, reason=reason, states=run.history)

    async def _note_gateway_error(self, order: Order, e: ExternalServiceError) -> None:
        order.add_note(f"Mastercard gateway error: {e.message}")
        await self.orders.save(order)
        logger.error(f"[mastercard] gateway error for order {order.id}: {e.error_code} {e.message}")

    async def _alert(self, title: str, alert: str) -> None:
        if self.alerts is None:
            return
        try:
            await self.alerts.send_critical_alert(title=title, alert=alert, platform="mastercard")
        except ExternalServiceError as e:
            logger.error(f"[mastercard] failed to send alert '{title}': {e.message}")

    # ──────────────────────────────────────────────────────────────
    # Hosted session + 3-D Secure
    # ──────────────────────────────────────────────────────────────

    async def create_hosted_session(self, order: Order) -> GatewaySession:
        """Create a session for card collection and attach the order data to it."""
        if order.is_paid:
            raise OperationNotAllowed(
                "Order is already paid.", details={"order_id": order.id, "status": order.status}
            )
        builder = CheckoutBuilder(order)
        session = await self.client.create_session()
        session = await self.client.update_session(
            session.id,
            order=builder.get_hosted_checkout_order(),
            customer=builder.get_customer() or None,
            billing=builder.get_billing() or None,
        )
        order.set_meta(META_SESSION_ID, session.id)
        order.set_meta(META_SESSION_VERSION, session.version)
        await self.orders.save(order)
        return session

    async def start_hosted_session(self, order: Order, session: GatewaySession) -> PaymentOutcome:
        """Entry point once the browser has tokenized the card into ``session``."""
        if order.is_paid:
            return self._replayed(order)

        run = _Run()
        try:
            if not self.config.threedsecure:
                run.move(PaymentState.SUBMIT_PAYMENT)
                return await self._submit(order, run, session)

            run.move(PaymentState.ENROLLMENT_CHECK)
            builder = CheckoutBuilder(order)
            data = {
                "authenticationRedirect": {
                    "pageGenerationMode": "CUSTOMIZED",
                    "responseUrl": self.return_url(order.id, status="3ds_done"),
                }
            }
            enrollment = await self.client.check_enrollment(
                data, builder.get_order(), GatewaySession(id=session.id)
            )
            if not enrollment.proceed:
                raise BusinessDecline(details={"recommendation": enrollment.recommendation})

            if enrollment.redirect is None:
                run.move(PaymentState.SUBMIT_PAYMENT)
                return await self._submit(
                    order, run, session, three_ds=ThreeDSecureContext(id=enrollment.three_ds_id)
                )

            run.move(PaymentState.AWAITING_STEPUP)
            order.set_meta(META_THREE_DS_ID, enrollment.three_ds_id)
            order.set_meta(META_SESSION_ID, session.id)
            order.set_meta(META_SESSION_VERSION, session.version)
            await self.orders.save(order)

            term_url = self.return_url(
                order.id,
                **{
                    "3DSecureId": enrollment.three_ds_id,
                    "process_acs_result": "1",
                    "session_id": session.id,
                    "session_version": session.version or "",
                },
            )
            redirect = enrollment.redirect.model_copy(
                update={"fields": {**enrollment.redirect.fields, "TermUrl": term_url, "MD": ""}}
            )
            logger.info(
                f"[mastercard] order {order.id} awaiting 3DS step-up ({enrollment.three_ds_id})"
            )
            return StepUpRequired(
                order=order,
                redirect=redirect,
                three_ds_id=enrollment.three_ds_id,
                states=run.history,
            )
        except (BusinessDecline, ValidationMismatch, ResponseShapeError) as e:
            return await self._fail(order, run, e.message)
        except (GatewayClientError, GatewayServerError) as e:
            await self._note_gateway_error(order, e)
            raise

    async def resume_step_up(
        self,
        order: Order,
        three_ds_id: str,
        pa_res: str,
        session: Optional[GatewaySession] = None,
    ) -> PaymentOutcome:
        """Re-enter at AWAITING_STEPUP with the ACS response posted by the browser."""
        if order.is_paid:
            return self._replayed(order)

        run = _Run(PaymentState.AWAITING_STEPUP)
        try:
            stored_id = order.get_meta(META_THREE_DS_ID)
            if not stored_id or stored_id != three_ds_id:
                await self._alert(
                    "Mastercard 3DS context mismatch",
                    f"Order *{order.id}* returned 3DS id `{three_ds_id}` "
                    f"but `{stored_id}` was pending.",
                )
                raise ValidationMismatch(
                    "3-D Secure context mismatch.",
                    details={"order_id": order.id, "received": three_ds_id},
                )

            run.move(PaymentState.STEPUP_RESULT)
            result = await self.client.process_step_up_result(stored_id, pa_res)
            if not result.proceed:
                order.pop_meta(META_THREE_DS_ID)
                raise BusinessDecline(details={"recommendation": result.recommendation})

            if session is None and order.get_meta(META_SESSION_ID):
                session = GatewaySession(
                    id=order.get_meta(META_SESSION_ID),
                    version=order.get_meta(META_SESSION_VERSION),
                )

            run.move(PaymentState.SUBMIT_PAYMENT)
            return await self._submit(order, run, session, three_ds=result.context)
        except (BusinessDecline, ValidationMismatch, ResponseShapeError) as e:
            return await self._fail(order, run, e.message)
        except (GatewayClientError, GatewayServerError) as e:
            await self._note_gateway_error(order, e)
            raise

    async def _submit(
        self,
        order: Order,
        run: _Run,
        session: Optional[GatewaySession],
        three_ds: Optional[ThreeDSecureContext] = None,
    ) -> PaymentSuccess:
        txn_ref = allocate_attempt(order)
        # counter must be durable before the gateway sees the reference
        await self.orders.save(order)

        builder = CheckoutBuilder(order)
        submit = self.client.pay if self.config.capture else self.client.authorize
        result = await submit(
            txn_ref,
            order.id,
            builder.get_order(),
            three_ds=three_ds,
            session=session,
            customer=builder.get_customer() or None,
            billing=builder.get_billing() or None,
        )
        if three_ds is not None:
            # the 3DS record is good for one answered payment call only
            order.pop_meta(META_THREE_DS_ID)

        if isinstance(result, TransactionDeclined):
            raise BusinessDecline(
                details={"result": result.result, "gateway_code": result.gateway_code}
            )

        apply_payment(order, result.order, result.transaction)
        order.set_meta(META_PAYMENT_REF, txn_ref)
        run.move(PaymentState.SUCCESS)
        await self.orders.save(order)
        return PaymentSuccess(order=order, states=run.history)

    # ──────────────────────────────────────────────────────────────
    # Hosted checkout
    # ──────────────────────────────────────────────────────────────

    async def begin_hosted_checkout(self, order: Order) -> CheckoutSession:
        if order.is_paid:
            raise OperationNotAllowed(
                "Order is already paid.", details={"order_id": order.id, "status": order.status}
            )
        builder = CheckoutBuilder(order)
        checkout = await self.client.create_checkout_session(
            builder.get_hosted_checkout_order(),
            builder.get_interaction(
                self.config.capture, self.return_url(order.id), self.config.merchant_name
            ),
            customer=builder.get_customer() or None,
            billing=builder.get_billing() or None,
        )
        order.set_meta(META_SUCCESS_INDICATOR, checkout.success_indicator)
        await self.orders.save(order)
        return checkout

    async def complete_hosted_checkout(
        self, order: Order, result_indicator: Optional[str]
    ) -> PaymentOutcome:
        """
        Handle the browser return from hosted checkout. The result indicator
        is never proof of payment by itself: it only unlocks a retrieve_order.
        """
        run = _Run()
        stored = order.get_meta(META_SUCCESS_INDICATOR)
        if not stored or not hmac.compare_digest(
            str(stored).encode(), str(result_indicator or "").encode()
        ):
            await self._alert(
                "Mastercard result indicator mismatch",
                f"Order *{order.id}* returned from hosted checkout with a result "
                f"indicator that does not match the stored success indicator.",
            )
            if order.is_paid:
                order.add_note(f"Mastercard return rejected: {TAMPER_MESSAGE}")
                await self.orders.save(order)
                run.move(PaymentState.FAILED)
                return PaymentFailure(order=order, reason=TAMPER_MESSAGE, states=run.history)
            return await self._fail(order, run, TAMPER_MESSAGE)

        if order.is_paid:
            return self._replayed(order)

        try:
            gateway_order = await self.client.retrieve_order(order.id)
            if gateway_order.result != RESULT_SUCCESS:
                raise BusinessDecline(details={"result": gateway_order.result})

            txn = gateway_order.settlement_transaction()
            apply_payment(order, gateway_order, txn)
            if txn is not None:
                order.set_meta(META_PAYMENT_REF, txn.id)
            run.move(PaymentState.SUCCESS)
            await self.orders.save(order)
            return PaymentSuccess(order=order, states=run.history)
        except ValidationMismatch as e:
            await self._alert(
                "Mastercard amount/currency mismatch",
                f"Order *{order.id}*: {e.message} {e.details}",
            )
            return await self._fail(order, run, e.message)
        except (BusinessDecline, ResponseShapeError) as e:
            return await self._fail(order, run, e.message)
        except (GatewayClientError, GatewayServerError) as e:
            await self._note_gateway_error(order, e)
            raise

    async def reconcile_order(self, order: Order) -> PaymentOutcome:
        """
        Bring the local order in line with the gateway's view of it, used
        when a notification arrives independently of the browser return.
        """
        run = _Run()
        if order.status == ORDER_STATUS_COMPLETED:
            return self._replayed(order)

        try:
            gateway_order = await self.client.retrieve_order(order.id)
        except ResponseShapeError as e:
            order.add_note(
                f"Mastercard notification: unreadable gateway order ({e.message}), "
                f"order left {order.status}"
            )
            await self.orders.save(order)
            run.move(PaymentState.FAILED)
            return PaymentFailure(order=order, reason=e.message, states=run.history)
        except (GatewayClientError, GatewayServerError) as e:
            await self._note_gateway_error(order, e)
            raise

        if gateway_order.result != RESULT_SUCCESS or not gateway_order.is_paid:
            order.add_note(
                f"Mastercard notification: gateway order {gateway_order.status or '-'} "
                f"(result {gateway_order.result or '-'}), order left {order.status}"
            )
            await self.orders.save(order)
            run.move(PaymentState.FAILED)
            return PaymentFailure(
                order=order,
                reason=f"Gateway order not paid ({gateway_order.status})",
                states=run.history,
            )

        try:
            txn = gateway_order.settlement_transaction()
            apply_payment(order, gateway_order, txn)
        except ValidationMismatch as e:
            await self._alert(
                "Mastercard amount/currency mismatch",
                f"Order *{order.id}*: {e.message} {e.details}",
            )
            return await self._fail(order, run, e.message)

        if txn is not None and not order.get_meta(META_PAYMENT_REF):
            order.set_meta(META_PAYMENT_REF, txn.id)
        run.move(PaymentState.SUCCESS)
        await self.orders.save(order)
        return PaymentSuccess(order=order, states=run.history)

    # ──────────────────────────────────────────────────────────────
    # Post-authorization
    # ──────────────────────────────────────────────────────────────

    def _payment_ref(self, order: Order) -> str:
        ref = order.get_meta(META_PAYMENT_REF) or order.transaction_id
        if not ref:
            raise OperationNotAllowed(
                "Order has no gateway transaction.", details={"order_id": order.id}
            )
        return str(ref)

    async def capture(self, order: Order) -> GatewayTransaction:
        if order.status != ORDER_STATUS_PROCESSING:
            raise OperationNotAllowed(
                "Wrong order status, must be 'processing'",
                details={"order_id": order.id, "status": order.status},
            )
        if order.is_captured:
            raise OperationNotAllowed("Order already captured", details={"order_id": order.id})

        payment_ref = self._payment_ref(order)
        try:
            result = await self.client.capture_transaction(
                order.id, payment_ref, order.total, order.currency
            )
        except ExternalServiceError as e:
            await self._note_gateway_error(order, e)
            raise

        if isinstance(result, TransactionDeclined):
            order.add_note(f"Mastercard capture declined ({result.result})")
            await self.orders.save(order)
            raise BusinessDecline(
                "Capture was declined.", details={"result": result.result, "order_id": order.id}
            )

        txn = result.transaction
        order.set_meta(META_CAPTURED, True)
        order.set_meta(META_CAPTURE_REF, capture_reference(payment_ref))
        order.status = ORDER_STATUS_COMPLETED
        order.add_note(
            f"Mastercard payment CAPTURED (ID: {txn.id}, Auth Code: {txn.authorization_code or '-'})"
        )
        await self.orders.save(order)
        logger.info(f"[mastercard] order {order.id} captured ({txn.id})")
        return txn

    async def void(self, order: Order) -> GatewayTransaction:
        target = order.get_meta(META_CAPTURE_REF) or self._payment_ref(order)
        voided = list(order.get_meta(META_VOIDED_REFS) or [])
        if target in voided:
            raise OperationNotAllowed(
                "Transaction already voided", details={"order_id": order.id, "target": target}
            )

        try:
            result = await self.client.void_transaction(order.id, target)
        except ExternalServiceError as e:
            await self._note_gateway_error(order, e)
            raise

        if isinstance(result, TransactionDeclined):
            order.add_note(f"Mastercard void of {target} declined ({result.result})")
            await self.orders.save(order)
            raise BusinessDecline(
                "Void was declined.", details={"result": result.result, "target": target}
            )

        txn = result.transaction
        order.set_meta(META_VOIDED_REFS, voided + [target])
        if target == order.get_meta(META_CAPTURE_REF):
            order.set_meta(META_CAPTURED, False)
        order.add_note(f"Mastercard voided transaction {target} (ID: {txn.id})")
        await self.orders.save(order)
        logger.info(f"[mastercard] order {order.id} voided {target} ({txn.id})")
        return txn

    async def refund(
        self, order: Order, amount: Optional[Decimal] = None, reason: str = ""
    ) -> GatewayTransaction:
        if not order.is_paid:
            raise OperationNotAllowed(
                "Order is not paid.", details={"order_id": order.id, "status": order.status}
            )
        if not order.is_captured:
            raise OperationNotAllowed(
                "Order has no captured funds to refund.", details={"order_id": order.id}
            )

        target = order.get_meta(META_CAPTURE_REF) or self._payment_ref(order)
        refunded = list(order.get_meta(META_REFUNDED_REFS) or [])
        if target in refunded:
            raise OperationNotAllowed(
                "Transaction already refunded", details={"order_id": order.id, "target": target}
            )

        total = to_fixed_point(order.total)
        refund_amount = to_fixed_point(amount) if amount is not None else total
        if refund_amount <= 0 or refund_amount > total:
            raise OperationNotAllowed(
                "Refund amount must be positive and may not exceed the order total.",
                details={"amount": str(refund_amount), "total": str(total)},
            )

        try:
            result = await self.client.refund(order.id, target, refund_amount, order.currency)
        except ExternalServiceError as e:
            await self._note_gateway_error(order, e)
            raise

        if isinstance(result, TransactionDeclined):
            order.add_note(f"Mastercard refund of {target} declined ({result.result})")
            await self.orders.save(order)
            raise BusinessDecline(
                "Refund was declined.", details={"result": result.result, "target": target}
            )

        txn = result.transaction
        order.set_meta(META_REFUNDED_REFS, refunded + [target])
        refunded_amount = format_amount(txn.amount if txn.amount is not None else refund_amount)
        note = (
            f"Mastercard registered refund {refunded_amount} "
            f"{txn.currency or order.currency} (ID: {txn.id})"
        )
        if reason:
            note += f" Reason: {reason}"
        order.add_note(note)
        await self.orders.save(order)
        logger.info(f"[mastercard] order {order.id} refunded {refund_amount} against {target}")
        return txn
