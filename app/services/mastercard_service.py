"""
Mastercard Payment Gateway Services (MPGS) API client.

Builds authenticated REST requests against the gateway, classifies the
responses into typed results and translates HTTP / transport failures into
the gateway error taxonomy (see app.core.exceptions). No business logic
lives here: whether a decline fails an order is the orchestrator's call.

All order/transaction mutations are PUTs addressed by a caller-chosen
reference, so re-sending the same request is safe. Retries re-send the
exact same URL and body and never mint a new reference.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import GatewayConfig
from app.core.exceptions import (
    GatewayClientError,
    GatewayServerError,
    ResponseShapeError,
)
from app.core.logging import correlation_id_ctx, redact
from app.schemas.mastercard import (
    RESULT_SUCCESS,
    CheckoutSession,
    EnrollmentResult,
    GatewayOrder,
    GatewaySession,
    GatewayTransaction,
    StepUpRedirect,
    StepUpResult,
    ThreeDSecureContext,
    TransactionApproved,
    TransactionDeclined,
    TransactionResult,
)
from app.services.reconciliation import (
    capture_reference,
    format_amount,
    refund_reference,
    void_reference,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════
# Constants
# ══════════════════════════════════════════════════════════════════════

API_OPERATION_AUTHORIZE = "AUTHORIZE"
API_OPERATION_PAY = "PAY"
API_OPERATION_CAPTURE = "CAPTURE"
API_OPERATION_REFUND = "REFUND"
API_OPERATION_VOID = "VOID"
API_OPERATION_CHECK_3DS = "CHECK_3DS_ENROLLMENT"
API_OPERATION_PROCESS_ACS = "PROCESS_ACS_RESULT"
API_OPERATION_CHECKOUT_SESSION = "CREATE_CHECKOUT_SESSION"

TRANSACTION_SOURCE = "INTERNET"

CONTENT_TYPE = "application/json;charset=UTF-8"


# ══════════════════════════════════════════════════════════════════════
# Pure helper functions
# ══════════════════════════════════════════════════════════════════════


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        # via str() so 49.99 stays 49.99 instead of a binary float expansion
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _require(data: Dict[str, Any], *path: str, what: str) -> Any:
    """Walk a nested dict and raise ResponseShapeError if the leaf is missing."""
    node: Any = data
    for key in path:
        if not isinstance(node, dict) or node.get(key) in (None, ""):
            raise ResponseShapeError(
                f"Gateway response missing {what}",
                details={"field": ".".join(path)},
            )
        node = node[key]
    return node


def _parse_session(data: Dict[str, Any], require_result: bool) -> GatewaySession:
    if require_result and data.get("result") != RESULT_SUCCESS:
        raise ResponseShapeError(
            "Missing or invalid session result.",
            details={"result": data.get("result")},
        )
    session_id = _require(data, "session", "id", what="session or ID")
    return GatewaySession(
        id=str(session_id),
        version=_as_str(data["session"].get("version")),
    )


def _parse_transaction(data: Dict[str, Any]) -> GatewayTransaction:
    """Parse one transaction entry ({result, transaction, response})."""
    txn = data.get("transaction")
    if not isinstance(txn, dict) or txn.get("id") in (None, ""):
        raise ResponseShapeError(
            "Gateway response missing transaction ID",
            details={"field": "transaction.id"},
        )
    response = data.get("response") if isinstance(data.get("response"), dict) else {}
    return GatewayTransaction(
        id=str(txn["id"]),
        type=_as_str(txn.get("type")),
        result=_as_str(data.get("result")),
        amount=_as_decimal(txn.get("amount")),
        currency=_as_str(txn.get("currency")),
        authorization_code=_as_str(txn.get("authorizationCode")),
        reference=_as_str(txn.get("reference")),
        gateway_code=_as_str(response.get("gatewayCode")),
    )


def _parse_order(
    data: Dict[str, Any],
    transactions: tuple = (),
) -> GatewayOrder:
    order_id = _require(data, "id", what="order ID")
    amount = _as_decimal(_require(data, "amount", what="order amount"))
    if amount is None:
        raise ResponseShapeError(
            "Gateway order amount is not numeric",
            details={"amount": data.get("amount")},
        )
    currency = _require(data, "currency", what="order currency")
    return GatewayOrder(
        id=str(order_id),
        amount=amount,
        currency=str(currency),
        status=_as_str(data.get("status")),
        result=_as_str(data.get("result")),
        transactions=transactions,
    )


def _parse_transaction_result(data: Dict[str, Any]) -> TransactionResult:
    """Tag a transaction response as approved or declined."""
    result = data.get("result")
    if not result:
        raise ResponseShapeError("Gateway response missing result", details={"field": "result"})

    if result != RESULT_SUCCESS:
        txn = _parse_transaction(data) if isinstance(data.get("transaction"), dict) else None
        order = None
        if isinstance(data.get("order"), dict):
            try:
                order = _parse_order(data["order"])
            except ResponseShapeError:
                order = None
        response = data.get("response") if isinstance(data.get("response"), dict) else {}
        return TransactionDeclined(
            result=str(result),
            transaction=txn,
            order=order,
            gateway_code=_as_str(response.get("gatewayCode")),
        )

    txn = _parse_transaction(data)
    order_data = data.get("order")
    if not isinstance(order_data, dict):
        raise ResponseShapeError("Gateway response missing order", details={"field": "order"})
    return TransactionApproved(
        transaction=txn,
        order=_parse_order(order_data, transactions=(txn,)),
    )


def _error_message(data: Dict[str, Any]) -> tuple[str, Optional[str], Optional[str]]:
    error = data.get("error") if isinstance(data.get("error"), dict) else {}
    cause = _as_str(error.get("cause"))
    explanation = _as_str(error.get("explanation"))
    msg = ""
    if cause:
        msg += f"{cause}: "
    if explanation:
        msg += explanation
    return msg or "Gateway rejected the request", cause, explanation


# ══════════════════════════════════════════════════════════════════════
# MastercardGatewayService class
# ══════════════════════════════════════════════════════════════════════


class MastercardGatewayService:
    """
    Thin, typed client for the MPGS REST API.

    ``transport`` lets callers swap the HTTP transport (tests pass an
    httpx.MockTransport); production uses httpx's default.
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport

    # ──────────────────────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────────────────────

    @property
    def api_url(self) -> str:
        return self.config.api_url

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.read_timeout, connect=self.config.connect_timeout)

    def _loggable(self, body: Any) -> Any:
        return redact(body) if self.config.log_redact else body

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send one logical request, retrying server errors and transport
        failures with exponential backoff. Client errors are never retried.
        """
        url = f"{self.api_url}/{path}"
        max_retries = max(self.config.max_retries, 0)

        for attempt in range(max_retries + 1):
            try:
                return await self._send(method, url, body)
            except GatewayServerError as e:
                if attempt >= max_retries:
                    logger.error(
                        f"[mastercard] {method} {path} failed after {attempt + 1} attempts: {e.message}"
                    )
                    raise
                wait_time = self.config.retry_backoff * (2**attempt)
                logger.warning(
                    f"[mastercard] {method} {path} attempt {attempt + 1}/{max_retries + 1} "
                    f"failed ({e.message}), retrying in {wait_time}s"
                )
                await asyncio.sleep(wait_time)

        raise GatewayServerError(f"{method} {path} not attempted")  # pragma: no cover

    async def _send(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        request_id = uuid.uuid4().hex[:12]
        token = correlation_id_ctx.set(request_id)
        try:
            logger.info(
                f'[mastercard] Emit request {request_id}: "{method} {url}" '
                f"body={json.dumps(self._loggable(body)) if body is not None else '-'}"
            )

            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout(),
                    transport=self._transport,
                    auth=httpx.BasicAuth(self.config.api_username, self.config.password),
                ) as client:
                    resp = await client.request(
                        method,
                        url,
                        json=body,
                        headers={"Content-Type": CONTENT_TYPE},
                    )
            except httpx.TransportError as e:
                logger.error(
                    f'[mastercard] Error {request_id}: "{e}" when emitting request: "{method} {url}"'
                )
                raise GatewayServerError(f"Transport error: {e}") from e

            try:
                parsed = resp.json()
            except ValueError:
                parsed = None

            logger.info(
                f'[mastercard] Receive response {request_id}: HTTP {resp.status_code} '
                f'for request: "{method} {url}" '
                f"body={json.dumps(self._loggable(parsed)) if parsed is not None else resp.text[:500]}"
            )

            if not isinstance(parsed, dict):
                logger.error(f"[mastercard] Response not valid JSON (HTTP {resp.status_code})")
                raise GatewayServerError("Response not valid JSON", upstream_status=resp.status_code)

            if 400 <= resp.status_code < 500:
                msg, cause, explanation = _error_message(parsed)
                logger.error(f"[mastercard] {msg}")
                raise GatewayClientError(
                    msg,
                    upstream_status=resp.status_code,
                    cause=cause,
                    explanation=explanation,
                )

            if resp.status_code >= 500:
                logger.error(f"[mastercard] {resp.reason_phrase}")
                raise GatewayServerError(
                    resp.reason_phrase or f"HTTP {resp.status_code}",
                    upstream_status=resp.status_code,
                )

            return parsed
        finally:
            correlation_id_ctx.reset(token)

    def _with_notification(self, order: Dict[str, Any], reference: Optional[str] = None) -> Dict[str, Any]:
        merged = dict(order)
        if self.config.webhook_url:
            merged["notificationUrl"] = self.config.webhook_url
        if reference is not None:
            merged["reference"] = reference
        return merged

    # ──────────────────────────────────────────────────────────────
    # Sessions
    # ──────────────────────────────────────────────────────────────

    async def create_session(self) -> GatewaySession:
        """
        POST /session — create an empty payment session for hosted
        session card collection.
        """
        data = await self._request("POST", "session")
        return _parse_session(data, require_result=True)

    async def create_checkout_session(
        self,
        order: Dict[str, Any],
        interaction: Dict[str, Any],
        customer: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
        shipping: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSession:
        """
        POST /session — CREATE_CHECKOUT_SESSION for hosted checkout.

        The returned successIndicator is the server-side proof the browser
        return is later checked against.
        """
        txn_ref = f"{order['id']}-{uuid.uuid4().hex[:13]}"
        body: Dict[str, Any] = {
            "apiOperation": API_OPERATION_CHECKOUT_SESSION,
            "partnerSolutionId": self.config.solution_id,
            "order": self._with_notification(order, reference=str(order["id"])),
            "interaction": interaction,
            "transaction": {"reference": txn_ref, "source": TRANSACTION_SOURCE},
        }
        if customer:
            body["customer"] = customer
        if billing:
            body["billing"] = billing
        if shipping:
            body["shipping"] = shipping

        data = await self._request("POST", "session", body)
        session = _parse_session(data, require_result=True)
        success_indicator = _require(data, "successIndicator", what="success indicator")
        return CheckoutSession(session=session, success_indicator=str(success_indicator))

    async def update_session(
        self,
        session_id: str,
        order: Optional[Dict[str, Any]] = None,
        customer: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
        shipping: Optional[Dict[str, Any]] = None,
        authentication: Optional[Dict[str, Any]] = None,
        token: Optional[Dict[str, Any]] = None,
    ) -> GatewaySession:
        """PUT /session/{id} — add or update request fields stored in the session."""
        body: Dict[str, Any] = {
            "partnerSolutionId": self.config.solution_id,
            "sourceOfFunds": {**(token or {}), "type": "CARD"},
        }
        if order:
            body["order"] = self._with_notification(order)
        if customer:
            body["customer"] = customer
        if billing:
            body["billing"] = billing
        if shipping:
            body["shipping"] = shipping
        if authentication:
            body["authentication"] = authentication

        data = await self._request("PUT", f"session/{session_id}", body)
        return _parse_session(data, require_result=False)

    # ──────────────────────────────────────────────────────────────
    # 3-D Secure
    # ──────────────────────────────────────────────────────────────

    async def check_enrollment(
        self,
        data: Dict[str, Any],
        order: Dict[str, Any],
        session: Optional[GatewaySession] = None,
    ) -> EnrollmentResult:
        """
        PUT /3DSecureId/{id} — ask whether the card is enrolled in 3DS and,
        if so, obtain the ACS redirect payload.
        """
        three_ds_id = f"3DS-{uuid.uuid4().hex}"
        body: Dict[str, Any] = {
            "apiOperation": API_OPERATION_CHECK_3DS,
            "3DSecure": data,
            "order": order,
        }
        if session is not None:
            body["session"] = {"id": session.id}

        resp = await self._request("PUT", f"3DSecureId/{three_ds_id}", body)
        recommendation = _require(resp, "response", "gatewayRecommendation", what="gateway recommendation")
        tds = resp.get("3DSecure") if isinstance(resp.get("3DSecure"), dict) else {}

        redirect = None
        auth_redirect = tds.get("authenticationRedirect")
        if isinstance(auth_redirect, dict):
            customized = auth_redirect.get("customized")
            if not isinstance(customized, dict) or not customized.get("acsUrl"):
                raise ResponseShapeError(
                    "Gateway response missing ACS redirect target",
                    details={"field": "3DSecure.authenticationRedirect.customized.acsUrl"},
                )
            redirect = StepUpRedirect(
                method="POST",
                url=str(customized["acsUrl"]),
                fields={"PaReq": str(customized.get("paReq") or "")},
            )

        return EnrollmentResult(
            three_ds_id=str(resp.get("3DSecureId") or three_ds_id),
            recommendation=str(recommendation),
            enrollment_status=_as_str(tds.get("veResEnrolled")),
            redirect=redirect,
        )

    async def process_step_up_result(self, context_id: str, pa_res: str) -> StepUpResult:
        """
        POST /3DSecureId/{id} — interpret the ACS authentication response
        (PaRes) returned by the cardholder's browser.
        """
        body = {
            "apiOperation": API_OPERATION_PROCESS_ACS,
            "3DSecure": {"paRes": pa_res},
        }
        resp = await self._request("POST", f"3DSecureId/{context_id}", body)
        recommendation = _require(resp, "response", "gatewayRecommendation", what="gateway recommendation")
        tds = resp.get("3DSecure") if isinstance(resp.get("3DSecure"), dict) else {}

        return StepUpResult(
            recommendation=str(recommendation),
            context=ThreeDSecureContext(
                id=str(resp.get("3DSecureId") or context_id),
                acs_eci=_as_str(tds.get("acsEci")),
                authentication_token=_as_str(tds.get("authenticationToken")),
                pa_res_status=_as_str(tds.get("paResStatus")),
                ve_res_enrolled=_as_str(tds.get("veResEnrolled")),
                xid=_as_str(tds.get("xid")),
            ),
        )

    # ──────────────────────────────────────────────────────────────
    # Pay / Authorize
    # ──────────────────────────────────────────────────────────────

    async def _submit_transaction(
        self,
        api_operation: str,
        txn_ref: str,
        order_id: str,
        order: Dict[str, Any],
        three_ds: Optional[ThreeDSecureContext] = None,
        session: Optional[GatewaySession] = None,
        customer: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
        shipping: Optional[Dict[str, Any]] = None,
    ) -> TransactionResult:
        body: Dict[str, Any] = {
            "apiOperation": api_operation,
            "partnerSolutionId": self.config.solution_id,
            "order": self._with_notification(order, reference=order_id),
            "transaction": {"reference": txn_ref, "source": TRANSACTION_SOURCE},
        }
        if session is not None:
            body["session"] = session.to_wire()
        if customer:
            body["customer"] = customer
        if billing:
            body["billing"] = billing
        if shipping:
            body["shipping"] = shipping
        if three_ds is not None:
            body["3DSecureId"] = three_ds.id
            authentication = three_ds.authentication_payload()
            if authentication:
                body["authentication"] = authentication

        data = await self._request("PUT", f"order/{order_id}/transaction/{txn_ref}", body)
        return _parse_transaction_result(data)

    async def authorize(
        self,
        txn_ref: str,
        order_id: str,
        order: Dict[str, Any],
        three_ds: Optional[ThreeDSecureContext] = None,
        session: Optional[GatewaySession] = None,
        customer: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
    ) -> TransactionResult:
        """PUT /order/{orderId}/transaction/{txnRef} — AUTHORIZE only."""
        return await self._submit_transaction(
            API_OPERATION_AUTHORIZE, txn_ref, order_id, order,
            three_ds=three_ds, session=session, customer=customer, billing=billing,
        )

    async def pay(
        self,
        txn_ref: str,
        order_id: str,
        order: Dict[str, Any],
        three_ds: Optional[ThreeDSecureContext] = None,
        session: Optional[GatewaySession] = None,
        customer: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
    ) -> TransactionResult:
        """PUT /order/{orderId}/transaction/{txnRef} — PAY (authorize + capture)."""
        return await self._submit_transaction(
            API_OPERATION_PAY, txn_ref, order_id, order,
            three_ds=three_ds, session=session, customer=customer, billing=billing,
        )

    # ──────────────────────────────────────────────────────────────
    # Retrieval
    # ──────────────────────────────────────────────────────────────

    async def retrieve_order(self, order_id: str) -> GatewayOrder:
        """GET /order/{orderId} — order details with all of its transactions."""
        data = await self._request("GET", f"order/{order_id}")
        raw_txns = data.get("transaction") if isinstance(data.get("transaction"), list) else []
        transactions = tuple(_parse_transaction(t) for t in raw_txns if isinstance(t, dict))
        return _parse_order(data, transactions=transactions)

    async def retrieve_transaction(self, order_id: str, txn_ref: str) -> TransactionResult:
        """GET /order/{orderId}/transaction/{txnRef}."""
        data = await self._request("GET", f"order/{order_id}/transaction/{txn_ref}")
        return _parse_transaction_result(data)

    # ──────────────────────────────────────────────────────────────
    # Post-authorization
    # ──────────────────────────────────────────────────────────────

    async def void_transaction(self, order_id: str, original_ref: str) -> TransactionResult:
        """
        PUT /order/{orderId}/transaction/void-{originalRef} — reverse a
        previous transaction, pointed at via targetTransactionId.
        """
        new_ref = void_reference(original_ref)
        body = {
            "apiOperation": API_OPERATION_VOID,
            "partnerSolutionId": self.config.solution_id,
            "transaction": {
                "targetTransactionId": original_ref,
                "reference": new_ref,
            },
        }
        data = await self._request("PUT", f"order/{order_id}/transaction/{new_ref}", body)
        return _parse_transaction_result(data)

    async def capture_transaction(
        self,
        order_id: str,
        txn_ref: str,
        amount: Decimal,
        currency: str,
    ) -> TransactionResult:
        """PUT /order/{orderId}/transaction/capture-{txnRef} — capture authorized funds."""
        new_ref = capture_reference(txn_ref)
        body = {
            "apiOperation": API_OPERATION_CAPTURE,
            "partnerSolutionId": self.config.solution_id,
            "transaction": {
                "amount": format_amount(amount),
                "currency": currency,
                "reference": new_ref,
            },
            "order": self._with_notification({}, reference=order_id),
        }
        data = await self._request("PUT", f"order/{order_id}/transaction/{new_ref}", body)
        return _parse_transaction_result(data)

    async def refund(
        self,
        order_id: str,
        txn_ref: str,
        amount: Decimal,
        currency: str,
    ) -> TransactionResult:
        """PUT /order/{orderId}/transaction/refund-{txnRef} — return captured funds."""
        new_ref = refund_reference(txn_ref)
        body = {
            "apiOperation": API_OPERATION_REFUND,
            "partnerSolutionId": self.config.solution_id,
            "transaction": {
                "amount": format_amount(amount),
                "currency": currency,
                "reference": new_ref,
            },
            "order": self._with_notification({}, reference=order_id),
        }
        data = await self._request("PUT", f"order/{order_id}/transaction/{new_ref}", body)
        return _parse_transaction_result(data)

    # ──────────────────────────────────────────────────────────────
    # Misc
    # ──────────────────────────────────────────────────────────────

    async def list_payment_options(self) -> Dict[str, Any]:
        """GET /paymentOptionsInquiry — also serves as a credentials check."""
        return await self._request("GET", "paymentOptionsInquiry")

    async def create_card_token(self, session_id: str) -> str:
        """POST /token — store the session's card against a gateway token."""
        body = {
            "session": {"id": session_id},
            "sourceOfFunds": {"type": "CARD"},
        }
        data = await self._request("POST", "token", body)
        return str(_require(data, "token", what="card token"))

    def payment_methods(self, options: Dict[str, Any]) -> List[str]:
        """Card types listed in a paymentOptionsInquiry response."""
        types = options.get("paymentTypes") if isinstance(options.get("paymentTypes"), dict) else {}
        cards = types.get("card") if isinstance(types.get("card"), dict) else {}
        brands = cards.get("cardTypes") if isinstance(cards.get("cardTypes"), list) else []
        return [str(b.get("cardType")) for b in brands if isinstance(b, dict) and b.get("cardType")]
