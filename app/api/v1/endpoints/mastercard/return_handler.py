"""
Mastercard Return Route.

Endpoint:
  GET|POST /api/v1/mastercard/return — Browser return from the gateway

Hosted checkout returns with ``resultIndicator``. Hosted session returns
with ``session_id``/``session_version`` and, after the ACS round trip,
``process_acs_result=1``, ``3DSecureId`` and a posted ``PaRes``.

Gateway transport errors end here: they are logged and the customer is
sent back to checkout with a generic notice.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from app.core.dependencies import get_dispatcher
from app.core.exceptions import ExternalServiceError, OperationNotAllowed, OrderBusy
from app.schemas.mastercard import StepUpResponse
from app.services.payment_dispatcher import PaymentDispatcher
from app.services.payment_port import ReturnParams

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_ERROR = "Payment could not be completed, please try again."


async def _collect_params(request: Request) -> dict:
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@router.api_route(
    "/return",
    methods=["GET", "POST"],
    summary="Handle the browser return from the gateway",
    response_model=None,
)
async def handle_return(
    request: Request,
    dispatcher: PaymentDispatcher = Depends(get_dispatcher),
):
    params = await _collect_params(request)
    order_id = params.get("order_id")
    if not order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="order_id is required")

    return_params = ReturnParams(
        order_id=order_id,
        result_indicator=params.get("resultIndicator"),
        session_id=params.get("session_id"),
        session_version=params.get("session_version"),
        process_acs_result=params.get("process_acs_result") == "1",
        three_ds_id=params.get("3DSecureId"),
        pa_res=params.get("PaRes"),
    )

    try:
        result = await dispatcher.handle_return(return_params)
    except ExternalServiceError as e:
        logger.error(f"[mastercard] return for order {order_id} failed: {e.error_code} {e.message}")
        result = dispatcher.error_redirect(GENERIC_ERROR)
    except (OperationNotAllowed, OrderBusy) as e:
        logger.warning(f"[mastercard] return for order {order_id} rejected: {e.message}")
        result = dispatcher.error_redirect(e.message)

    if isinstance(result, StepUpResponse):
        return result
    return RedirectResponse(url=result.url, status_code=status.HTTP_303_SEE_OTHER)
