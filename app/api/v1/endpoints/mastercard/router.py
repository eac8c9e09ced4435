"""
Mastercard Router Aggregator.

Combines all Mastercard sub-routers into a single router. Registered in
api.py under /mastercard, so the full paths become:

  POST /api/v1/mastercard/orders/{id}/pay                  — Start payment (pay page redirect)
  POST /api/v1/mastercard/orders/{id}/checkout-session     — Hosted checkout session
  POST /api/v1/mastercard/orders/{id}/session              — Hosted session
  GET  /api/v1/mastercard/return                           — Browser return
  POST /api/v1/mastercard/return                           — Browser return (ACS post)
  POST /api/v1/mastercard/webhook                          — Gateway notifications
  POST /api/v1/mastercard/orders/{id}/capture              — Capture authorized payment
  POST /api/v1/mastercard/orders/{id}/void                 — Void last transaction
  POST /api/v1/mastercard/orders/{id}/refund               — Refund captured payment
  GET  /api/v1/mastercard/orders/{id}                      — Local order status
  GET  /api/v1/mastercard/orders/{id}/transactions/{ref}   — Gateway transaction lookup
  GET  /api/v1/mastercard/payment-options                  — Credentials check
"""

from fastapi import APIRouter

from app.api.v1.endpoints.mastercard.checkout import router as checkout_router
from app.api.v1.endpoints.mastercard.return_handler import router as return_router
from app.api.v1.endpoints.mastercard.webhook import router as webhook_router
from app.api.v1.endpoints.mastercard.capture import router as capture_router
from app.api.v1.endpoints.mastercard.void import router as void_router
from app.api.v1.endpoints.mastercard.refund import router as refund_router
from app.api.v1.endpoints.mastercard.status import router as status_router

mastercard_router = APIRouter()

mastercard_router.include_router(checkout_router)
mastercard_router.include_router(return_router)
mastercard_router.include_router(webhook_router)
mastercard_router.include_router(capture_router)
mastercard_router.include_router(void_router)
mastercard_router.include_router(refund_router)
mastercard_router.include_router(status_router)
