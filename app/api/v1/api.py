from fastapi import APIRouter

from app.api.v1.endpoints.mastercard.router import mastercard_router

api_router = APIRouter()

# Full paths: /api/v1/mastercard/orders/{id}/pay, /api/v1/mastercard/return, etc.
api_router.include_router(
    mastercard_router,
    prefix="/mastercard",
    tags=["mastercard"],
)
