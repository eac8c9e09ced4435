"""
Maps a local Order onto the wire shapes the gateway client expects.
"""

from typing import Any, Dict, Optional

from app.models.order import Order
from app.services.reconciliation import format_amount

OPERATION_PURCHASE = "PURCHASE"
OPERATION_AUTHORIZE = "AUTHORIZE"


def safe(value: Optional[str], limit: int = 0) -> Optional[str]:
    """Drop empty values and truncate to the gateway's field length."""
    if value is None or value == "":
        return None
    if limit > 0 and len(value) > limit:
        return value[:limit]
    return value


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class CheckoutBuilder:
    def __init__(self, order: Order):
        self.order = order

    def get_order(self) -> Dict[str, Any]:
        """Order block for enrollment checks and pay/authorize."""
        return {
            "amount": format_amount(self.order.total),
            "currency": self.order.currency,
        }

    def get_hosted_checkout_order(self) -> Dict[str, Any]:
        return _compact(
            {
                "id": str(self.order.id),
                "amount": format_amount(self.order.total),
                "currency": self.order.currency,
                "description": safe(self.order.description or f"Order #{self.order.id}", 127),
            }
        )

    def get_interaction(
        self,
        capture: bool = True,
        return_url: Optional[str] = None,
        merchant_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        interaction: Dict[str, Any] = {
            "operation": OPERATION_PURCHASE if capture else OPERATION_AUTHORIZE,
        }
        if merchant_name:
            interaction["merchant"] = {"name": safe(merchant_name, 40)}
        if return_url:
            interaction["returnUrl"] = return_url
        interaction["displayControl"] = {
            "customerEmail": "HIDE",
            "billingAddress": "HIDE",
            "paymentTerms": "HIDE",
            "shipping": "HIDE",
        }
        return interaction

    def get_customer(self) -> Dict[str, Any]:
        return _compact(
            {
                "email": safe(self.order.customer_email, 254),
                "firstName": safe(self.order.customer_first_name, 50),
                "lastName": safe(self.order.customer_last_name, 50),
                "phone": safe(self.order.customer_phone, 20),
            }
        )

    def get_billing(self) -> Dict[str, Any]:
        address = _compact(
            {
                "street": safe(self.order.billing_street, 100),
                "street2": safe(self.order.billing_street2, 100),
                "city": safe(self.order.billing_city, 100),
                "postcodeZip": safe(self.order.billing_postcode, 10),
                "stateProvince": safe(self.order.billing_state, 20),
                "country": safe(self.order.billing_country, 3),
            }
        )
        return {"address": address} if address else {}
