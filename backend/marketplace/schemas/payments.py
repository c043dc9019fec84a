"""
Payment Pydantic schemas for gateway order creation and payment verification.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from marketplace.schemas.orders import CamelRequest, CheckoutRequest


class CreateGatewayOrderRequest(CamelRequest):
    amount: Optional[Any] = Field(None, description="Amount in rupees; must be positive")


class GatewayOrderResponse(BaseModel):
    """Gateway order handle returned to the browser checkout widget."""

    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int = Field(..., description="Amount in paise")
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class VerifyPaymentRequest(CheckoutRequest):
    """
    Payment confirmation plus the order to create.

    Gateway fields are also accepted under the gateway's own
    ``razorpay_*`` names, as posted by its checkout widget.
    """

    gateway_order_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "gatewayOrderId", "gateway_order_id", "razorpay_order_id", "razorpayOrderId"
        ),
    )
    gateway_payment_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "gatewayPaymentId", "gateway_payment_id", "razorpay_payment_id", "razorpayPaymentId"
        ),
    )
    signature: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "signature", "razorpay_signature", "razorpaySignature"
        ),
    )
    email: Optional[str] = Field(None, description="Payer email reported by the gateway")
