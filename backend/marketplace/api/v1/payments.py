"""
Online payment API endpoints.

Creates gateway orders for the browser checkout and settles verified payment
confirmations into orders. Side effects of a new order are scheduled after
the response is sent.
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response, status

from marketplace.api.deps import (
    CurrentPrincipal,
    DatabaseSession,
    GatewayClient,
    Runner,
)
from marketplace.api.errors import to_http_exception
from marketplace.api.limiter import limiter
from marketplace.core.config import get_settings
from marketplace.core.exceptions import SettlementError
from marketplace.core.logging import get_logger
from marketplace.schemas.orders import serialize_order
from marketplace.schemas.payments import (
    CreateGatewayOrderRequest,
    GatewayOrderResponse,
    VerifyPaymentRequest,
)
from marketplace.services.payments.service import CheckoutService, create_gateway_order

logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/payment", tags=["payments"])


@router.post(
    "/create-order",
    response_model=GatewayOrderResponse,
    status_code=status.HTTP_200_OK,
    summary="Create gateway order",
    description="Create the payment gateway order a browser checkout pays against",
)
@limiter.limit(settings.payment_rate_limit)
async def create_order(
    request: Request,
    body: CreateGatewayOrderRequest,
    principal: CurrentPrincipal,
    gateway: GatewayClient,
) -> GatewayOrderResponse:
    """
    Create a gateway order for the given rupee amount.

    Raises:
        HTTPException: 400 if the amount is not positive, 502 if the gateway fails
    """
    try:
        gateway_order = await create_gateway_order(gateway, body.amount)
    except SettlementError as e:
        raise to_http_exception(e) from e

    logger.info(
        "Gateway order created",
        principal_id=principal.id,
        gateway_order_id=gateway_order.get("id"),
        amount=gateway_order.get("amount"),
    )
    return GatewayOrderResponse.model_validate(gateway_order)


@router.post(
    "/verify-payment",
    status_code=status.HTTP_201_CREATED,
    summary="Verify payment and create order",
    description=(
        "Verify the gateway signature and create the paid order. Replaying a "
        "verified payment returns the existing order with status 200."
    ),
)
@limiter.limit(settings.payment_rate_limit)
async def verify_payment(
    request: Request,
    response: Response,
    body: VerifyPaymentRequest,
    principal: CurrentPrincipal,
    db: DatabaseSession,
    runner: Runner,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """
    Settle a verified payment into an order.

    Raises:
        HTTPException: 400 on validation failure or signature mismatch,
            409 if the payment settled another customer's order,
            500 if the order cannot be stored
    """
    service = CheckoutService(db)

    try:
        result = await service.verify_payment(
            user_id=principal.id,
            customer_email=principal.email,
            gateway_order_id=body.gateway_order_id,
            gateway_payment_id=body.gateway_payment_id,
            signature=body.signature,
            raw_items=body.order_items,
            raw_address=body.shipping_address,
            items_price=body.items_price,
            tax_price=body.tax_price,
            shipping_price=body.shipping_price,
            total_price=body.total_price,
            payer_email=body.email,
        )
    except SettlementError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        logger.error(
            "Unexpected error verifying payment",
            principal_id=principal.id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred",
        ) from e

    if result.replayed:
        response.status_code = status.HTTP_200_OK
        return {
            "success": True,
            "message": "Payment already verified",
            "order": serialize_order(result.order),
        }

    background_tasks.add_task(runner.run_for_order, result.order.id)
    return {
        "success": True,
        "message": "Payment verified and order created",
        "order": serialize_order(result.order),
    }
