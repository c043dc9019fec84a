"""
Order management API endpoints.

Cash-on-delivery checkout, seller item status updates, customer cancellation,
operator refunds and cached order reads. Fixed paths are declared before the
``/{order_id}`` routes so they are matched first.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, status

from marketplace.api.deps import (
    CurrentAdmin,
    CurrentPrincipal,
    CurrentSeller,
    DatabaseSession,
    Invalidator,
    Runner,
)
from marketplace.api.errors import to_http_exception
from marketplace.core.exceptions import SettlementError
from marketplace.core.logging import get_logger
from marketplace.schemas.orders import (
    CreateOrderRequest,
    UpdateItemStatusRequest,
    seller_view,
    serialize_order,
)
from marketplace.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _unexpected(e: Exception, operation: str, **context: Any) -> HTTPException:
    logger.error(
        f"Unexpected error during {operation}",
        error=str(e),
        error_type=type(e).__name__,
        **context,
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred",
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Place cash-on-delivery order",
)
async def create_order(
    body: CreateOrderRequest,
    principal: CurrentPrincipal,
    db: DatabaseSession,
    invalidator: Invalidator,
    runner: Runner,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """
    Create an unpaid cash-on-delivery order.

    Raises:
        HTTPException: 400 if the basket, address or totals are invalid
    """
    service = OrderService(db, invalidator=invalidator)

    try:
        order = await service.place_cod_order(
            user_id=principal.id,
            customer_email=principal.email,
            raw_items=body.order_items,
            raw_address=body.shipping_address,
            items_price=body.items_price,
            tax_price=body.tax_price,
            shipping_price=body.shipping_price,
            total_price=body.total_price,
        )
    except SettlementError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        raise _unexpected(e, "order creation", principal_id=principal.id) from e

    background_tasks.add_task(runner.run_for_order, order.id)
    return {"order": serialize_order(order)}


@router.get(
    "/myorders",
    summary="List my orders",
)
async def list_my_orders(
    principal: CurrentPrincipal,
    db: DatabaseSession,
    invalidator: Invalidator,
    limit: int = Query(50, ge=1, le=100, description="Maximum number of orders to return"),
) -> list[dict[str, Any]]:
    service = OrderService(db, invalidator=invalidator)
    try:
        return await service.list_my_orders(user_id=principal.id, limit=limit)
    except SettlementError as e:
        raise to_http_exception(e) from e


@router.get(
    "/seller-orders",
    summary="List orders containing my items",
)
async def list_seller_orders(
    seller: CurrentSeller,
    db: DatabaseSession,
    invalidator: Invalidator,
    limit: int = Query(50, ge=1, le=100, description="Maximum number of orders to return"),
) -> list[dict[str, Any]]:
    """Each order is restricted to the calling seller's items."""
    service = OrderService(db, invalidator=invalidator)
    try:
        return await service.list_seller_orders(seller_id=seller.id, limit=limit)
    except SettlementError as e:
        raise to_http_exception(e) from e


@router.get(
    "/{order_id}",
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    db: DatabaseSession,
    invalidator: Invalidator,
) -> dict[str, Any]:
    """
    Fetch an order as the caller is allowed to see it.

    Raises:
        HTTPException: 403 if the caller has no stake in the order, 404 if not found
    """
    service = OrderService(db, invalidator=invalidator)
    try:
        return await service.get_order(principal=principal, order_id=order_id)
    except SettlementError as e:
        raise to_http_exception(e) from e


@router.put(
    "/{order_id}/status",
    summary="Update item status",
    description="Move one of the calling seller's items in the order to a new status",
)
async def update_item_status(
    order_id: UUID,
    body: UpdateItemStatusRequest,
    seller: CurrentSeller,
    db: DatabaseSession,
    invalidator: Invalidator,
    runner: Runner,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """
    Raises:
        HTTPException: 400 on an unknown status or illegal transition,
            403 if the seller does not own the item, 404 if the order or item
            is not found, 409 if the order changed concurrently
    """
    service = OrderService(db, invalidator=invalidator)

    try:
        update = await service.update_item_status(
            seller_id=seller.id,
            order_id=order_id,
            status=body.status,
            product_id=body.product_id,
        )
    except SettlementError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        raise _unexpected(
            e, "item status update", order_id=str(order_id), seller_id=seller.id
        ) from e

    background_tasks.add_task(runner.run_for_order, order_id)
    return {
        "message": "Order item status updated",
        "status": update.item.item_status.value,
        "orderStatus": update.order.status.value,
        "order": seller_view(serialize_order(update.order), seller.id),
    }


@router.post(
    "/{order_id}/cancel",
    summary="Cancel order",
    description="Cancel the caller's own order before any item has shipped",
)
async def cancel_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    db: DatabaseSession,
    invalidator: Invalidator,
    runner: Runner,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    service = OrderService(db, invalidator=invalidator)

    try:
        order = await service.cancel_order(user_id=principal.id, order_id=order_id)
    except SettlementError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        raise _unexpected(e, "order cancellation", order_id=str(order_id)) from e

    background_tasks.add_task(runner.run_for_order, order_id)
    logger.info("Order cancelled", order_id=str(order_id), user_id=principal.id)
    return {"message": "Order cancelled", "order": serialize_order(order)}


@router.post(
    "/{order_id}/refund",
    summary="Mark order refunded",
    description="Record the refund of a paid order whose items are all closed",
)
async def refund_order(
    order_id: UUID,
    admin: CurrentAdmin,
    db: DatabaseSession,
    invalidator: Invalidator,
    runner: Runner,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    service = OrderService(db, invalidator=invalidator)

    try:
        order = await service.mark_refunded(order_id=order_id)
    except SettlementError as e:
        raise to_http_exception(e) from e
    except Exception as e:
        raise _unexpected(e, "refund", order_id=str(order_id)) from e

    background_tasks.add_task(runner.run_for_order, order_id)
    logger.info("Order refunded", order_id=str(order_id), admin_id=admin.id)
    return {"message": "Order marked as refunded", "order": serialize_order(order)}
