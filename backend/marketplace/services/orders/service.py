"""
Order service orchestrating checkout, fulfillment and order reads.

Writes follow one pattern: validate, stage the change through the repository
together with its outbox rows, commit, then invalidate the affected cache keys.
The in-request invalidation is best effort; the committed INVALIDATE_CACHE row
repeats it through the side-effect runner until it succeeds. Reads are
cache-aside on the serialized order documents.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.security import Principal, Role
from marketplace.database.models.order import Order, OrderItem
from marketplace.schemas.orders import seller_view, serialize_order
from marketplace.services.cache.invalidator import CacheInvalidator
from marketplace.services.orders.builder import OrderAggregateBuilder
from marketplace.services.orders.enums import ItemStatus
from marketplace.services.orders.repository import OrderRepository
from marketplace.services.orders.state_machine import (
    FulfillmentStateMachine,
    get_fulfillment_state_machine,
)
from marketplace.services.side_effects.outbox import build_invalidation_task, build_order_tasks

logger = get_logger(__name__)


@dataclass
class ItemStatusUpdate:
    """Result of a seller status update."""

    order: Order
    item: OrderItem


class OrderService:
    """
    Order orchestration for customers, sellers and operators.

    Handles cash-on-delivery checkout, seller-driven item transitions with
    aggregate rollup, customer cancellation, refunds and cached reads.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        invalidator: Optional[CacheInvalidator] = None,
        builder: Optional[OrderAggregateBuilder] = None,
        state_machine: Optional[FulfillmentStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = OrderRepository(db_session)
        self.invalidator = invalidator
        self.builder = builder or OrderAggregateBuilder(self.settings.default_country)
        self.state_machine = state_machine or get_fulfillment_state_machine()

    async def place_cod_order(
        self,
        *,
        user_id: str,
        customer_email: Optional[str],
        raw_items: Any,
        raw_address: Any,
        items_price: Any,
        tax_price: Any = None,
        shipping_price: Any = None,
        total_price: Any = None,
    ) -> Order:
        """
        Create an unpaid cash-on-delivery order.

        Raises:
            ValidationError: If the basket, address or totals are invalid
            PersistenceError: If the order cannot be stored
        """
        order = self.builder.build(
            user_id=user_id,
            raw_items=raw_items,
            raw_address=raw_address,
            items_price=items_price,
            tax_price=tax_price,
            shipping_price=shipping_price,
            total_price=total_price,
            customer_email=customer_email,
        )

        tasks = build_order_tasks(order, self.settings.outbox_max_attempts)
        await self.repository.add_order(order, tasks)
        await self.repository.commit()

        logger.info(
            "Cash on delivery order placed",
            order_id=str(order.id),
            user_id=user_id,
            seller_count=len(order.seller_ids),
            total_price=str(order.total_price),
        )
        return order

    async def _require_order(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order not found", order_id=str(order_id))
        return order

    async def update_item_status(
        self,
        *,
        seller_id: str,
        order_id: uuid.UUID,
        status: Optional[str],
        product_id: Optional[str] = None,
    ) -> ItemStatusUpdate:
        """
        Move one of the seller's items to a new status and roll up the order.

        Raises:
            ValidationError: If the status is missing or unknown
            NotFoundError: If the order or product is not in the order
            UnauthorizedError: If the seller does not own the item
            StateTransitionError: If the transition is not allowed
            ConcurrentModificationError: If the item or order changed concurrently
        """
        if not status:
            raise ValidationError("Status is required")
        try:
            target = ItemStatus.from_string(status)
        except ValueError as e:
            raise ValidationError(str(e), status=status) from e

        order = await self._require_order(order_id)
        item = self.state_machine.select_item(order, seller_id, target, product_id)
        transition = self.state_machine.plan_item_transition(item, target, seller_id)

        await self.repository.apply_item_transition(transition)
        self.state_machine.rollup(order, target)
        self._stage_invalidation(order, "item_status")
        await self.repository.save_order(order)
        await self.repository.commit()

        logger.info(
            "Item status updated",
            order_id=str(order.id),
            item_id=str(item.id),
            seller_id=seller_id,
            item_status=item.item_status.value,
            order_status=order.status.value,
        )

        await self._invalidate(order)
        return ItemStatusUpdate(order=order, item=item)

    async def cancel_order(self, *, user_id: str, order_id: uuid.UUID) -> Order:
        """
        Cancel the customer's own order before any item ships.

        Raises:
            NotFoundError: If the order does not exist
            UnauthorizedError: If the order belongs to another customer
            StateTransitionError: If the order can no longer be cancelled
        """
        order = await self._require_order(order_id)
        if order.user_id != user_id:
            raise UnauthorizedError(
                "Not authorized to cancel this order",
                order_id=str(order_id),
                user_id=user_id,
            )

        for transition in self.state_machine.cancel(order):
            await self.repository.apply_item_transition(transition)
        self._stage_invalidation(order, "cancel")
        await self.repository.save_order(order)
        await self.repository.commit()

        await self._invalidate(order)
        return order

    async def mark_refunded(self, *, order_id: uuid.UUID) -> Order:
        """
        Record a refund for a paid order whose items are all closed.

        Raises:
            NotFoundError: If the order does not exist
            StateTransitionError: If the order is not eligible
        """
        order = await self._require_order(order_id)
        self.state_machine.refund(order)
        self._stage_invalidation(order, "refund")
        await self.repository.save_order(order)
        await self.repository.commit()

        await self._invalidate(order)
        return order

    def _stage_invalidation(self, order: Order, reason: str) -> None:
        self.repository.stage_outbox_task(
            build_invalidation_task(order, self.settings.outbox_max_attempts, reason)
        )

    async def _invalidate(self, order: Order) -> None:
        if self.invalidator is not None:
            await self.invalidator.invalidate_order(order)

    async def _cached(self, key_for, loader) -> Any:
        if self.invalidator is None:
            return await loader()
        return await self.invalidator.get_or_set(key_for(self.invalidator.keys), loader)

    async def get_order(self, *, principal: Principal, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Fetch an order as the caller is allowed to see it.

        Customers see their own orders and admins see everything. Sellers see
        only their own items of orders they take part in.

        Raises:
            NotFoundError: If the order does not exist
            UnauthorizedError: If the caller has no stake in the order
        """
        async def load() -> Optional[dict[str, Any]]:
            order = await self.repository.get_by_id(order_id)
            return serialize_order(order) if order is not None else None

        payload = await self._cached(lambda keys: keys.order_key(order_id), load)
        if payload is None:
            raise NotFoundError("Order not found", order_id=str(order_id))

        if principal.role == Role.ADMIN or payload["userId"] == principal.id:
            return payload

        if principal.role == Role.SELLER:
            view = seller_view(payload, principal.id)
            if view["orderItems"]:
                return view

        raise UnauthorizedError(
            "Not authorized to view this order",
            order_id=str(order_id),
            principal_id=principal.id,
        )

    async def list_my_orders(self, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        async def load() -> list[dict[str, Any]]:
            orders, _ = await self.repository.list_for_user(user_id, limit=limit)
            return [serialize_order(order) for order in orders]

        return await self._cached(lambda keys: keys.user_orders_key(user_id), load)

    async def list_seller_orders(self, *, seller_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Orders containing the seller's items, each restricted to those items."""

        async def load() -> list[dict[str, Any]]:
            orders, _ = await self.repository.list_for_seller(seller_id, limit=limit)
            return [seller_view(serialize_order(order), seller_id) for order in orders]

        return await self._cached(lambda keys: keys.seller_orders_key(seller_id), load)

