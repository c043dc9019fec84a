"""Fulfillment state machine for order items and the order aggregate.

Sellers move their own items through the item lifecycle. Each item transition
re-derives the aggregate status:

1. every item Delivered -> aggregate Delivered (stamps is_delivered/delivered_at)
2. else, the triggering transition was to Shipped -> aggregate Shipped
3. otherwise the aggregate keeps its current value

Rule 2 reports Shipped even while sibling items are still Processing.
Cancel and return transitions on items never roll up; aggregate cancellation
and refunds are explicit actions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from marketplace.core.exceptions import (
    NotFoundError,
    StateTransitionError,
    UnauthorizedError,
)
from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order, OrderItem
from marketplace.services.orders.enums import (
    ItemStatus,
    OrderStatus,
    get_allowed_item_transitions,
    validate_item_status_transition,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ItemTransition:
    """Planned change for one item, applied by the repository as a compare-and-set."""

    item: OrderItem
    from_status: ItemStatus
    to_status: ItemStatus
    delivered_at: Optional[datetime] = None


class FulfillmentStateMachine:
    """State machine for per-item fulfillment and aggregate rollup.

    Holds no session; callers persist the planned transitions.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._side_effects: Dict[ItemStatus, Callable[[ItemTransition], ItemTransition]] = {
            ItemStatus.DELIVERED: self._effect_delivered,
        }

    def now(self) -> datetime:
        return self._clock()

    def select_item(
        self,
        order: Order,
        seller_id: str,
        target_status: ItemStatus,
        product_id: Optional[str] = None,
    ) -> OrderItem:
        """Pick the item a seller's status update applies to.

        With ``product_id`` the item must match both the product and the
        seller. Without it, the first of the seller's items that can legally
        take the transition is used, falling back to the seller's first item
        so the caller gets a meaningful transition error.

        Raises:
            NotFoundError: If no item in the order has the product
            UnauthorizedError: If the seller owns none of the candidate items
        """
        if product_id is not None:
            candidates = [item for item in order.items if item.product_id == product_id]
            if not candidates:
                raise NotFoundError(
                    "Item not found",
                    order_id=str(order.id),
                    product_id=product_id,
                )
        else:
            candidates = list(order.items)

        owned = [item for item in candidates if item.seller_id == seller_id]
        if not owned:
            logger.warning(
                "Seller attempted to update an item it does not own",
                order_id=str(order.id),
                seller_id=seller_id,
                product_id=product_id,
            )
            raise UnauthorizedError(
                "Item not found or not authorized",
                order_id=str(order.id),
                seller_id=seller_id,
                product_id=product_id,
            )

        for item in owned:
            if validate_item_status_transition(item.item_status, target_status):
                return item
        return owned[0]

    def authorize(self, item: OrderItem, seller_id: str) -> None:
        """
        Raises:
            UnauthorizedError: If the seller does not own the item
        """
        if item.seller_id != seller_id:
            raise UnauthorizedError(
                "Item not found or not authorized",
                item_id=str(item.id),
                seller_id=seller_id,
            )

    def plan_item_transition(
        self,
        item: OrderItem,
        target_status: ItemStatus,
        seller_id: str,
    ) -> ItemTransition:
        """Validate ownership and the edge, then describe the change.

        Raises:
            UnauthorizedError: If the seller does not own the item
            StateTransitionError: If the edge is not allowed
        """
        self.authorize(item, seller_id)

        current_status = item.item_status
        if not validate_item_status_transition(current_status, target_status):
            allowed = get_allowed_item_transitions(current_status)
            raise StateTransitionError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                allowed_transitions=sorted(s.value for s in allowed),
                item_id=str(item.id),
            )

        transition = ItemTransition(
            item=item,
            from_status=current_status,
            to_status=target_status,
        )
        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            transition = side_effect(transition)

        logger.info(
            "Item transition validated",
            item_id=str(item.id),
            seller_id=seller_id,
            transition=f"{current_status.value}->{target_status.value}",
        )
        return transition

    def rollup(self, order: Order, triggered_status: ItemStatus) -> OrderStatus:
        """Recompute the aggregate status after an item transition.

        Items must already reflect the new status. Terminal aggregates are
        never touched, and rule 2 only moves Processing forward.
        """
        current = order.status
        if current.is_terminal():
            return current

        if order.items and all(
            item.item_status == ItemStatus.DELIVERED for item in order.items
        ):
            order.status = OrderStatus.DELIVERED
            if not order.is_delivered:
                order.is_delivered = True
                order.delivered_at = self.now()
        elif triggered_status == ItemStatus.SHIPPED and current in (
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
        ):
            order.status = OrderStatus.SHIPPED

        if order.status != current:
            logger.info(
                "Order status rolled up",
                order_id=str(order.id),
                transition=f"{current.value}->{order.status.value}",
                triggered_by=triggered_status.value,
            )
        return order.status

    def cancel(self, order: Order) -> list[ItemTransition]:
        """Cancel a whole order before anything has shipped.

        Returns the item transitions to persist; the aggregate fields are set
        on ``order`` directly.

        Raises:
            StateTransitionError: If the order is not Processing or an item shipped
        """
        if order.status != OrderStatus.PROCESSING or any(
            item.item_status.has_shipped() for item in order.items
        ):
            raise StateTransitionError(
                "Order can only be cancelled before any item ships",
                current_state=order.status,
                target_state=OrderStatus.CANCELLED,
                order_id=str(order.id),
            )

        transitions = [
            ItemTransition(
                item=item,
                from_status=item.item_status,
                to_status=ItemStatus.CANCELLED,
            )
            for item in order.items
            if not item.item_status.is_terminal()
        ]

        order.status = OrderStatus.CANCELLED
        order.is_cancelled = True
        order.cancelled_at = self.now()

        logger.info(
            "Order cancelled",
            order_id=str(order.id),
            cancelled_items=len(transitions),
        )
        return transitions

    def refund(self, order: Order) -> OrderStatus:
        """Record a refund once every item has reached a terminal state.

        The aggregate becomes Returned when every item was returned, otherwise
        Cancelled.

        Raises:
            StateTransitionError: If the order is unpaid, already refunded or
                still has live items
        """
        if not order.is_paid or order.is_refunded:
            raise StateTransitionError(
                "Order is not eligible for a refund",
                current_state=order.status,
                target_state=None,
                order_id=str(order.id),
                is_paid=order.is_paid,
                is_refunded=order.is_refunded,
            )

        live_items = [item for item in order.items if not item.item_status.is_terminal()]
        if live_items:
            raise StateTransitionError(
                "Every item must be cancelled or returned before a refund",
                current_state=order.status,
                target_state=None,
                order_id=str(order.id),
                live_items=[str(item.id) for item in live_items],
            )

        previous = order.status
        if all(item.item_status == ItemStatus.RETURNED for item in order.items):
            order.status = OrderStatus.RETURNED
        else:
            order.status = OrderStatus.CANCELLED
            if not order.is_cancelled:
                order.is_cancelled = True
                order.cancelled_at = self.now()

        order.is_refunded = True
        order.refunded_at = self.now()

        logger.info(
            "Order refunded",
            order_id=str(order.id),
            transition=f"{previous.value}->{order.status.value}",
        )
        return order.status

    def _effect_delivered(self, transition: ItemTransition) -> ItemTransition:
        return ItemTransition(
            item=transition.item,
            from_status=transition.from_status,
            to_status=transition.to_status,
            delivered_at=self.now(),
        )


def get_fulfillment_state_machine() -> FulfillmentStateMachine:
    """Factory function used as a FastAPI dependency and in workers."""
    return FulfillmentStateMachine()
