"""
Order data access repository with transaction support.

Orders are written together with their items and outbox rows in a single
flush. Item status changes are applied as compare-and-set updates, and the
order row is protected by its version column, so two concurrent writers can
never both succeed against the same starting state.
"""

import uuid
from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from marketplace.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    PersistenceError,
)
from marketplace.core.logging import get_logger, log_performance
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order, OrderItem
from marketplace.database.models.outbox import OutboxTask
from marketplace.services.orders.state_machine import ItemTransition

logger = get_logger(__name__)


class OrderRepository:
    """
    Repository for order data access operations.

    The repository flushes but never commits; the service owns the
    transaction boundary.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_order(
        self,
        order: Order,
        outbox_tasks: Sequence[OutboxTask] = (),
    ) -> Order:
        """
        Stage an order, its items and its outbox rows in one flush.

        Raises:
            ConflictError: If the gateway payment id is already settled
            PersistenceError: If the database rejects the write
        """
        try:
            with log_performance(logger, "order_insert", item_count=len(order.items)):
                self.session.add(order)
                await self.session.flush()

                for task in outbox_tasks:
                    task.order_id = order.id
                    self.session.add(task)
                await self.session.flush()

            logger.info(
                "Order staged",
                order_id=str(order.id),
                user_id=order.user_id,
                item_count=len(order.items),
                outbox_tasks=len(outbox_tasks),
            )
            return order

        except IntegrityError as e:
            await self.session.rollback()
            if order.gateway_payment_id and "gateway_payment_id" in str(e.orig):
                logger.warning(
                    "Duplicate payment id on order insert",
                    gateway_payment_id=order.gateway_payment_id,
                )
                raise ConflictError(
                    "An order already exists for this payment",
                    gateway_payment_id=order.gateway_payment_id,
                ) from e
            logger.error("Order insert failed - integrity error", error=str(e))
            raise PersistenceError(
                "Order creation failed due to data integrity violation",
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order insert failed - database error",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PersistenceError(
                "Order creation failed due to database error",
                error=str(e),
            ) from e

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Raises:
            PersistenceError: If query fails
        """
        try:
            result = await self.session.execute(select(Order).where(Order.id == order_id))
            order = result.scalar_one_or_none()
            logger.debug("Order lookup", order_id=str(order_id), found=order is not None)
            return order

        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise PersistenceError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        """
        Look up the order settled by a gateway payment id.

        Raises:
            PersistenceError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.gateway_payment_id == gateway_payment_id)
            )
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by payment id",
                gateway_payment_id=gateway_payment_id,
                error=str(e),
            )
            raise PersistenceError(
                "Failed to fetch order by payment id",
                gateway_payment_id=gateway_payment_id,
                error=str(e),
            ) from e

    async def list_for_user(
        self,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Order], int]:
        """
        Get a customer's orders, newest first.

        Returns:
            Tuple of (orders, total_count)
        """
        condition = Order.user_id == user_id
        return await self._list(condition, skip, limit, user_id=user_id)

    async def list_for_seller(
        self,
        seller_id: str,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Order], int]:
        """Get orders containing at least one item sold by the seller."""
        condition = Order.items.any(OrderItem.seller_id == seller_id)
        return await self._list(condition, skip, limit, seller_id=seller_id)

    async def _list(self, condition, skip: int, limit: int, **log_context):
        try:
            stmt = (
                select(Order)
                .where(condition)
                .order_by(Order.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            count_stmt = select(func.count()).select_from(Order).where(condition)

            orders = (await self.session.execute(stmt)).scalars().all()
            total_count = (await self.session.execute(count_stmt)).scalar_one()

            logger.debug("Orders listed", count=len(orders), total=total_count, **log_context)
            return orders, total_count

        except SQLAlchemyError as e:
            logger.error("Failed to list orders", error=str(e), **log_context)
            raise PersistenceError("Failed to list orders", error=str(e), **log_context) from e

    async def apply_item_transition(self, transition: ItemTransition) -> OrderItem:
        """
        Persist an item status change only if nobody changed it first.

        Raises:
            ConcurrentModificationError: If the item left ``from_status``
            PersistenceError: If the update fails
        """
        item = transition.item
        values = {"item_status": transition.to_status, "updated_at": utcnow()}
        if transition.delivered_at is not None:
            values["delivered_at"] = transition.delivered_at

        try:
            result = await self.session.execute(
                update(OrderItem)
                .where(
                    OrderItem.id == item.id,
                    OrderItem.item_status == transition.from_status,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Item status update failed", item_id=str(item.id), error=str(e))
            raise PersistenceError(
                "Failed to update item status",
                item_id=str(item.id),
                error=str(e),
            ) from e

        if result.rowcount != 1:
            await self.session.rollback()
            logger.warning(
                "Item status changed concurrently",
                item_id=str(item.id),
                expected_status=transition.from_status.value,
            )
            raise ConcurrentModificationError(
                "Item was modified by another request",
                item_id=str(item.id),
                expected_status=transition.from_status.value,
            )

        for key, value in values.items():
            set_committed_value(item, key, value)
        return item

    def stage_outbox_task(self, task: OutboxTask) -> None:
        """Add an outbox row to the pending unit of work; ``save_order`` flushes it."""
        self.session.add(task)

    async def save_order(self, order: Order) -> Order:
        """
        Flush aggregate changes under the optimistic version check.

        The order row is always rewritten so its version moves even when the
        aggregate status itself did not change.

        Raises:
            ConcurrentModificationError: If the order version moved
            PersistenceError: If the write fails
        """
        order.updated_at = utcnow()
        try:
            await self.session.flush()
        except StaleDataError as e:
            await self.session.rollback()
            logger.warning("Order version conflict", order_id=str(order.id))
            raise ConcurrentModificationError(
                "Order was modified by another request",
                order_id=str(order.id),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Order update failed", order_id=str(order.id), error=str(e))
            raise PersistenceError(
                "Failed to update order",
                order_id=str(order.id),
                error=str(e),
            ) from e
        return order

    async def commit(self) -> None:
        """
        Raises:
            ConcurrentModificationError: If a version check fails at commit
            PersistenceError: If the commit fails
        """
        try:
            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrentModificationError(
                "Order was modified by another request",
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Commit failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError("Failed to commit order changes", error=str(e)) from e
