"""
Seller notification service.

Creates one in-app notification per seller touched by a new order and serves
the seller inbox. Each recipient is written in its own transaction, so one bad
write never prevents the other sellers from hearing about the order.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.exceptions import NotFoundError, PersistenceError, UnauthorizedError
from marketplace.core.logging import get_logger
from marketplace.database.models.notification import (
    Notification,
    NotificationFilter,
    NotificationType,
)
from marketplace.database.models.order import Order

logger = get_logger(__name__)

NEW_ORDER_TITLE = "New Order Received"


@dataclass
class FanOutResult:
    """Outcome of notifying the sellers of one order."""

    order_id: str
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def format_order_reference(order_id: uuid.UUID | str) -> str:
    """Short, human friendly order reference: first 8 characters, upper-cased."""
    return str(order_id)[:8].upper()


def new_order_message(order_id: uuid.UUID | str, items_price: Decimal | str) -> str:
    return (
        f"You have a new order #{format_order_reference(order_id)} "
        f"worth ₹{Decimal(str(items_price)):,.2f}."
    )


class NotificationService:
    """Creates and serves seller notifications."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def fan_out_order(
        self,
        order: Order,
        seller_ids: Optional[Iterable[str]] = None,
    ) -> FanOutResult:
        """
        Notify every distinct seller of a new order.

        Sellers that already have an order notification for this order are
        skipped, which makes a retried fan-out safe.

        Args:
            order: Committed order
            seller_ids: Restrict the fan-out to these sellers (used on retry)

        Returns:
            Created, skipped and failed recipients
        """
        order_id = str(order.id)
        items_price = order.items_price
        recipients = list(order.seller_ids) if seller_ids is None else list(dict.fromkeys(seller_ids))
        result = FanOutResult(order_id=order_id)
        message = new_order_message(order_id, items_price)

        for seller_id in recipients:
            try:
                if await self._already_notified(seller_id, order_id):
                    result.skipped.append(seller_id)
                    continue

                notification = Notification(
                    recipient_id=seller_id,
                    type=NotificationType.ORDER,
                    title=NEW_ORDER_TITLE,
                    message=message,
                    read=False,
                    related_id=order_id,
                )
                self.db.add(notification)
                await self.db.commit()
                result.created.append(seller_id)

            except SQLAlchemyError as e:
                await self.db.rollback()
                result.failed.append(seller_id)
                logger.error(
                    "Seller notification failed",
                    order_id=order_id,
                    seller_id=seller_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info(
            "Order fan-out finished",
            order_id=order_id,
            created=len(result.created),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _already_notified(self, seller_id: str, order_id: str) -> bool:
        stmt = select(Notification.id).where(
            Notification.recipient_id == seller_id,
            Notification.related_id == order_id,
            Notification.type == NotificationType.ORDER,
        )
        return (await self.db.execute(stmt)).first() is not None

    async def list_notifications(
        self,
        seller_id: str,
        filter_by: NotificationFilter = NotificationFilter.ALL,
        limit: int = 100,
    ) -> Sequence[Notification]:
        """
        Newest-first inbox for a seller.

        Raises:
            PersistenceError: If the query fails
        """
        stmt = select(Notification).where(Notification.recipient_id == seller_id)
        if filter_by == NotificationFilter.UNREAD:
            stmt = stmt.where(Notification.read.is_(False))
        elif filter_by == NotificationFilter.ORDERS:
            stmt = stmt.where(Notification.type == NotificationType.ORDER)

        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)

        try:
            return (await self.db.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list notifications", seller_id=seller_id, error=str(e))
            raise PersistenceError("Failed to fetch notifications", error=str(e)) from e

    async def mark_as_read(self, seller_id: str, notification_id: uuid.UUID) -> Notification:
        """
        Raises:
            NotFoundError: If the notification does not exist
            UnauthorizedError: If it belongs to another seller
        """
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError(
                "Notification not found",
                notification_id=str(notification_id),
            )
        if notification.recipient_id != seller_id:
            logger.warning(
                "Seller attempted to read another seller's notification",
                notification_id=str(notification_id),
                seller_id=seller_id,
            )
            raise UnauthorizedError(
                "Not authorized",
                notification_id=str(notification_id),
                seller_id=seller_id,
            )

        if not notification.read:
            notification.read = True
            try:
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise PersistenceError(
                    "Failed to update notification",
                    notification_id=str(notification_id),
                    error=str(e),
                ) from e

        return notification

    async def mark_all_as_read(self, seller_id: str) -> int:
        """
        Returns:
            Number of notifications that changed
        """
        try:
            result = await self.db.execute(
                update(Notification)
                .where(Notification.recipient_id == seller_id, Notification.read.is_(False))
                .values(read=True)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to mark notifications read", seller_id=seller_id, error=str(e))
            raise PersistenceError("Failed to update notifications", error=str(e)) from e

        logger.info("Notifications marked as read", seller_id=seller_id, count=result.rowcount)
        return result.rowcount
