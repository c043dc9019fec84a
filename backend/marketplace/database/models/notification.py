"""
Seller notification model.

Notifications are created as a side effect of order creation and are only
mutated afterwards by their recipient marking them read.
"""

import enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum as SQLEnum,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database.base import BaseModel


class NotificationType(str, enum.Enum):
    """Notification type enumeration for categorizing notifications."""

    ORDER = "order"
    ALERT = "alert"
    INFO = "info"
    PROMOTION = "promotion"
    SYSTEM = "system"

    @classmethod
    def from_string(cls, value: str) -> "NotificationType":
        """
        Convert string to NotificationType enum.

        Raises:
            ValueError: If value is not a valid notification type
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid notification type: {value}")


class NotificationFilter(str, enum.Enum):
    """Listing filters accepted by the notification inbox."""

    ALL = "all"
    UNREAD = "unread"
    ORDERS = "orders"


class Notification(BaseModel):
    """
    In-app notification addressed to a seller.

    Attributes:
        recipient_id: Seller receiving the notification
        type: Notification category
        title: Short headline
        message: Body text
        read: Whether the seller has seen it
        related_id: Optional id of the entity that triggered it (an order id)
    """

    __tablename__ = "notifications"

    recipient_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Seller receiving the notification",
    )

    type: Mapped[NotificationType] = mapped_column(
        SQLEnum(
            NotificationType,
            name="notification_type",
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=NotificationType.INFO,
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    related_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "read"),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        CheckConstraint(
            "length(title) >= 1",
            name="ck_notifications_title_not_empty",
        ),
        {"comment": "Seller inbox notifications"},
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, recipient_id={self.recipient_id}, "
            f"type={self.type.value if self.type else None}, read={self.read})>"
        )
