"""
Database models package initialization.

Importing this package registers every table on ``Base.metadata`` for
Alembic autogeneration and for test schema creation.
"""

from marketplace.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from marketplace.database.models.notification import Notification, NotificationType
from marketplace.database.models.order import Order, OrderItem
from marketplace.database.models.outbox import (
    OutboxTask,
    OutboxTaskKind,
    OutboxTaskStatus,
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Notification",
    "NotificationType",
    "Order",
    "OrderItem",
    "OutboxTask",
    "OutboxTaskKind",
    "OutboxTaskStatus",
]
