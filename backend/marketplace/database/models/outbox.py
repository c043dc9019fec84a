"""
Durable outbox for post-commit side effects.

Rows are inserted in the same transaction as the order they belong to, so a
committed order always has its pending effects recorded. Workers claim rows
with a conditional update and a lease, which lets a crashed worker's rows be
picked up again once the lease expires.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database.base import BaseModel, JSONType


class OutboxTaskKind(str, enum.Enum):
    """Side effects dispatched after an order is committed."""

    INVALIDATE_CACHE = "invalidate_cache"
    NOTIFY_SELLERS = "notify_sellers"
    SEND_CONFIRMATION = "send_confirmation"
    BROADCAST = "broadcast"


class OutboxTaskStatus(str, enum.Enum):
    """
    Outbox row lifecycle.

    PENDING rows are due once ``next_attempt_at`` has passed. FAILED means
    attempts were exhausted and the row needs manual reconciliation.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (OutboxTaskStatus.COMPLETED, OutboxTaskStatus.FAILED)


class OutboxTask(BaseModel):
    """Pending side effect for one order."""

    __tablename__ = "outbox_tasks"

    order_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    kind: Mapped[OutboxTaskKind] = mapped_column(
        SQLEnum(
            OutboxTaskKind,
            name="outbox_task_kind",
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    status: Mapped[OutboxTaskStatus] = mapped_column(
        SQLEnum(
            OutboxTaskStatus,
            name="outbox_task_status",
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=OutboxTaskStatus.PENDING,
    )

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    locked_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_outbox_tasks_status_next_attempt", "status", "next_attempt_at"),
        CheckConstraint("attempts >= 0", name="ck_outbox_tasks_attempts_non_negative"),
        CheckConstraint(
            "max_attempts >= 1", name="ck_outbox_tasks_max_attempts_positive"
        ),
        {"comment": "Durable queue of post-commit order side effects"},
    )

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def __repr__(self) -> str:
        return (
            f"<OutboxTask(id={self.id}, order_id={self.order_id}, "
            f"kind={self.kind.value if self.kind else None}, "
            f"status={self.status.value if self.status else None}, "
            f"attempts={self.attempts})>"
        )
