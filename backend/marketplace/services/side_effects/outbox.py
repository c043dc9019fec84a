"""
Outbox repository for post-commit order side effects.

Rows are claimed with a conditional update that moves them to PROCESSING and
stamps a lease. Only one worker can win the update for a given row; a row whose
lease has expired is treated as abandoned and can be claimed again.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.exceptions import PersistenceError
from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order
from marketplace.database.models.outbox import (
    OutboxTask,
    OutboxTaskKind,
    OutboxTaskStatus,
)

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


def order_payload(order: Order) -> dict[str, Any]:
    """Snapshot of the order fields every side effect needs."""
    return {
        "order_id": str(order.id),
        "user_id": order.user_id,
        "seller_ids": order.seller_ids,
        "product_ids": list(dict.fromkeys(item.product_id for item in order.items)),
        "items_price": str(order.items_price),
        "customer_email": order.customer_email,
    }


def build_order_tasks(order: Order, max_attempts: int) -> list[OutboxTask]:
    """
    Outbox rows for a newly placed order.

    The confirmation message is only queued when there is an address to send
    it to.
    """
    kinds = [
        OutboxTaskKind.INVALIDATE_CACHE,
        OutboxTaskKind.NOTIFY_SELLERS,
        OutboxTaskKind.BROADCAST,
    ]
    if order.customer_email:
        kinds.append(OutboxTaskKind.SEND_CONFIRMATION)

    payload = order_payload(order)
    return [
        OutboxTask(
            kind=kind,
            payload=dict(payload),
            status=OutboxTaskStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
        )
        for kind in kinds
    ]


def build_invalidation_task(order: Order, max_attempts: int, reason: str) -> OutboxTask:
    """
    Outbox row that drops the cached views of an order changed after checkout.

    Fulfillment changes leave product and seller profile caches alone, so the
    payload names no products or sellers.
    """
    return OutboxTask(
        order_id=order.id,
        kind=OutboxTaskKind.INVALIDATE_CACHE,
        payload={"order_id": str(order.id), "user_id": order.user_id, "reason": reason},
        status=OutboxTaskStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
    )


def _claimable(now: datetime):
    return or_(
        and_(
            OutboxTask.status == OutboxTaskStatus.PENDING,
            or_(OutboxTask.next_attempt_at.is_(None), OutboxTask.next_attempt_at <= now),
        ),
        and_(
            OutboxTask.status == OutboxTaskStatus.PROCESSING,
            OutboxTask.locked_until < now,
        ),
    )


class OutboxRepository:
    """Claims and settles outbox rows. Every method commits its own work."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def claim_for_order(
        self,
        order_id: uuid.UUID,
        lease_seconds: int,
    ) -> list[OutboxTask]:
        """Claim the due rows of a single order."""
        return await self._claim(
            OutboxTask.order_id == order_id,
            lease_seconds=lease_seconds,
            limit=None,
        )

    async def claim_due(self, lease_seconds: int, limit: int) -> list[OutboxTask]:
        """Claim up to ``limit`` due rows across all orders, oldest first."""
        return await self._claim(None, lease_seconds=lease_seconds, limit=limit)

    async def _claim(
        self,
        scope,
        lease_seconds: int,
        limit: Optional[int],
    ) -> list[OutboxTask]:
        now = utcnow()
        locked_until = now + timedelta(seconds=lease_seconds)

        stmt = select(OutboxTask.id).where(_claimable(now)).order_by(OutboxTask.created_at)
        if scope is not None:
            stmt = stmt.where(scope)
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            candidate_ids: Sequence[uuid.UUID] = (await self.session.execute(stmt)).scalars().all()

            claimed_ids = []
            for task_id in candidate_ids:
                result = await self.session.execute(
                    update(OutboxTask)
                    .where(OutboxTask.id == task_id, _claimable(now))
                    .values(
                        status=OutboxTaskStatus.PROCESSING,
                        locked_until=locked_until,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(task_id)
            await self.session.commit()

            if not claimed_ids:
                return []

            tasks = (
                await self.session.execute(
                    select(OutboxTask)
                    .where(OutboxTask.id.in_(claimed_ids))
                    .order_by(OutboxTask.created_at)
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to claim outbox tasks", error=str(e))
            raise PersistenceError("Failed to claim outbox tasks", error=str(e)) from e

        logger.debug(
            "Outbox tasks claimed",
            candidates=len(candidate_ids),
            claimed=len(tasks),
        )
        return list(tasks)

    async def mark_completed(self, task_id: uuid.UUID) -> None:
        now = utcnow()
        await self._settle(
            task_id,
            status=OutboxTaskStatus.COMPLETED,
            attempts=OutboxTask.attempts + 1,
            completed_at=now,
            locked_until=None,
            last_error=None,
            updated_at=now,
        )

    async def mark_failed(
        self,
        task: OutboxTask,
        error: str,
        backoff_seconds: float,
        retry_payload: Optional[dict[str, Any]] = None,
        terminal: bool = False,
    ) -> OutboxTaskStatus:
        """
        Record a failed attempt.

        The row goes back to PENDING with an exponential ``next_attempt_at``
        until attempts run out, after which it is FAILED for good. A
        ``terminal`` failure is FAILED straight away.

        Returns:
            The status the row was left in
        """
        attempts = task.attempts + 1
        now = utcnow()

        if terminal or attempts >= task.max_attempts:
            status = OutboxTaskStatus.FAILED
            next_attempt_at = None
        else:
            status = OutboxTaskStatus.PENDING
            next_attempt_at = now + timedelta(
                seconds=backoff_seconds * (2 ** (attempts - 1))
            )

        values: dict[str, Any] = {
            "status": status,
            "attempts": attempts,
            "last_error": error[:MAX_ERROR_LENGTH],
            "next_attempt_at": next_attempt_at,
            "locked_until": None,
            "updated_at": now,
        }
        if retry_payload is not None:
            values["payload"] = retry_payload

        await self._settle(task.id, **values)
        return status

    async def _settle(self, task_id: uuid.UUID, **values: Any) -> None:
        try:
            await self.session.execute(
                update(OutboxTask)
                .where(OutboxTask.id == task_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to settle outbox task", task_id=str(task_id), error=str(e))
            raise PersistenceError(
                "Failed to settle outbox task",
                task_id=str(task_id),
                error=str(e),
            ) from e

    async def list_for_order(self, order_id: uuid.UUID) -> Sequence[OutboxTask]:
        stmt = (
            select(OutboxTask)
            .where(OutboxTask.order_id == order_id)
            .order_by(OutboxTask.created_at)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalars().all()
