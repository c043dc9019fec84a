"""
Celery tasks for the outbox relay.

Each task run gets its own event loop, engine and Redis connection, which are
torn down before the task returns; nothing bound to a previous loop is reused.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional, TypeVar

from celery import Task, shared_task
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.cache.redis_client import RedisClient
from marketplace.core.exceptions import PersistenceError
from marketplace.core.logging import get_logger
from marketplace.database.connection import create_engine
from marketplace.services.side_effects.runner import (
    SideEffectRunner,
    create_side_effect_runner,
)

logger = get_logger(__name__)

T = TypeVar("T")


class OutboxTaskBase(Task):
    """
    Base task class for relay tasks with retry logic.

    Only infrastructure failures reach Celery; individual side effect failures
    are recorded on the outbox rows themselves.
    """

    autoretry_for = (PersistenceError, RedisConnectionError)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            "Outbox relay task failed",
            task_id=task_id,
            exception=str(exc),
            args=args,
            kwargs=kwargs,
        )

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.warning(
            "Outbox relay task retrying",
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
        )


async def _with_runner(work: Callable[[SideEffectRunner], Awaitable[T]]) -> T:
    engine = create_engine()
    redis_client = RedisClient()
    try:
        await redis_client.connect()
        session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        runner = await create_side_effect_runner(session_factory, redis_client)
        return await work(runner)
    finally:
        await redis_client.disconnect()
        await engine.dispose()


def _summarize(statuses: dict) -> dict[str, int]:
    summary: dict[str, int] = {}
    for status in statuses.values():
        summary[status.value] = summary.get(status.value, 0) + 1
    return summary


@shared_task(
    bind=True,
    base=OutboxTaskBase,
    name="outbox.process_pending",
    time_limit=300,
    soft_time_limit=240,
)
def process_pending_outbox_task(self: Task, limit: Optional[int] = None) -> dict[str, int]:
    """
    Claim and run due outbox rows.

    Returns:
        Count of rows per resulting status
    """
    statuses = asyncio.run(_with_runner(lambda runner: runner.process_due(limit)))
    summary = _summarize(statuses)
    logger.info("Outbox relay pass finished", task_id=self.request.id, **summary)
    return summary


@shared_task(
    bind=True,
    base=OutboxTaskBase,
    name="outbox.run_for_order",
    time_limit=120,
    soft_time_limit=90,
)
def run_order_side_effects_task(self: Task, order_id: str) -> dict[str, int]:
    """Run the pending side effects of a single order out of process."""
    order_uuid = uuid.UUID(order_id)
    statuses = asyncio.run(_with_runner(lambda runner: runner.run_for_order(order_uuid)))
    summary = _summarize(statuses)
    logger.info(
        "Order side effects processed",
        task_id=self.request.id,
        order_id=order_id,
        **summary,
    )
    return summary
