"""
Asynchronous side-effect runner for committed orders.

Runs the outbox rows of an order after the response has been sent: cache
invalidation, seller notification fan-out, realtime broadcast and the customer
confirmation message. Sub-tasks run concurrently, each with its own database
session, and a failure in one never affects the others. Failures are logged
with the order id and left on the outbox for the relay to retry, except
permanent rejections, which fail their row immediately.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.cache.redis_client import CacheBackend, RedisClient
from marketplace.core.config import Settings, get_settings
from marketplace.core.exceptions import BackgroundTaskError
from marketplace.core.logging import get_logger, log_performance
from marketplace.database.models.order import Order
from marketplace.database.models.outbox import (
    OutboxTask,
    OutboxTaskKind,
    OutboxTaskStatus,
)
from marketplace.services.cache.invalidator import CacheInvalidator
from marketplace.services.notifications.aws_clients import (
    SESClient,
    SESClientError,
    get_ses_client,
)
from marketplace.services.notifications.broadcast import SellerBroadcaster
from marketplace.services.notifications.service import (
    NEW_ORDER_TITLE,
    NotificationService,
    format_order_reference,
    new_order_message,
)
from marketplace.services.notifications.templates import (
    TemplateEngine,
    TemplateEngineError,
    get_template_engine,
)
from marketplace.services.orders.repository import OrderRepository
from marketplace.services.side_effects.outbox import OutboxRepository

logger = get_logger(__name__)

CONFIRMATION_TEMPLATE = "order_confirmation"

Handler = Callable[[OutboxTask], Awaitable[None]]


class SideEffectRunner:
    """
    Executes outbox rows.

    Collaborators are injected so each channel can be replaced in tests; a
    channel left as None makes its tasks fail and wait for a retry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[CacheBackend] = None,
        broadcaster: Optional[SellerBroadcaster] = None,
        email_client: Optional[SESClient] = None,
        template_engine: Optional[TemplateEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.broadcaster = broadcaster
        self.email_client = email_client
        self.template_engine = template_engine
        self.settings = settings or get_settings()

        self._handlers: dict[OutboxTaskKind, Handler] = {
            OutboxTaskKind.INVALIDATE_CACHE: self._invalidate_cache,
            OutboxTaskKind.NOTIFY_SELLERS: self._notify_sellers,
            OutboxTaskKind.BROADCAST: self._broadcast,
            OutboxTaskKind.SEND_CONFIRMATION: self._send_confirmation,
        }

    async def run_for_order(self, order_id: uuid.UUID) -> dict[str, OutboxTaskStatus]:
        """
        Run the pending side effects of one order.

        Never raises; this is scheduled after the response has gone out.

        Returns:
            Final status per task kind
        """
        try:
            async with self.session_factory() as session:
                tasks = await OutboxRepository(session).claim_for_order(
                    order_id, lease_seconds=self.settings.outbox_lease_seconds
                )
        except Exception as e:
            logger.error(
                "Could not claim side effects; leaving them for the relay",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return {}

        return await self._execute(tasks)

    async def process_due(self, limit: Optional[int] = None) -> dict[str, OutboxTaskStatus]:
        """Relay entry point: claim and run due rows across all orders."""
        async with self.session_factory() as session:
            tasks = await OutboxRepository(session).claim_due(
                lease_seconds=self.settings.outbox_lease_seconds,
                limit=limit or self.settings.outbox_batch_size,
            )

        if tasks:
            logger.info("Outbox relay picked up tasks", count=len(tasks))
        return await self._execute(tasks)

    async def _execute(self, tasks: list[OutboxTask]) -> dict[str, OutboxTaskStatus]:
        if not tasks:
            return {}

        statuses = await asyncio.gather(*(self._run_task(task) for task in tasks))
        return {
            f"{task.order_id}:{task.kind.value}": status
            for task, status in zip(tasks, statuses)
        }

    async def _run_task(self, task: OutboxTask) -> OutboxTaskStatus:
        order_id = str(task.order_id)
        handler = self._handlers[task.kind]

        try:
            with log_performance(
                logger, "side_effect", kind=task.kind.value, order_id=order_id
            ):
                await handler(task)
        except Exception as e:
            error = (
                e
                if isinstance(e, BackgroundTaskError)
                else BackgroundTaskError(
                    f"{task.kind.value} failed: {e}",
                    order_id=order_id,
                    error_type=type(e).__name__,
                )
            )
            return await self._record_failure(task, error)

        try:
            async with self.session_factory() as session:
                await OutboxRepository(session).mark_completed(task.id)
        except Exception as e:
            logger.error(
                "Side effect ran but could not be marked completed",
                order_id=order_id,
                kind=task.kind.value,
                error=str(e),
            )
            return OutboxTaskStatus.PROCESSING

        return OutboxTaskStatus.COMPLETED

    async def _record_failure(
        self,
        task: OutboxTask,
        error: BackgroundTaskError,
    ) -> OutboxTaskStatus:
        try:
            async with self.session_factory() as session:
                status = await OutboxRepository(session).mark_failed(
                    task,
                    error=error.message,
                    backoff_seconds=self.settings.outbox_retry_backoff_seconds,
                    retry_payload=error.retry_payload,
                    terminal=error.terminal,
                )
        except Exception as e:
            logger.error(
                "Could not record side effect failure",
                order_id=error.order_id,
                kind=task.kind.value,
                error=str(e),
            )
            status = OutboxTaskStatus.PROCESSING

        context = {k: v for k, v in error.context.items() if k != "order_id"}
        log = logger.error if status == OutboxTaskStatus.FAILED else logger.warning
        log(
            "Side effect failed",
            order_id=error.order_id,
            kind=task.kind.value,
            attempt=task.attempts + 1,
            max_attempts=task.max_attempts,
            outcome=status.value,
            error=error.message,
            **context,
        )
        return status

    async def _load_order(self, session: AsyncSession, task: OutboxTask) -> Order:
        order = await OrderRepository(session).get_by_id(task.order_id)
        if order is None:
            raise BackgroundTaskError(
                "Order for side effect not found",
                order_id=str(task.order_id),
            )
        return order

    async def _invalidate_cache(self, task: OutboxTask) -> None:
        if self.cache is None:
            raise BackgroundTaskError("No cache backend configured", order_id=str(task.order_id))

        async with self.session_factory() as session:
            order = await self._load_order(session, task)
            invalidator = CacheInvalidator(
                self.cache,
                ttl_seconds=self.settings.cache_ttl_seconds,
                raise_errors=True,
            )
            await invalidator.invalidate_order(order)
            for product_id in task.payload.get("product_ids", []):
                await invalidator.invalidate_product(product_id)
            for seller_id in task.payload.get("seller_ids", []):
                await invalidator.invalidate_seller(seller_id)

    async def _notify_sellers(self, task: OutboxTask) -> None:
        async with self.session_factory() as session:
            order = await self._load_order(session, task)
            result = await NotificationService(session).fan_out_order(
                order, seller_ids=task.payload.get("seller_ids")
            )

        if not result.ok:
            raise BackgroundTaskError(
                f"Failed to notify {len(result.failed)} seller(s)",
                order_id=result.order_id,
                retry_payload={**task.payload, "seller_ids": result.failed},
                failed_sellers=result.failed,
            )

    async def _broadcast(self, task: OutboxTask) -> None:
        if self.broadcaster is None:
            raise BackgroundTaskError("No broadcaster configured", order_id=str(task.order_id))

        payload = task.payload
        event = {
            "type": "new_order",
            "title": NEW_ORDER_TITLE,
            "message": new_order_message(payload["order_id"], payload["items_price"]),
            "relatedId": payload["order_id"],
        }

        failed: list[str] = []
        for seller_id in payload.get("seller_ids", []):
            try:
                await self.broadcaster.publish_to_seller(seller_id, event)
            except Exception as e:
                failed.append(seller_id)
                logger.warning(
                    "Seller broadcast failed",
                    order_id=payload["order_id"],
                    seller_id=seller_id,
                    error=str(e),
                )

        if failed:
            raise BackgroundTaskError(
                f"Failed to broadcast to {len(failed)} seller(s)",
                order_id=payload["order_id"],
                retry_payload={**payload, "seller_ids": failed},
            )

    async def _send_confirmation(self, task: OutboxTask) -> None:
        if self.email_client is None or self.template_engine is None:
            raise BackgroundTaskError("No messaging client configured", order_id=str(task.order_id))

        recipient = task.payload.get("customer_email")
        if not recipient:
            return

        async with self.session_factory() as session:
            order = await self._load_order(session, task)
            context = confirmation_context(order)

        try:
            rendered = self.template_engine.render_email(CONFIRMATION_TEMPLATE, context)
            await self.email_client.send_email_async(
                to_addresses=[recipient],
                subject=rendered["subject"],
                body_text=rendered.get("text_body") or rendered["html_body"],
                body_html=rendered["html_body"],
            )
        except (TemplateEngineError, SESClientError) as e:
            # Permanent SES rejections are not retried.
            raise BackgroundTaskError(
                f"Confirmation message failed: {e}",
                order_id=str(task.order_id),
                terminal=isinstance(e, SESClientError) and not e.retryable,
                error_type=type(e).__name__,
            ) from e


def confirmation_context(order: Order) -> dict[str, Any]:
    """Template variables for the itemized customer confirmation."""
    return {
        "order_ref": format_order_reference(order.id),
        "placed_at": order.created_at,
        "items": [
            {
                "name": item.name,
                "quantity": item.quantity,
                "price": item.price,
                "line_total": item.line_total,
            }
            for item in order.items
        ],
        "items_price": order.items_price,
        "tax_price": order.tax_price,
        "shipping_price": order.shipping_price,
        "total_price": order.total_price,
        "payment_method": order.payment_method.value,
        "is_paid": order.is_paid,
        "shipping_address": order.shipping_address,
    }


async def create_side_effect_runner(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: Optional[RedisClient],
) -> SideEffectRunner:
    """
    Wire a runner against the live Redis, SES and template collaborators.

    Without Redis the cache and broadcast tasks stay pending for the relay.
    """
    return SideEffectRunner(
        session_factory=session_factory,
        cache=redis_client,
        broadcaster=SellerBroadcaster(redis_client) if redis_client is not None else None,
        email_client=get_ses_client(),
        template_engine=get_template_engine(),
    )
