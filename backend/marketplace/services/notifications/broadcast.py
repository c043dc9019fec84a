"""
Realtime seller broadcast over Redis pub/sub.

Each seller has a channel that the realtime gateway forwards to that seller's
connected dashboards. Publishing is best effort: nobody listening is not an
error, a Redis failure is.
"""

from typing import Any, Optional, Protocol

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

logger = get_logger(__name__)


class Publisher(Protocol):
    async def publish(self, channel: str, message: Any) -> int: ...


class SellerBroadcaster:
    """Publishes seller-facing events on per-seller channels."""

    def __init__(self, publisher: Publisher, namespace: Optional[str] = None):
        self._publisher = publisher
        self.namespace = namespace or get_settings().cache_namespace

    def channel_for(self, seller_id: str) -> str:
        return f"{self.namespace}:seller:{seller_id}:notifications"

    async def publish_to_seller(self, seller_id: str, event: dict[str, Any]) -> int:
        """
        Returns:
            Number of live subscribers that received the event

        Raises:
            Whatever the publisher raises; callers decide whether to retry
        """
        channel = self.channel_for(seller_id)
        receivers = await self._publisher.publish(channel, event)
        logger.debug(
            "Seller event published",
            seller_id=seller_id,
            channel=channel,
            event_type=event.get("type"),
            receivers=receivers,
        )
        return receivers
