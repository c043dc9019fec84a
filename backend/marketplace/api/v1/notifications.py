"""
Seller notification inbox endpoints.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from marketplace.api.deps import CurrentSeller, DatabaseSession
from marketplace.api.errors import to_http_exception
from marketplace.core.exceptions import SettlementError
from marketplace.core.logging import get_logger
from marketplace.database.models.notification import NotificationFilter
from marketplace.schemas.notifications import NotificationResponse
from marketplace.services.notifications.service import NotificationService

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get(
    "",
    response_model=list[NotificationResponse],
    response_model_by_alias=True,
    summary="List notifications",
)
async def list_notifications(
    seller: CurrentSeller,
    db: DatabaseSession,
    filter_by: NotificationFilter = Query(
        NotificationFilter.ALL, alias="filter", description="all, unread or orders"
    ),
    limit: int = Query(100, ge=1, le=500),
) -> list[NotificationResponse]:
    service = NotificationService(db)
    try:
        notifications = await service.list_notifications(seller.id, filter_by, limit)
    except SettlementError as e:
        raise to_http_exception(e) from e
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.put(
    "/read-all",
    summary="Mark all notifications as read",
)
async def mark_all_as_read(
    seller: CurrentSeller,
    db: DatabaseSession,
) -> dict[str, Any]:
    service = NotificationService(db)
    try:
        updated = await service.mark_all_as_read(seller.id)
    except SettlementError as e:
        raise to_http_exception(e) from e
    return {"message": "All notifications marked as read", "updated": updated}


@router.put(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    response_model_by_alias=True,
    summary="Mark notification as read",
)
async def mark_as_read(
    notification_id: UUID,
    seller: CurrentSeller,
    db: DatabaseSession,
) -> NotificationResponse:
    """
    Raises:
        HTTPException: 404 if the notification does not exist, 403 if it
            belongs to another seller
    """
    service = NotificationService(db)
    try:
        notification = await service.mark_as_read(seller.id, notification_id)
    except SettlementError as e:
        raise to_http_exception(e) from e
    return NotificationResponse.model_validate(notification)
