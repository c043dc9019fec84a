"""
Notification Pydantic schemas.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from marketplace.database.models.notification import NotificationType
from marketplace.schemas.orders import CamelResponse


class NotificationResponse(CamelResponse):
    id: UUID
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    read: bool
    related_id: Optional[str] = None
    created_at: datetime
