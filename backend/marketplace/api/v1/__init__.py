"""
API v1 package initialization.

Collects the v1 routers under a single router mounted at ``/api/v1``.
"""

from fastapi import APIRouter

from marketplace.api.v1.notifications import router as notifications_router
from marketplace.api.v1.orders import router as orders_router
from marketplace.api.v1.payments import router as payments_router

api_router = APIRouter()
api_router.include_router(payments_router)
api_router.include_router(orders_router)
api_router.include_router(notifications_router)

__all__ = ["api_router"]
