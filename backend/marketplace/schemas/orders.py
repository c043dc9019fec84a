"""
Order Pydantic schemas for API request/response validation.

Request bodies use the storefront's camelCase names. Checkout bodies are kept
permissive on purpose: missing or malformed order data is reported by the
order builder as a 400 with a specific message rather than a generic 422.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import (
    AliasGenerator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

from marketplace.database.models.order import Order
from marketplace.services.orders.enums import ItemStatus, OrderStatus, PaymentMethod

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelRequest(BaseModel):
    """Request body accepting camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class CamelResponse(BaseModel):
    """Response read from ORM attributes and emitted in camelCase."""

    model_config = ConfigDict(
        alias_generator=AliasGenerator(serialization_alias=to_camel),
        from_attributes=True,
    )


class CheckoutRequest(CamelRequest):
    """Order data shared by cash-on-delivery and online checkouts."""

    order_items: Optional[list[Any]] = Field(None, description="Raw basket line items")
    shipping_address: Optional[dict[str, Any]] = None
    items_price: Optional[Any] = None
    tax_price: Optional[Any] = None
    shipping_price: Optional[Any] = None
    total_price: Optional[Any] = None


class CreateOrderRequest(CheckoutRequest):
    """Cash-on-delivery checkout."""

    payment_method: Optional[str] = Field(None, description="Ignored; always COD")


class UpdateItemStatusRequest(CamelRequest):
    """Seller status update for one of their items in an order."""

    status: Optional[str] = Field(None, description="Target item status")
    product_id: Optional[str] = Field(
        None,
        description="Product of the item to update; defaults to the seller's first eligible item",
    )


class OrderItemResponse(CamelResponse):
    id: UUID
    product_id: str
    seller_id: str
    name: str
    image: Optional[str] = None
    price: Money
    quantity: int
    item_status: ItemStatus
    delivered_at: Optional[datetime] = None


class OrderResponse(CamelResponse):
    """Full order document."""

    id: UUID
    user_id: str
    order_items: list[OrderItemResponse] = Field(validation_alias="items")
    shipping_address: dict[str, Any]
    payment_method: PaymentMethod
    payment_result: Optional[dict[str, Any]] = None
    gateway_order_id: Optional[str] = None
    items_price: Money
    tax_price: Money
    shipping_price: Money
    total_price: Money
    is_paid: bool
    paid_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    is_refunded: bool
    refunded_at: Optional[datetime] = None
    is_cancelled: bool
    cancelled_at: Optional[datetime] = None
    status: OrderStatus
    created_at: datetime
    updated_at: datetime


def serialize_order(order: Order) -> dict[str, Any]:
    """JSON-ready camelCase order document, as returned and cached."""
    return OrderResponse.model_validate(order).model_dump(mode="json", by_alias=True)


def seller_view(payload: dict[str, Any], seller_id: str) -> dict[str, Any]:
    """Restrict a serialized order to the items sold by one seller."""
    return {
        **payload,
        "orderItems": [
            item for item in payload.get("orderItems", []) if item.get("sellerId") == seller_id
        ],
    }
