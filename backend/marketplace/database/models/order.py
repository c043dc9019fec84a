"""
Order aggregate models.

An Order owns an ordered list of OrderItems, each attributed to exactly one
seller. Orders are never deleted: cancellation and returns are states. The
``version`` column is an optimistic lock, so a save based on a stale read is
rejected instead of silently overwriting a concurrent change.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database.base import BaseModel, JSONType
from marketplace.services.orders.enums import ItemStatus, OrderStatus, PaymentMethod


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Order(BaseModel):
    """
    Order aggregate root.

    Attributes:
        user_id: Customer reference from the identity service
        customer_email: Address used for the confirmation message
        shipping_address: Normalised address document
        payment_method: Online gateway or cash on delivery
        payment_result: Gateway transaction id, status, update time and email
        gateway_order_id: Gateway order handle issued at create-order time
        gateway_payment_id: Gateway payment id, unique so a settled payment
            can only ever produce one order
        items_price/tax_price/shipping_price/total_price: Price breakdown
        status: Aggregate fulfillment status
        version: Optimistic lock counter
    """

    __tablename__ = "orders"

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Customer placing the order",
    )

    customer_email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="address, city, postal_code, country, phone",
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    payment_result: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Idempotency key for payment verification",
    )

    items_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    shipping_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=OrderStatus.PROCESSING,
        index=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("items_price >= 0", name="ck_orders_items_price_non_negative"),
        CheckConstraint("tax_price >= 0", name="ck_orders_tax_price_non_negative"),
        CheckConstraint(
            "shipping_price >= 0", name="ck_orders_shipping_price_non_negative"
        ),
        CheckConstraint("total_price >= 0", name="ck_orders_total_price_non_negative"),
        Index("ix_orders_user_created", "user_id", "created_at"),
        {"comment": "Customer orders spanning one or more sellers"},
    )

    @property
    def seller_ids(self) -> list[str]:
        """Distinct sellers referenced by the items, in first-seen order."""
        seen: dict[str, None] = {}
        for item in self.items:
            seen.setdefault(item.seller_id, None)
        return list(seen)

    def items_for_seller(self, seller_id: str) -> list["OrderItem"]:
        return [item for item in self.items if item.seller_id == seller_id]

    def find_item(self, item_id: uuid.UUID) -> Optional["OrderItem"]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"status={self.status.value if self.status else None}, "
            f"total_price={self.total_price})>"
        )


class OrderItem(BaseModel):
    """
    Line item inside an order.

    Name, image and price are snapshots taken at purchase time. Items are
    only addressable through their order.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    item_status: Mapped[ItemStatus] = mapped_column(
        SQLEnum(
            ItemStatus,
            name="item_status",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ItemStatus.PROCESSING,
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
        Index("ix_order_items_seller_status", "seller_id", "item_status"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    def __repr__(self) -> str:
        return (
            f"<OrderItem(id={self.id}, product_id={self.product_id}, "
            f"seller_id={self.seller_id}, item_status={self.item_status})>"
        )
