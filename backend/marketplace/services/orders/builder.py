"""
Order aggregate construction from raw checkout payloads.

Normalizes storefront payloads (which use several spellings for the same
fields) into an unsaved Order with its items. Nothing here touches the
database; the repository writes the result in a single transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

from marketplace.core.config import get_settings
from marketplace.core.exceptions import ValidationError
from marketplace.core.logging import get_logger
from marketplace.database.base import utcnow
from marketplace.database.models.order import Order, OrderItem
from marketplace.services.orders.enums import ItemStatus, OrderStatus, PaymentMethod

logger = get_logger(__name__)

CENT = Decimal("0.01")

# Column sizes of order_items.
MAX_REFERENCE_LENGTH = 64
MAX_IMAGE_LENGTH = 1024

PRODUCT_KEYS = ("product", "product_id", "productId", "_id")
SELLER_KEYS = ("seller", "seller_id", "sellerId")
QUANTITY_KEYS = ("qty", "quantity")
ADDRESS_KEYS = ("address", "street", "line1")
POSTAL_CODE_KEYS = ("postal_code", "postalCode", "pincode", "zip")


@dataclass(frozen=True)
class PaymentConfirmation:
    """Verified gateway payment that settles an online order."""

    gateway_order_id: str
    gateway_payment_id: str
    email_address: Optional[str] = None
    status: str = "Completed"


def _first(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _reference(value: Any) -> Optional[str]:
    """Accept either a bare id or an embedded document with an id."""
    if isinstance(value, Mapping):
        value = value.get("_id") or value.get("id")
    if value in (None, ""):
        return None
    return str(value)


def _bounded(value: str, field: str, limit: int, index: int) -> str:
    if len(value) > limit:
        raise ValidationError(
            f"Order item {field} is longer than {limit} characters",
            item_index=index,
        )
    return value


def _image(value: Any, index: int) -> Optional[str]:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError("Order item image must be a URL string", item_index=index)
    return _bounded(value, "image", MAX_IMAGE_LENGTH, index)


def to_money(value: Any, field: str, required: bool = True) -> Decimal:
    """
    Parse a non-negative money amount rounded to cents.

    Raises:
        ValidationError: If the value is missing, not numeric or negative
    """
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return Decimal("0.00")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value)).quantize(CENT)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field, value=str(value))
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be non-negative", field=field)
    return amount


def _to_quantity(value: Any, index: int) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Item quantity is required", item_index=index)
    try:
        decimal_value = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Item quantity must be an integer", item_index=index)
    if decimal_value != decimal_value.to_integral_value():
        raise ValidationError("Item quantity must be an integer", item_index=index)
    quantity = int(decimal_value)
    if quantity < 1:
        raise ValidationError("Item quantity must be at least 1", item_index=index)
    return quantity


class OrderAggregateBuilder:
    """
    Builds Order aggregates for both online and cash-on-delivery checkouts.

    Every item must carry a product, a seller, a quantity and a unit price;
    the price breakdown must add up to the submitted total.
    """

    def __init__(self, default_country: Optional[str] = None):
        self.default_country = default_country or get_settings().default_country

    def validate_required(
        self,
        raw_items: Optional[Sequence[Mapping[str, Any]]],
        raw_address: Optional[Mapping[str, Any]],
    ) -> None:
        """
        Cheap presence checks that run before any signature verification.

        Raises:
            ValidationError: If there are no items or no shipping address
        """
        if not raw_items:
            raise ValidationError("No order items")
        if not raw_address:
            raise ValidationError("Shipping address is required")

    def normalize_address(self, raw_address: Mapping[str, Any]) -> dict[str, Any]:
        """
        Map storefront address spellings onto the stored address document.

        Raises:
            ValidationError: If address line, city or postal code is missing
        """
        address = _first(raw_address, ADDRESS_KEYS)
        city = raw_address.get("city")
        postal_code = _first(raw_address, POSTAL_CODE_KEYS)

        missing = [
            name
            for name, value in (
                ("address", address),
                ("city", city),
                ("postal_code", postal_code),
            )
            if not value
        ]
        if missing:
            raise ValidationError(
                "Shipping address is incomplete",
                missing_fields=missing,
            )

        return {
            "address": str(address),
            "city": str(city),
            "postal_code": str(postal_code),
            "country": str(raw_address.get("country") or self.default_country),
            "phone": str(raw_address["phone"]) if raw_address.get("phone") else None,
        }

    def build_items(self, raw_items: Sequence[Mapping[str, Any]]) -> list[OrderItem]:
        """
        Convert raw line items into OrderItem rows.

        Raises:
            ValidationError: If any item lacks a product, seller, quantity or price,
                or a reference or image does not fit its column
        """
        items: list[OrderItem] = []

        for index, raw in enumerate(raw_items):
            if not isinstance(raw, Mapping):
                raise ValidationError("Order item must be an object", item_index=index)

            product_id = _reference(_first(raw, PRODUCT_KEYS))
            if product_id is None:
                raise ValidationError("Order item is missing a product", item_index=index)
            _bounded(product_id, "product id", MAX_REFERENCE_LENGTH, index)

            seller_id = _reference(_first(raw, SELLER_KEYS))
            if seller_id is None:
                raise ValidationError(
                    "Order item is missing a seller",
                    item_index=index,
                    product_id=product_id,
                )
            _bounded(seller_id, "seller id", MAX_REFERENCE_LENGTH, index)

            quantity = _to_quantity(_first(raw, QUANTITY_KEYS), index)
            price = to_money(raw.get("price"), f"orderItems[{index}].price")

            items.append(
                OrderItem(
                    position=index,
                    product_id=product_id,
                    seller_id=seller_id,
                    name=str(raw.get("name") or product_id)[:255],
                    image=_image(raw.get("image"), index),
                    price=price,
                    quantity=quantity,
                    item_status=ItemStatus.PROCESSING,
                )
            )

        return items

    def build(
        self,
        *,
        user_id: str,
        raw_items: Optional[Sequence[Mapping[str, Any]]],
        raw_address: Optional[Mapping[str, Any]],
        items_price: Any,
        tax_price: Any = None,
        shipping_price: Any = None,
        total_price: Any = None,
        customer_email: Optional[str] = None,
        payment: Optional[PaymentConfirmation] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Build an unsaved Order aggregate.

        ``payment`` must only be passed after the signature has been verified;
        without it the order is cash on delivery and unpaid.

        Raises:
            ValidationError: If the payload is incomplete or the totals disagree
        """
        self.validate_required(raw_items, raw_address)
        now = now or utcnow()

        address = self.normalize_address(raw_address)
        items = self.build_items(raw_items)

        items_amount = to_money(items_price, "itemsPrice")
        tax_amount = to_money(tax_price, "taxPrice", required=False)
        shipping_amount = to_money(shipping_price, "shippingPrice", required=False)
        expected_total = items_amount + tax_amount + shipping_amount

        if total_price in (None, ""):
            total_amount = expected_total
        else:
            total_amount = to_money(total_price, "totalPrice")
            if total_amount != expected_total:
                raise ValidationError(
                    "totalPrice must equal itemsPrice + taxPrice + shippingPrice",
                    total_price=str(total_amount),
                    expected_total=str(expected_total),
                )

        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            customer_email=customer_email,
            shipping_address=address,
            items=items,
            items_price=items_amount,
            tax_price=tax_amount,
            shipping_price=shipping_amount,
            total_price=total_amount,
            status=OrderStatus.PROCESSING,
            is_delivered=False,
            is_refunded=False,
            is_cancelled=False,
        )

        if payment is not None:
            order.payment_method = PaymentMethod.RAZORPAY
            order.gateway_order_id = payment.gateway_order_id
            order.gateway_payment_id = payment.gateway_payment_id
            order.payment_result = {
                "id": payment.gateway_payment_id,
                "status": payment.status,
                "update_time": now.isoformat(),
                "email_address": payment.email_address or customer_email,
            }
            order.is_paid = True
            order.paid_at = now
        else:
            order.payment_method = PaymentMethod.COD
            order.is_paid = False
            order.paid_at = None

        logger.debug(
            "Order aggregate built",
            user_id=user_id,
            item_count=len(items),
            seller_count=len(order.seller_ids),
            payment_method=order.payment_method.value,
            total_price=str(total_amount),
        )

        return order
