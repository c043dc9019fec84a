"""
Online checkout: gateway order creation and payment verification.

A verified payment settles exactly one order. The gateway payment id is the
idempotency key: a replayed verification returns the order it already
produced, and a concurrent duplicate insert is resolved by reading the winner.
"""

import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, get_settings
from marketplace.core.exceptions import ConflictError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.database.models.order import Order
from marketplace.services.orders.builder import OrderAggregateBuilder, PaymentConfirmation
from marketplace.services.orders.repository import OrderRepository
from marketplace.services.payments.gateway_client import RazorpayClient
from marketplace.services.payments.signature import verify_payment_signature
from marketplace.services.side_effects.outbox import build_order_tasks

logger = get_logger(__name__)


@dataclass
class CheckoutResult:
    order: Order
    replayed: bool = False


def to_minor_units(amount: Any) -> int:
    """
    Convert a rupee amount into paise.

    Raises:
        ValidationError: If the amount is missing, not numeric or not positive
    """
    if amount in (None, "") or isinstance(amount, bool):
        raise ValidationError("Amount is required")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number", amount=str(amount))
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero", amount=str(amount))

    paise = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if paise < 1:
        raise ValidationError("Amount must be greater than zero", amount=str(amount))
    return paise


async def create_gateway_order(
    gateway: RazorpayClient,
    amount: Any,
    currency: Optional[str] = None,
) -> dict[str, Any]:
    """
    Create the gateway order handle a browser checkout pays against.

    Raises:
        ValidationError: If the amount is not positive
        GatewayError: If the gateway fails or times out
    """
    paise = to_minor_units(amount)
    receipt = f"receipt_{int(time.time() * 1000)}"
    return await gateway.create_order(
        amount=paise,
        currency=currency or get_settings().gateway_currency,
        receipt=receipt,
    )


class CheckoutService:
    """Settles verified online payments into orders."""

    def __init__(
        self,
        db_session: AsyncSession,
        builder: Optional[OrderAggregateBuilder] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = OrderRepository(db_session)
        self.builder = builder or OrderAggregateBuilder(self.settings.default_country)

    async def verify_payment(
        self,
        *,
        user_id: str,
        customer_email: Optional[str],
        gateway_order_id: Optional[str],
        gateway_payment_id: Optional[str],
        signature: Optional[str],
        raw_items: Any,
        raw_address: Any,
        items_price: Any,
        tax_price: Any = None,
        shipping_price: Any = None,
        total_price: Any = None,
        payer_email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Verify a payment confirmation and create its order.

        Presence checks run first, then the signature, then the idempotency
        lookup. Nothing is written unless all of them pass.

        Raises:
            ValidationError: If the payload is incomplete or inconsistent
            SignatureMismatchError: If the signature does not verify
            ConflictError: If the payment already settled another customer's order
            PersistenceError: If the order cannot be stored
        """
        self.builder.validate_required(raw_items, raw_address)

        verify_payment_signature(
            gateway_order_id,
            gateway_payment_id,
            signature,
            self.settings.razorpay_key_secret,
        )

        existing = await self.repository.get_by_payment_id(gateway_payment_id)
        if existing is not None:
            return self._replay(existing, user_id)

        order = self.builder.build(
            user_id=user_id,
            raw_items=raw_items,
            raw_address=raw_address,
            items_price=items_price,
            tax_price=tax_price,
            shipping_price=shipping_price,
            total_price=total_price,
            customer_email=customer_email,
            payment=PaymentConfirmation(
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                email_address=payer_email,
            ),
        )

        tasks = build_order_tasks(order, self.settings.outbox_max_attempts)
        try:
            await self.repository.add_order(order, tasks)
            await self.repository.commit()
        except ConflictError:
            winner = await self.repository.get_by_payment_id(gateway_payment_id)
            if winner is None:
                raise
            return self._replay(winner, user_id)

        logger.info(
            "Payment verified and order created",
            order_id=str(order.id),
            user_id=user_id,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            total_price=str(order.total_price),
        )
        return CheckoutResult(order=order)

    def _replay(self, order: Order, user_id: str) -> CheckoutResult:
        if order.user_id != user_id:
            logger.warning(
                "Payment id replayed by a different customer",
                order_id=str(order.id),
                gateway_payment_id=order.gateway_payment_id,
                user_id=user_id,
            )
            raise ConflictError(
                "Payment has already been used for another order",
                gateway_payment_id=order.gateway_payment_id,
            )

        logger.info(
            "Payment verification replayed",
            order_id=str(order.id),
            gateway_payment_id=order.gateway_payment_id,
        )
        return CheckoutResult(order=order, replayed=True)
