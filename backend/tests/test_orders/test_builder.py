"""
Tests for building order aggregates from storefront payloads.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace.core.exceptions import ValidationError
from marketplace.services.orders.builder import (
    OrderAggregateBuilder,
    PaymentConfirmation,
    to_money,
)
from marketplace.services.orders.enums import ItemStatus, OrderStatus, PaymentMethod


@pytest.fixture
def builder() -> OrderAggregateBuilder:
    return OrderAggregateBuilder(default_country="India")


def _build(builder, items, address, **overrides):
    kwargs = {
        "user_id": "customer-1",
        "raw_items": items,
        "raw_address": address,
        "items_price": 1300,
    }
    kwargs.update(overrides)
    return builder.build(**kwargs)


# ============================================================================
# Item Normalization Tests
# ============================================================================


class TestBuildItems:
    def test_snapshots_item_fields(self, builder, two_seller_items) -> None:
        items = builder.build_items(two_seller_items)

        assert [(i.product_id, i.seller_id, i.quantity) for i in items] == [
            ("P1", "S1", 2),
            ("P2", "S2", 1),
        ]
        assert items[0].name == "Desk Lamp"
        assert items[0].price == Decimal("500.00")
        assert all(item.item_status == ItemStatus.PROCESSING for item in items)
        assert [item.position for item in items] == [0, 1]

    def test_accepts_alternate_field_spellings(self, builder) -> None:
        items = builder.build_items(
            [
                {
                    "productId": {"_id": "P9"},
                    "sellerId": {"id": "S9"},
                    "quantity": "3",
                    "price": "19.999",
                }
            ]
        )

        assert items[0].product_id == "P9"
        assert items[0].seller_id == "S9"
        assert items[0].quantity == 3
        assert items[0].price == Decimal("20.00")
        assert items[0].name == "P9"

    @pytest.mark.parametrize(
        "raw,message",
        [
            ({"seller": "S1", "qty": 1, "price": 1}, "missing a product"),
            ({"product": "P1", "qty": 1, "price": 1}, "missing a seller"),
            ({"product": "P1", "seller": "S1", "price": 1}, "quantity is required"),
            ({"product": "P1", "seller": "S1", "qty": 0, "price": 1}, "at least 1"),
            ({"product": "P1", "seller": "S1", "qty": 1.5, "price": 1}, "integer"),
            ({"product": "P1", "seller": "S1", "qty": 1}, "price is required"),
            ({"product": "P1", "seller": "S1", "qty": 1, "price": -1}, "non-negative"),
        ],
    )
    def test_rejects_incomplete_items(self, builder, raw, message) -> None:
        with pytest.raises(ValidationError, match=message):
            builder.build_items([raw])

    def test_rejects_non_object_item(self, builder) -> None:
        with pytest.raises(ValidationError, match="must be an object"):
            builder.build_items(["P1"])

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"product": "P" * 65}, "product id is longer than 64"),
            ({"seller": "S" * 65}, "seller id is longer than 64"),
            ({"image": "https://cdn.example.com/" + "x" * 1024}, "image is longer than 1024"),
            ({"image": {"url": "https://cdn.example.com/lamp.png"}}, "must be a URL string"),
        ],
    )
    def test_rejects_values_that_do_not_fit_columns(self, builder, overrides, message) -> None:
        raw = {"product": "P1", "seller": "S1", "qty": 1, "price": 10, **overrides}

        with pytest.raises(ValidationError, match=message):
            builder.build_items([raw])

    def test_keeps_image_url(self, builder) -> None:
        items = builder.build_items(
            [
                {"product": "P" * 64, "seller": "S1", "qty": 1, "price": 10,
                 "image": "https://cdn.example.com/lamp.png"},
                {"product": "P2", "seller": "S1", "qty": 1, "price": 10, "image": ""},
            ]
        )

        assert items[0].image == "https://cdn.example.com/lamp.png"
        assert items[1].image is None


# ============================================================================
# Address Tests
# ============================================================================


class TestNormalizeAddress:
    def test_defaults_country(self, builder) -> None:
        address = builder.normalize_address(
            {"street": "1 Park Lane", "city": "Pune", "pincode": 411001}
        )

        assert address == {
            "address": "1 Park Lane",
            "city": "Pune",
            "postal_code": "411001",
            "country": "India",
            "phone": None,
        }

    def test_reports_every_missing_field(self, builder) -> None:
        with pytest.raises(ValidationError) as exc_info:
            builder.normalize_address({"country": "India"})

        assert exc_info.value.context["missing_fields"] == ["address", "city", "postal_code"]


# ============================================================================
# Aggregate Tests
# ============================================================================


class TestBuild:
    def test_cash_on_delivery_order_is_unpaid(
        self, builder, two_seller_items, shipping_address
    ) -> None:
        order = _build(builder, two_seller_items, shipping_address, customer_email="b@x.io")

        assert order.id is not None
        assert order.payment_method == PaymentMethod.COD
        assert order.is_paid is False
        assert order.paid_at is None
        assert order.payment_result is None
        assert order.status == OrderStatus.PROCESSING
        assert order.total_price == Decimal("1300.00")
        assert order.customer_email == "b@x.io"

    def test_verified_payment_marks_order_paid(
        self, builder, two_seller_items, shipping_address
    ) -> None:
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        order = _build(
            builder,
            two_seller_items,
            shipping_address,
            payment=PaymentConfirmation("order_1", "pay_1", email_address="p@x.io"),
            now=now,
        )

        assert order.payment_method == PaymentMethod.RAZORPAY
        assert order.is_paid is True
        assert order.paid_at == now
        assert order.payment_result == {
            "id": "pay_1",
            "status": "Completed",
            "update_time": now.isoformat(),
            "email_address": "p@x.io",
        }

    def test_total_defaults_to_sum_of_breakdown(
        self, builder, two_seller_items, shipping_address
    ) -> None:
        order = _build(
            builder,
            two_seller_items,
            shipping_address,
            tax_price="65.50",
            shipping_price=40,
        )

        assert order.total_price == Decimal("1405.50")

    def test_inconsistent_total_is_rejected(
        self, builder, two_seller_items, shipping_address
    ) -> None:
        with pytest.raises(ValidationError, match="totalPrice must equal"):
            _build(builder, two_seller_items, shipping_address, total_price=999)

    def test_empty_basket_is_rejected(self, builder, shipping_address) -> None:
        with pytest.raises(ValidationError, match="No order items"):
            _build(builder, [], shipping_address)

    def test_seller_ids_are_distinct_in_first_seen_order(
        self, builder, shipping_address
    ) -> None:
        items = [
            {"product": "P1", "seller": "S2", "qty": 1, "price": 100},
            {"product": "P2", "seller": "S1", "qty": 1, "price": 100},
            {"product": "P3", "seller": "S2", "qty": 1, "price": 100},
        ]
        order = _build(builder, items, shipping_address, items_price=300)

        assert order.seller_ids == ["S2", "S1"]
        assert [item.product_id for item in order.items_for_seller("S2")] == ["P1", "P3"]


class TestToMoney:
    def test_rounds_to_cents(self) -> None:
        assert to_money("2.499", "x") == Decimal("2.50")

    def test_optional_missing_is_zero(self) -> None:
        assert to_money(None, "taxPrice", required=False) == Decimal("0.00")

    @pytest.mark.parametrize("value", [True, "ten", "NaN"])
    def test_rejects_non_numbers(self, value) -> None:
        with pytest.raises(ValidationError):
            to_money(value, "itemsPrice")
