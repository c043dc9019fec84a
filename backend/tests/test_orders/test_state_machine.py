"""
Test suite for the fulfillment state machine.

Tests cover item transitions, ownership checks, item selection, aggregate
rollup, cancellation and refunds. Orders are built in memory; nothing here
touches the database.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace.core.exceptions import (
    NotFoundError,
    StateTransitionError,
    UnauthorizedError,
)
from marketplace.database.models.order import Order, OrderItem
from marketplace.services.orders.enums import (
    ItemStatus,
    OrderStatus,
    PaymentMethod,
    get_allowed_item_transitions,
    validate_item_status_transition,
)
from marketplace.services.orders.state_machine import FulfillmentStateMachine

FIXED_NOW = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)


# ============================================================================
# Test Fixtures
# ============================================================================


def make_item(product_id: str, seller_id: str, status: ItemStatus = ItemStatus.PROCESSING) -> OrderItem:
    return OrderItem(
        id=uuid.uuid4(),
        product_id=product_id,
        seller_id=seller_id,
        name=product_id,
        price=Decimal("100.00"),
        quantity=1,
        item_status=status,
    )


def make_order(*items: OrderItem, status: OrderStatus = OrderStatus.PROCESSING, paid: bool = True) -> Order:
    return Order(
        id=uuid.uuid4(),
        user_id="customer-1",
        shipping_address={},
        payment_method=PaymentMethod.RAZORPAY if paid else PaymentMethod.COD,
        items=list(items),
        items_price=Decimal("100.00"),
        tax_price=Decimal("0.00"),
        shipping_price=Decimal("0.00"),
        total_price=Decimal("100.00"),
        status=status,
        is_paid=paid,
        is_delivered=False,
        is_refunded=False,
        is_cancelled=False,
    )


@pytest.fixture
def state_machine() -> FulfillmentStateMachine:
    """State machine with a frozen clock."""
    return FulfillmentStateMachine(clock=lambda: FIXED_NOW)


def apply(state_machine: FulfillmentStateMachine, order: Order, item: OrderItem, target: ItemStatus) -> OrderStatus:
    """Plan, apply in memory and roll up, as the service does."""
    transition = state_machine.plan_item_transition(item, target, item.seller_id)
    item.item_status = transition.to_status
    if transition.delivered_at is not None:
        item.delivered_at = transition.delivered_at
    return state_machine.rollup(order, target)


# ============================================================================
# Transition Table Tests
# ============================================================================


class TestItemTransitionTable:
    @pytest.mark.parametrize(
        "current,target",
        [
            (ItemStatus.PROCESSING, ItemStatus.SHIPPED),
            (ItemStatus.PROCESSING, ItemStatus.CANCELLED),
            (ItemStatus.SHIPPED, ItemStatus.DELIVERED),
            (ItemStatus.SHIPPED, ItemStatus.CANCELLED),
            (ItemStatus.DELIVERED, ItemStatus.RETURN_REQUESTED),
            (ItemStatus.RETURN_REQUESTED, ItemStatus.RETURN_INITIATED),
            (ItemStatus.RETURN_INITIATED, ItemStatus.RETURNED),
        ],
    )
    def test_allowed_edges(self, current, target) -> None:
        assert validate_item_status_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (ItemStatus.PROCESSING, ItemStatus.DELIVERED),
            (ItemStatus.DELIVERED, ItemStatus.SHIPPED),
            (ItemStatus.DELIVERED, ItemStatus.CANCELLED),
            (ItemStatus.RETURN_REQUESTED, ItemStatus.RETURNED),
            (ItemStatus.SHIPPED, ItemStatus.SHIPPED),
        ],
    )
    def test_rejected_edges(self, current, target) -> None:
        assert not validate_item_status_transition(current, target)

    @pytest.mark.parametrize("terminal", [ItemStatus.CANCELLED, ItemStatus.RETURNED])
    def test_terminal_states_have_no_exits(self, terminal) -> None:
        assert get_allowed_item_transitions(terminal) == set()
        assert terminal.is_terminal()

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Shipped", ItemStatus.SHIPPED),
            ("delivered", ItemStatus.DELIVERED),
            ("return_requested", ItemStatus.RETURN_REQUESTED),
            ("Return Initiated", ItemStatus.RETURN_INITIATED),
        ],
    )
    def test_from_string_is_lenient(self, raw, expected) -> None:
        assert ItemStatus.from_string(raw) is expected

    def test_from_string_rejects_unknown(self) -> None:
        with pytest.raises(ValueError, match="Invalid item status"):
            ItemStatus.from_string("Lost")


# ============================================================================
# Item Transition Tests
# ============================================================================


class TestPlanItemTransition:
    def test_valid_transition(self, state_machine) -> None:
        item = make_item("P1", "S1")

        transition = state_machine.plan_item_transition(item, ItemStatus.SHIPPED, "S1")

        assert transition.from_status == ItemStatus.PROCESSING
        assert transition.to_status == ItemStatus.SHIPPED
        assert transition.delivered_at is None
        assert item.item_status == ItemStatus.PROCESSING

    def test_delivery_stamps_delivered_at(self, state_machine) -> None:
        item = make_item("P1", "S1", ItemStatus.SHIPPED)

        transition = state_machine.plan_item_transition(item, ItemStatus.DELIVERED, "S1")

        assert transition.delivered_at == FIXED_NOW

    def test_other_seller_is_unauthorized(self, state_machine) -> None:
        item = make_item("P1", "S1")

        with pytest.raises(UnauthorizedError):
            state_machine.plan_item_transition(item, ItemStatus.SHIPPED, "S2")

    def test_illegal_edge_reports_allowed_transitions(self, state_machine) -> None:
        item = make_item("P1", "S1")

        with pytest.raises(StateTransitionError) as exc_info:
            state_machine.plan_item_transition(item, ItemStatus.DELIVERED, "S1")

        error = exc_info.value
        assert error.current_state == ItemStatus.PROCESSING
        assert error.target_state == ItemStatus.DELIVERED
        assert error.context["allowed_transitions"] == ["Cancelled", "Shipped"]


class TestSelectItem:
    def test_product_id_picks_matching_item(self, state_machine) -> None:
        first, second = make_item("P1", "S1"), make_item("P2", "S1")
        order = make_order(first, second)

        assert state_machine.select_item(order, "S1", ItemStatus.SHIPPED, "P2") is second

    def test_unknown_product_is_not_found(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1"))

        with pytest.raises(NotFoundError):
            state_machine.select_item(order, "S1", ItemStatus.SHIPPED, "P9")

    def test_product_of_other_seller_is_unauthorized(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1"), make_item("P2", "S2"))

        with pytest.raises(UnauthorizedError, match="not authorized"):
            state_machine.select_item(order, "S2", ItemStatus.SHIPPED, "P1")

    def test_seller_without_items_is_unauthorized(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1"))

        with pytest.raises(UnauthorizedError):
            state_machine.select_item(order, "S3", ItemStatus.SHIPPED)

    def test_without_product_picks_first_eligible(self, state_machine) -> None:
        shipped = make_item("P1", "S1", ItemStatus.SHIPPED)
        waiting = make_item("P2", "S1")
        order = make_order(shipped, waiting)

        assert state_machine.select_item(order, "S1", ItemStatus.SHIPPED) is waiting
        assert state_machine.select_item(order, "S1", ItemStatus.DELIVERED) is shipped

    def test_without_eligible_item_falls_back_to_first(self, state_machine) -> None:
        first = make_item("P1", "S1", ItemStatus.CANCELLED)
        order = make_order(first, make_item("P2", "S1", ItemStatus.RETURNED))

        assert state_machine.select_item(order, "S1", ItemStatus.SHIPPED) is first


# ============================================================================
# Rollup Tests
# ============================================================================


class TestRollup:
    def test_first_shipment_ships_the_order(self, state_machine) -> None:
        a, b = make_item("P1", "S1"), make_item("P2", "S2")
        order = make_order(a, b)

        assert apply(state_machine, order, a, ItemStatus.SHIPPED) == OrderStatus.SHIPPED

    def test_mixed_delivery_then_shipment(self, state_machine) -> None:
        a = make_item("P1", "S1", ItemStatus.SHIPPED)
        b = make_item("P2", "S2")
        order = make_order(a, b)

        assert apply(state_machine, order, a, ItemStatus.DELIVERED) == OrderStatus.PROCESSING
        assert order.is_delivered is False

        assert apply(state_machine, order, b, ItemStatus.SHIPPED) == OrderStatus.SHIPPED

        assert apply(state_machine, order, b, ItemStatus.DELIVERED) == OrderStatus.DELIVERED
        assert order.is_delivered is True
        assert order.delivered_at == FIXED_NOW

    def test_cancelling_an_item_does_not_roll_up(self, state_machine) -> None:
        a, b = make_item("P1", "S1"), make_item("P2", "S2")
        order = make_order(a, b)

        assert apply(state_machine, order, a, ItemStatus.CANCELLED) == OrderStatus.PROCESSING

    def test_return_flow_keeps_delivered(self, state_machine) -> None:
        a = make_item("P1", "S1", ItemStatus.DELIVERED)
        order = make_order(a, status=OrderStatus.DELIVERED)

        assert apply(state_machine, order, a, ItemStatus.RETURN_REQUESTED) == OrderStatus.DELIVERED

    def test_terminal_aggregate_is_untouched(self, state_machine) -> None:
        a = make_item("P1", "S1")
        order = make_order(a, status=OrderStatus.CANCELLED)

        a.item_status = ItemStatus.SHIPPED
        assert state_machine.rollup(order, ItemStatus.SHIPPED) == OrderStatus.CANCELLED


# ============================================================================
# Cancel And Refund Tests
# ============================================================================


class TestCancel:
    def test_cancels_all_live_items(self, state_machine) -> None:
        a, b = make_item("P1", "S1"), make_item("P2", "S2", ItemStatus.CANCELLED)
        order = make_order(a, b)

        transitions = state_machine.cancel(order)

        assert [t.item for t in transitions] == [a]
        assert transitions[0].to_status == ItemStatus.CANCELLED
        assert order.status == OrderStatus.CANCELLED
        assert order.is_cancelled is True
        assert order.cancelled_at == FIXED_NOW

    def test_shipped_item_blocks_cancel(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1", ItemStatus.SHIPPED), make_item("P2", "S2"))

        with pytest.raises(StateTransitionError):
            state_machine.cancel(order)

        assert order.status == OrderStatus.PROCESSING

    def test_non_processing_order_cannot_cancel(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1"), status=OrderStatus.SHIPPED)

        with pytest.raises(StateTransitionError):
            state_machine.cancel(order)


class TestRefund:
    def test_all_returned_becomes_returned(self, state_machine) -> None:
        order = make_order(
            make_item("P1", "S1", ItemStatus.RETURNED),
            status=OrderStatus.DELIVERED,
        )

        assert state_machine.refund(order) == OrderStatus.RETURNED
        assert order.is_refunded is True
        assert order.refunded_at == FIXED_NOW

    def test_any_cancelled_becomes_cancelled(self, state_machine) -> None:
        order = make_order(
            make_item("P1", "S1", ItemStatus.RETURNED),
            make_item("P2", "S2", ItemStatus.CANCELLED),
        )

        assert state_machine.refund(order) == OrderStatus.CANCELLED
        assert order.is_cancelled is True

    def test_live_items_block_refund(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1", ItemStatus.DELIVERED))

        with pytest.raises(StateTransitionError, match="cancelled or returned"):
            state_machine.refund(order)

    def test_unpaid_order_cannot_be_refunded(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1", ItemStatus.CANCELLED), paid=False)

        with pytest.raises(StateTransitionError, match="not eligible"):
            state_machine.refund(order)

    def test_refund_is_not_repeatable(self, state_machine) -> None:
        order = make_order(make_item("P1", "S1", ItemStatus.RETURNED))
        state_machine.refund(order)

        with pytest.raises(StateTransitionError):
            state_machine.refund(order)
