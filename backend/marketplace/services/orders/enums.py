"""Order, item and payment enums with fulfillment transition rules.

Per-item fulfillment is the only state that sellers drive directly. The
aggregate order status is derived from the items (see the state machine) or
changed through explicit cancel and refund actions.
"""

from enum import Enum
from typing import Dict, Set


def _normalise(value: str) -> str:
    return value.strip().replace("_", " ").replace("-", " ").lower()


class ItemStatus(str, Enum):
    """Per-item fulfillment status.

    Valid transitions:
    - PROCESSING -> SHIPPED, CANCELLED
    - SHIPPED -> DELIVERED, CANCELLED
    - DELIVERED -> RETURN_REQUESTED
    - RETURN_REQUESTED -> RETURN_INITIATED
    - RETURN_INITIATED -> RETURNED
    - CANCELLED -> (terminal state)
    - RETURNED -> (terminal state)
    """

    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURN_REQUESTED = "Return Requested"
    RETURN_INITIATED = "Return Initiated"
    RETURNED = "Returned"

    @classmethod
    def from_string(cls, value: str) -> "ItemStatus":
        """Convert a loosely formatted string to ItemStatus.

        Accepts the display value ("Return Requested") as well as the
        member name ("return_requested"), case-insensitively.

        Raises:
            ValueError: If value is not a valid status
        """
        wanted = _normalise(value or "")
        for status in cls:
            if _normalise(status.value) == wanted:
                return status
        valid_values = ", ".join(s.value for s in cls)
        raise ValueError(
            f"Invalid item status: {value}. Valid values are: {valid_values}"
        )

    def is_terminal(self) -> bool:
        return self in {ItemStatus.CANCELLED, ItemStatus.RETURNED}

    def is_return_flow(self) -> bool:
        return self in {
            ItemStatus.RETURN_REQUESTED,
            ItemStatus.RETURN_INITIATED,
            ItemStatus.RETURNED,
        }

    def has_shipped(self) -> bool:
        """True once the item has left the seller."""
        return self in {
            ItemStatus.SHIPPED,
            ItemStatus.DELIVERED,
            ItemStatus.RETURN_REQUESTED,
            ItemStatus.RETURN_INITIATED,
            ItemStatus.RETURNED,
        }


class OrderStatus(str, Enum):
    """Aggregate order status shown to customers."""

    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        wanted = _normalise(value or "")
        for status in cls:
            if _normalise(status.value) == wanted:
                return status
        valid_values = ", ".join(s.value for s in cls)
        raise ValueError(
            f"Invalid order status: {value}. Valid values are: {valid_values}"
        )

    def is_terminal(self) -> bool:
        return self in {OrderStatus.CANCELLED, OrderStatus.RETURNED}


class PaymentMethod(str, Enum):
    """How the customer settles the order."""

    RAZORPAY = "Razorpay"
    COD = "COD"

    @property
    def is_online(self) -> bool:
        return self is not PaymentMethod.COD


ITEM_STATUS_TRANSITIONS: Dict[ItemStatus, Set[ItemStatus]] = {
    ItemStatus.PROCESSING: {ItemStatus.SHIPPED, ItemStatus.CANCELLED},
    ItemStatus.SHIPPED: {ItemStatus.DELIVERED, ItemStatus.CANCELLED},
    ItemStatus.DELIVERED: {ItemStatus.RETURN_REQUESTED},
    ItemStatus.RETURN_REQUESTED: {ItemStatus.RETURN_INITIATED},
    ItemStatus.RETURN_INITIATED: {ItemStatus.RETURNED},
    ItemStatus.CANCELLED: set(),  # Terminal
    ItemStatus.RETURNED: set(),  # Terminal
}


def validate_item_status_transition(current: ItemStatus, new: ItemStatus) -> bool:
    """Validate if an item status transition is allowed.

    Args:
        current: Current item status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ITEM_STATUS_TRANSITIONS.get(current, set())


def get_allowed_item_transitions(current: ItemStatus) -> Set[ItemStatus]:
    """Get all allowed transitions from the current item status."""
    return ITEM_STATUS_TRANSITIONS.get(current, set()).copy()
