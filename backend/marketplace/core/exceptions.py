"""
Settlement error taxonomy.

Every error carries a human readable message plus structured context that is
logged alongside it. Routers translate these into HTTP responses; errors
raised inside the side-effect runner are only ever logged.
"""

from typing import Any


class SettlementError(Exception):
    """Base exception for order and payment settlement errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(SettlementError):
    """Raised when required checkout or update fields are missing or malformed."""

    pass


class SignatureMismatchError(SettlementError):
    """Raised when a payment confirmation signature does not verify."""

    pass


class UnauthorizedError(SettlementError):
    """Raised when a principal acts on an order or item it does not own."""

    pass


class NotFoundError(SettlementError):
    """Raised when an order, item or notification does not exist."""

    pass


class StateTransitionError(SettlementError):
    """Raised when a status change is not a legal edge of the state machine."""

    def __init__(
        self,
        message: str,
        current_state: Any = None,
        target_state: Any = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.current_state = current_state
        self.target_state = target_state


class ConflictError(SettlementError):
    """Raised when a request collides with an already settled resource."""

    pass


class ConcurrentModificationError(ConflictError):
    """Raised when an order changed between read and write."""

    pass


class GatewayError(SettlementError):
    """Raised when the external payment gateway fails or times out."""

    def __init__(self, message: str, status_code: int | None = None, **context: Any):
        super().__init__(message, **context)
        self.status_code = status_code


class PersistenceError(SettlementError):
    """Raised when the order store rejects a write."""

    pass


class BackgroundTaskError(SettlementError):
    """
    Raised inside the side-effect runner.

    ``retry_payload`` replaces the outbox task payload before the next attempt,
    which lets partially applied effects resume with only the remaining work.
    A ``terminal`` error fails the outbox row at once instead of retrying it.
    """

    def __init__(
        self,
        message: str,
        order_id: str | None = None,
        retry_payload: dict[str, Any] | None = None,
        terminal: bool = False,
        **context: Any,
    ):
        super().__init__(message, order_id=order_id, **context)
        self.order_id = order_id
        self.retry_payload = retry_payload
        self.terminal = terminal
