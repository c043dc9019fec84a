"""
Translation of settlement errors into HTTP responses.
"""

from fastapi import HTTPException, status

from marketplace.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    SettlementError,
    SignatureMismatchError,
    StateTransitionError,
    UnauthorizedError,
    ValidationError,
)
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

STATUS_BY_ERROR: list[tuple[type[SettlementError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SignatureMismatchError, status.HTTP_400_BAD_REQUEST),
    (StateTransitionError, status.HTTP_400_BAD_REQUEST),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: SettlementError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: SettlementError) -> HTTPException:
    """
    Build the HTTP exception for a settlement error.

    Client errors carry the error message as detail. Server side failures
    return a generic detail and are logged with their context.
    """
    status_code = status_for(error)

    if status_code >= 500:
        logger.error(
            "Request failed",
            error=error.message,
            error_type=type(error).__name__,
            context=error.context,
        )
        detail = (
            "Payment gateway unavailable"
            if isinstance(error, GatewayError)
            else "Internal server error"
        )
        return HTTPException(status_code=status_code, detail=detail)

    logger.warning(
        "Request rejected",
        error=error.message,
        error_type=type(error).__name__,
        status_code=status_code,
        context=error.context,
    )

    if isinstance(error, StateTransitionError):
        return HTTPException(
            status_code=status_code,
            detail={
                "message": error.message,
                "currentState": _value(error.current_state),
                "targetState": _value(error.target_state),
                "allowedTransitions": error.context.get("allowed_transitions", []),
            },
        )

    return HTTPException(status_code=status_code, detail=error.message)


def _value(state):
    return getattr(state, "value", state)
