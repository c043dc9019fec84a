"""
Payment confirmation signature verification.

The gateway signs ``"<gateway_order_id>|<gateway_payment_id>"`` with the
merchant key secret using HMAC-SHA256 and returns the hex digest to the
browser. This is the only field of a checkout payload that is trusted to have
been approved by the gateway.
"""

import hashlib
import hmac

from marketplace.core.exceptions import SignatureMismatchError, ValidationError
from marketplace.core.logging import get_logger

logger = get_logger(__name__)


def compute_payment_signature(
    gateway_order_id: str,
    gateway_payment_id: str,
    secret: str,
) -> str:
    """
    Compute the expected hex signature for a gateway order/payment pair.

    Args:
        gateway_order_id: Order handle issued by the gateway
        gateway_payment_id: Payment id returned after capture
        secret: Merchant key secret shared with the gateway

    Returns:
        Lowercase hex HMAC-SHA256 digest
    """
    message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
    secret: str,
) -> None:
    """
    Verify a payment confirmation in constant time.

    Raises:
        ValidationError: If any of the three values is missing
        SignatureMismatchError: If the signature does not match
    """
    if not gateway_order_id or not gateway_payment_id or not signature:
        raise ValidationError(
            "Missing payment confirmation fields",
            gateway_order_id=bool(gateway_order_id),
            gateway_payment_id=bool(gateway_payment_id),
            signature=bool(signature),
        )

    expected = compute_payment_signature(gateway_order_id, gateway_payment_id, secret)

    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        logger.warning(
            "Payment signature mismatch",
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )
        raise SignatureMismatchError(
            "Invalid payment signature",
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )

    logger.debug(
        "Payment signature verified",
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
    )
