"""
Tests for payment confirmation signature verification.
"""

import hashlib
import hmac

import pytest

from marketplace.core.exceptions import SignatureMismatchError, ValidationError
from marketplace.services.payments.signature import (
    compute_payment_signature,
    verify_payment_signature,
)

SECRET = "test_gateway_secret"


def _expected(order_id: str, payment_id: str) -> str:
    return hmac.new(
        SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
    ).hexdigest()


class TestComputePaymentSignature:
    def test_matches_hmac_sha256_of_joined_ids(self) -> None:
        assert compute_payment_signature("order_1", "pay_1", SECRET) == _expected(
            "order_1", "pay_1"
        )

    def test_depends_on_id_order(self) -> None:
        assert compute_payment_signature("a", "b", SECRET) != compute_payment_signature(
            "b", "a", SECRET
        )


class TestVerifyPaymentSignature:
    def test_valid_signature_passes(self) -> None:
        verify_payment_signature("order_1", "pay_1", _expected("order_1", "pay_1"), SECRET)

    def test_single_flipped_character_is_rejected(self) -> None:
        signature = _expected("order_1", "pay_1")
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]

        with pytest.raises(SignatureMismatchError) as exc_info:
            verify_payment_signature("order_1", "pay_1", flipped, SECRET)

        assert exc_info.value.context["gateway_payment_id"] == "pay_1"

    def test_signature_for_other_payment_is_rejected(self) -> None:
        with pytest.raises(SignatureMismatchError):
            verify_payment_signature(
                "order_1", "pay_2", _expected("order_1", "pay_1"), SECRET
            )

    def test_wrong_secret_is_rejected(self) -> None:
        signature = compute_payment_signature("order_1", "pay_1", "another-secret")
        with pytest.raises(SignatureMismatchError):
            verify_payment_signature("order_1", "pay_1", signature, SECRET)

    @pytest.mark.parametrize(
        "order_id,payment_id,signature",
        [
            (None, "pay_1", "sig"),
            ("order_1", "", "sig"),
            ("order_1", "pay_1", None),
        ],
    )
    def test_missing_fields_raise_validation_error(
        self, order_id, payment_id, signature
    ) -> None:
        with pytest.raises(ValidationError):
            verify_payment_signature(order_id, payment_id, signature, SECRET)
