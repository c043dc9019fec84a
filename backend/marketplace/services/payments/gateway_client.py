"""
Payment gateway REST client with bounded timeouts and retry logic.

Wraps the gateway's order API over httpx. Every call is bounded by the
configured timeout; connection failures, timeouts, throttling and 5xx
responses are retried with exponential backoff, and anything left over is
reported as a GatewayError rather than hanging the checkout request.
"""

import asyncio
from typing import Any, Optional

import httpx

from marketplace.core.config import get_settings
from marketplace.core.exceptions import GatewayError
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RazorpayClient:
    """
    Async client for the gateway order endpoints.

    Authenticates with HTTP basic auth (key id / key secret) and returns the
    decoded JSON body of successful responses.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
        backoff_multiplier: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            key_id: Gateway key id (defaults to settings)
            key_secret: Gateway key secret (defaults to settings)
            base_url: REST base URL (defaults to settings)
            timeout: Per-request timeout in seconds (defaults to settings)
            max_retries: Retry attempts after the first call (defaults to settings)
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Multiplier applied per attempt
            transport: Optional httpx transport, used to stub the gateway
        """
        settings = get_settings()
        self.key_id = key_id or settings.razorpay_key_id
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.max_retries = (
            settings.gateway_max_retries if max_retries is None else max_retries
        )
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, key_secret or settings.razorpay_key_secret),
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    async def _execute_with_retry(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Execute a gateway call with exponential backoff.

        Raises:
            GatewayError: On a non-retryable response or once retries run out
        """
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                last_error = f"timeout after {self.timeout}s"
                logger.warning(
                    "Gateway request timed out",
                    operation=operation,
                    attempt=attempt,
                    error=str(e),
                )
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Gateway connection error",
                    operation=operation,
                    attempt=attempt,
                    error=last_error,
                )
            else:
                if response.is_success:
                    if attempt > 0:
                        logger.info(
                            "Gateway operation succeeded after retry",
                            operation=operation,
                            attempt=attempt,
                        )
                    return response.json()

                last_status = response.status_code
                last_error = self._error_description(response)

                if response.status_code not in RETRYABLE_STATUS_CODES:
                    logger.error(
                        "Gateway rejected request",
                        operation=operation,
                        status_code=response.status_code,
                        error=last_error,
                    )
                    raise GatewayError(
                        f"Gateway rejected {operation}: {last_error}",
                        status_code=response.status_code,
                        operation=operation,
                    )

                logger.warning(
                    "Gateway returned retryable status",
                    operation=operation,
                    attempt=attempt,
                    status_code=response.status_code,
                )

            if attempt < self.max_retries:
                await asyncio.sleep(self._calculate_backoff(attempt))

        logger.error(
            "Gateway operation failed after retries",
            operation=operation,
            attempts=self.max_retries + 1,
            error=last_error,
        )
        raise GatewayError(
            f"Gateway {operation} failed: {last_error}",
            status_code=last_status,
            operation=operation,
        )

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("description"):
            return str(error["description"])
        return f"HTTP {response.status_code}"

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Create a gateway order handle.

        Args:
            amount: Amount in the currency's minor unit (paise for INR)
            currency: ISO currency code
            receipt: Merchant receipt reference
            notes: Optional key/value notes stored on the gateway order

        Returns:
            Gateway order document including ``id``, ``amount`` and ``currency``
        """
        payload: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
        }
        if notes:
            payload["notes"] = notes

        logger.info(
            "Creating gateway order",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )
        return await self._execute_with_retry("create_order", "POST", "/orders", json=payload)

    async def close(self) -> None:
        await self._client.aclose()
