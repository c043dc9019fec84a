"""
SES delivery for customer order confirmations.

botocore connect/read timeouts bound every call, so a slow provider can
hold up the side-effect runner but never an API request.
"""

import asyncio
from functools import lru_cache
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

# SES rejections that fail identically on every retry.
PERMANENT_FAILURES = frozenset(
    {"MessageRejected", "MailFromDomainNotVerified", "ConfigurationSetDoesNotExist"}
)


class AWSClientError(Exception):
    def __init__(self, message: str, service: str, **context: Any) -> None:
        super().__init__(message)
        self.service = service
        self.context = context


class SESClientError(AWSClientError):
    """SES send failure; ``retryable`` tells the outbox whether to try again."""

    def __init__(self, message: str, retryable: bool = True, **context: Any) -> None:
        super().__init__(message, service="SES", **context)
        self.retryable = retryable


def _utf8(data: str) -> dict[str, str]:
    return {"Data": data, "Charset": "UTF-8"}


def _translate(error: Exception, recipients: list[str]) -> SESClientError:
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "Unknown")
        return SESClientError(
            f"SES rejected the message: {details.get('Message', error)}",
            retryable=code not in PERMANENT_FAILURES,
            error_code=code,
            to_addresses=recipients,
        )
    return SESClientError(f"SES unreachable: {error}", to_addresses=recipients)


class SESClient:
    """
    Thin wrapper over the boto3 SES client.

    Args:
        aws_access_key_id: Defaults to settings
        aws_secret_access_key: Defaults to settings
        region_name: Defaults to settings
        timeout: Connect and read timeout in seconds, defaults to settings
        max_attempts: Attempts botocore makes per call in standard retry mode
        client: Prebuilt boto3 client, used by tests
    """

    def __init__(
        self,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        region_name: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        client: Any = None,
    ) -> None:
        settings = get_settings()
        self.from_address = settings.ses_from_email
        self.region_name = region_name or settings.aws_region
        self.timeout = timeout or settings.messaging_timeout_seconds

        self._client = client or boto3.client(
            "ses",
            region_name=self.region_name,
            aws_access_key_id=aws_access_key_id or settings.aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key or settings.aws_secret_access_key,
            config=Config(
                connect_timeout=self.timeout,
                read_timeout=self.timeout,
                retries={"mode": "standard", "max_attempts": max_attempts},
            ),
        )
        logger.debug("SES client ready", region=self.region_name, timeout=self.timeout)

    def send_email(
        self,
        to_addresses: list[str],
        subject: str,
        body_text: str,
        body_html: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Raises:
            SESClientError: Without recipients (not retryable) or when SES
                refuses or cannot be reached
        """
        if not to_addresses:
            raise SESClientError("No recipient address given", retryable=False)

        body = {"Text": _utf8(body_text)}
        if body_html:
            body["Html"] = _utf8(body_html)

        try:
            response = self._client.send_email(
                Source=from_address or self.from_address,
                Destination={"ToAddresses": to_addresses},
                Message={"Subject": _utf8(subject), "Body": body},
            )
        except (ClientError, BotoCoreError) as e:
            error = _translate(e, to_addresses)
            logger.warning(
                "SES send failed",
                error=str(error),
                retryable=error.retryable,
                error_code=error.context.get("error_code"),
                to_addresses=to_addresses,
            )
            raise error from e

        logger.info("Email sent", message_id=response["MessageId"], to_addresses=to_addresses)
        return {
            "message_id": response["MessageId"],
            "status": "sent",
            "to_addresses": to_addresses,
            "subject": subject,
        }

    async def send_email_async(self, **kwargs: Any) -> dict[str, Any]:
        return await asyncio.to_thread(self.send_email, **kwargs)


@lru_cache
def get_ses_client() -> SESClient:
    """Process-wide SES client; boto3 clients are safe to share across threads."""
    return SESClient()
