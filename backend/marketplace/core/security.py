"""
JWT helpers for authenticating customers, sellers and operators.

Token issuance belongs to the external identity service; this module only
decodes bearer tokens and can mint them for local development and tests.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

logger = get_logger(__name__)


class Role(str, enum.Enum):
    """Principal roles recognised by the settlement API."""

    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


class TokenError(Exception):
    """Raised when a bearer token cannot be decoded or validated."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


def create_access_token(
    subject: str,
    role: Role,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token.

    Args:
        subject: Principal identifier stored in the ``sub`` claim
        role: Principal role
        email: Optional email used for order confirmations
        expires_delta: Optional custom lifetime

    Returns:
        Encoded JWT token string
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )

    claims: Dict[str, Any] = {
        "sub": subject,
        "role": role.value,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)
    logger.debug("Access token created", subject=subject, role=role.value)
    return token


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Raises:
        TokenError: If token is empty, expired or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning("Invalid token", error=str(e), error_type=type(e).__name__)
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e


@dataclass(frozen=True)
class Principal:
    """Authenticated caller resolved from a bearer token."""

    id: str
    role: Role
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Principal":
        """
        Raises:
            TokenError: If the subject or role claim is missing or unknown
        """
        subject = claims.get("sub")
        if not subject:
            raise TokenError("Token has no subject", code="TOKEN_INVALID")
        try:
            role = Role(claims.get("role", Role.CUSTOMER.value))
        except ValueError as e:
            raise TokenError("Token has an unknown role", code="TOKEN_INVALID") from e
        return cls(id=str(subject), role=role, email=claims.get("email"))
