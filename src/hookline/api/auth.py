"""Merchant identification for API requests.

Production deployments authenticate merchants with signed Bearer tokens.
Development and test deployments trust an ``X-Merchant-Id`` header.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from hookline.exceptions import AuthenticationError
from hookline.logging import get_logger

if TYPE_CHECKING:
    from hookline.config import Settings

logger = get_logger(__name__)

MERCHANT_HEADER = "X-Merchant-Id"

security = HTTPBearer(auto_error=False)


class MerchantContext(BaseModel):
    """The merchant a request acts for."""

    model_config = ConfigDict(extra="forbid")

    merchant_id: str = Field(min_length=1)
    authenticated: bool = Field(
        default=False, description="True when established from a verified token"
    )


class TokenValidator:
    """Issues and checks ``<merchant_id>:<expires_at>:<hex hmac-sha256>`` tokens.

    The signature covers ``<merchant_id>:<expires_at>``, so neither the
    merchant nor the expiry can be altered without the key.
    """

    def __init__(self, secret_key: str) -> None:
        self._key = secret_key.encode()

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()

    def create_token(self, merchant_id: str, expire_minutes: int = 60) -> str:
        if not merchant_id or ":" in merchant_id:
            raise ValueError("merchant_id must be non-empty and must not contain ':'")
        payload = f"{merchant_id}:{int(time.time()) + expire_minutes * 60}"
        return f"{payload}:{self._sign(payload)}"

    def validate_token(self, token: str) -> MerchantContext:
        """Return the merchant a token was issued to.

        Raises:
            AuthenticationError: Malformed, forged, or expired token.
        """
        payload, _, signature = token.rpartition(":")
        merchant_id, sep, expires = payload.partition(":")
        if not sep or ":" in expires:
            raise AuthenticationError("Invalid token format")
        if not hmac.compare_digest(signature, self._sign(payload)):
            raise AuthenticationError("Invalid token signature")
        if not expires.isdigit():
            raise AuthenticationError("Invalid token expiry")
        if int(expires) < time.time():
            raise AuthenticationError("Token has expired")
        if not merchant_id:
            raise AuthenticationError("Token has no merchant")
        return MerchantContext(merchant_id=merchant_id, authenticated=True)


@lru_cache(maxsize=1)
def get_token_validator(secret_key: str) -> TokenValidator:
    """Shared validator, rebuilt whenever the key changes."""
    return TokenValidator(secret_key)


def reset_auth_singletons() -> None:
    get_token_validator.cache_clear()


def authenticate_merchant(
    settings: Settings,
    credentials: HTTPAuthorizationCredentials | None,
    merchant_header: str | None,
) -> MerchantContext:
    """Resolve the merchant for a request.

    With auth enabled only a valid Bearer token counts and the header is
    ignored. Otherwise the header names the merchant.

    Raises:
        AuthenticationError: No usable credentials.
    """
    if not settings.is_auth_enabled:
        merchant_id = (merchant_header or "").strip()
        if not merchant_id:
            raise AuthenticationError(f"Missing {MERCHANT_HEADER} header")
        return MerchantContext(merchant_id=merchant_id)

    if credentials is None:
        raise AuthenticationError("Missing authentication credentials")
    merchant = get_token_validator(settings.effective_auth_secret_key).validate_token(
        credentials.credentials
    )
    logger.debug("merchant_authenticated", merchant_id=merchant.merchant_id)
    return merchant
