"""Downstream single-use payment credentials."""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import jwt

from .config import Settings
from .money import cents_to_float


logger = logging.getLogger(__name__)

PAYMENT_TOKEN_ALGORITHM = "HS256"


@dataclass
class MintedCredential:
    token: str
    token_id: str
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_token": self.token,
            "payment_token_id": self.token_id,
            "payment_token_expires_at": self.expires_at,
        }


class CardTokenProvider(Protocol):
    """Card or payment-network token minting. Raises on upstream failure."""

    def mint(
        self,
        payment_method_id: str,
        merchant_id: str,
        amount_cents: int,
        currency: str,
    ) -> MintedCredential: ...


class SignedCardTokenProvider:
    """
    Mints short-lived HS256 payment tokens bound to method, merchant and amount.

    Every call produces a new token id, so no credential is ever handed out twice.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.expiry = settings.payment_token_expiry
        self._clock = clock
        secret: Optional[str] = settings.payment_token_secret
        if not secret:
            logger.warning("PAYMENT_TOKEN_SECRET is not set; using a per-process secret")
            secret = secrets.token_hex(32)
        self._secret = secret

    def mint(
        self,
        payment_method_id: str,
        merchant_id: str,
        amount_cents: int,
        currency: str,
    ) -> MintedCredential:
        now = int(self._clock())
        token_id = str(uuid.uuid4())
        expires_at = now + self.expiry
        token = jwt.encode(
            {
                "jti": token_id,
                "payment_method_id": payment_method_id,
                "merchant_id": merchant_id,
                "amount": cents_to_float(amount_cents),
                "currency": currency,
                "iat": now,
                "exp": expires_at,
            },
            self._secret,
            algorithm=PAYMENT_TOKEN_ALGORITHM,
        )
        return MintedCredential(token=token, token_id=token_id, expires_at=expires_at)

    def decode(self, token: str) -> dict[str, Any]:
        """Merchant-side check of a minted token (signature and expiry)."""
        payload = jwt.decode(
            token,
            self._secret,
            algorithms=[PAYMENT_TOKEN_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False},
        )
        if int(payload["exp"]) <= int(self._clock()):
            raise jwt.ExpiredSignatureError("Payment token has expired")
        return payload
