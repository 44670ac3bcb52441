"""
Payment gateway adapter.

Order creation goes to the processor's Orders API. Confirmation signatures are
HMAC-SHA256 over "<order_id>|<payment_id>" keyed with the shared secret, compared
in constant time. Verification never touches state.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import GatewayError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    if not order_id or not payment_id or not signature:
        return False
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Contract consumed by the payment intent manager and the settlement engine."""

    def __init__(self, key_secret: str) -> None:
        self._key_secret = key_secret

    @abstractmethod
    async def create_order(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> str:
        """Create an external order and return its id. Raise GatewayError on failure."""

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_signature(self._key_secret, order_id, payment_id, signature)


class RazorpayGateway(PaymentGateway):
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(key_secret)
        self._key_id = key_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def create_order(self, amount: Decimal, currency: str, metadata: Dict[str, str]) -> str:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": metadata.get("payment_id"),
            "notes": metadata,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self._key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post("/orders", json=payload)
                resp.raise_for_status()
                order_id = resp.json().get("id")
        except httpx.HTTPStatusError as e:
            logger.error(
                "Gateway rejected order for %s: %s %s",
                metadata.get("payment_id"),
                e.response.status_code,
                e.response.text,
            )
            raise GatewayError() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Gateway order creation failed for %s: %s", metadata.get("payment_id"), e)
            raise GatewayError() from e
        if not order_id:
            logger.error("Gateway returned no order id for %s", metadata.get("payment_id"))
            raise GatewayError()
        return order_id


def get_gateway() -> PaymentGateway:
    return RazorpayGateway(
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        base_url=settings.gateway_base_url,
        timeout=settings.gateway_timeout_seconds,
    )
