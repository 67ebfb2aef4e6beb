# apps/api/creativewriter/services/payment_gateway.py
"""
Payment Gateway Client - CreativeWriter
Razorpay-compatible REST client (orders, payments) using httpx, plus HMAC
signature checks for checkout callbacks and webhooks.

Secrets are passed in explicitly; nothing here reads global settings.
Amounts cross this boundary in major units and are converted to minor units
(paise) for the wire.
"""

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from creativewriter.core.config import Settings
from creativewriter.core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.razorpay.com/v1"


def round_half_up(value: Any, places: str = "1") -> Decimal:
    return Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    """Major → minor currency units (e.g. 800 rupees → 80000 paise)."""
    return int(round_half_up(Decimal(str(amount)) * 100))


def from_minor_units(amount: Any) -> float:
    return float(Decimal(str(amount)) / 100)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class PaymentGatewayClient:
    """
    Thin async client for the payment gateway.

    Usage:
        async with PaymentGatewayClient(key_id, key_secret, webhook_secret) as gateway:
            order = await gateway.create_order(800, "INR", receipt="sub_u1_1700000000000")
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PaymentGatewayClient":
        return cls(
            key_id=settings.PAYMENT_GATEWAY_KEY_ID,
            key_secret=settings.PAYMENT_GATEWAY_KEY_SECRET.get_secret_value(),
            webhook_secret=settings.PAYMENT_GATEWAY_WEBHOOK_SECRET.get_secret_value(),
            base_url=settings.PAYMENT_GATEWAY_BASE_URL,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> "PaymentGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ────────────────────────────────────────────────
    # Orders
    # ────────────────────────────────────────────────
    async def create_order(
        self,
        amount: Any,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway order for ``amount`` (major units).
        Never retried: a timed-out create may still have produced an order.
        """
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {k: v for k, v in (notes or {}).items() if v is not None},
        }
        try:
            response = await self._client.post("/orders", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Gateway create_order transport failure: {e}", extra={"receipt": receipt})
            raise PaymentGatewayError("Payment gateway unavailable") from e

        data = self._parse(response, "create_order")
        logger.info(
            f"Gateway order created: {data.get('id')}",
            extra={"receipt": receipt, "amount": payload["amount"], "currency": currency},
        )
        return data

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        """Fetch an order, including the notes it was created with."""
        return await self._fetch(f"/orders/{order_id}", "fetch_order")

    # ────────────────────────────────────────────────
    # Payments
    # ────────────────────────────────────────────────
    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """Fetch a payment record. Transport errors are retried (idempotent read)."""
        return await self._fetch(f"/payments/{payment_id}", "fetch_payment")

    async def _fetch(self, path: str, operation: str) -> Dict[str, Any]:
        try:
            response = await self._get_with_retry(path)
        except httpx.HTTPError as e:
            logger.warning(f"Gateway {operation} failed for {path}: {e}")
            raise PaymentGatewayError("Payment gateway unavailable") from e
        return self._parse(response, operation)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get_with_retry(self, path: str) -> httpx.Response:
        return await self._client.get(path)

    def _parse(self, response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_success:
            return data
        description = (data.get("error") or {}).get("description") if isinstance(data, dict) else None
        logger.error(
            f"Gateway {operation} rejected ({response.status_code}): {description or response.text[:200]}"
        )
        raise PaymentGatewayError(
            description or f"Payment gateway error ({response.status_code})",
            details={"status_code": response.status_code},
        )

    # ────────────────────────────────────────────────
    # Signatures (constant-time comparison)
    # ────────────────────────────────────────────────
    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Checkout callback signature: HMAC-SHA256(key_secret, "order_id|payment_id")."""
        if not (order_id and payment_id and signature):
            return False
        expected = _hmac_hex(self._key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Webhook signature: HMAC-SHA256(webhook_secret, raw request body)."""
        if not signature or not self._webhook_secret:
            return False
        expected = _hmac_hex(self._webhook_secret, raw_body)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
