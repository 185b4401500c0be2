"""Stripe REST API client (subscriptions, Checkout, Billing Portal, webhooks).

Stripe API Reference:
- Checkout Sessions: https://stripe.com/docs/api/checkout/sessions
- Billing Portal: https://stripe.com/docs/api/customer_portal/sessions
- Webhook signatures: https://stripe.com/docs/webhooks/signatures
"""

import hashlib
import hmac
import logging
import os
import time
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

STRIPE_API_BASE_URL = "https://api.stripe.com"
DEFAULT_SIGNATURE_TOLERANCE_SECONDS = 300


class StripeSignatureError(Exception):
    """Stripe-Signature header is malformed, stale or does not match."""


def encode_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracketed form encoding.

    ``{"metadata": {"a": 1}, "items": [{"price": "p"}]}`` becomes
    ``metadata[a]=1&items[0][price]=p``.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                item_name = f"{name}[{i}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def compute_webhook_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    sig_header: str,
    secret: str,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """Verify a ``Stripe-Signature`` header (``t=...,v1=...[,v1=...]``).

    Raises:
        StripeSignatureError: If the header is malformed, the timestamp is
            outside ``tolerance`` seconds, or no v1 signature matches
    """
    timestamp: Optional[str] = None
    signatures: list[str] = []
    for item in (sig_header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise StripeSignatureError("Unable to extract timestamp and signatures from header")

    try:
        ts = int(timestamp)
    except ValueError as e:
        raise StripeSignatureError("Invalid timestamp in signature header") from e

    current = now if now is not None else time.time()
    if tolerance and abs(current - ts) > tolerance:
        raise StripeSignatureError("Timestamp outside the tolerance zone")

    expected = compute_webhook_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise StripeSignatureError("No signatures found matching the expected signature")


class StripeClient:
    """Stripe REST client.

    Environment Variables:
    - STRIPE_SECRET_KEY: Secret API key (sk_test_... / sk_live_...)
    - STRIPE_WEBHOOK_SECRET: Endpoint signing secret (whsec_...)
    - STRIPE_API_BASE_URL: Override for tests (default https://api.stripe.com)
    """

    def __init__(self):
        self.secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required. Set it in environment configuration."
            )

        self.base_url = os.getenv("STRIPE_API_BASE_URL", STRIPE_API_BASE_URL).rstrip("/")

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, data: dict[str, Any], idempotency_key: Optional[str] = None) -> dict:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}{path}",
                headers=self._headers(idempotency_key),
                data=encode_form(data),
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}{path}",
                headers=self._headers(),
                params=encode_form(params or {}),
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def create_customer(
        self, *, email: Optional[str], name: Optional[str], metadata: dict[str, str]
    ) -> dict:
        """Create a Stripe customer.

        Raises:
            httpx.HTTPStatusError: If Stripe rejects the request
        """
        result = await self._post(
            "/v1/customers", {"email": email, "name": name, "metadata": metadata}
        )
        logger.info("Stripe customer created", extra={"customer_id": result.get("id")})
        return result

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Create a subscription-mode Checkout Session for one price.

        ``metadata`` is set on the session and copied to the subscription.
        """
        result = await self._post(
            "/v1/checkout/sessions",
            {
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "allow_promotion_codes": True,
                "billing_address_collection": "required",
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            },
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Stripe checkout session created",
            extra={"session_id": result.get("id"), "customer_id": customer_id},
        )
        return result

    async def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> dict:
        return await self._post(
            "/v1/billing_portal/sessions", {"customer": customer_id, "return_url": return_url}
        )

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return await self._get(f"/v1/subscriptions/{subscription_id}")

    async def retrieve_upcoming_invoice(self, customer_id: str) -> dict:
        return await self._get("/v1/invoices/upcoming", {"customer": customer_id})

    def verify_webhook(
        self, payload: bytes, sig_header: str, tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS
    ) -> None:
        """Verify a webhook against STRIPE_WEBHOOK_SECRET.

        Raises:
            ValueError: If STRIPE_WEBHOOK_SECRET is not configured
            StripeSignatureError: If verification fails
        """
        if not self.webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required for webhook verification")
        verify_webhook_signature(payload, sig_header, self.webhook_secret, tolerance)


# Singleton instance
_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get singleton Stripe client instance."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
