"""Stripe billing provider integration."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Iterator
from typing import Any

import httpx

from creditledger.config import Settings
from creditledger.errors import (
    ProviderError,
    ProviderUnavailableError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
SIGNATURE_SCHEME = "v1"


class StripeGateway:
    """Thin wrapper around the Stripe REST API.

    Constructed once per process and shared; the underlying ``httpx.Client``
    keeps its connection pool for the process lifetime.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        api_base: str = STRIPE_API_BASE,
        timeout: float = 30.0,
        webhook_tolerance_seconds: int = 300,
        client: httpx.Client | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance_seconds
        self._client = client or httpx.Client(base_url=api_base, timeout=timeout)

    @classmethod
    def from_settings(cls, s: Settings) -> StripeGateway:
        return cls(
            secret_key=s.stripe_secret_key,
            webhook_secret=s.stripe_webhook_secret,
            api_base=s.stripe_api_base,
            timeout=s.stripe_timeout_seconds,
            webhook_tolerance_seconds=s.webhook_tolerance_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def webhooks_configured(self) -> bool:
        return bool(self._webhook_secret)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        if not self.is_configured():
            raise ProviderUnavailableError("Stripe is not configured")
        try:
            resp = self._client.get(path, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.warning("Stripe GET %s timed out", path)
            raise ProviderUnavailableError(f"Stripe request timed out: {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("Stripe GET %s failed: %s", path, exc)
            raise ProviderUnavailableError(f"Stripe unreachable: {exc}") from exc

        if resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning("Stripe GET %s answered %s", path, resp.status_code)
            raise ProviderUnavailableError(
                f"Stripe answered {resp.status_code} for {path}"
            )
        data = resp.json()
        if resp.status_code >= 400:
            message = (data.get("error") or {}).get("message", "Stripe request failed")
            logger.error("Stripe GET %s failed: %s", path, message)
            raise ProviderError(message)
        result: dict[str, Any] = data
        return result

    # ── Customers ────────────────────────────────────────

    def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        data = self._get("/customers", params={"email": email, "limit": 1})
        customers = (data or {}).get("data") or []
        if not customers:
            return None
        customer: dict[str, Any] = customers[0]
        return customer

    def retrieve_customer(self, customer_id: str) -> dict[str, Any] | None:
        customer = self._get(f"/customers/{customer_id}")
        if customer and customer.get("deleted"):
            return None
        return customer

    # ── Subscriptions ────────────────────────────────────

    def list_subscriptions(
        self, customer_id: str, status: str = "all", limit: int = 10
    ) -> list[dict[str, Any]]:
        data = self._get(
            "/subscriptions",
            params={"customer": customer_id, "status": status, "limit": limit},
        )
        result: list[dict[str, Any]] = (data or {}).get("data") or []
        return result

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return self._get(f"/subscriptions/{subscription_id}")

    def list_active_subscriptions(self, page_size: int = 100) -> Iterator[dict[str, Any]]:
        """Walk every active subscription using cursor pagination."""
        params: dict[str, Any] = {"status": "active", "limit": page_size}
        while True:
            data = self._get("/subscriptions", params=params) or {}
            page = data.get("data") or []
            yield from page
            if not data.get("has_more") or not page:
                return
            params["starting_after"] = page[-1]["id"]

    # ── Webhook ──────────────────────────────────────────

    def validate_webhook_signature(
        self, payload: bytes, signature_header: str, now: float | None = None
    ) -> bool:
        """Check a ``Stripe-Signature`` header against the raw payload."""
        if not self._webhook_secret or not signature_header:
            return False
        timestamp: int | None = None
        signatures: list[str] = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    return False
            elif key == SIGNATURE_SCHEME:
                signatures.append(value)
        if timestamp is None or not signatures:
            return False
        current = time.time() if now is None else now
        if self._tolerance and abs(current - timestamp) > self._tolerance:
            return False
        signed_payload = f"{timestamp}.".encode() + payload
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    def construct_event(
        self, payload: bytes, signature_header: str, now: float | None = None
    ) -> dict[str, Any]:
        if not self.validate_webhook_signature(payload, signature_header, now=now):
            raise WebhookSignatureError("Invalid Stripe webhook signature")
        try:
            event: dict[str, Any] = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
        return event


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a ``Stripe-Signature`` header value for ``payload``."""
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},{SIGNATURE_SCHEME}={digest}"
