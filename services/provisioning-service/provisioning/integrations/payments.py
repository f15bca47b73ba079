"""Stripe-backed hosted checkout and webhook verification."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import stripe

from ..domain.contracts import CheckoutProviderError, CheckoutSession, WebhookSignatureError

logger = logging.getLogger(__name__)


class StripeCheckoutProvider:
    """Create subscription checkout sessions and verify Stripe webhook signatures.

    Requests go through an owned ``stripe.StripeClient`` so the HTTP timeout
    stays scoped to this provider.
    """

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str,
        timeout: int = 10,
        client: stripe.StripeClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        if client is None and secret_key:
            client = stripe.StripeClient(
                secret_key, http_client=stripe.RequestsClient(timeout=timeout)
            )
        self._client = client

    def create_checkout_session(
        self, *, price_id: str, plan: str, email: str, reference_id: str | None
    ) -> CheckoutSession:
        """Return the hosted checkout session for a single-seat subscription."""
        if self._client is None:
            raise CheckoutProviderError("stripe secret key is not configured")

        params: dict[str, Any] = {
            "mode": "subscription",
            "customer_email": email,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{self._base_url}/checkout/success",
            "cancel_url": f"{self._base_url}/signup?plan={quote(plan, safe='')}",
            "metadata": {"plan": plan},
        }
        if reference_id:
            params["client_reference_id"] = reference_id
            params["metadata"]["account_id"] = reference_id

        try:
            session = self._client.v1.checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            raise CheckoutProviderError(str(exc)) from exc
        return CheckoutSession(url=getattr(session, "url", None), session_id=getattr(session, "id", None))

    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: str, secret: str
    ) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the decoded event."""
        payload = raw_body.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("webhook payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise WebhookSignatureError("webhook payload is not an event object")
        return event
