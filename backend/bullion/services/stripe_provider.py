"""Thin async wrapper over the Stripe SDK.

The SDK is synchronous; calls are pushed to the threadpool so a slow Stripe
response never blocks the event loop.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from bullion.config import settings
from bullion.services.errors import InvalidSignature, UpstreamUnavailable
from bullion.utils.logger import logger


class StripePaymentProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS
        self._configured = False

    def _configure(self) -> None:
        if not self.api_key:
            raise UpstreamUnavailable("Stripe is not configured")
        if not self._configured:
            stripe.api_key = self.api_key
            stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
            self._configured = True

    async def _call(self, description: str, fn, *args, **kwargs):
        self._configure()
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {description} failed: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(f"Payment provider error during {description}")

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Mapping[str, Any]:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if description:
            params["description"] = description
        return await self._call("PaymentIntent.create", stripe.PaymentIntent.create, **params)

    async def retrieve_payment_intent(self, intent_id: str) -> Optional[Mapping[str, Any]]:
        self._configure()
        try:
            return await run_in_threadpool(stripe.PaymentIntent.retrieve, intent_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            logger.error(f"Stripe PaymentIntent.retrieve failed: {e}")
            raise UpstreamUnavailable("Payment provider error during PaymentIntent.retrieve")
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent.retrieve failed: {type(e).__name__}: {e}")
            raise UpstreamUnavailable("Payment provider error during PaymentIntent.retrieve")

    async def update_payment_intent(
        self, intent_id: str, *, amount: int, metadata: Dict[str, str]
    ) -> Mapping[str, Any]:
        return await self._call(
            "PaymentIntent.modify", stripe.PaymentIntent.modify, intent_id, amount=amount, metadata=metadata
        )

    async def create_verification_session(
        self, *, metadata: Dict[str, str], email: Optional[str] = None
    ) -> Mapping[str, Any]:
        params: Dict[str, Any] = {}
        if email:
            params["provided_details"] = {"email": email}
        return await self._call(
            "VerificationSession.create",
            stripe.identity.VerificationSession.create,
            type="document",
            options={
                "document": {
                    "require_id_number": True,
                    "require_matching_selfie": True,
                }
            },
            metadata=metadata,
            **params,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Mapping[str, Any]:
        """Verify a webhook delivery. Anything unverifiable raises InvalidSignature."""
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise InvalidSignature("Webhook secret not configured")
        if not signature:
            raise InvalidSignature("No signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise InvalidSignature("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignature("Invalid signature")


_provider: Optional[StripePaymentProvider] = None


def get_payment_provider() -> StripePaymentProvider:
    global _provider
    if _provider is None:
        _provider = StripePaymentProvider()
    return _provider
