from __future__ import annotations

import json
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from bullion.config import settings
from bullion.models.checkout import ShippingAddressIn
from bullion.services.cart_store import CartStore, cart_store
from bullion.services.errors import EmptyCart, InvalidInput, NotFound
from bullion.services.identity import VerifiedIdentity
from bullion.services.pricing import compute_total, reprice_for_payment_class
from bullion.services.stripe_provider import StripePaymentProvider, get_payment_provider
from bullion.services.supplier_gateway import (
    MAX_REFERENCE_LENGTH,
    PlatformGoldGateway,
    get_supplier_gateway,
)
from bullion.utils.dates import utcnow
from bullion.utils.logger import logger

# PaymentIntent statuses whose amount can no longer change.
NON_UPDATABLE_STATUSES = frozenset({"succeeded", "canceled", "processing"})


def build_reference_number(account_id: str, now=None) -> str:
    """SB-<account fragment>-<ms timestamp>, at most 35 characters.

    Only collision-avoiding: the supplier treats it as informational.
    """
    now = now or utcnow()
    fragment = (account_id or "guest")[:12].upper()
    return f"SB-{fragment}-{int(now.timestamp() * 1000)}"[:MAX_REFERENCE_LENGTH]


class PaymentOrchestrator:
    def __init__(
        self,
        gateway: Optional[PlatformGoldGateway] = None,
        provider: Optional[StripePaymentProvider] = None,
        cart: Optional[CartStore] = None,
    ):
        self.gateway = gateway or get_supplier_gateway()
        self.provider = provider or get_payment_provider()
        self.cart = cart or cart_store

    async def create_authorization(
        self,
        db: Session,
        identity: VerifiedIdentity,
        shipping_address: ShippingAddressIn,
        payment_class: Optional[str] = "card",
    ) -> Dict[str, Any]:
        lines = self.cart.lines(db, identity.account_id)
        if not lines:
            raise EmptyCart("Cart is empty")

        address = shipping_address.model_dump()
        reference = build_reference_number(identity.account_id)

        # Quotes are short-lived; always ask for a fresh one.
        quote_request = await self.gateway.build_order_request(
            items=[{"itemId": l.item_id, "quantity": l.quantity} for l in lines],
            shipping_address=address,
            email=identity.email,
            customer_reference_number=reference,
        )
        quote = await self.gateway.create_quote(quote_request)

        priced = compute_total(
            quote.amount,
            handling_fee=quote.handling_fee,
            markup_pct=settings.MARKUP_PERCENTAGE,
            payment_class=payment_class,
        )

        metadata = {
            "userId": identity.account_id,
            "userEmail": identity.email,
            "itemCount": str(sum(l.quantity for l in lines)),
            "referenceNumber": reference,
            "quoteHandle": quote.handle,
            "shippingAddress": json.dumps(address),
            **priced.to_metadata(),
        }

        intent = await self.provider.create_payment_intent(
            amount=priced.amount_minor_units,
            currency=settings.CURRENCY,
            metadata=metadata,
            receipt_email=identity.email,
            description=f"Summit Bullion order {reference}",
        )
        logger.info(
            f"PaymentIntent {intent['id']} for {identity.account_id}: "
            f"quote={priced.platform_total} total={priced.grand_total} ({priced.payment_class})"
        )

        return {
            "clientSecret": intent["client_secret"],
            "paymentIntentId": intent["id"],
            "pricing": priced.to_response(),
        }

    async def update_authorization(
        self,
        identity: VerifiedIdentity,
        authorization_id: str,
        new_payment_class: str,
        subtotal_with_markup: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        intent = await self.provider.retrieve_payment_intent(authorization_id)
        if intent is None:
            raise NotFound("Payment not found")

        metadata: Mapping[str, Any] = intent.get("metadata") or {}
        if metadata.get("userId") != identity.account_id:
            logger.warning(f"{identity.account_id} tried to update PaymentIntent {authorization_id} it does not own")
            raise NotFound("Payment not found")

        if intent.get("status") in NON_UPDATABLE_STATUSES:
            raise NotFound("Payment can no longer be updated")

        # The subtotal we priced server-side wins over whatever the client sends.
        subtotal = metadata.get("subtotal")
        if subtotal is None:
            if subtotal_with_markup is None:
                raise InvalidInput("subtotal is required")
            subtotal = subtotal_with_markup

        repriced = reprice_for_payment_class(subtotal, new_payment_class)
        amount = int((repriced["grand_total"] * 100).to_integral_value(rounding=ROUND_HALF_UP))

        await self.provider.update_payment_intent(
            authorization_id,
            amount=amount,
            metadata={
                "processingFee": f"{repriced['processing_fee']:.2f}",
                "paymentMethodType": new_payment_class,
                "orderTotal": f"{repriced['grand_total']:.2f}",
            },
        )
        logger.info(
            f"PaymentIntent {authorization_id} repriced for {new_payment_class}: "
            f"fee={repriced['processing_fee']} total={repriced['grand_total']}"
        )

        return {
            "subtotal": float(repriced["subtotal"]),
            "processingFee": float(repriced["processing_fee"]),
            "total": float(repriced["grand_total"]),
            "paymentMethodType": new_payment_class,
        }

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Mapping[str, Any]:
        return self.provider.construct_event(payload, signature)


def get_payment_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator()
