from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from bullion.database import get_db
from bullion.models.checkout import CreateIntentRequest, UpdateIntentRequest
from bullion.services.identity import VerifiedIdentity, get_verified_identity
from bullion.services.identity_verification import IdentityVerificationGate, get_identity_verification_gate
from bullion.services.order_reconciler import OrderReconciler, PaymentSnapshot, get_order_reconciler
from bullion.services.payment_orchestrator import PaymentOrchestrator, get_payment_orchestrator
from bullion.utils.logger import logger

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/create-intent")
async def create_payment_intent(
    body: CreateIntentRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    db: Session = Depends(get_db),
):
    result = await orchestrator.create_authorization(db, identity, body.shippingAddress, body.paymentMethodType)
    return {"success": True, **result}


@router.post("/update-intent")
async def update_payment_intent(
    body: UpdateIntentRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    pricing = await orchestrator.update_authorization(
        identity, body.paymentIntentId, body.paymentMethodType, body.subtotal
    )
    return {"success": True, "pricing": pricing}


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
    gate: IdentityVerificationGate = Depends(get_identity_verification_gate),
    db: Session = Depends(get_db),
):
    """Stripe webhook. Unverified deliveries are rejected with 400 and never processed.

    Post-payment problems (supplier, email) are recorded on the order; the
    delivery itself is still acknowledged.
    """
    payload = await request.body()
    event = orchestrator.verify_event(payload, request.headers.get("stripe-signature"))

    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info(f"Stripe webhook event received: {event_type} ({event.get('id')})")

    if event_type == "payment_intent.succeeded":
        await reconciler.handle_payment_succeeded(db, PaymentSnapshot.from_payment_intent(obj))
    elif event_type == "checkout.session.completed":
        if obj.get("payment_status", "paid") == "paid":
            await reconciler.handle_payment_succeeded(db, PaymentSnapshot.from_checkout_session(obj))
        else:
            logger.info(f"Checkout session {obj.get('id')} completed without payment yet")
    elif event_type == "payment_intent.payment_failed":
        error = (obj.get("last_payment_error") or {}).get("message")
        logger.warning(f"Payment failed: {obj.get('id')} {error or ''}".rstrip())
    elif event_type.startswith("identity.verification_session."):
        gate.handle_verification_event(db, event_type, obj)
    else:
        logger.info(f"Unhandled event type: {event_type}")

    return {"received": True}
