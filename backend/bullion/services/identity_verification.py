"""Identity verification (KYC) for high-value orders.

Orders are never blocked here: payment has already been captured when the
order is created. ``Order.required_kyc`` tells fulfillment to check the
account's verification status before anything ships.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from bullion.config import settings
from bullion.db_models.account import KycStatus
from bullion.db_models.order import Order
from bullion.services.account_service import get_account, set_kyc_status
from bullion.services.identity import VerifiedIdentity
from bullion.services.pricing import Number, to_decimal
from bullion.services.stripe_provider import StripePaymentProvider, get_payment_provider
from bullion.utils.dates import utcnow
from bullion.utils.logger import logger

KYC_PURPOSE = "high_value_order_kyc"

VERIFIED_EVENT = "identity.verification_session.verified"
REJECTED_EVENTS = frozenset(
    {
        "identity.verification_session.requires_input",
        "identity.verification_session.canceled",
    }
)


def order_requires_kyc(subtotal: Number) -> bool:
    return to_decimal(subtotal) >= to_decimal(settings.KYC_THRESHOLD)


def _is_approved(db: Session, account_id: str) -> bool:
    account = get_account(db, account_id)
    return account is not None and account.kyc_status == KycStatus.APPROVED.value


class IdentityVerificationGate:
    def __init__(self, provider: Optional[StripePaymentProvider] = None):
        self.provider = provider or get_payment_provider()

    async def create_session(self, db: Session, identity: VerifiedIdentity) -> Dict[str, str]:
        session = await self.provider.create_verification_session(
            metadata={
                "userId": identity.account_id,
                "email": identity.email,
                "purpose": KYC_PURPOSE,
            },
            email=identity.email,
        )
        if _is_approved(db, identity.account_id):
            logger.info(f"Verification session {session['id']} opened by already approved {identity.account_id}")
        else:
            set_kyc_status(db, identity.account_id, KycStatus.PENDING, verification_id=session["id"])
            logger.info(f"Verification session {session['id']} created for {identity.account_id}")

        # Only the client secret leaves the server, never the session object.
        return {
            "clientSecret": session["client_secret"],
            "verificationSessionId": session["id"],
        }

    def handle_verification_event(
        self, db: Session, event_type: str, session: Mapping[str, Any]
    ) -> Optional[KycStatus]:
        metadata = session.get("metadata") or {}
        account_id = metadata.get("userId")
        if not account_id:
            logger.error(f"Verification session {session.get('id')} has no userId metadata")
            return None

        if event_type == VERIFIED_EVENT:
            status = KycStatus.APPROVED
            set_kyc_status(
                db,
                account_id,
                status,
                verification_id=session.get("id"),
                completed_at=utcnow(),
            )
        elif event_type in REJECTED_EVENTS:
            if _is_approved(db, account_id):
                # A later abandoned or failed session does not revoke an approval.
                logger.info(f"Ignoring {event_type} for already approved {account_id}")
                return None
            status = KycStatus.REJECTED
            set_kyc_status(db, account_id, status, verification_id=session.get("id"))
        else:
            logger.info(f"Ignoring verification event {event_type} for {account_id}")
            return None

        # Mirror the outcome onto this account's orders that were waiting on it.
        db.query(Order).filter(
            Order.account_id == account_id,
            Order.required_kyc.is_(True),
        ).update({"kyc_status": status.value, "updated_at": utcnow()}, synchronize_session=False)
        db.commit()

        logger.info(f"KYC for {account_id} is now {status.value}")
        return status


def get_identity_verification_gate() -> IdentityVerificationGate:
    return IdentityVerificationGate()
