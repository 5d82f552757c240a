from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bullion.db_models.account import Account, KycStatus
from bullion.utils.dates import utcnow
from bullion.utils.logger import logger

if TYPE_CHECKING:
    from bullion.services.identity import VerifiedIdentity


def get_account(db: Session, account_id: str) -> Optional[Account]:
    return db.query(Account).filter(Account.id == account_id).first()


def ensure_account(db: Session, identity: "VerifiedIdentity") -> Account:
    """Create the account row on first sight; keep the wallet address current."""
    account = get_account(db, identity.account_id)
    if account is None:
        account = Account(
            id=identity.account_id,
            email=identity.email.lower(),
            wallet_address=identity.wallet_address,
            kyc_status=KycStatus.NONE.value,
        )
        db.add(account)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent first login for the same email already created it.
            db.rollback()
            return get_account(db, identity.account_id)
        db.refresh(account)
        logger.info(f"Created account {identity.account_id}")
        return account

    if identity.wallet_address and account.wallet_address != identity.wallet_address:
        db.query(Account).filter(Account.id == account.id).update(
            {"wallet_address": identity.wallet_address, "updated_at": utcnow()}
        )
        db.commit()
        db.refresh(account)
    return account


def set_kyc_status(
    db: Session,
    account_id: str,
    status: KycStatus,
    *,
    verification_id: Optional[str] = None,
    completed_at: Optional[datetime] = None,
) -> bool:
    """Partial update of an account's verification fields. Returns False if no such account."""
    values = {"kyc_status": status.value, "updated_at": utcnow()}
    if verification_id is not None:
        values["kyc_verification_id"] = verification_id
    if completed_at is not None:
        values["kyc_completed_at"] = completed_at

    updated = db.query(Account).filter(Account.id == account_id).update(values)
    db.commit()
    if not updated:
        logger.warning(f"KYC update for unknown account {account_id}")
    return bool(updated)
