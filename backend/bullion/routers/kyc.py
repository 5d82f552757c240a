from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bullion.database import get_db
from bullion.models.cart import AuthHints
from bullion.services.identity import VerifiedIdentity, get_verified_identity
from bullion.services.identity_verification import IdentityVerificationGate, get_identity_verification_gate

router = APIRouter(prefix="/api/kyc", tags=["kyc"])


@router.post("/create-verification-session")
async def create_verification_session(
    body: Optional[AuthHints] = None,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    gate: IdentityVerificationGate = Depends(get_identity_verification_gate),
    db: Session = Depends(get_db),
):
    result = await gate.create_session(db, identity)
    return {"success": True, **result}
