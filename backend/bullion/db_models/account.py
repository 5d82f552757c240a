import enum

from sqlalchemy import Column, String, DateTime

from bullion.database import Base
from bullion.utils.dates import utcnow


class KycStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Account(Base):
    """A shopper, keyed by the email-derived account id.

    The same row is reached whether the shopper logged in with a password or
    through the federated wallet provider.
    """

    __tablename__ = "accounts"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    wallet_address = Column(String(255), nullable=True)

    kyc_status = Column(String(20), nullable=False, default=KycStatus.NONE.value)
    kyc_verification_id = Column(String(255), nullable=True)
    kyc_completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
