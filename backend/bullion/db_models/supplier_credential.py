from sqlalchemy import Column, String, DateTime, Text

from bullion.database import Base
from bullion.utils.dates import utcnow


class SupplierCredential(Base):
    """Shared supplier session token, so every API instance reuses one login."""

    __tablename__ = "supplier_credentials"

    name = Column(String(64), primary_key=True)
    access_token = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
