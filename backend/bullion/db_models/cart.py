from sqlalchemy import Column, String, DateTime, Numeric, Integer, Float, Text, UniqueConstraint

from bullion.database import Base
from bullion.utils.dates import utcnow


class CartLine(Base):
    """One line of an account's live cart with its frozen price breakdown.

    The cart itself has no row of its own: an account's cart is the set of
    its lines, so there is exactly one live cart per account by construction.
    """

    __tablename__ = "cart_lines"
    __table_args__ = (
        UniqueConstraint("account_id", "item_id", name="uq_cart_lines_account_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(255), nullable=False, index=True)

    # Supplier inventory id, kept as a string for cart operations.
    item_id = Column(String(64), nullable=False)
    sku = Column(String(255), nullable=True)
    name = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False)

    base_price = Column(Numeric(14, 4), nullable=False)
    markup_percentage = Column(Numeric(6, 3), nullable=False)
    markup_amount = Column(Numeric(14, 4), nullable=False)
    final_price = Column(Numeric(14, 4), nullable=False)

    metal_symbol = Column(String(8), nullable=True)
    metal_oz = Column(Float, nullable=True)
    manufacturer = Column(String(255), nullable=True)
    image = Column(Text, nullable=True)

    added_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
