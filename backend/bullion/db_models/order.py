import enum
import uuid

from sqlalchemy import Column, String, DateTime, Numeric, Text, Boolean, JSON

from bullion.database import Base
from bullion.utils.dates import utcnow


class OrderStatus(str, enum.Enum):
    PENDING_FULFILLMENT = "pending_fulfillment"
    SUBMITTED_TO_SUPPLIER = "submitted_to_supplier"
    SUPPLIER_ERROR = "supplier_error"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SupplierStatus(str, enum.Enum):
    """Supplier-side statuses this system writes itself.

    Upstream statuses ("Pending Fulfillment", ...) are stored normalized to
    snake_case next to these.
    """

    QUOTE_CREATED = "quote_created"
    ORDER_CREATED = "order_created"
    SYNC_ERROR = "sync_error"
    FAILED = "failed"
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING_FULFILLMENT = "pending_fulfillment"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLMENT_COMPLETE = "fulfillment_complete"
    CANCELLED = "cancelled"
    ON_HOLD_CONTACT_DESK = "on_hold_contact_desk"


def _new_order_id() -> str:
    # 32 chars: fits the supplier's 35-char customer reference field.
    return uuid.uuid4().hex


class Order(Base):
    """A paid order. Immutable after creation except for status fields."""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_order_id)
    account_id = Column(String(255), nullable=False, index=True)
    account_email = Column(String(255), nullable=False)

    # Frozen copy of the cart lines, each with its pricing and totalPrice.
    items = Column(JSON, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    platform_gold_cost = Column(Numeric(12, 2), nullable=False)
    total_markup = Column(Numeric(12, 2), nullable=False)
    delivery_fee = Column(Numeric(12, 2), nullable=False, default=0)
    processing_fee = Column(Numeric(12, 2), nullable=True)
    # Amount actually captured by the payment provider.
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd")

    shipping_address = Column(JSON, nullable=True)

    payment_method = Column(String(50), nullable=False, default="stripe")
    payment_method_type = Column(String(50), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.COMPLETED.value)
    # One order per captured payment; redelivered webhooks hit this constraint.
    payment_id = Column(String(255), unique=True, nullable=False, index=True)

    status = Column(String(50), nullable=False, default=OrderStatus.PENDING_FULFILLMENT.value, index=True)

    supplier_order_id = Column(String(64), nullable=True)
    supplier_handle = Column(String(255), nullable=True)
    supplier_status = Column(String(100), nullable=True, index=True)
    supplier_mode = Column(String(20), nullable=True)
    supplier_transaction_id = Column(String(100), nullable=True)
    supplier_error = Column(Text, nullable=True)
    supplier_last_synced_at = Column(DateTime(timezone=True), nullable=True)
    supplier_tracking_numbers = Column(JSON, nullable=True)
    supplier_item_fulfillments = Column(JSON, nullable=True)

    required_kyc = Column(Boolean, nullable=False, default=False)
    kyc_status = Column(String(20), nullable=True)

    tracking_numbers = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
