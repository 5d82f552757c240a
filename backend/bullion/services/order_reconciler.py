"""Payment-confirmed order creation and supplier reconciliation.

Order lifecycle (``Order.status``)::

    pending_fulfillment -> submitted_to_supplier | supplier_error
                        -> shipped | delivered | cancelled | refunded

``supplier_error`` is not terminal: the resync batch retries it. Supplier
progress is tracked separately in ``Order.supplier_status``.

Money has already been captured when any of this runs, so nothing here rolls
back the order or the payment. Supplier and email failures are recorded on
the order instead.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bullion.config import settings
from bullion.db_models.order import Order, OrderStatus, PaymentStatus, SupplierStatus
from bullion.services.cart_store import CartStore, cart_store
from bullion.services.errors import CheckoutError, InvalidInput
from bullion.services.identity_verification import order_requires_kyc
from bullion.services.notifications import EmailNotifier, get_notifier
from bullion.services.pricing import to_cents, to_decimal
from bullion.services.supplier_gateway import PlatformGoldGateway, get_supplier_gateway, to_supplier_address
from bullion.utils.dates import to_utc, utcnow
from bullion.utils.logger import logger

NON_TERMINAL_SUPPLIER_STATUSES = (
    SupplierStatus.QUOTE_CREATED.value,
    SupplierStatus.ORDER_CREATED.value,
    SupplierStatus.AWAITING_PAYMENT.value,
    SupplierStatus.PENDING_FULFILLMENT.value,
    SupplierStatus.PARTIALLY_FULFILLED.value,
    SupplierStatus.ON_HOLD_CONTACT_DESK.value,
    SupplierStatus.SYNC_ERROR.value,
)

STATUS_MESSAGES = {
    "awaiting_payment": "Payment pending",
    "awaiting_shipping_instructions": "Awaiting shipping details",
    "pending_fulfillment": "Order being prepared",
    "partially_fulfilled": "Partially shipped",
    "fulfillment_complete": "Order shipped",
    "cancelled": "Order cancelled",
    "on_hold_contact_desk": "On hold - contact support",
    "quote_created": "Submitted to supplier",
    "order_created": "Order placed with supplier",
    "sync_error": "Supplier sync delayed",
    "failed": "Supplier submission failed",
}

_NON_WORD = re.compile(r"[^a-z0-9]+")

# Platform Gold address fields an on-hold order cannot be released without.
REQUIRED_ADDRESS_FIELDS = ("addr1", "city", "state", "zip")


def normalize_supplier_status(status: Optional[str]) -> Optional[str]:
    """'Pending Fulfillment' -> 'pending_fulfillment'"""
    if not status:
        return None
    return _NON_WORD.sub("_", status.strip().lower()).strip("_")


def status_message(status: Optional[str]) -> str:
    normalized = normalize_supplier_status(status)
    if not normalized:
        return "Processing"
    return STATUS_MESSAGES.get(normalized, status)


def _order_status_for(supplier_status: Optional[str], current: str) -> str:
    if supplier_status == SupplierStatus.FULFILLMENT_COMPLETE.value:
        if current == OrderStatus.DELIVERED.value:
            return current
        return OrderStatus.SHIPPED.value
    if supplier_status == SupplierStatus.CANCELLED.value:
        return OrderStatus.CANCELLED.value
    if current in (OrderStatus.PENDING_FULFILLMENT.value, OrderStatus.SUPPLIER_ERROR.value):
        return OrderStatus.SUBMITTED_TO_SUPPLIER.value
    return current


@dataclass
class PaymentSnapshot:
    """The parts of a captured payment the order is built from."""

    payment_id: str
    amount_received: Decimal
    account_id: Optional[str]
    email: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    payment_method_type: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_payment_intent(cls, intent: Mapping[str, Any]) -> "PaymentSnapshot":
        metadata = dict(intent.get("metadata") or {})
        method_types = intent.get("payment_method_types") or []
        amount = intent.get("amount_received") or intent.get("amount") or 0
        return cls(
            payment_id=intent["id"],
            amount_received=Decimal(amount) / 100,
            account_id=metadata.get("userId"),
            email=metadata.get("userEmail"),
            metadata=metadata,
            payment_method_type=metadata.get("paymentMethodType") or (method_types[0] if method_types else None),
        )

    @classmethod
    def from_checkout_session(cls, session: Mapping[str, Any]) -> "PaymentSnapshot":
        metadata = dict(session.get("metadata") or {})
        return cls(
            payment_id=session.get("payment_intent") or session["id"],
            amount_received=Decimal(session.get("amount_total") or 0) / 100,
            account_id=metadata.get("userId"),
            email=metadata.get("userEmail") or session.get("customer_email"),
            metadata=metadata,
            payment_method_type=metadata.get("paymentMethodType"),
            session_id=session.get("id"),
        )


class OrderReconciler:
    def __init__(
        self,
        gateway: Optional[PlatformGoldGateway] = None,
        cart: Optional[CartStore] = None,
        notifier: Optional[EmailNotifier] = None,
    ):
        self.gateway = gateway or get_supplier_gateway()
        self.cart = cart or cart_store
        self.notifier = notifier or get_notifier()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def find_by_payment(db: Session, payment_id: str) -> Optional[Order]:
        return db.query(Order).filter(Order.payment_id == payment_id).first()

    @staticmethod
    def _update(db: Session, order: Order, values: Dict[str, Any]) -> None:
        # Only the named columns are written, so a concurrent writer's
        # fields on the same row survive.
        values["updated_at"] = utcnow()
        db.query(Order).filter(Order.id == order.id).update(values, synchronize_session=False)
        db.commit()
        db.refresh(order)

    # ------------------------------------------------------------------
    # Payment confirmed
    # ------------------------------------------------------------------

    async def handle_payment_succeeded(self, db: Session, payment: PaymentSnapshot) -> Optional[Order]:
        existing = self.find_by_payment(db, payment.payment_id)
        if existing is not None:
            logger.info(f"Payment {payment.payment_id} already has order {existing.id}; skipping")
            return existing

        if not payment.account_id or not payment.email:
            logger.error(f"Payment {payment.payment_id} is missing userId/userEmail metadata")
            return None

        lines = self.cart.lines(db, payment.account_id)
        if not lines:
            # The cart is cleared once an order exists, so this is a replay or corruption.
            logger.error(f"Cart not found for {payment.account_id} (payment {payment.payment_id}); no order created")
            return None

        items: List[Dict[str, Any]] = []
        subtotal = Decimal("0")
        platform_gold_cost = Decimal("0")
        for line in lines:
            final_price = to_decimal(line.final_price)
            base_price = to_decimal(line.base_price)
            subtotal += final_price * line.quantity
            platform_gold_cost += base_price * line.quantity
            items.append(
                {
                    "itemId": line.item_id,
                    "sku": line.sku,
                    "name": line.name,
                    "quantity": line.quantity,
                    "pricing": {
                        "basePrice": float(base_price),
                        "markupPercentage": float(line.markup_percentage),
                        "markupAmount": float(line.markup_amount),
                        "finalPrice": float(final_price),
                    },
                    "totalPrice": float(to_cents(final_price * line.quantity)),
                    "metalSymbol": line.metal_symbol,
                    "metalOz": line.metal_oz,
                    "image": line.image,
                }
            )
        subtotal = to_cents(subtotal)
        platform_gold_cost = to_cents(platform_gold_cost)

        try:
            shipping_address = json.loads(payment.metadata.get("shippingAddress") or "{}")
        except ValueError:
            logger.error(f"Unparseable shipping address on payment {payment.payment_id}")
            shipping_address = {}

        processing_fee = payment.metadata.get("processingFee")
        order = Order(
            account_id=payment.account_id,
            account_email=payment.email,
            items=items,
            subtotal=subtotal,
            platform_gold_cost=platform_gold_cost,
            total_markup=subtotal - platform_gold_cost,
            delivery_fee=to_cents(payment.metadata.get("deliveryFee") or 0),
            processing_fee=to_cents(processing_fee) if processing_fee else None,
            total=to_cents(payment.amount_received),
            currency=settings.CURRENCY,
            shipping_address=shipping_address,
            payment_method="stripe",
            payment_method_type=payment.payment_method_type,
            payment_status=PaymentStatus.COMPLETED.value,
            payment_id=payment.payment_id,
            status=OrderStatus.PENDING_FULFILLMENT.value,
            required_kyc=order_requires_kyc(subtotal),
            kyc_status=None,
        )
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the insert.
            db.rollback()
            logger.info(f"Payment {payment.payment_id} was recorded concurrently; using existing order")
            return self.find_by_payment(db, payment.payment_id)
        db.refresh(order)
        logger.info(f"Order {order.id} created for payment {payment.payment_id} total={order.total}")

        # The order is the source of truth from here on; a failed clear only
        # leaves stale lines behind.
        try:
            self.cart.clear(db, payment.account_id)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to clear cart for {payment.account_id} after order {order.id}: {e}")

        await self.submit_to_supplier(db, order)
        await self._notify(order)
        return order

    async def _notify(self, order: Order) -> None:
        try:
            sent, error = await self.notifier.send_order_confirmation(order)
        except Exception as e:
            sent, error = False, str(e)
        if not sent:
            logger.warning(f"Order confirmation for {order.id} not sent: {error}")

    # ------------------------------------------------------------------
    # Supplier submission
    # ------------------------------------------------------------------

    async def _link_existing_upstream(self, db: Session, order: Order) -> bool:
        """Before re-submitting, check whether an earlier attempt reached the supplier."""
        matches = await self.gateway.search_orders(customer_reference_number=order.id)
        match = next((m for m in matches if m.id is not None), None)
        if match is None:
            return False

        supplier_status = normalize_supplier_status(match.status) or SupplierStatus.ORDER_CREATED.value
        self._update(
            db,
            order,
            {
                "supplier_order_id": str(match.id),
                "supplier_transaction_id": match.transaction_id,
                "supplier_status": supplier_status,
                "supplier_error": None,
                "supplier_last_synced_at": utcnow(),
                "status": _order_status_for(supplier_status, order.status),
            },
        )
        logger.info(f"Order {order.id} linked to existing Platform Gold order {match.id}")
        return True

    async def submit_to_supplier(self, db: Session, order: Order) -> Order:
        if order.supplier_order_id or order.supplier_handle:
            return order

        try:
            if order.status == OrderStatus.SUPPLIER_ERROR.value and await self._link_existing_upstream(db, order):
                return order

            request = await self.gateway.build_order_request(
                items=order.items or [],
                shipping_address=order.shipping_address or {},
                email=order.account_email,
                customer_reference_number=order.id,
                confirmation_number=order.id,
                notes=f"Summit Bullion order {order.id}",
            )
            result = await self.gateway.submit_order(request)
        except Exception as e:
            logger.exception(f"Platform Gold submission failed for order {order.id}")
            self._update(
                db,
                order,
                {
                    "status": OrderStatus.SUPPLIER_ERROR.value,
                    "supplier_status": SupplierStatus.FAILED.value,
                    "supplier_error": str(e) or type(e).__name__,
                    "supplier_last_synced_at": utcnow(),
                },
            )
            return order

        if not result.success:
            logger.error(f"Platform Gold rejected order {order.id}: {result.error}")
            self._update(
                db,
                order,
                {
                    "status": OrderStatus.SUPPLIER_ERROR.value,
                    "supplier_status": SupplierStatus.FAILED.value,
                    "supplier_mode": result.mode,
                    "supplier_error": result.error,
                    "supplier_last_synced_at": utcnow(),
                },
            )
            return order

        supplier_status = (
            SupplierStatus.ORDER_CREATED.value if result.order_id is not None else SupplierStatus.QUOTE_CREATED.value
        )
        self._update(
            db,
            order,
            {
                "status": OrderStatus.SUBMITTED_TO_SUPPLIER.value,
                "supplier_order_id": str(result.order_id) if result.order_id is not None else None,
                "supplier_handle": result.handle,
                "supplier_transaction_id": result.transaction_id,
                "supplier_status": supplier_status,
                "supplier_mode": result.mode,
                "supplier_error": None,
            },
        )
        logger.info(
            f"Order {order.id} submitted to Platform Gold ({result.mode}): "
            f"id={result.order_id} handle={result.handle}"
        )
        return order

    # ------------------------------------------------------------------
    # Status sync
    # ------------------------------------------------------------------

    async def sync_order(self, db: Session, order: Order) -> Dict[str, Any]:
        now = utcnow()

        if not order.supplier_order_id and not order.supplier_handle:
            if order.status != OrderStatus.SUPPLIER_ERROR.value:
                raise InvalidInput("Order has not been submitted to Platform Gold yet")
            await self.submit_to_supplier(db, order)
            return {
                "orderId": order.id,
                "synced": order.status != OrderStatus.SUPPLIER_ERROR.value,
                "status": order.supplier_status,
                "error": order.supplier_error,
            }

        try:
            if order.supplier_order_id:
                snapshot = await self.gateway.fetch_order_status(int(order.supplier_order_id))
                supplier_status = normalize_supplier_status(snapshot.status) or order.supplier_status
                self._update(
                    db,
                    order,
                    {
                        "supplier_status": supplier_status,
                        "supplier_transaction_id": snapshot.transaction_id or order.supplier_transaction_id,
                        "supplier_tracking_numbers": snapshot.tracking_numbers,
                        "supplier_item_fulfillments": snapshot.item_fulfillments,
                        "tracking_numbers": snapshot.tracking_numbers,
                        "supplier_error": None,
                        "supplier_last_synced_at": now,
                        "status": _order_status_for(supplier_status, order.status),
                    },
                )
                return {
                    "orderId": order.id,
                    "synced": True,
                    "supplierOrderId": order.supplier_order_id,
                    "status": snapshot.status,
                    "statusMessage": status_message(snapshot.status),
                    "trackingNumbers": snapshot.tracking_numbers,
                    "transactionId": order.supplier_transaction_id,
                }

            poll = await self.gateway.poll_order(order.supplier_handle)
        except CheckoutError as e:
            self._update(db, order, {"supplier_error": e.message, "supplier_last_synced_at": now})
            raise

        values: Dict[str, Any] = {"supplier_last_synced_at": now}
        if poll.id is not None:
            values.update(
                {
                    "supplier_order_id": str(poll.id),
                    "supplier_transaction_id": poll.transaction_id,
                    "supplier_status": SupplierStatus.ORDER_CREATED.value,
                    "supplier_error": None,
                    "status": _order_status_for(None, order.status),
                }
            )
        elif poll.sync_error:
            # Not fatal: the supplier keeps retrying and so do we.
            values["supplier_error"] = poll.sync_error
            values["supplier_status"] = SupplierStatus.SYNC_ERROR.value
        self._update(db, order, values)

        if poll.id is not None:
            message = "Order created successfully"
        else:
            message = f"Sync in progress ({poll.sync_attempts_remaining} attempts remaining)"
        return {
            "orderId": order.id,
            "synced": True,
            "supplierHandle": order.supplier_handle,
            "supplierOrderId": order.supplier_order_id,
            "status": order.supplier_status,
            "statusMessage": status_message(order.supplier_status),
            "trackingNumbers": order.tracking_numbers or [],
            "transactionId": order.supplier_transaction_id,
            "message": message,
        }

    # ------------------------------------------------------------------
    # Operator recovery
    # ------------------------------------------------------------------

    def on_hold_orders(self, db: Session, order_ids: Optional[List[str]] = None) -> List[Order]:
        query = db.query(Order).filter(
            Order.supplier_status == SupplierStatus.ON_HOLD_CONTACT_DESK.value,
            Order.supplier_order_id.isnot(None),
        )
        if order_ids:
            query = query.filter(Order.id.in_(order_ids))
        return query.order_by(Order.created_at.asc()).all()

    async def repair_on_hold(
        self, db: Session, order_ids: Optional[List[str]] = None, dry_run: bool = False
    ) -> Dict[str, Any]:
        """Re-send shipping details for orders Platform Gold put on hold.

        The supplier holds an order when it cannot use the address or the
        shipping instruction. Each held order gets the stored address and the
        configured shipping instruction again, then is re-synced.
        """
        orders = self.on_hold_orders(db, order_ids)
        if not orders:
            logger.info("No on-hold orders to repair")
            return {"fixedCount": 0, "results": []}

        instruction = await self.gateway.resolve_shipping_instruction()
        results: List[Dict[str, Any]] = []
        for order in orders:
            order_id = order.id
            supplier_address = to_supplier_address(order.shipping_address or {})
            missing = [f for f in REQUIRED_ADDRESS_FIELDS if not supplier_address.get(f)]
            if missing:
                logger.warning(f"Order {order_id} has an incomplete shipping address (missing {', '.join(missing)})")
                results.append(
                    {"orderId": order_id, "fixed": False, "error": f"Incomplete shipping address: {', '.join(missing)}"}
                )
                continue

            if dry_run:
                results.append({"orderId": order_id, "fixed": False, "dryRun": True})
                continue

            try:
                await self.gateway.update_order(
                    int(order.supplier_order_id),
                    shipping_address=order.shipping_address,
                    shipping_instruction_id=instruction["id"],
                    notes=(
                        f"Shipping details re-sent on {utcnow().isoformat()}: "
                        f"instruction {instruction.get('name')!r}"
                    ),
                )
                synced = await self.sync_order(db, order)
            except Exception as e:
                db.rollback()
                logger.error(f"On-hold repair failed for order {order_id}: {type(e).__name__}: {e}")
                self._update(db, order, {"supplier_error": f"On-hold repair failed: {e}"})
                results.append({"orderId": order_id, "fixed": False, "error": str(e)})
                continue

            results.append({"orderId": order_id, "fixed": True, "status": synced.get("status")})

        fixed = sum(1 for r in results if r["fixed"])
        logger.info(f"On-hold repair: {fixed}/{len(results)} fixed (dry_run={dry_run})")
        return {"fixedCount": fixed, "results": results}

    def resync_candidates(self, db: Session, now: datetime, batch_size: int) -> List[Order]:
        cutoff = now - timedelta(minutes=settings.ORDER_SYNC_DEBOUNCE_MINUTES)
        return (
            db.query(Order)
            .filter(
                or_(
                    Order.supplier_status.in_(NON_TERMINAL_SUPPLIER_STATUSES),
                    and_(
                        Order.status == OrderStatus.SUPPLIER_ERROR.value,
                        Order.supplier_order_id.is_(None),
                        Order.supplier_handle.is_(None),
                    ),
                ),
                or_(Order.supplier_last_synced_at.is_(None), Order.supplier_last_synced_at < cutoff),
            )
            .order_by(Order.created_at.asc())
            .limit(batch_size)
            .all()
        )

    async def resync(
        self, db: Session, now: Optional[datetime] = None, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        batch_size = batch_size or settings.ORDER_SYNC_BATCH_SIZE
        debounce = timedelta(minutes=settings.ORDER_SYNC_DEBOUNCE_MINUTES)

        results: List[Dict[str, Any]] = []
        for order in self.resync_candidates(db, now, batch_size):
            last_synced = to_utc(order.supplier_last_synced_at)
            if last_synced is not None and now - last_synced < debounce:
                continue

            order_id = order.id
            try:
                results.append(await self.sync_order(db, order))
            except Exception as e:
                # One bad order must not stop the batch.
                db.rollback()
                logger.error(f"Resync failed for order {order_id}: {type(e).__name__}: {e}")
                results.append({"orderId": order_id, "synced": False, "error": str(e)})

        synced = sum(1 for r in results if r.get("synced"))
        logger.info(f"Order resync: {synced}/{len(results)} synced")
        return {"syncedCount": synced, "results": results}


def get_order_reconciler() -> OrderReconciler:
    return OrderReconciler()
