import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from bullion.config import settings
from bullion.database import get_db
from bullion.db_models.order import Order
from bullion.models.checkout import SyncStatusRequest
from bullion.services.errors import NotFound
from bullion.services.identity import VerifiedIdentity, get_verified_identity
from bullion.services.order_reconciler import OrderReconciler, get_order_reconciler, status_message
from bullion.utils.logger import logger

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "userId": order.account_id,
        "userEmail": order.account_email,
        "items": order.items or [],
        "subtotal": _float(order.subtotal),
        "platformGoldCost": _float(order.platform_gold_cost),
        "totalMarkup": _float(order.total_markup),
        "deliveryFee": _float(order.delivery_fee),
        "processingFee": _float(order.processing_fee),
        "total": _float(order.total),
        "currency": order.currency,
        "shippingAddress": order.shipping_address,
        "paymentMethod": order.payment_method,
        "paymentMethodType": order.payment_method_type,
        "paymentStatus": order.payment_status,
        "paymentId": order.payment_id,
        "status": order.status,
        "supplierOrderId": order.supplier_order_id,
        "supplierHandle": order.supplier_handle,
        "supplierStatus": order.supplier_status,
        "supplierStatusMessage": status_message(order.supplier_status),
        "supplierTransactionId": order.supplier_transaction_id,
        "supplierError": order.supplier_error,
        "supplierLastSyncedAt": _iso(order.supplier_last_synced_at),
        "requiredKYC": bool(order.required_kyc),
        "kycStatus": order.kyc_status,
        "trackingNumbers": order.tracking_numbers or [],
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }


def require_internal_api_key(x_internal_api_key: Optional[str] = Header(None)) -> None:
    expected = settings.INTERNAL_API_KEY
    if not expected or not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, expected):
        logger.warning("Rejected batch order sync: missing or invalid internal API key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.get("")
async def list_orders(
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    orders = (
        db.query(Order)
        .filter(Order.account_id == identity.account_id)
        .order_by(Order.created_at.desc())
        .all()
    )
    return {"success": True, "orders": [serialize_order(o) for o in orders]}


@router.post("/sync-status")
async def sync_order_status(
    body: SyncStatusRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
    db: Session = Depends(get_db),
):
    order = db.query(Order).filter(Order.id == body.orderId).first()
    if order is None or order.account_id != identity.account_id:
        raise NotFound("Order not found")

    result = await reconciler.sync_order(db, order)
    return {"success": True, **result}


@router.get("/sync-status")
async def sync_all_order_statuses(
    _: None = Depends(require_internal_api_key),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
    db: Session = Depends(get_db),
):
    """Batch resync for cron. Requires the X-Internal-Api-Key header."""
    result = await reconciler.resync(db)
    return {
        "success": True,
        "message": f"Synced {result['syncedCount']} orders",
        **result,
    }
