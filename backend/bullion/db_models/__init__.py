from bullion.db_models.account import Account, KycStatus
from bullion.db_models.cart import CartLine
from bullion.db_models.order import Order, OrderStatus, PaymentStatus, SupplierStatus
from bullion.db_models.supplier_credential import SupplierCredential

__all__ = [
    "Account",
    "KycStatus",
    "CartLine",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "SupplierStatus",
    "SupplierCredential",
]
