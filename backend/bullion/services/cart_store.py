from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bullion.db_models.cart import CartLine
from bullion.models.cart import CartLineIn
from bullion.services.errors import NotFound
from bullion.utils.dates import utcnow
from bullion.utils.logger import logger


def _money(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.01")))


def line_to_dict(line: CartLine) -> Dict[str, Any]:
    return {
        "itemId": line.item_id,
        "sku": line.sku,
        "name": line.name,
        "quantity": line.quantity,
        "pricing": {
            "basePrice": float(line.base_price),
            "markupPercentage": float(line.markup_percentage),
            "markupAmount": float(line.markup_amount),
            "finalPrice": float(line.final_price),
        },
        "metalSymbol": line.metal_symbol,
        "metalOz": line.metal_oz,
        "manufacturer": line.manufacturer,
        "image": line.image,
        "addedAt": line.added_at.isoformat() if line.added_at else None,
    }


class CartStore:
    """Per-account cart persisted as one row per line.

    Mutations are last-write-wins; ``add`` merges by itemId so a retried
    add-to-cart grows the quantity instead of duplicating the line.
    """

    def lines(self, db: Session, account_id: str) -> List[CartLine]:
        return (
            db.query(CartLine)
            .filter(CartLine.account_id == account_id)
            .order_by(CartLine.id)
            .all()
        )

    def get(self, db: Session, account_id: str) -> Dict[str, Any]:
        lines = self.lines(db, account_id)
        subtotal = sum((Decimal(l.final_price) * l.quantity for l in lines), Decimal("0"))
        return {
            "userId": account_id,
            "items": [line_to_dict(l) for l in lines],
            "subtotal": _money(subtotal),
            "itemCount": sum(l.quantity for l in lines),
        }

    def _find(self, db: Session, account_id: str, item_id: str):
        return (
            db.query(CartLine)
            .filter(CartLine.account_id == account_id, CartLine.item_id == item_id)
            .first()
        )

    def _increment(self, db: Session, line: CartLine, quantity: int) -> None:
        db.query(CartLine).filter(CartLine.id == line.id).update(
            {"quantity": CartLine.quantity + quantity, "updated_at": utcnow()},
            synchronize_session=False,
        )
        db.commit()

    def add(self, db: Session, account_id: str, item: CartLineIn) -> Dict[str, Any]:
        existing = self._find(db, account_id, item.itemId)
        if existing is not None:
            self._increment(db, existing, item.quantity)
            logger.info(f"Cart {account_id}: merged {item.quantity} into item {item.itemId}")
            return self.get(db, account_id)

        db.add(
            CartLine(
                account_id=account_id,
                item_id=item.itemId,
                sku=item.sku,
                name=item.name,
                quantity=item.quantity,
                base_price=item.pricing.basePrice,
                markup_percentage=item.pricing.markupPercentage,
                markup_amount=item.pricing.markupAmount,
                final_price=item.pricing.finalPrice,
                metal_symbol=item.metalSymbol,
                metal_oz=item.metalOz,
                manufacturer=item.manufacturer,
                image=item.image,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # A concurrent add inserted the same item first; merge into it.
            db.rollback()
            existing = self._find(db, account_id, item.itemId)
            self._increment(db, existing, item.quantity)

        logger.info(f"Cart {account_id}: added item {item.itemId} x{item.quantity}")
        return self.get(db, account_id)

    def remove(self, db: Session, account_id: str, item_id: str) -> Dict[str, Any]:
        deleted = (
            db.query(CartLine)
            .filter(CartLine.account_id == account_id, CartLine.item_id == item_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info(f"Cart {account_id}: removed item {item_id}")
        return self.get(db, account_id)

    def set_quantity(self, db: Session, account_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            return self.remove(db, account_id, item_id)

        updated = (
            db.query(CartLine)
            .filter(CartLine.account_id == account_id, CartLine.item_id == item_id)
            .update({"quantity": quantity, "updated_at": utcnow()}, synchronize_session=False)
        )
        db.commit()
        if not updated:
            raise NotFound(f"Item {item_id} is not in the cart")
        return self.get(db, account_id)

    def clear(self, db: Session, account_id: str) -> int:
        deleted = (
            db.query(CartLine)
            .filter(CartLine.account_id == account_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Cart {account_id}: cleared {deleted} line(s)")
        return deleted


cart_store = CartStore()
