from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bullion.database import get_db
from bullion.models.cart import AddToCartRequest, AuthHints, RemoveFromCartRequest, UpdateCartRequest
from bullion.services.cart_store import cart_store
from bullion.services.identity import VerifiedIdentity, get_verified_identity

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("")
async def get_cart(
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    return {"success": True, "cart": cart_store.get(db, identity.account_id)}


@router.post("/add")
async def add_to_cart(
    body: AddToCartRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    cart = cart_store.add(db, identity.account_id, body.item)
    return {"success": True, "cart": cart}


@router.delete("/remove")
async def remove_from_cart(
    body: RemoveFromCartRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    cart = cart_store.remove(db, identity.account_id, body.itemId)
    return {"success": True, "cart": cart}


@router.put("/update")
async def update_cart_item(
    body: UpdateCartRequest,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    """Set an item's quantity; zero or less removes the line."""
    cart = cart_store.set_quantity(db, identity.account_id, body.itemId, body.quantity)
    return {"success": True, "cart": cart}


@router.delete("/clear")
async def clear_cart(
    body: Optional[AuthHints] = None,
    identity: VerifiedIdentity = Depends(get_verified_identity),
    db: Session = Depends(get_db),
):
    cart_store.clear(db, identity.account_id)
    return {"success": True, "cart": cart_store.get(db, identity.account_id)}
