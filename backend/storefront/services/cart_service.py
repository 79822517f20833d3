# Overview: Service-layer operations for carts; cart lines that hold inventory reservations.

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import CartItem
from ..errors import NotFoundError, ValidationError
from storefront.time_utils import utcnow
from . import inventory_service
from .catalog_service import resolve_product_and_variant
from .concurrency import lock_for_update, serializable_transaction


def _reservation_ttl() -> timedelta:
    return timedelta(minutes=int(current_app.config.get("CART_RESERVATION_TTL_MINUTES", 15)))


def _find_line(tx, user_id: int, product_id: int, variant_id: int | None) -> CartItem | None:
    return lock_for_update(
        tx.query(CartItem).filter_by(user_id=user_id, product_id=product_id, variant_id=variant_id)
    ).first()


def add_to_cart(*, user_id: int, product_id: int, variant_id: int | None = None, quantity: int) -> CartItem:
    """
    Add quantity units to the user's cart and hold them in inventory.

    Re-adding the same product / variant grows the existing line and
    refreshes its reservation window. A line whose hold was already swept
    re-reserves its full quantity.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be > 0")

    with serializable_transaction() as tx:
        resolve_product_and_variant(product_id, variant_id, require_active=True)

        line = _find_line(tx, user_id, product_id, variant_id)
        if line is None:
            line = CartItem(user_id=user_id, product_id=product_id, variant_id=variant_id, quantity=0)
            tx.add(line)

        to_reserve = quantity if line.holds_reservation else line.quantity + quantity
        inventory_service.reserve(tx, product_id=product_id, variant_id=variant_id, quantity=to_reserve)

        line.quantity += quantity
        line.reservation_expires_at = utcnow() + _reservation_ttl()
        tx.flush()
    return line


def remove_from_cart(*, user_id: int, cart_item_id: int) -> None:
    """Delete one cart line and release whatever it still holds."""
    with serializable_transaction() as tx:
        line = lock_for_update(tx.query(CartItem).filter_by(id=cart_item_id, user_id=user_id)).first()
        if not line:
            raise NotFoundError("Cart item not found", details={"cart_item_id": cart_item_id})
        if line.holds_reservation:
            inventory_service.release_reservation(
                tx,
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=line.quantity,
            )
        tx.delete(line)


def get_cart(user_id: int) -> list[CartItem]:
    return (
        db.session.query(CartItem)
        .filter_by(user_id=user_id)
        .order_by(CartItem.created_at.asc(), CartItem.id.asc())
        .all()
    )


def reserved_by_user(tx, user_id: int | None, product_id: int, variant_id: int | None) -> int:
    """Units of this product / variant currently held by the user's own cart lines."""
    if user_id is None:
        return 0
    held = (
        tx.query(func.coalesce(func.sum(CartItem.quantity), 0))
        .filter(
            CartItem.user_id == user_id,
            CartItem.product_id == product_id,
            CartItem.variant_id.is_(None) if variant_id is None else CartItem.variant_id == variant_id,
            CartItem.reservation_expires_at.isnot(None),
        )
        .scalar()
    )
    return int(held or 0)


def remove_ordered_items(tx, user_id: int | None, pairs) -> int:
    """
    Delete the user's cart lines matching the ordered (product_id, variant_id)
    pairs. Their holds were already consumed by the sale. Returns the count.
    """
    if user_id is None:
        return 0
    removed = 0
    for product_id, variant_id in set(pairs):
        q = tx.query(CartItem).filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
        if variant_id is None:
            q = q.filter(CartItem.variant_id.is_(None))
        else:
            q = q.filter(CartItem.variant_id == variant_id)
        for line in q.all():
            tx.delete(line)
            removed += 1
    return removed
