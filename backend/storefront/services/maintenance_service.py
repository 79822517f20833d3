# Overview: Service-layer operations for maintenance; scheduled cleanup of expired cart reservations.

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import CartItem
from storefront.time_utils import utcnow, normalize_datetime
from . import inventory_service
from .concurrency import lock_for_update, serializable_transaction


def release_expired_reservations(now: datetime | None = None) -> int:
    """
    Release inventory held by cart lines whose reservation has expired.

    Each line is handled in its own serializable transaction and re-checked
    under lock, so a concurrent checkout that already consumed the hold wins.
    The line stays in the cart without a hold. Running it again releases
    nothing new. Returns the number of lines released.
    """
    cutoff = normalize_datetime(now) if now is not None else utcnow()
    expired_ids = [
        row.id
        for row in db.session.query(CartItem.id)
        .filter(CartItem.reservation_expires_at.isnot(None), CartItem.reservation_expires_at < cutoff)
        .order_by(CartItem.id.asc())
        .all()
    ]
    # End the read transaction before taking per-item write locks
    db.session.commit()

    released = 0
    for cart_item_id in expired_ids:
        with serializable_transaction() as tx:
            line = lock_for_update(tx.query(CartItem).filter_by(id=cart_item_id)).first()
            if line is None or line.reservation_expires_at is None or line.reservation_expires_at >= cutoff:
                continue
            inventory_service.release_reservation(
                tx,
                product_id=line.product_id,
                variant_id=line.variant_id,
                quantity=line.quantity,
            )
            line.reservation_expires_at = None
            released += 1

    if released:
        current_app.logger.info("Released %s expired cart reservations", released)
    return released
