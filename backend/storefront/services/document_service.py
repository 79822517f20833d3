# Overview: Service-layer operations for document numbers; customer-facing order identifiers.

from __future__ import annotations

import secrets
from datetime import datetime

from ..errors import StorefrontError
from ..models import Order
from storefront.time_utils import utcnow


ORDER_NUMBER_PREFIX = "ORD"
MAX_ALLOCATION_ATTEMPTS = 10


class DocumentSequenceError(StorefrontError):
    """Raised when no free document number could be allocated. Safe to retry."""
    status_code = 503


def format_order_number(day: datetime, serial: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{day:%Y%m%d}-{serial:05d}"


def next_order_number(tx, *, at: datetime | None = None) -> str:
    """
    Allocate an ORD-YYYYMMDD-NNNNN number inside the caller's transaction.

    The serial is random (10000..99999), so numbers do not leak order
    volume. Collisions are checked against existing orders and redrawn; the
    unique index on orders.order_number is the final guard.
    """
    day = at or utcnow()
    for _ in range(MAX_ALLOCATION_ATTEMPTS):
        candidate = format_order_number(day, 10000 + secrets.randbelow(90000))
        taken = tx.query(Order.id).filter(Order.order_number == candidate).first()
        if not taken:
            return candidate
    raise DocumentSequenceError("Could not allocate a unique order number")
