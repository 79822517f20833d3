# Overview: Service-layer operations for inventory; the stock ledger and its audit log.

# backend/storefront/services/inventory_service.py

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Inventory, InventoryLog, Product, ProductVariant, INVENTORY_CHANGE_TYPES
from ..errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.time_utils import utcnow
from .catalog_service import resolve_product_and_variant
from .concurrency import lock_for_update
"""
Storefront Inventory Invariants (authoritative)

Inventory model:
- One Inventory row per (product_id, variant_id). variant_id NULL is the
  product-level position.
- Rows are created lazily by the first stock event (restock / positive
  adjustment) and never hard-deleted.
- stock_quantity is the physical count; reserved_quantity is soft-held for
  carts and in-flight orders.

Business invariants:
- 0 <= reserved_quantity <= stock_quantity after every successful operation.
- Decisions use stock_quantity - reserved_quantity directly; the clamped
  available_quantity is for presentation only.

Transactions:
- Every mutator takes the caller's TransactionScope and never commits.
- The row is selected FOR UPDATE before it is read for a decision.

Audit:
- RESTOCK, SALE, RETURN, MANUAL and ADJUSTMENT each append an InventoryLog
  row in the same transaction. Reservation changes are not logged.

Read cache:
- Product.stock_quantity and ProductVariant.stock_quantity are refreshed
  from Inventory on every write. Product totals all rows of the product.
"""


def _require_positive(quantity, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"{field} must be an integer", details={field: quantity})
    if quantity <= 0:
        raise ValidationError(f"{field} must be > 0", details={field: quantity})
    return quantity


def _locked_row(tx, product_id: int, variant_id: int | None) -> Inventory | None:
    tx.check_deadline()
    return lock_for_update(
        tx.query(Inventory).filter_by(product_id=product_id, variant_id=variant_id)
    ).first()


def _require_row(tx, product_id: int, variant_id: int | None) -> Inventory:
    row = _locked_row(tx, product_id, variant_id)
    if not row:
        raise NotFoundError(
            "Inventory record not found",
            details={"product_id": product_id, "variant_id": variant_id},
        )
    return row


def _get_or_create_row(tx, product_id: int, variant_id: int | None) -> Inventory:
    row = _locked_row(tx, product_id, variant_id)
    if row:
        return row
    resolve_product_and_variant(product_id, variant_id)
    row = Inventory(
        product_id=product_id,
        variant_id=variant_id,
        stock_quantity=0,
        reserved_quantity=0,
    )
    tx.add(row)
    tx.flush()
    return row


def _append_log(tx, row: Inventory, change_type: str, quantity_changed: int, note: str | None) -> InventoryLog:
    if change_type not in INVENTORY_CHANGE_TYPES:
        raise ValidationError(f"Unknown change_type: {change_type}")
    entry = InventoryLog(
        product_id=row.product_id,
        variant_id=row.variant_id,
        change_type=change_type,
        quantity_changed=quantity_changed,
        note=note,
        created_at=utcnow(),
    )
    tx.add(entry)
    return entry


def _sync_stock_cache(tx, row: Inventory) -> None:
    """Refresh the Product / Variant stock mirrors from Inventory."""
    tx.flush()
    if row.variant_id is not None:
        variant = tx.get(ProductVariant, row.variant_id)
        if variant and variant.stock_quantity != row.stock_quantity:
            variant.stock_quantity = row.stock_quantity

    total = (
        tx.query(func.coalesce(func.sum(Inventory.stock_quantity), 0))
        .filter(Inventory.product_id == row.product_id)
        .scalar()
    )
    product = tx.get(Product, row.product_id)
    if product and product.stock_quantity != int(total):
        product.stock_quantity = int(total)


def _shortfall_error(row: Inventory, requested: int, available: int, message: str) -> InsufficientStockError:
    return InsufficientStockError(
        message,
        details={
            "product_id": row.product_id,
            "variant_id": row.variant_id,
            "requested": requested,
            "available": max(0, available),
            "shortfall": requested - max(0, available),
        },
    )


def reserve(tx, *, product_id: int, variant_id: int | None = None, quantity: int) -> Inventory:
    """Soft-hold quantity units. Fails unless stock - reserved covers the request."""
    _require_positive(quantity)
    row = _require_row(tx, product_id, variant_id)

    available = row.stock_quantity - row.reserved_quantity
    if available < quantity:
        raise _shortfall_error(row, quantity, available, "Insufficient stock to reserve")

    row.reserved_quantity += quantity
    _sync_stock_cache(tx, row)
    return row


def commit_sale(
    tx,
    *,
    product_id: int,
    variant_id: int | None = None,
    quantity: int,
    note: str | None = None,
) -> Inventory:
    """
    Turn a reservation into a sale: stock and reserved both drop by quantity.

    Callers reserve first; the SALE log row carries the negative delta.
    """
    _require_positive(quantity)
    row = _require_row(tx, product_id, variant_id)

    if row.stock_quantity < quantity:
        raise _shortfall_error(row, quantity, row.stock_quantity, "Insufficient stock to complete sale")

    if row.reserved_quantity < quantity:
        current_app.logger.warning(
            "Sale of %s units exceeds reservation of %s (product_id=%s variant_id=%s); clamping reserved to 0",
            quantity, row.reserved_quantity, product_id, variant_id,
        )
        row.reserved_quantity = 0
    else:
        row.reserved_quantity -= quantity
    row.stock_quantity -= quantity

    _append_log(tx, row, "SALE", -quantity, note)
    _sync_stock_cache(tx, row)
    return row


def restore(
    tx,
    *,
    product_id: int,
    variant_id: int | None = None,
    quantity: int,
    note: str | None = None,
) -> Inventory:
    """Put sold units back on the shelf (cancellation / return)."""
    _require_positive(quantity)
    row = _require_row(tx, product_id, variant_id)

    row.stock_quantity += quantity
    _append_log(tx, row, "RETURN", quantity, note)
    _sync_stock_cache(tx, row)
    return row


def release_reservation(tx, *, product_id: int, variant_id: int | None = None, quantity: int) -> Inventory:
    """
    Drop a soft hold. No log row is written.

    Releasing more than is reserved means an earlier step lost track of a
    hold; reserved is clamped at 0 and a warning is logged.
    """
    _require_positive(quantity)
    row = _require_row(tx, product_id, variant_id)

    if row.reserved_quantity < quantity:
        current_app.logger.warning(
            "Reservation underflow: releasing %s of %s reserved (product_id=%s variant_id=%s)",
            quantity, row.reserved_quantity, product_id, variant_id,
        )
        row.reserved_quantity = 0
    else:
        row.reserved_quantity -= quantity

    _sync_stock_cache(tx, row)
    return row


def restock(
    tx,
    *,
    product_id: int,
    variant_id: int | None = None,
    quantity: int,
    note: str | None = None,
) -> Inventory:
    """Receive stock. Creates the inventory row on first use."""
    _require_positive(quantity)
    row = _get_or_create_row(tx, product_id, variant_id)

    row.stock_quantity += quantity
    row.last_restocked_at = utcnow()
    _append_log(tx, row, "RESTOCK", quantity, note)
    _sync_stock_cache(tx, row)
    return row


def adjust(
    tx,
    *,
    product_id: int,
    variant_id: int | None = None,
    quantity_delta: int,
    change_type: str = "MANUAL",
    note: str | None = None,
) -> Inventory:
    """
    Manual correction (count variance, shrink, damage).

    Stock may not drop below what is currently reserved.
    """
    if change_type not in ("MANUAL", "ADJUSTMENT"):
        raise ValidationError("change_type must be MANUAL or ADJUSTMENT")
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int) or quantity_delta == 0:
        raise ValidationError("quantity_delta must be a non-zero integer")

    if quantity_delta > 0:
        row = _get_or_create_row(tx, product_id, variant_id)
    else:
        row = _require_row(tx, product_id, variant_id)
        removable = row.stock_quantity - row.reserved_quantity
        if removable < -quantity_delta:
            raise _shortfall_error(row, -quantity_delta, removable, "Adjustment would drop stock below reserved")

    row.stock_quantity += quantity_delta
    _append_log(tx, row, change_type, quantity_delta, note)
    _sync_stock_cache(tx, row)
    return row


def set_threshold(tx, *, product_id: int, variant_id: int | None = None, threshold: int) -> Inventory:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValidationError("threshold must be an integer >= 0")
    row = _require_row(tx, product_id, variant_id)
    row.threshold = threshold
    return row


def get_availability(product_id: int, variant_id: int | None = None) -> dict:
    """Current position for one product / variant. Untracked items report zero."""
    row = (
        db.session.query(Inventory)
        .filter_by(product_id=product_id, variant_id=variant_id)
        .first()
    )
    if not row:
        resolve_product_and_variant(product_id, variant_id)
        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "stock_quantity": 0,
            "reserved_quantity": 0,
            "available_quantity": 0,
            "tracked": False,
        }
    return {
        "product_id": row.product_id,
        "variant_id": row.variant_id,
        "stock_quantity": row.stock_quantity,
        "reserved_quantity": row.reserved_quantity,
        "available_quantity": row.available_quantity,
        "tracked": True,
    }


def get_inventory_summary(product_id: int) -> dict:
    """All inventory rows of a product plus totals."""
    resolve_product_and_variant(product_id)
    rows = (
        db.session.query(Inventory)
        .filter_by(product_id=product_id)
        .order_by(Inventory.variant_id.is_(None).desc(), Inventory.variant_id.asc())
        .all()
    )
    stock = sum(r.stock_quantity for r in rows)
    reserved = sum(r.reserved_quantity for r in rows)
    return {
        "product_id": product_id,
        "stock_quantity": stock,
        "reserved_quantity": reserved,
        "available_quantity": max(0, stock - reserved),
        "is_low_stock": any(r.is_low_stock for r in rows),
        "rows": [r.to_dict() for r in rows],
    }


def list_low_stock(*, limit: int = 200) -> list[Inventory]:
    return (
        db.session.query(Inventory)
        .filter(Inventory.stock_quantity <= Inventory.threshold)
        .order_by(Inventory.stock_quantity.asc(), Inventory.id.asc())
        .limit(limit)
        .all()
    )


def list_logs(
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    change_type: str | None = None,
    limit: int = 200,
    offset: int = 0,
) -> list[InventoryLog]:
    q = db.session.query(InventoryLog)
    if product_id is not None:
        q = q.filter(InventoryLog.product_id == product_id)
    if variant_id is not None:
        q = q.filter(InventoryLog.variant_id == variant_id)
    if change_type:
        if change_type not in INVENTORY_CHANGE_TYPES:
            raise ValidationError(f"Unknown change_type: {change_type}")
        q = q.filter(InventoryLog.change_type == change_type)
    return (
        q.order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
