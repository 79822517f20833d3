# Overview: Service-layer operations for orders; checkout transaction, status machine and queries.

# backend/storefront/services/order_service.py

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Inventory, Order, OrderItem, OrderTimeline, ORDER_STATUSES, PAYMENT_STATUSES
from ..errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..money import apply_bps
from storefront.time_utils import utcnow, normalize_datetime
from . import cart_service, coupon_service, deal_service, inventory_service
from .catalog_service import resolve_product_and_variant
from .concurrency import lock_for_update, serializable_transaction
from .document_service import next_order_number
"""
Order placement and lifecycle (authoritative)

Checkout:
- One serializable transaction per create_order. All checks (product,
  variant, inventory, currency, coupon) run before the first write; any
  failure rolls back everything.
- Availability for the placing user is stock - reserved + the units the
  user's own cart already holds, since those holds are about to be consumed.
- Inventory is reserved for the part not already held, then the sale
  decrements stock and reserved together (SALE log, note "Order <number>").

Pricing policy:
- Unit price comes from the deal resolver. A capped deal the user may no
  longer use prices the line at base.
- Tax is 10% of subtotal. Shipping is free above 100.00, otherwise 10.00.
- A FREE_SHIPPING coupon nets against the shipping fee only.
- total = subtotal + tax + shipping - discount, never negative.

Status machine:
    PENDING    -> CONFIRMED | PROCESSING | CANCELLED | REFUNDED
    CONFIRMED  -> PROCESSING | CANCELLED | REFUNDED
    PROCESSING -> SHIPPED | CANCELLED | REFUNDED
    SHIPPED    -> DELIVERED | CANCELLED | REFUNDED
    DELIVERED  -> RETURNED
    RETURNED   -> REFUNDED
    CANCELLED, REFUNDED: terminal
- CANCELLED and RETURNED put every item back in stock (RETURN log).
- Every transition appends an OrderTimeline row.
"""


TAX_RATE_BPS = 1_000
FREE_SHIPPING_THRESHOLD_CENTS = 10_000
FLAT_SHIPPING_FEE_CENTS = 1_000

ADDRESS_FIELDS = ("street", "city", "state", "zip_code", "country")

ALLOWED_TRANSITIONS = {
    "PENDING": {"CONFIRMED", "PROCESSING", "CANCELLED", "REFUNDED"},
    "CONFIRMED": {"PROCESSING", "CANCELLED", "REFUNDED"},
    "PROCESSING": {"SHIPPED", "CANCELLED", "REFUNDED"},
    "SHIPPED": {"DELIVERED", "CANCELLED", "REFUNDED"},
    "DELIVERED": {"RETURNED"},
    "RETURNED": {"REFUNDED"},
    "CANCELLED": set(),
    "REFUNDED": set(),
}

# No field updates once an order reaches one of these
IMMUTABLE_STATUSES = {"DELIVERED", "CANCELLED", "REFUNDED"}

RESTOCK_STATUSES = {"CANCELLED", "RETURNED"}

UPDATABLE_ORDER_FIELDS = {"shipping_address", "billing_address", "payment_method"}


@dataclass(frozen=True)
class OrderLineRequest:
    product_id: int
    quantity: int
    variant_id: int | None = None

    @property
    def key(self) -> tuple[int, int | None]:
        return (self.product_id, self.variant_id)


@dataclass(frozen=True)
class OrderRequest:
    items: list[OrderLineRequest]
    shipping_address: dict
    user_id: int | None = None
    billing_address: dict | None = None
    payment_method: str | None = None
    currency: str | None = None
    coupon_code: str | None = None


@dataclass
class _PricedLine:
    request: OrderLineRequest
    product_title: str
    currency: str
    quote: deal_service.PriceQuote

    @property
    def total_cents(self) -> int:
        return self.quote.unit_price_cents * self.request.quantity


@dataclass
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    shipping_fee_cents: int
    discount_cents: int = 0
    total_cents: int = field(init=False)

    def __post_init__(self):
        self.total_cents = self.subtotal_cents + self.tax_cents + self.shipping_fee_cents - self.discount_cents


def _positive_int(value, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field_name} must be > 0")
    return value


def validate_address(address, field_name: str) -> dict:
    if not isinstance(address, dict):
        raise ValidationError(f"{field_name} must be an object")
    missing = [f for f in ADDRESS_FIELDS if not str(address.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"{field_name} missing fields: {', '.join(missing)}")
    return {k: (v.strip() if isinstance(v, str) else v) for k, v in address.items()}


def parse_order_request(data: dict) -> OrderRequest:
    """Shape-check a checkout payload. Raises ValidationError; touches no data."""
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")

    raw_items = data.get("items") or []
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order must contain at least one item")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        variant_id = raw.get("variant_id")
        items.append(OrderLineRequest(
            product_id=_positive_int(raw.get("product_id"), f"items[{idx}].product_id"),
            variant_id=None if variant_id is None else _positive_int(variant_id, f"items[{idx}].variant_id"),
            quantity=_positive_int(raw.get("quantity"), f"items[{idx}].quantity"),
        ))

    shipping = validate_address(data.get("shipping_address"), "shipping_address")
    billing = data.get("billing_address")
    billing = validate_address(billing, "billing_address") if billing is not None else None

    currency = data.get("currency")
    if currency is not None:
        currency = str(currency).strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("currency must be a 3-letter ISO 4217 code")

    user_id = data.get("user_id")
    return OrderRequest(
        items=items,
        shipping_address=shipping,
        user_id=None if user_id is None else _positive_int(user_id, "user_id"),
        billing_address=billing,
        payment_method=(data.get("payment_method") or None),
        currency=currency,
        coupon_code=(coupon_service.normalize_code(data.get("coupon_code")) or None),
    )


def compute_shipping_fee(subtotal_cents: int) -> int:
    return 0 if subtotal_cents > FREE_SHIPPING_THRESHOLD_CENTS else FLAT_SHIPPING_FEE_CENTS


def compute_totals(subtotal_cents: int, coupon: coupon_service.CouponDiscount | None = None) -> OrderTotals:
    """
    Apply the tax and shipping policy and net the coupon.

    A discount larger than the gross total is an internal invariant
    violation: it is logged and the discount is clamped so total is 0.
    """
    tax = apply_bps(subtotal_cents, TAX_RATE_BPS)
    shipping = compute_shipping_fee(subtotal_cents)

    discount = 0
    if coupon is not None:
        if coupon.is_shipping_discount:
            discount = min(coupon.discount_cents, shipping)
        else:
            discount = coupon.discount_cents

    gross = subtotal_cents + tax + shipping
    if discount > gross:
        current_app.logger.error(
            "Order discount %s exceeds gross %s; clamping to keep total non-negative",
            discount, gross,
        )
        discount = gross

    return OrderTotals(
        subtotal_cents=subtotal_cents,
        tax_cents=tax,
        shipping_fee_cents=shipping,
        discount_cents=discount,
    )


def _resolve_currency(requested: str | None, lines: list[_PricedLine]) -> str:
    if requested:
        return requested
    currencies = sorted({line.currency for line in lines})
    if len(currencies) > 1:
        raise ValidationError(
            f"Mixed currencies not supported. Found currencies: {', '.join(currencies)}",
            details={"currencies": currencies},
        )
    return currencies[0] if currencies else current_app.config.get("DEFAULT_CURRENCY", "USD")


def _aggregate(items: list[OrderLineRequest]) -> "OrderedDict[tuple[int, int | None], int]":
    requested: OrderedDict = OrderedDict()
    for item in items:
        requested[item.key] = requested.get(item.key, 0) + item.quantity
    return requested


def _check_stock(tx, user_id: int | None, key, quantity: int, title: str) -> int:
    """Return how many units the user's cart already holds for key."""
    product_id, variant_id = key
    row = lock_for_update(
        tx.query(Inventory).filter_by(product_id=product_id, variant_id=variant_id)
    ).first()
    if not row:
        raise NotFoundError(
            f"Inventory record not found for product {product_id}",
            details={"product_id": product_id, "variant_id": variant_id},
        )

    held = min(cart_service.reserved_by_user(tx, user_id, product_id, variant_id), row.reserved_quantity)
    available = row.stock_quantity - row.reserved_quantity + held
    if available < quantity:
        raise InsufficientStockError(
            f"Not enough stock for product {title}. Requested: {quantity}, Available: {max(0, available)}",
            details={
                "product_id": product_id,
                "variant_id": variant_id,
                "requested": quantity,
                "available": max(0, available),
                "shortfall": quantity - max(0, available),
            },
        )
    return held


def create_order(data, *, at: datetime | None = None) -> Order:
    """
    Place an order, all-or-nothing.

    Accepts a raw payload dict or an OrderRequest. Coupon usage is recorded
    after commit, best-effort.
    """
    request = data if isinstance(data, OrderRequest) else parse_order_request(data)
    at = normalize_datetime(at) if at is not None else utcnow()
    user_id = request.user_id

    with serializable_transaction() as tx:
        # Validate and price every line before any write
        priced: list[_PricedLine] = []
        limit_checks: dict[int, deal_service.LimitCheck] = {}
        for item in request.items:
            tx.check_deadline()
            product, variant = resolve_product_and_variant(item.product_id, item.variant_id, require_active=True)

            quote = deal_service.effective_price(product, variant, at)
            if quote.deal is not None:
                check = limit_checks.get(quote.deal.id)
                if check is None:
                    check = deal_service.check_limits(tx, quote.deal, user_id)
                    limit_checks[quote.deal.id] = check
                if not check.allowed:
                    current_app.logger.info(
                        "Deal %s not applied for product %s: %s", quote.deal.id, product.id, check.reason,
                    )
                    quote = quote.without_deal()

            title = product.title if variant is None else f"{product.title} ({variant.variant_name})"
            priced.append(_PricedLine(request=item, product_title=title, currency=product.currency, quote=quote))

        requested = _aggregate(request.items)
        titles = {line.request.key: line.product_title for line in priced}
        held_by_key = {}
        for key, quantity in requested.items():
            tx.check_deadline()
            held_by_key[key] = _check_stock(tx, user_id, key, quantity, titles[key])

        currency = _resolve_currency(request.currency, priced)
        subtotal = sum(line.total_cents for line in priced)

        coupon = None
        if request.coupon_code:
            coupon = coupon_service.compute_discount(
                request.coupon_code,
                subtotal,
                [coupon_service.CouponLine(product_id=l.request.product_id, line_total_cents=l.total_cents) for l in priced],
                user_id=user_id,
                at=at,
            )
        totals = compute_totals(subtotal, coupon)

        # Writes
        order = Order(
            order_number=next_order_number(tx),
            user_id=user_id,
            status="PENDING",
            payment_status="PENDING",
            payment_method=request.payment_method,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            shipping_fee_cents=totals.shipping_fee_cents,
            discount_cents=totals.discount_cents,
            total_cents=totals.total_cents,
            currency=currency,
            coupon_code=coupon.code if coupon else None,
            placed_at=utcnow(),
        )
        tx.add(order)
        tx.flush()

        for line in priced:
            tx.add(OrderItem(
                order_id=order.id,
                product_id=line.request.product_id,
                variant_id=line.request.variant_id,
                product_deal_id=line.quote.deal_id,
                quantity=line.request.quantity,
                unit_price_cents=line.quote.unit_price_cents,
                total_price_cents=line.total_cents,
            ))

        note = f"Order {order.order_number}"
        for (product_id, variant_id), quantity in requested.items():
            tx.check_deadline()
            held = held_by_key[(product_id, variant_id)]
            if held > quantity:
                inventory_service.release_reservation(
                    tx, product_id=product_id, variant_id=variant_id, quantity=held - quantity,
                )
            elif quantity > held:
                inventory_service.reserve(
                    tx, product_id=product_id, variant_id=variant_id, quantity=quantity - held,
                )
            inventory_service.commit_sale(
                tx, product_id=product_id, variant_id=variant_id, quantity=quantity, note=note,
            )

        applied = {}
        for line in priced:
            if line.quote.deal is not None:
                applied.setdefault(line.quote.deal.id, line.quote.deal)
        for deal in applied.values():
            deal_service.record_usage(tx, deal, user_id=user_id, order_id=order.id)

        cart_service.remove_ordered_items(tx, user_id, requested.keys())

        tx.add(OrderTimeline(order_id=order.id, status="PENDING", note="Order created", created_at=utcnow()))
        tx.flush()
        order_id = order.id
        order_number = order.order_number

    current_app.logger.info(
        "Order %s created (user_id=%s total_cents=%s)", order_number, user_id, totals.total_cents,
    )

    if coupon is not None:
        coupon_service.record_usage(order_id, user_id, coupon.code, totals.discount_cents)

    return get_order(order_id)


def _lock_order(tx, order_id: int) -> Order:
    order = lock_for_update(tx.query(Order).filter_by(id=order_id)).first()
    if not order:
        raise NotFoundError(f"Order with ID {order_id} not found")
    return order


def _restore_inventory(tx, order: Order, reason: str) -> None:
    note = f"Order {order.order_number} {reason}"
    for item in order.items:
        inventory_service.restore(
            tx,
            product_id=item.product_id,
            variant_id=item.variant_id,
            quantity=item.quantity,
            note=note,
        )


def apply_status(tx, order: Order, new_status: str, note: str | None = None) -> Order:
    """
    Move a locked order to new_status inside the caller's transaction.

    Same-status requests are a no-op. Anything not in ALLOWED_TRANSITIONS
    raises ConflictError.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")
    if order.status == new_status:
        return order
    if new_status not in ALLOWED_TRANSITIONS.get(order.status, set()):
        raise ConflictError(
            f"Cannot change order status from {order.status} to {new_status}",
            details={"order_id": order.id, "from": order.status, "to": new_status},
        )

    if new_status in RESTOCK_STATUSES:
        _restore_inventory(tx, order, "cancelled" if new_status == "CANCELLED" else "returned")

    order.status = new_status
    order.updated_at = utcnow()
    tx.add(OrderTimeline(
        order_id=order.id,
        status=new_status,
        note=note or f"Order status updated to {new_status}",
        created_at=utcnow(),
    ))
    tx.flush()
    return order


def update_status(order_id: int, new_status: str, note: str | None = None) -> Order:
    new_status = (new_status or "").strip().upper()
    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        apply_status(tx, order, new_status, note)
    current_app.logger.info("Order %s status -> %s", order_id, new_status)
    return get_order(order_id)


def cancel(order_id: int, *, actor_user_id: int | None, is_staff: bool = False, note: str | None = None) -> Order:
    """Cancel an order. Customers may cancel only their own; staff may cancel any."""
    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        if not is_staff and (actor_user_id is None or order.user_id != actor_user_id):
            raise PermissionDeniedError("You can only cancel your own orders", details={"order_id": order_id})
        if order.status == "CANCELLED":
            raise ConflictError("Order is already cancelled", details={"order_id": order_id})
        apply_status(tx, order, "CANCELLED", note or "Order cancelled")
    current_app.logger.info("Order %s cancelled by user_id=%s (staff=%s)", order_id, actor_user_id, is_staff)
    return get_order(order_id)


def update_order(order_id: int, patch: dict) -> Order:
    """Edit addresses / payment method. Not allowed once delivered, cancelled or refunded."""
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("Nothing to update")
    unknown = set(patch) - UPDATABLE_ORDER_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")

    cleaned = {}
    for key, value in patch.items():
        if key in ("shipping_address", "billing_address"):
            cleaned[key] = validate_address(value, key)
        else:
            cleaned[key] = (str(value).strip() or None) if value is not None else None

    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        if order.status in IMMUTABLE_STATUSES:
            raise ConflictError(
                f"Cannot update order with status {order.status}",
                details={"order_id": order_id, "status": order.status},
            )
        for key, value in cleaned.items():
            setattr(order, key, value)
        order.updated_at = utcnow()
    return get_order(order_id)


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order with ID {order_id} not found")
    return order


def get_order_by_number(order_number: str) -> Order:
    order = db.session.query(Order).filter_by(order_number=(order_number or "").strip().upper()).first()
    if not order:
        raise NotFoundError(f"Order with number {order_number} not found")
    return order


def list_orders(
    *,
    user_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    currency: str | None = None,
    placed_from: datetime | None = None,
    placed_to: datetime | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """Filtered, newest-first page of orders. Date bounds are inclusive."""
    if status and status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")
    if payment_status and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")
    page = max(1, int(page))
    per_page = min(max(1, int(per_page)), 100)

    q = db.session.query(Order)
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    if status:
        q = q.filter(Order.status == status)
    if payment_status:
        q = q.filter(Order.payment_status == payment_status)
    if currency:
        q = q.filter(Order.currency == currency.upper())
    if placed_from is not None:
        q = q.filter(Order.placed_at >= normalize_datetime(placed_from))
    if placed_to is not None:
        q = q.filter(Order.placed_at <= normalize_datetime(placed_to))

    total = q.count()
    orders = (
        q.order_by(Order.placed_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "items": orders,
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page,
    }


def get_timeline(order_id: int) -> list[OrderTimeline]:
    get_order(order_id)
    return (
        db.session.query(OrderTimeline)
        .filter_by(order_id=order_id)
        .order_by(OrderTimeline.created_at.asc(), OrderTimeline.id.asc())
        .all()
    )
