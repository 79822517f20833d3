# Overview: Service-layer operations for coupons; validation, discount computation and redemption records.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Category, Coupon, CouponUsage, Product, COUPON_TYPES, COUPON_STATUSES
from ..errors import ConflictError, NotFoundError, ValidationError
from ..money import MAX_DISCOUNT_BPS, apply_bps, format_cents
from storefront.time_utils import utcnow, normalize_datetime
from .concurrency import lock_for_update, serializable_transaction


REASON_NOT_FOUND = "not_found"
REASON_INACTIVE = "inactive"
REASON_NOT_YET_ACTIVE = "not_yet_active"
REASON_EXPIRED = "expired"
REASON_USAGE_LIMIT_REACHED = "usage_limit_reached"
REASON_USER_LIMIT_REACHED = "user_limit_reached"

REASON_MESSAGES = {
    REASON_NOT_FOUND: "Coupon not found",
    REASON_INACTIVE: "Coupon is not active",
    REASON_NOT_YET_ACTIVE: "Coupon is not yet active",
    REASON_EXPIRED: "Coupon has expired",
    REASON_USAGE_LIMIT_REACHED: "Coupon usage limit reached",
    REASON_USER_LIMIT_REACHED: "You have reached the usage limit for this coupon",
}


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    reason: str | None = None
    coupon: Coupon | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES.get(self.reason) if self.reason else None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "reason": self.reason, "message": self.message}


@dataclass(frozen=True)
class CouponLine:
    """One cart / order line as the coupon engine sees it."""
    product_id: int
    line_total_cents: int


@dataclass(frozen=True)
class CouponDiscount:
    """
    Result of applying a coupon.

    For FREE_SHIPPING, discount_cents is the most the coupon takes off the
    shipping fee; netting against the actual fee is the order's job.
    """
    code: str
    coupon_type: str
    discount_cents: int
    eligible_subtotal_cents: int

    @property
    def is_shipping_discount(self) -> bool:
        return self.coupon_type == "FREE_SHIPPING"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "coupon_type": self.coupon_type,
            "discount_cents": self.discount_cents,
            "eligible_subtotal_cents": self.eligible_subtotal_cents,
            "is_shipping_discount": self.is_shipping_discount,
        }


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _user_usage_count(coupon_id: int, user_id: int) -> int:
    return (
        db.session.query(func.count(CouponUsage.id))
        .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        .scalar()
    ) or 0


def validate_coupon(code: str, user_id: int | None = None, at: datetime | None = None) -> CouponValidation:
    """
    Checks run in order and the first failure wins:
    existence, status, date window, total usage, per-user usage.
    The per-user check only applies when the user is known.
    """
    at = normalize_datetime(at) if at is not None else utcnow()
    coupon = db.session.query(Coupon).filter_by(code=normalize_code(code)).first()
    if not coupon:
        return CouponValidation(valid=False, reason=REASON_NOT_FOUND)
    if coupon.status != "ACTIVE":
        return CouponValidation(valid=False, reason=REASON_INACTIVE, coupon=coupon)
    if at < coupon.start_date:
        return CouponValidation(valid=False, reason=REASON_NOT_YET_ACTIVE, coupon=coupon)
    if at > coupon.end_date:
        return CouponValidation(valid=False, reason=REASON_EXPIRED, coupon=coupon)
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return CouponValidation(valid=False, reason=REASON_USAGE_LIMIT_REACHED, coupon=coupon)
    if user_id is not None and coupon.per_user_limit is not None:
        if _user_usage_count(coupon.id, user_id) >= coupon.per_user_limit:
            return CouponValidation(valid=False, reason=REASON_USER_LIMIT_REACHED, coupon=coupon)
    return CouponValidation(valid=True, coupon=coupon)


def _eligible_subtotal(coupon: Coupon, lines: list[CouponLine]) -> int:
    """Sum the lines whose product is listed or whose category / sub-category is listed."""
    product_ids = {p.id for p in coupon.products}
    category_ids = {c.id for c in coupon.categories}

    products = {}
    wanted = {line.product_id for line in lines}
    if wanted:
        products = {
            p.id: p
            for p in db.session.query(Product).filter(Product.id.in_(wanted)).all()
        }

    total = 0
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            continue
        if product.id in product_ids:
            total += line.line_total_cents
        elif category_ids and (
            product.category_id in category_ids or product.sub_category_id in category_ids
        ):
            total += line.line_total_cents
    return total


def compute_discount(
    code: str,
    subtotal_cents: int,
    lines: list[CouponLine] | None = None,
    user_id: int | None = None,
    at: datetime | None = None,
) -> CouponDiscount:
    """
    Re-validate the coupon and compute what it takes off.

    Raises ValidationError carrying the validation reason when the coupon
    cannot be used, or when the subtotal is under the minimum purchase.
    """
    validation = validate_coupon(code, user_id=user_id, at=at)
    if not validation.valid:
        raise ValidationError(validation.message, details={"code": normalize_code(code), "reason": validation.reason})
    coupon = validation.coupon

    if coupon.minimum_purchase_cents is not None and subtotal_cents < coupon.minimum_purchase_cents:
        raise ValidationError(
            f"Minimum purchase of {format_cents(coupon.minimum_purchase_cents)} required",
            details={
                "code": coupon.code,
                "reason": "minimum_purchase_not_met",
                "minimum_purchase_cents": coupon.minimum_purchase_cents,
            },
        )

    eligible = subtotal_cents
    if coupon.coupon_type == "PERCENTAGE":
        if lines is not None and coupon.is_scoped:
            eligible = _eligible_subtotal(coupon, lines)
        discount = apply_bps(eligible, coupon.value)
    elif coupon.coupon_type == "FIXED_AMOUNT":
        discount = min(coupon.value, subtotal_cents)
    else:
        discount = coupon.value

    return CouponDiscount(
        code=coupon.code,
        coupon_type=coupon.coupon_type,
        discount_cents=discount,
        eligible_subtotal_cents=eligible,
    )


def record_usage(order_id: int, user_id: int | None, code: str, discount_cents: int) -> bool:
    """
    Record a redemption after the order has committed.

    Runs in its own transaction. A failure is logged and reported as False;
    it never propagates into the already-placed order.
    """
    try:
        with serializable_transaction() as tx:
            coupon = lock_for_update(tx.query(Coupon).filter_by(code=normalize_code(code))).first()
            if not coupon:
                raise NotFoundError(f"Coupon with code {code} not found")
            tx.add(CouponUsage(
                coupon_id=coupon.id,
                user_id=user_id,
                order_id=order_id,
                discount_cents=discount_cents,
                used_at=utcnow(),
            ))
            coupon.usage_count += 1
        return True
    except Exception:
        current_app.logger.exception(
            "Failed to record coupon usage (order_id=%s code=%s); usage_count may lag",
            order_id, code,
        )
        return False


# --- Administration ---------------------------------------------------------


def _validate_coupon_fields(coupon_type: str, value, start_date, end_date) -> None:
    if coupon_type not in COUPON_TYPES:
        raise ValidationError(f"coupon_type must be one of {', '.join(COUPON_TYPES)}")
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("value must be a positive integer")
    if coupon_type == "PERCENTAGE" and value > MAX_DISCOUNT_BPS:
        raise ValidationError(f"PERCENTAGE value is basis points and cannot exceed {MAX_DISCOUNT_BPS}")
    if start_date is None or end_date is None:
        raise ValidationError("start_date and end_date are required")
    if normalize_datetime(start_date) >= normalize_datetime(end_date):
        raise ValidationError("end_date must be after start_date")


def _resolve_scope(tx, category_ids, product_ids) -> tuple[list[Category], list[Product]]:
    categories = []
    for cid in category_ids or []:
        category = tx.get(Category, cid)
        if not category:
            raise NotFoundError("Category not found", details={"category_id": cid})
        categories.append(category)
    products = []
    for pid in product_ids or []:
        product = tx.get(Product, pid)
        if not product:
            raise NotFoundError("Product not found", details={"product_id": pid})
        products.append(product)
    return categories, products


def create_coupon(
    *,
    code: str,
    coupon_type: str,
    value: int,
    start_date: datetime,
    end_date: datetime,
    description: str | None = None,
    minimum_purchase_cents: int | None = None,
    usage_limit: int | None = None,
    per_user_limit: int | None = None,
    status: str = "ACTIVE",
    category_ids: list[int] | None = None,
    product_ids: list[int] | None = None,
) -> Coupon:
    code = normalize_code(code)
    if not code:
        raise ValidationError("code is required")
    if status not in COUPON_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(COUPON_STATUSES)}")
    _validate_coupon_fields(coupon_type, value, start_date, end_date)

    with serializable_transaction() as tx:
        if tx.query(Coupon.id).filter_by(code=code).first():
            raise ConflictError(f"Coupon with code {code} already exists")
        categories, products = _resolve_scope(tx, category_ids, product_ids)
        coupon = Coupon(
            code=code,
            coupon_type=coupon_type,
            value=value,
            description=description,
            minimum_purchase_cents=minimum_purchase_cents,
            usage_limit=usage_limit,
            usage_count=0,
            per_user_limit=per_user_limit,
            start_date=normalize_datetime(start_date),
            end_date=normalize_datetime(end_date),
            status=status,
        )
        coupon.categories = categories
        coupon.products = products
        tx.add(coupon)
        tx.flush()
    return coupon


def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if not coupon:
        raise NotFoundError(f"Coupon with ID {coupon_id} not found")
    return coupon


def get_coupon_by_code(code: str) -> Coupon:
    coupon = db.session.query(Coupon).filter_by(code=normalize_code(code)).first()
    if not coupon:
        raise NotFoundError(f"Coupon with code {normalize_code(code)} not found")
    return coupon


def list_coupons(*, status: str | None = None, limit: int = 100, offset: int = 0) -> list[Coupon]:
    q = db.session.query(Coupon)
    if status:
        q = q.filter(Coupon.status == status)
    return q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).offset(offset).limit(limit).all()


UPDATABLE_COUPON_FIELDS = {
    "description",
    "value",
    "minimum_purchase_cents",
    "usage_limit",
    "per_user_limit",
    "start_date",
    "end_date",
    "status",
}


def update_coupon(
    coupon_id: int,
    patch: dict,
    *,
    category_ids: list[int] | None = None,
    product_ids: list[int] | None = None,
) -> Coupon:
    """Apply a partial update. Code and type are fixed once created."""
    unknown = set(patch) - UPDATABLE_COUPON_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}")

    with serializable_transaction() as tx:
        coupon = lock_for_update(tx.query(Coupon).filter_by(id=coupon_id)).first()
        if not coupon:
            raise NotFoundError(f"Coupon with ID {coupon_id} not found")

        if "status" in patch and patch["status"] not in COUPON_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(COUPON_STATUSES)}")
        _validate_coupon_fields(
            coupon.coupon_type,
            patch.get("value", coupon.value),
            patch.get("start_date", coupon.start_date),
            patch.get("end_date", coupon.end_date),
        )
        for key, value in patch.items():
            if key in ("start_date", "end_date"):
                value = normalize_datetime(value)
            setattr(coupon, key, value)

        if category_ids is not None or product_ids is not None:
            categories, products = _resolve_scope(tx, category_ids, product_ids)
            if category_ids is not None:
                coupon.categories = categories
            if product_ids is not None:
                coupon.products = products
        tx.flush()
    return coupon


def remove_coupon(coupon_id: int) -> str:
    """
    Delete an unused coupon; disable one that has redemptions so the
    usage history keeps its reference. Returns "deleted" or "disabled".
    """
    with serializable_transaction() as tx:
        coupon = lock_for_update(tx.query(Coupon).filter_by(id=coupon_id)).first()
        if not coupon:
            raise NotFoundError(f"Coupon with ID {coupon_id} not found")
        used = tx.query(CouponUsage.id).filter_by(coupon_id=coupon.id).first()
        if used:
            coupon.status = "DISABLED"
            outcome = "disabled"
        else:
            tx.delete(coupon)
            outcome = "deleted"
    return outcome


def get_usage_history(coupon_id: int, *, limit: int = 100) -> list[CouponUsage]:
    get_coupon(coupon_id)
    return (
        db.session.query(CouponUsage)
        .filter_by(coupon_id=coupon_id)
        .order_by(CouponUsage.used_at.desc(), CouponUsage.id.desc())
        .limit(limit)
        .all()
    )
