# Overview: Service-layer operations for deals; time-boxed product discounts, templates and usage caps.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import DealTemplate, ProductDeal, DealLimits, DealUsage, Product, ProductVariant, DEAL_TYPES
from ..errors import ConflictError, NotFoundError, ValidationError
from ..money import MAX_DISCOUNT_BPS, discounted_price
from storefront.time_utils import utcnow, normalize_datetime
from .catalog_service import get_product
from .concurrency import lock_for_update, serializable_transaction


STATUS_UPCOMING = "Upcoming"
STATUS_ACTIVE = "Active"
STATUS_ENDED = "Ended"

LIMIT_OK = None
LIMIT_TOTAL_REACHED = "total_usage_reached"
LIMIT_USER_REACHED = "user_usage_reached"
LIMIT_GUEST_NOT_ALLOWED = "guest_not_allowed"


@dataclass(frozen=True)
class PriceQuote:
    """Unit price for one product / variant at a point in time."""
    base_price_cents: int
    unit_price_cents: int
    discount_bps: int = 0
    deal: ProductDeal | None = None

    @property
    def deal_id(self) -> int | None:
        return self.deal.id if self.deal is not None else None

    @property
    def savings_cents(self) -> int:
        return self.base_price_cents - self.unit_price_cents

    def without_deal(self) -> "PriceQuote":
        return PriceQuote(base_price_cents=self.base_price_cents, unit_price_cents=self.base_price_cents)

    def to_dict(self) -> dict:
        return {
            "base_price_cents": self.base_price_cents,
            "unit_price_cents": self.unit_price_cents,
            "discount_bps": self.discount_bps,
            "savings_cents": self.savings_cents,
            "deal_id": self.deal_id,
            "deal_type": self.deal.deal_type if self.deal is not None else None,
        }


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    reason: str | None = None
    remaining_total: int | None = None
    remaining_user: int | None = None


def get_deal_status(start_time: datetime, end_time: datetime, at: datetime | None = None) -> str:
    """Upcoming before start, Ended after end, Active on [start, end] inclusive."""
    at = normalize_datetime(at) if at is not None else utcnow()
    if at < start_time:
        return STATUS_UPCOMING
    if at > end_time:
        return STATUS_ENDED
    return STATUS_ACTIVE


def base_price_cents(product: Product, variant: ProductVariant | None = None) -> int:
    """Variant price override, else the product's discount price, else its list price."""
    if variant is not None and variant.price_cents is not None:
        return variant.price_cents
    if product.discount_price_cents is not None:
        return product.discount_price_cents
    return product.price_cents


def _active_deals(product_id: int, at: datetime) -> list[ProductDeal]:
    return (
        db.session.query(ProductDeal)
        .filter(
            ProductDeal.product_id == product_id,
            ProductDeal.start_time <= at,
            ProductDeal.end_time >= at,
        )
        .all()
    )


def pick_best_deal(deals: list[ProductDeal]) -> ProductDeal | None:
    """Largest discount wins; ties go to the most recently created, then highest id."""
    if not deals:
        return None
    return max(deals, key=lambda d: (d.discount_bps, d.created_at or datetime.min, d.id or 0))


def effective_price(
    product: Product,
    variant: ProductVariant | None = None,
    at: datetime | None = None,
) -> PriceQuote:
    at = normalize_datetime(at) if at is not None else utcnow()
    base = base_price_cents(product, variant)

    deal = pick_best_deal(_active_deals(product.id, at))
    if deal is None:
        return PriceQuote(base_price_cents=base, unit_price_cents=base)

    unit = discounted_price(base, deal.discount_bps)
    return PriceQuote(
        base_price_cents=base,
        unit_price_cents=unit,
        discount_bps=deal.discount_bps,
        deal=deal,
    )


def _validate_terms(deal_type: str, discount_bps, start_time: datetime, end_time: datetime) -> tuple[datetime, datetime]:
    if deal_type not in DEAL_TYPES:
        raise ValidationError(f"deal_type must be one of {', '.join(DEAL_TYPES)}")
    if isinstance(discount_bps, bool) or not isinstance(discount_bps, int):
        raise ValidationError("discount_bps must be an integer")
    if discount_bps <= 0 or discount_bps > MAX_DISCOUNT_BPS:
        raise ValidationError(f"discount_bps must be in 1..{MAX_DISCOUNT_BPS}")
    if start_time is None or end_time is None:
        raise ValidationError("start_time and end_time are required")
    start_time = normalize_datetime(start_time)
    end_time = normalize_datetime(end_time)
    if start_time >= end_time:
        raise ValidationError("End time must be after start time")
    return start_time, end_time


def _validate_limit(value, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def validate_no_overlap(
    product_id: int,
    deal_type: str,
    start_time: datetime,
    end_time: datetime,
    exclude_id: int | None = None,
) -> None:
    """Two deals of the same type on one product may not share any instant (bounds inclusive)."""
    q = db.session.query(ProductDeal).filter(
        ProductDeal.product_id == product_id,
        ProductDeal.deal_type == deal_type,
        ProductDeal.start_time <= end_time,
        ProductDeal.end_time >= start_time,
    )
    if exclude_id is not None:
        q = q.filter(ProductDeal.id != exclude_id)
    clash = q.order_by(ProductDeal.id.asc()).first()
    if clash:
        raise ConflictError(
            f"Product already has a {deal_type} deal in this window",
            details={"product_id": product_id, "conflicting_deal_id": clash.id},
        )


def _attach(
    tx,
    *,
    product_id: int,
    deal_type: str,
    discount_bps: int,
    start_time: datetime,
    end_time: datetime,
    deal_template_id: int | None,
    max_total_usage: int | None,
    max_user_usage: int | None,
) -> ProductDeal:
    get_product(product_id)
    validate_no_overlap(product_id, deal_type, start_time, end_time)

    deal = ProductDeal(
        product_id=product_id,
        deal_template_id=deal_template_id,
        deal_type=deal_type,
        discount_bps=discount_bps,
        start_time=start_time,
        end_time=end_time,
        created_at=utcnow(),
    )
    tx.add(deal)
    if max_total_usage is not None or max_user_usage is not None:
        deal.limits = DealLimits(
            max_total_usage=max_total_usage,
            max_user_usage=max_user_usage,
            current_usage=0,
        )
    tx.flush()
    return deal


def create_product_deal(
    *,
    product_id: int,
    deal_type: str,
    discount_bps: int,
    start_time: datetime,
    end_time: datetime,
    max_total_usage: int | None = None,
    max_user_usage: int | None = None,
) -> ProductDeal:
    start_time, end_time = _validate_terms(deal_type, discount_bps, start_time, end_time)
    max_total_usage = _validate_limit(max_total_usage, "max_total_usage")
    max_user_usage = _validate_limit(max_user_usage, "max_user_usage")

    with serializable_transaction() as tx:
        deal = _attach(
            tx,
            product_id=product_id,
            deal_type=deal_type,
            discount_bps=discount_bps,
            start_time=start_time,
            end_time=end_time,
            deal_template_id=None,
            max_total_usage=max_total_usage,
            max_user_usage=max_user_usage,
        )
    return deal


def get_product_deal(deal_id: int) -> ProductDeal:
    deal = db.session.get(ProductDeal, deal_id)
    if not deal:
        raise NotFoundError(f"Deal with ID {deal_id} not found")
    return deal


def list_product_deals(product_id: int, *, at: datetime | None = None, status: str | None = None) -> list[dict]:
    get_product(product_id)
    deals = (
        db.session.query(ProductDeal)
        .filter(ProductDeal.product_id == product_id)
        .order_by(ProductDeal.start_time.asc(), ProductDeal.id.asc())
        .all()
    )
    out = []
    for deal in deals:
        deal_status = get_deal_status(deal.start_time, deal.end_time, at)
        if status and deal_status != status:
            continue
        out.append(deal.to_dict(status=deal_status))
    return out


def remove_product_deal(deal_id: int) -> None:
    """Delete a deal. Deals that have been redeemed stay for the audit trail."""
    with serializable_transaction() as tx:
        deal = get_product_deal(deal_id)
        used = tx.query(DealUsage.id).filter(DealUsage.product_deal_id == deal.id).first()
        if used:
            raise ConflictError("Deal has recorded usage and cannot be removed", details={"deal_id": deal_id})
        tx.delete(deal)


# --- Templates -------------------------------------------------------------


def create_deal_template(
    *,
    name: str,
    deal_type: str,
    discount_bps: int,
    start_time: datetime,
    end_time: datetime,
) -> DealTemplate:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    start_time, end_time = _validate_terms(deal_type, discount_bps, start_time, end_time)

    with serializable_transaction() as tx:
        template = DealTemplate(
            name=name,
            deal_type=deal_type,
            discount_bps=discount_bps,
            start_time=start_time,
            end_time=end_time,
        )
        tx.add(template)
        tx.flush()
    return template


def get_deal_template(template_id: int) -> DealTemplate:
    template = db.session.get(DealTemplate, template_id)
    if not template:
        raise NotFoundError(f"Deal with ID {template_id} not found")
    return template


def list_deal_templates(*, deal_type: str | None = None, at: datetime | None = None) -> list[dict]:
    q = db.session.query(DealTemplate)
    if deal_type:
        q = q.filter(DealTemplate.deal_type == deal_type)
    out = []
    for template in q.order_by(DealTemplate.start_time.desc(), DealTemplate.id.desc()).all():
        data = template.to_dict()
        data["status"] = get_deal_status(template.start_time, template.end_time, at)
        out.append(data)
    return out


def update_deal_template(
    template_id: int,
    *,
    name: str | None = None,
    discount_bps: int | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> DealTemplate:
    """
    Change a template's terms. Attached product deals follow; the new window
    must still not overlap any other deal of the same type on those products.
    """
    with serializable_transaction() as tx:
        template = get_deal_template(template_id)
        new_bps = template.discount_bps if discount_bps is None else discount_bps
        new_start = template.start_time if start_time is None else start_time
        new_end = template.end_time if end_time is None else end_time
        new_start, new_end = _validate_terms(template.deal_type, new_bps, new_start, new_end)

        for deal in template.product_deals:
            validate_no_overlap(deal.product_id, deal.deal_type, new_start, new_end, exclude_id=deal.id)
            deal.discount_bps = new_bps
            deal.start_time = new_start
            deal.end_time = new_end

        if name is not None:
            if not name.strip():
                raise ValidationError("name cannot be blank")
            template.name = name.strip()
        template.discount_bps = new_bps
        template.start_time = new_start
        template.end_time = new_end
        tx.flush()
    return template


def attach_template_to_product(
    template_id: int,
    product_id: int,
    *,
    max_total_usage: int | None = None,
    max_user_usage: int | None = None,
) -> ProductDeal:
    max_total_usage = _validate_limit(max_total_usage, "max_total_usage")
    max_user_usage = _validate_limit(max_user_usage, "max_user_usage")

    with serializable_transaction() as tx:
        template = get_deal_template(template_id)
        existing = (
            tx.query(ProductDeal)
            .filter_by(deal_template_id=template.id, product_id=product_id)
            .first()
        )
        if existing:
            raise ConflictError("Product already has this deal", details={"product_id": product_id})
        deal = _attach(
            tx,
            product_id=product_id,
            deal_type=template.deal_type,
            discount_bps=template.discount_bps,
            start_time=template.start_time,
            end_time=template.end_time,
            deal_template_id=template.id,
            max_total_usage=max_total_usage,
            max_user_usage=max_user_usage,
        )
    return deal


def detach_template_from_product(template_id: int, product_id: int) -> None:
    get_deal_template(template_id)
    deal = (
        db.session.query(ProductDeal)
        .filter_by(deal_template_id=template_id, product_id=product_id)
        .first()
    )
    if not deal:
        raise NotFoundError("Product does not have this deal", details={"product_id": product_id})
    remove_product_deal(deal.id)


# --- Usage limits ----------------------------------------------------------


def set_limits(
    deal_id: int,
    *,
    max_total_usage: int | None = None,
    max_user_usage: int | None = None,
) -> DealLimits:
    max_total_usage = _validate_limit(max_total_usage, "max_total_usage")
    max_user_usage = _validate_limit(max_user_usage, "max_user_usage")

    with serializable_transaction() as tx:
        deal = get_product_deal(deal_id)
        limits = lock_for_update(tx.query(DealLimits).filter_by(product_deal_id=deal.id)).first()
        if limits is None:
            limits = DealLimits(product_deal_id=deal.id, current_usage=0)
            tx.add(limits)
        limits.max_total_usage = max_total_usage
        limits.max_user_usage = max_user_usage
        tx.flush()
    return limits


def _user_usage_count(tx, deal_id: int, user_id: int) -> int:
    return (
        tx.query(func.count(DealUsage.id))
        .filter(DealUsage.product_deal_id == deal_id, DealUsage.user_id == user_id)
        .scalar()
    ) or 0


def check_limits(tx, deal: ProductDeal, user_id: int | None) -> LimitCheck:
    """
    May this user benefit from the deal once more?

    Uncapped deals always pass. Per-user caps need a known user, so guests
    never get a deal that carries one.
    """
    limits = lock_for_update(tx.query(DealLimits).filter_by(product_deal_id=deal.id)).first()
    if limits is None:
        return LimitCheck(allowed=True)

    remaining_total = None
    if limits.max_total_usage is not None:
        remaining_total = limits.max_total_usage - limits.current_usage
        if remaining_total <= 0:
            return LimitCheck(allowed=False, reason=LIMIT_TOTAL_REACHED, remaining_total=0)

    remaining_user = None
    if limits.max_user_usage is not None:
        if user_id is None:
            return LimitCheck(allowed=False, reason=LIMIT_GUEST_NOT_ALLOWED, remaining_total=remaining_total)
        remaining_user = limits.max_user_usage - _user_usage_count(tx, deal.id, user_id)
        if remaining_user <= 0:
            return LimitCheck(
                allowed=False,
                reason=LIMIT_USER_REACHED,
                remaining_total=remaining_total,
                remaining_user=0,
            )

    return LimitCheck(allowed=True, remaining_total=remaining_total, remaining_user=remaining_user)


def record_usage(tx, deal: ProductDeal, *, user_id: int | None, order_id: int | None) -> DealUsage:
    """Append a usage row and bump the aggregate counter, inside the order's transaction."""
    limits = lock_for_update(tx.query(DealLimits).filter_by(product_deal_id=deal.id)).first()
    if limits is not None:
        limits.current_usage += 1

    usage = DealUsage(
        product_deal_id=deal.id,
        product_id=deal.product_id,
        user_id=user_id,
        order_id=order_id,
        used_at=utcnow(),
    )
    tx.add(usage)
    return usage


def get_usage_stats(deal_id: int) -> dict:
    deal = get_product_deal(deal_id)
    total = db.session.query(func.count(DealUsage.id)).filter(DealUsage.product_deal_id == deal.id).scalar() or 0
    unique_users = (
        db.session.query(func.count(func.distinct(DealUsage.user_id)))
        .filter(DealUsage.product_deal_id == deal.id, DealUsage.user_id.isnot(None))
        .scalar()
    ) or 0
    limits = deal.limits
    return {
        "deal_id": deal.id,
        "total_usage": total,
        "unique_users": unique_users,
        "max_total_usage": limits.max_total_usage if limits else None,
        "max_user_usage": limits.max_user_usage if limits else None,
        "remaining_usage": limits.to_dict()["remaining_usage"] if limits else None,
    }
