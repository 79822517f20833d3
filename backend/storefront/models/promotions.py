from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


DEAL_TYPES = ("FLASH", "TRENDING", "DEAL_OF_THE_DAY", "SEASONAL", "CLEARANCE")

COUPON_TYPES = ("PERCENTAGE", "FIXED_AMOUNT", "FREE_SHIPPING")
COUPON_STATUSES = ("ACTIVE", "DISABLED", "EXPIRED")


class DealTemplate(db.Model):
    """
    Reusable deal definition (type, discount, window) that products are
    attached to. Attaching copies the terms onto a ProductDeal row.
    """
    __tablename__ = "deal_templates"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    deal_type = db.Column(db.String(32), nullable=False, index=True)
    discount_bps = db.Column(db.Integer, nullable=False)

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product_deals = db.relationship("ProductDeal", backref="template", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "deal_type": self.deal_type,
            "discount_bps": self.discount_bps,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "products_count": len(self.product_deals),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductDeal(db.Model):
    """
    Time-boxed percentage discount on one product.

    Deals of the same deal_type for a product never have overlapping
    windows (inclusive bounds); enforced by deal_service at creation.
    Status (Upcoming/Active/Ended) is derived from the window, never stored.
    """
    __tablename__ = "product_deals"
    __table_args__ = (
        db.Index("ix_product_deals_product_window", "product_id", "start_time", "end_time"),
        db.Index("ix_product_deals_product_type", "product_id", "deal_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    deal_template_id = db.Column(db.Integer, db.ForeignKey("deal_templates.id"), nullable=True, index=True)

    deal_type = db.Column(db.String(32), nullable=False)
    discount_bps = db.Column(db.Integer, nullable=False)

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    limits = db.relationship("DealLimits", uselist=False, backref="product_deal", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return (
            f"<ProductDeal id={self.id} product_id={self.product_id} "
            f"type={self.deal_type} bps={self.discount_bps}>"
        )

    def to_dict(self, status: str | None = None) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "deal_template_id": self.deal_template_id,
            "deal_type": self.deal_type,
            "discount_bps": self.discount_bps,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "status": status,
            "limits": self.limits.to_dict() if self.limits else None,
            "created_at": to_utc_z(self.created_at),
        }


class DealLimits(db.Model):
    """Usage caps and the aggregate counter for one ProductDeal."""
    __tablename__ = "deal_limits"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_deal_id = db.Column(
        db.Integer,
        db.ForeignKey("product_deals.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    max_total_usage = db.Column(db.Integer, nullable=True)
    max_user_usage = db.Column(db.Integer, nullable=True)
    current_usage = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        remaining = None
        if self.max_total_usage is not None:
            remaining = max(0, self.max_total_usage - self.current_usage)
        return {
            "product_deal_id": self.product_deal_id,
            "max_total_usage": self.max_total_usage,
            "max_user_usage": self.max_user_usage,
            "current_usage": self.current_usage,
            "remaining_usage": remaining,
        }


class DealUsage(db.Model):
    """Append-only ledger of deal redemptions, one row per (deal, order)."""
    __tablename__ = "deal_usages"
    __table_args__ = (
        db.Index("ix_deal_usages_deal_user", "product_deal_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_deal_id = db.Column(db.Integer, db.ForeignKey("product_deals.id", ondelete="CASCADE"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    user_id = db.Column(db.Integer, nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)

    used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_deal_id": self.product_deal_id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "used_at": to_utc_z(self.used_at),
        }


coupon_categories = db.Table(
    "coupon_categories",
    db.Column("coupon_id", db.Integer, db.ForeignKey("coupons.id", ondelete="CASCADE"), primary_key=True),
    db.Column("category_id", db.Integer, db.ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)

coupon_products = db.Table(
    "coupon_products",
    db.Column("coupon_id", db.Integer, db.ForeignKey("coupons.id", ondelete="CASCADE"), primary_key=True),
    db.Column("product_id", db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
)


class Coupon(db.Model):
    """
    User-entered discount code.

    value is basis points for PERCENTAGE and cents for FIXED_AMOUNT /
    FREE_SHIPPING. When categories or products are attached the coupon is
    scoped: PERCENTAGE discounts only count eligible lines.
    """
    __tablename__ = "coupons"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    coupon_type = db.Column(db.String(32), nullable=False)  # PERCENTAGE, FIXED_AMOUNT, FREE_SHIPPING
    value = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)

    minimum_purchase_cents = db.Column(db.Integer, nullable=True)
    usage_limit = db.Column(db.Integer, nullable=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    per_user_limit = db.Column(db.Integer, nullable=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    categories = db.relationship("Category", secondary=coupon_categories, lazy="selectin")
    products = db.relationship("Product", secondary=coupon_products, lazy="selectin")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_scoped(self) -> bool:
        return bool(self.categories) or bool(self.products)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "coupon_type": self.coupon_type,
            "value": self.value,
            "description": self.description,
            "minimum_purchase_cents": self.minimum_purchase_cents,
            "usage_limit": self.usage_limit,
            "usage_count": self.usage_count,
            "per_user_limit": self.per_user_limit,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "status": self.status,
            "category_ids": sorted(c.id for c in self.categories),
            "product_ids": sorted(p.id for p in self.products),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponUsage(db.Model):
    """Append-only redemption record. Drives usage_count and per-user limits."""
    __tablename__ = "coupon_usages"
    __table_args__ = (
        db.Index("ix_coupon_usages_coupon_user", "coupon_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False)
    user_id = db.Column(db.Integer, nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    discount_cents = db.Column(db.Integer, nullable=False)

    used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "discount_cents": self.discount_cents,
            "used_at": to_utc_z(self.used_at),
        }
