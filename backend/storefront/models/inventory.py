from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


INVENTORY_CHANGE_TYPES = ("RESTOCK", "SALE", "RETURN", "MANUAL", "ADJUSTMENT")


class Inventory(db.Model):
    """
    Stock position for one product (variant_id NULL) or one variant.

    INVARIANT: 0 <= reserved_quantity <= stock_quantity after every successful
    operation. All mutation goes through inventory_service inside a
    TransactionScope.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.UniqueConstraint("product_id", "variant_id", name="uq_inventory_product_variant"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_nonnegative"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_inventory_stock_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    threshold = db.Column(db.Integer, nullable=False, default=5)

    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_quantity(self) -> int:
        # Clamped for presentation; decisions use stock - reserved directly
        return max(0, self.stock_quantity - self.reserved_quantity)

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.threshold

    def __repr__(self) -> str:
        return (
            f"<Inventory product_id={self.product_id} variant_id={self.variant_id} "
            f"stock={self.stock_quantity} reserved={self.reserved_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "stock_quantity": self.stock_quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "threshold": self.threshold,
            "is_low_stock": self.is_low_stock,
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryLog(db.Model):
    """Append-only audit trail of stock changes. Rows are never updated or deleted."""
    __tablename__ = "inventory_logs"
    __table_args__ = (
        db.Index("ix_inventory_logs_product_variant_created", "product_id", "variant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    change_type = db.Column(db.String(16), nullable=False, index=True)
    quantity_changed = db.Column(db.Integer, nullable=False)  # signed
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "change_type": self.change_type,
            "quantity_changed": self.quantity_changed,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
