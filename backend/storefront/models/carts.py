from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class CartItem(db.Model):
    """
    A line in a user's cart.

    While reservation_expires_at is set the line holds `quantity` units of
    inventory.reserved_quantity. The expiry sweep releases the hold and
    clears the column; placing an order consumes it and deletes the row.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("user_id", "product_id", "variant_id", name="uq_cart_items_user_product_variant"),
        db.Index("ix_cart_items_reservation_expires", "reservation_expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    reservation_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    @property
    def holds_reservation(self) -> bool:
        return self.reservation_expires_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "reservation_expires_at": to_utc_z(self.reservation_expires_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
