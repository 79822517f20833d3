# Overview: Read-only catalog lookups shared by the inventory, cart and order services.

from __future__ import annotations

from ..extensions import db
from ..models import Product, ProductVariant
from ..errors import NotFoundError, ValidationError


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise ValidationError("Product is not available", details={"product_id": product_id})
    return product


def resolve_product_and_variant(
    product_id: int,
    variant_id: int | None = None,
    *,
    require_active: bool = False,
) -> tuple[Product, ProductVariant | None]:
    """
    Load a product and, if given, one of its variants.

    A variant that exists but belongs to another product is a caller error,
    not a missing record.
    """
    product = get_product(product_id, require_active=require_active)
    if variant_id is None:
        return product, None

    variant = db.session.get(ProductVariant, variant_id)
    if not variant:
        raise NotFoundError(
            "Product variant not found",
            details={"product_id": product_id, "variant_id": variant_id},
        )
    if variant.product_id != product.id:
        raise ValidationError(
            "Variant does not belong to product",
            details={"product_id": product_id, "variant_id": variant_id},
        )
    return product, variant
