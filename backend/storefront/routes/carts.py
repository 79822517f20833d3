# backend/storefront/routes/carts.py
"""
Cart routes. Every route acts on the caller's own cart.

Adding an item reserves stock for CART_RESERVATION_TTL_MINUTES; the
maintenance sweep releases holds that outlive it.
"""
from flask import Blueprint, current_app, jsonify, request

from ..errors import StorefrontError, ValidationError, error_response
from ..decorators import require_actor, current_user_id
from ..validation import parse_optional_int
from ..services import cart_service
from ..services.concurrency import run_with_retry, retry_attempts


carts_bp = Blueprint("carts", __name__, url_prefix="/api/carts")


@carts_bp.get("")
@require_actor
def get_cart_route():
    try:
        items = cart_service.get_cart(current_user_id())
        return jsonify({"items": [i.to_dict() for i in items]}), 200
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.post("/items")
@require_actor
def add_item_route():
    payload = request.get_json(silent=True) or {}
    try:
        product_id = parse_optional_int(payload.get("product_id"), "product_id")
        quantity = parse_optional_int(payload.get("quantity"), "quantity")
        if product_id is None or quantity is None:
            raise ValidationError("product_id and quantity are required")
        variant_id = parse_optional_int(payload.get("variant_id"), "variant_id")

        item = run_with_retry(
            lambda: cart_service.add_to_cart(
                user_id=current_user_id(),
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
            ),
            attempts=retry_attempts(),
        )
        return jsonify({"item": item.to_dict()}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.delete("/items/<int:cart_item_id>")
@require_actor
def remove_item_route(cart_item_id: int):
    try:
        run_with_retry(
            lambda: cart_service.remove_from_cart(user_id=current_user_id(), cart_item_id=cart_item_id),
            attempts=retry_attempts(),
        )
        return jsonify({"deleted": cart_item_id}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500
