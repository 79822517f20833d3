# backend/storefront/routes/coupons.py
"""
Coupon routes.

validate / apply are open to any caller (the user id, when known, drives
per-user limits). Coupon administration is staff-only.

Money is integer cents; PERCENTAGE values are basis points (1000 = 10%).
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..models import Coupon
from ..errors import StorefrontError, ValidationError, error_response
from ..decorators import optional_actor, require_staff
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    parse_id_list,
    parse_optional_int,
    enforce_rules_money,
    enforce_rules_positive,
)
from ..services import coupon_service
from ..services.concurrency import run_with_retry, retry_attempts


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")

COUPON_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "code",
        "coupon_type",
        "value",
        "description",
        "minimum_purchase_cents",
        "usage_limit",
        "per_user_limit",
        "start_date",
        "end_date",
        "status",
    },
    required_on_create={"code", "coupon_type", "value", "start_date", "end_date"},
    extra_fields={"category_ids", "product_ids"},
)

COUPON_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=set(coupon_service.UPDATABLE_COUPON_FIELDS),
    extra_fields={"category_ids", "product_ids"},
)


def _enforce_coupon_rules(patch: dict) -> None:
    enforce_rules_money(patch, "minimum_purchase_cents")
    enforce_rules_positive(patch, "usage_limit", "per_user_limit")


@coupons_bp.post("/validate")
@optional_actor
def validate_coupon_route():
    payload = request.get_json(silent=True) or {}
    code = payload.get("code")
    if not code:
        return jsonify({"error": "code is required"}), 400
    try:
        result = coupon_service.validate_coupon(code, user_id=g.user_id)
        return jsonify(result.to_dict()), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.post("/apply")
@optional_actor
def apply_coupon_route():
    """
    Preview a coupon against a cart.

    Body: {"code", "subtotal_cents", "items": [{"product_id", "line_total_cents"}]}
    """
    payload = request.get_json(silent=True) or {}
    try:
        code = payload.get("code")
        if not code:
            raise ValidationError("code is required")
        subtotal = parse_optional_int(payload.get("subtotal_cents"), "subtotal_cents")
        if subtotal is None or subtotal < 0:
            raise ValidationError("subtotal_cents must be >= 0")
        # Without "items" the whole subtotal is eligible; an empty list means nothing is
        raw_items = payload.get("items")
        if raw_items is not None and not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        lines = None if raw_items is None else []
        for idx, raw in enumerate(raw_items or []):
            if not isinstance(raw, dict):
                raise ValidationError(f"items[{idx}] must be an object")
            lines.append(coupon_service.CouponLine(
                product_id=parse_optional_int(raw.get("product_id"), f"items[{idx}].product_id"),
                line_total_cents=parse_optional_int(raw.get("line_total_cents"), f"items[{idx}].line_total_cents") or 0,
            ))
        result = coupon_service.compute_discount(code, subtotal, lines, user_id=g.user_id)
        return jsonify(result.to_dict()), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("")
@require_staff
def list_coupons_route():
    try:
        coupons = coupon_service.list_coupons(
            status=request.args.get("status") or None,
            limit=min(parse_optional_int(request.args.get("limit"), "limit") or 100, 500),
            offset=parse_optional_int(request.args.get("offset"), "offset") or 0,
        )
        return jsonify({"items": [c.to_dict() for c in coupons]}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list coupons")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.post("")
@require_staff
def create_coupon_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_CREATE_POLICY, partial=False)
        _enforce_coupon_rules(patch)
        patch["category_ids"] = parse_id_list(patch.get("category_ids"), "category_ids")
        patch["product_ids"] = parse_id_list(patch.get("product_ids"), "product_ids")
        coupon = run_with_retry(lambda: coupon_service.create_coupon(**patch), attempts=retry_attempts())
        return jsonify({"coupon": coupon.to_dict()}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/<int:coupon_id>")
@require_staff
def get_coupon_route(coupon_id: int):
    try:
        return jsonify({"coupon": coupon_service.get_coupon(coupon_id).to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.patch("/<int:coupon_id>")
@require_staff
def update_coupon_route(coupon_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Coupon, payload=payload, policy=COUPON_UPDATE_POLICY, partial=True)
        _enforce_coupon_rules(patch)
        category_ids = parse_id_list(patch.pop("category_ids", None), "category_ids")
        product_ids = parse_id_list(patch.pop("product_ids", None), "product_ids")
        coupon = run_with_retry(
            lambda: coupon_service.update_coupon(
                coupon_id, patch, category_ids=category_ids, product_ids=product_ids,
            ),
            attempts=retry_attempts(),
        )
        return jsonify({"coupon": coupon.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.delete("/<int:coupon_id>")
@require_staff
def remove_coupon_route(coupon_id: int):
    """Deletes an unused coupon; a redeemed one is disabled instead."""
    try:
        outcome = run_with_retry(lambda: coupon_service.remove_coupon(coupon_id), attempts=retry_attempts())
        return jsonify({"coupon_id": coupon_id, "result": outcome}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/<int:coupon_id>/usage")
@require_staff
def coupon_usage_route(coupon_id: int):
    try:
        usages = coupon_service.get_usage_history(coupon_id)
        return jsonify({"coupon_id": coupon_id, "items": [u.to_dict() for u in usages]}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load coupon usage")
        return jsonify({"error": "Internal server error"}), 500
