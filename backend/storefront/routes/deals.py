# backend/storefront/routes/deals.py
"""
Deal routes.

Reading deals and quoting prices is public. Creating, changing and removing
deals or templates is staff-only.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive.
- Deal windows are inclusive on both ends.
"""
from flask import Blueprint, current_app, jsonify, request

from ..models import ProductDeal, DealTemplate
from ..errors import StorefrontError, error_response
from ..decorators import require_staff
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    parse_optional_int,
)
from storefront.time_utils import parse_iso_datetime
from ..services import deal_service
from ..services.catalog_service import resolve_product_and_variant
from ..services.concurrency import run_with_retry, retry_attempts


deals_bp = Blueprint("deals", __name__, url_prefix="/api/deals")

PRODUCT_DEAL_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "deal_type", "discount_bps", "start_time", "end_time"},
    required_on_create={"product_id", "deal_type", "discount_bps", "start_time", "end_time"},
    extra_fields={"max_total_usage", "max_user_usage"},
)

DEAL_TEMPLATE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "deal_type", "discount_bps", "start_time", "end_time"},
    required_on_create={"name", "deal_type", "discount_bps", "start_time", "end_time"},
)

DEAL_TEMPLATE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "discount_bps", "start_time", "end_time"},
)


def _limits(payload: dict) -> dict:
    return {
        "max_total_usage": parse_optional_int(payload.get("max_total_usage"), "max_total_usage"),
        "max_user_usage": parse_optional_int(payload.get("max_user_usage"), "max_user_usage"),
    }


@deals_bp.get("/products/<int:product_id>")
def list_product_deals_route(product_id: int):
    """List a product's deals with derived status. Optional ?status=Active|Upcoming|Ended."""
    try:
        deals = deal_service.list_product_deals(product_id, status=request.args.get("status") or None)
        return jsonify({"product_id": product_id, "deals": deals}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list product deals")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.get("/products/<int:product_id>/price")
def product_price_route(product_id: int):
    """Quote the effective unit price now, or at ?at=<ISO-8601>."""
    try:
        variant_id = parse_optional_int(request.args.get("variant_id"), "variant_id")
        at = parse_iso_datetime(request.args.get("at"))
        product, variant = resolve_product_and_variant(product_id, variant_id)
        quote = deal_service.effective_price(product, variant, at)
        return jsonify({"product_id": product_id, "variant_id": variant_id, **quote.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "at must be an ISO-8601 datetime"}), 400
    except Exception:
        current_app.logger.exception("Failed to quote product price")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.post("")
@require_staff
def create_product_deal_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=ProductDeal, payload=payload, policy=PRODUCT_DEAL_POLICY, partial=False)
        limits = _limits(patch)
        deal = run_with_retry(
            lambda: deal_service.create_product_deal(
                product_id=patch["product_id"],
                deal_type=patch["deal_type"],
                discount_bps=patch["discount_bps"],
                start_time=patch["start_time"],
                end_time=patch["end_time"],
                **limits,
            ),
            attempts=retry_attempts(),
        )
        return jsonify({"deal": deal.to_dict(status=deal_service.get_deal_status(deal.start_time, deal.end_time))}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create deal")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.delete("/<int:deal_id>")
@require_staff
def remove_product_deal_route(deal_id: int):
    try:
        run_with_retry(lambda: deal_service.remove_product_deal(deal_id), attempts=retry_attempts())
        return jsonify({"deleted": deal_id}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove deal")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.put("/<int:deal_id>/limits")
@require_staff
def set_limits_route(deal_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        limits = _limits(payload)
        row = run_with_retry(lambda: deal_service.set_limits(deal_id, **limits), attempts=retry_attempts())
        return jsonify({"limits": row.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set deal limits")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.get("/<int:deal_id>/usage")
@require_staff
def deal_usage_route(deal_id: int):
    try:
        return jsonify(deal_service.get_usage_stats(deal_id)), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load deal usage")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.get("/templates")
def list_templates_route():
    try:
        templates = deal_service.list_deal_templates(deal_type=request.args.get("deal_type") or None)
        return jsonify({"templates": templates}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list deal templates")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.post("/templates")
@require_staff
def create_template_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=DealTemplate, payload=payload, policy=DEAL_TEMPLATE_POLICY, partial=False)
        template = run_with_retry(lambda: deal_service.create_deal_template(**patch), attempts=retry_attempts())
        return jsonify({"template": template.to_dict()}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create deal template")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.patch("/templates/<int:template_id>")
@require_staff
def update_template_route(template_id: int):
    """Change a template's terms; attached product deals follow."""
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=DealTemplate, payload=payload, policy=DEAL_TEMPLATE_UPDATE_POLICY, partial=True)
        template = run_with_retry(
            lambda: deal_service.update_deal_template(template_id, **patch),
            attempts=retry_attempts(),
        )
        return jsonify({"template": template.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update deal template")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.post("/templates/<int:template_id>/products")
@require_staff
def attach_template_route(template_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product_id = parse_optional_int(payload.get("product_id"), "product_id")
        if product_id is None:
            return jsonify({"error": "product_id is required"}), 400
        limits = _limits(payload)
        deal = run_with_retry(
            lambda: deal_service.attach_template_to_product(template_id, product_id, **limits),
            attempts=retry_attempts(),
        )
        return jsonify({"deal": deal.to_dict(status=deal_service.get_deal_status(deal.start_time, deal.end_time))}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to attach deal template")
        return jsonify({"error": "Internal server error"}), 500


@deals_bp.delete("/templates/<int:template_id>/products/<int:product_id>")
@require_staff
def detach_template_route(template_id: int, product_id: int):
    try:
        run_with_retry(
            lambda: deal_service.detach_template_from_product(template_id, product_id),
            attempts=retry_attempts(),
        )
        return jsonify({"template_id": template_id, "product_id": product_id, "detached": True}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to detach deal template")
        return jsonify({"error": "Internal server error"}), 500
