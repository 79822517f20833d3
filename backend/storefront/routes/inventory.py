# backend/storefront/routes/inventory.py
"""
Inventory routes.

Availability is public. Everything that reads the ledger in detail or
changes stock is staff-only.

Each write runs in its own serializable transaction; the route retries
transient conflicts.
"""
from flask import Blueprint, current_app, jsonify, request

from ..models import InventoryLog, Inventory
from ..errors import StorefrontError, error_response
from ..decorators import require_staff
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    parse_optional_int,
)
from ..services import inventory_service
from ..services.concurrency import run_with_retry, retry_attempts, serializable_transaction


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

INVENTORY_RESTOCK_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "variant_id", "note"},
    required_on_create={"product_id", "quantity"},
    extra_fields={"quantity"},
)

INVENTORY_ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "variant_id", "change_type", "note"},
    required_on_create={"product_id", "quantity_delta"},
    extra_fields={"quantity_delta"},
)

INVENTORY_THRESHOLD_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "variant_id", "threshold"},
    required_on_create={"product_id", "threshold"},
)


@inventory_bp.get("/<int:product_id>/availability")
def availability_route(product_id: int):
    try:
        variant_id = parse_optional_int(request.args.get("variant_id"), "variant_id")
        return jsonify(inventory_service.get_availability(product_id, variant_id)), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load availability")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>")
@require_staff
def inventory_summary_route(product_id: int):
    try:
        return jsonify(inventory_service.get_inventory_summary(product_id)), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load inventory summary")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/restock")
@require_staff
def restock_route():
    """Receive stock. Creates the inventory row on first restock."""
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=InventoryLog,
            payload=payload,
            policy=INVENTORY_RESTOCK_POLICY,
            partial=False,
        )
        quantity = parse_optional_int(patch["quantity"], "quantity")

        def _op():
            with serializable_transaction() as tx:
                row = inventory_service.restock(
                    tx,
                    product_id=patch["product_id"],
                    variant_id=patch.get("variant_id"),
                    quantity=quantity,
                    note=patch.get("note"),
                )
            return row

        row = run_with_retry(_op, attempts=retry_attempts())
        return jsonify({"inventory": row.to_dict()}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to restock inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@require_staff
def adjust_route():
    """
    Manual correction. change_type is MANUAL (default) or ADJUSTMENT.
    A negative delta may not take stock below what is reserved.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=InventoryLog,
            payload=payload,
            policy=INVENTORY_ADJUST_POLICY,
            partial=False,
        )
        quantity_delta = parse_optional_int(patch["quantity_delta"], "quantity_delta")

        def _op():
            with serializable_transaction() as tx:
                row = inventory_service.adjust(
                    tx,
                    product_id=patch["product_id"],
                    variant_id=patch.get("variant_id"),
                    quantity_delta=quantity_delta,
                    change_type=patch.get("change_type") or "MANUAL",
                    note=patch.get("note"),
                )
            return row

        row = run_with_retry(_op, attempts=retry_attempts())
        return jsonify({"inventory": row.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/threshold")
@require_staff
def threshold_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=Inventory,
            payload=payload,
            policy=INVENTORY_THRESHOLD_POLICY,
            partial=False,
        )

        def _op():
            with serializable_transaction() as tx:
                row = inventory_service.set_threshold(
                    tx,
                    product_id=patch["product_id"],
                    variant_id=patch.get("variant_id"),
                    threshold=patch["threshold"],
                )
            return row

        row = run_with_retry(_op, attempts=retry_attempts())
        return jsonify({"inventory": row.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update threshold")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
@require_staff
def low_stock_route():
    try:
        limit = parse_optional_int(request.args.get("limit"), "limit") or 200
        rows = inventory_service.list_low_stock(limit=min(limit, 500))
        return jsonify({"items": [r.to_dict() for r in rows]}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list low stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/logs")
@require_staff
def logs_route():
    args = request.args
    try:
        logs = inventory_service.list_logs(
            product_id=parse_optional_int(args.get("product_id"), "product_id"),
            variant_id=parse_optional_int(args.get("variant_id"), "variant_id"),
            change_type=args.get("change_type") or None,
            limit=min(parse_optional_int(args.get("limit"), "limit") or 200, 500),
            offset=parse_optional_int(args.get("offset"), "offset") or 0,
        )
        return jsonify({"items": [entry.to_dict() for entry in logs]}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory logs")
        return jsonify({"error": "Internal server error"}), 500
