# backend/storefront/routes/orders.py
"""
Order routes.

Identity comes from the X-User-Id / X-User-Role gateway headers.
- Guests may place orders; every other route needs an identity.
- Customers see and change only their own orders; staff see all.
- Status changes other than cancellation are staff-only.

Transient conflicts (locked database, stale rows, timeouts) are retried a
bounded number of times here; the services never loop.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..errors import StorefrontError, PermissionDeniedError, error_response
from ..decorators import optional_actor, require_actor, require_staff, is_staff, current_user_id
from ..validation import parse_optional_int
from storefront.time_utils import parse_iso_datetime
from ..services import order_service
from ..services.concurrency import run_with_retry, retry_attempts


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _ensure_visible(order) -> None:
    if not is_staff() and order.user_id != current_user_id():
        raise PermissionDeniedError("You can only access your own orders", details={"order_id": order.id})


@orders_bp.post("")
@optional_actor
def create_order_route():
    """Place an order. The actor header, not the body, decides user_id."""
    payload = request.get_json(silent=True) or {}
    if isinstance(payload, dict):
        payload = dict(payload)
        payload["user_id"] = g.user_id

    try:
        order = run_with_retry(lambda: order_service.create_order(payload), attempts=retry_attempts())
        return jsonify({"order": order.to_dict()}), 201
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_actor
def list_orders_route():
    """
    List orders, newest first.

    Query: status, payment_status, currency, from, to (ISO-8601), page, per_page.
    Staff may also filter by user_id; customers always get their own.
    """
    args = request.args
    try:
        user_id = parse_optional_int(args.get("user_id"), "user_id") if is_staff() else current_user_id()
        result = order_service.list_orders(
            user_id=user_id,
            status=args.get("status") or None,
            payment_status=args.get("payment_status") or None,
            currency=args.get("currency") or None,
            placed_from=parse_iso_datetime(args.get("from")),
            placed_to=parse_iso_datetime(args.get("to")),
            page=parse_optional_int(args.get("page"), "page") or 1,
            per_page=parse_optional_int(args.get("per_page"), "per_page") or 20,
        )
        result["items"] = [o.to_dict(include_items=False) for o in result["items"]]
        return jsonify(result), 200
    except StorefrontError as e:
        return error_response(e)
    except ValueError:
        return jsonify({"error": "from/to must be ISO-8601 datetimes"}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        _ensure_visible(order)
        return jsonify({"order": order.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/number/<order_number>")
@require_actor
def get_order_by_number_route(order_number: str):
    try:
        order = order_service.get_order_by_number(order_number)
        _ensure_visible(order)
        return jsonify({"order": order.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order by number")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>")
@require_actor
def update_order_route(order_id: int):
    """Update shipping_address, billing_address or payment_method."""
    payload = request.get_json(silent=True) or {}
    try:
        _ensure_visible(order_service.get_order(order_id))
        order = run_with_retry(lambda: order_service.update_order(order_id, payload), attempts=retry_attempts())
        return jsonify({"order": order.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/status")
@require_staff
def update_status_route(order_id: int):
    payload = request.get_json(silent=True) or {}
    new_status = payload.get("status")
    if not new_status:
        return jsonify({"error": "status is required"}), 400

    try:
        order = run_with_retry(
            lambda: order_service.update_status(order_id, new_status, payload.get("note")),
            attempts=retry_attempts(),
        )
        return jsonify({"order": order.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        order = run_with_retry(
            lambda: order_service.cancel(
                order_id,
                actor_user_id=current_user_id(),
                is_staff=is_staff(),
                note=payload.get("note"),
            ),
            attempts=retry_attempts(),
        )
        return jsonify({"order": order.to_dict()}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/timeline")
@require_actor
def order_timeline_route(order_id: int):
    try:
        _ensure_visible(order_service.get_order(order_id))
        events = order_service.get_timeline(order_id)
        return jsonify({"order_id": order_id, "timeline": [e.to_dict() for e in events]}), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order timeline")
        return jsonify({"error": "Internal server error"}), 500
