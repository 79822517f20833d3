# backend/storefront/routes/payments.py
"""
Payment routes.

The provider integration lives outside this service. We expose:
- a summary the client uses to open a payment intent (amount, currency)
- a webhook sink the provider calls with the outcome

SECURITY: when PAYMENT_WEBHOOK_SECRET is configured, webhook calls must
carry it in X-Webhook-Secret.
"""
import hmac

from flask import Blueprint, current_app, jsonify, request

from ..errors import StorefrontError, PermissionDeniedError, ValidationError, error_response
from ..decorators import require_actor, is_staff, current_user_id
from ..validation import parse_optional_int
from ..services import order_service, payment_service
from ..services.concurrency import run_with_retry, retry_attempts


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

WEBHOOK_EVENTS = ("payment.succeeded", "payment.failed", "payment.refunded")


@payments_bp.get("/orders/<int:order_id>/summary")
@require_actor
def payment_summary_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        if not is_staff() and order.user_id != current_user_id():
            raise PermissionDeniedError("You can only pay for your own orders", details={"order_id": order_id})
        return jsonify(payment_service.get_payment_summary(order_id)), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load payment summary")
        return jsonify({"error": "Internal server error"}), 500


def _webhook_authorized() -> bool:
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        return True
    supplied = request.headers.get("X-Webhook-Secret") or ""
    return hmac.compare_digest(supplied, secret)


@payments_bp.post("/webhooks")
def payment_webhook_route():
    """
    Body: {"event": "payment.succeeded|payment.failed|payment.refunded",
           "order_id": int, "payment_method": str?, "full_refund": bool?}
    """
    if not _webhook_authorized():
        return jsonify({"error": "Invalid webhook signature"}), 401

    payload = request.get_json(silent=True) or {}
    try:
        event = payload.get("event")
        if event not in WEBHOOK_EVENTS:
            raise ValidationError(f"event must be one of {', '.join(WEBHOOK_EVENTS)}")
        order_id = parse_optional_int(payload.get("order_id"), "order_id")
        if order_id is None:
            raise ValidationError("order_id is required")

        if event == "payment.succeeded":
            op = lambda: payment_service.handle_payment_succeeded(
                order_id, payment_method=payload.get("payment_method"),
            )
        elif event == "payment.failed":
            op = lambda: payment_service.handle_payment_failed(order_id)
        else:
            op = lambda: payment_service.handle_payment_refunded(
                order_id, full_refund=bool(payload.get("full_refund", True)),
            )

        order = run_with_retry(op, attempts=retry_attempts())
        return jsonify({
            "received": True,
            "order_id": order.id,
            "status": order.status,
            "payment_status": order.payment_status,
        }), 200
    except StorefrontError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500
