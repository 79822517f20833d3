# Overview: Service-layer operations for payments; webhook-driven payment status updates.

from __future__ import annotations

from flask import current_app

from ..errors import ConflictError
from .concurrency import serializable_transaction
from .order_service import ALLOWED_TRANSITIONS, _lock_order, apply_status, get_order


def get_payment_summary(order_id: int) -> dict:
    """Amount and currency a payment provider needs to open an intent."""
    order = get_order(order_id)
    if order.payment_status == "PAID":
        raise ConflictError("Order is already paid", details={"order_id": order_id})
    if order.status in ("CANCELLED", "REFUNDED"):
        raise ConflictError(f"Cannot pay for an order with status {order.status}", details={"order_id": order_id})
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "amount_cents": order.total_cents,
        "currency": order.currency,
        "payment_status": order.payment_status,
    }


def handle_payment_succeeded(order_id: int, *, payment_method: str | None = None):
    """Mark the order PAID and move a PENDING order into PROCESSING. Replays are no-ops."""
    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        if order.payment_status != "PAID":
            order.payment_status = "PAID"
            if payment_method:
                order.payment_method = payment_method
            if order.status == "PENDING":
                apply_status(tx, order, "PROCESSING", "Payment received")
    current_app.logger.info("Payment succeeded for order %s", order_id)
    return get_order(order_id)


def handle_payment_failed(order_id: int):
    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        if order.payment_status == "PAID":
            current_app.logger.warning("Ignoring payment failure for already paid order %s", order_id)
        else:
            order.payment_status = "FAILED"
    return get_order(order_id)


def handle_payment_refunded(order_id: int, *, full_refund: bool = True):
    """
    Record a refund. A full refund also moves the order to REFUNDED when the
    status machine allows it; otherwise the order status is left alone.
    """
    with serializable_transaction() as tx:
        order = _lock_order(tx, order_id)
        order.payment_status = "REFUNDED"
        if full_refund and order.status != "REFUNDED":
            if "REFUNDED" in ALLOWED_TRANSITIONS.get(order.status, set()):
                apply_status(tx, order, "REFUNDED", "Payment refunded")
            else:
                current_app.logger.warning(
                    "Refund received for order %s in status %s; status left unchanged",
                    order_id, order.status,
                )
    return get_order(order_id)
