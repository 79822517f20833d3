# Overview: Pytest coverage for the HTTP layer: identity headers, status codes and payload shapes.

"""
API Route Tests

Identity comes from X-User-Id / X-User-Role. These tests check that:
1. Guests may check out but not read orders
2. Customers see only their own orders; staff see all
3. Service errors map to their HTTP status with a structured body
4. Staff-only routes reject customers with 403
"""

from conftest import ADDRESS, STAFF, actor_headers, order_payload
from storefront.models import Inventory


def _checkout(client, *lines, headers=None, **extra):
    payload = order_payload(*lines)
    payload.pop("user_id")
    payload.update(extra)
    return client.post("/api/orders", json=payload, headers=headers or {})


class TestHealth:

    def test_health(self, client, db_session):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json["status"] == "healthy"
        assert response.json["checks"]["database"]["status"] == "healthy"


class TestOrderRoutes:

    def test_guest_checkout(self, client, db_session, make_product):
        product = make_product(stock=5)
        response = _checkout(client, (product, 2))
        assert response.status_code == 201
        order = response.json["order"]
        assert order["user_id"] is None
        assert order["items"][0]["quantity"] == 2

    def test_body_user_id_is_ignored(self, client, db_session, make_product):
        product = make_product(stock=5)
        response = _checkout(client, (product, 1), headers=actor_headers(5), user_id=99)
        assert response.status_code == 201
        assert response.json["order"]["user_id"] == 5

    def test_insufficient_stock_is_409_with_details(self, client, db_session, make_product):
        product = make_product(stock=1)
        response = _checkout(client, (product, 2), headers=actor_headers(5))
        assert response.status_code == 409
        assert response.json["details"]["shortfall"] == 1

    def test_validation_error_is_400(self, client, db_session):
        response = client.post("/api/orders", json={"items": [], "shipping_address": ADDRESS})
        assert response.status_code == 400
        assert response.json["error"] == "Order must contain at least one item"

    def test_visibility(self, client, db_session, make_product):
        product = make_product(stock=5)
        order_id = _checkout(client, (product, 1), headers=actor_headers(5)).json["order"]["id"]

        assert client.get(f"/api/orders/{order_id}").status_code == 401
        assert client.get(f"/api/orders/{order_id}", headers=actor_headers(6)).status_code == 403
        assert client.get(f"/api/orders/{order_id}", headers=actor_headers(5)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=STAFF).status_code == 200

    def test_list_scoped_to_customer(self, client, db_session, make_product):
        product = make_product(stock=5)
        _checkout(client, (product, 1), headers=actor_headers(5))
        _checkout(client, (product, 1), headers=actor_headers(6))

        mine = client.get("/api/orders", headers=actor_headers(5)).json
        assert mine["total"] == 1
        assert "items" not in mine["items"][0]

        # A customer cannot widen the filter
        assert client.get("/api/orders?user_id=6", headers=actor_headers(5)).json["total"] == 1
        assert client.get("/api/orders", headers=STAFF).json["total"] == 2
        assert client.get("/api/orders?user_id=6", headers=STAFF).json["total"] == 1

    def test_cancel_and_timeline(self, client, db_session, make_product):
        product = make_product(stock=5)
        order_id = _checkout(client, (product, 3), headers=actor_headers(5)).json["order"]["id"]

        assert client.post(f"/api/orders/{order_id}/cancel", headers=actor_headers(6)).status_code == 403
        response = client.post(f"/api/orders/{order_id}/cancel", headers=actor_headers(5))
        assert response.status_code == 200
        assert response.json["order"]["status"] == "CANCELLED"

        again = client.post(f"/api/orders/{order_id}/cancel", headers=actor_headers(5))
        assert again.status_code == 409

        timeline = client.get(f"/api/orders/{order_id}/timeline", headers=actor_headers(5)).json["timeline"]
        assert [t["status"] for t in timeline] == ["PENDING", "CANCELLED"]

        row = db_session.query(Inventory).filter_by(product_id=product.id).one()
        db_session.refresh(row)
        assert row.stock_quantity == 5

    def test_status_update_is_staff_only(self, client, db_session, make_product):
        product = make_product(stock=5)
        order_id = _checkout(client, (product, 1), headers=actor_headers(5)).json["order"]["id"]

        url = f"/api/orders/{order_id}/status"
        assert client.patch(url, json={"status": "CONFIRMED"}, headers=actor_headers(5)).status_code == 403
        assert client.patch(url, json={}, headers=STAFF).status_code == 400
        assert client.patch(url, json={"status": "DELIVERED"}, headers=STAFF).status_code == 409
        response = client.patch(url, json={"status": "CONFIRMED"}, headers=STAFF)
        assert response.status_code == 200
        assert response.json["order"]["status"] == "CONFIRMED"

    def test_lookup_by_number(self, client, db_session, make_product):
        product = make_product(stock=5)
        order = _checkout(client, (product, 1), headers=actor_headers(5)).json["order"]
        response = client.get(f"/api/orders/number/{order['order_number']}", headers=actor_headers(5))
        assert response.status_code == 200
        assert response.json["order"]["id"] == order["id"]


class TestInventoryRoutes:

    def test_restock_adjust_and_availability(self, client, db_session, make_product):
        product = make_product()

        assert client.post("/api/inventory/restock", json={"product_id": product.id, "quantity": 5},
                           headers=actor_headers(5)).status_code == 403

        response = client.post("/api/inventory/restock",
                               json={"product_id": product.id, "quantity": 5, "note": "PO 7"}, headers=STAFF)
        assert response.status_code == 201
        assert response.json["inventory"]["stock_quantity"] == 5

        response = client.post("/api/inventory/adjust",
                               json={"product_id": product.id, "quantity_delta": -2}, headers=STAFF)
        assert response.status_code == 200
        assert response.json["inventory"]["stock_quantity"] == 3

        availability = client.get(f"/api/inventory/{product.id}/availability").json
        assert availability["available_quantity"] == 3

        logs = client.get(f"/api/inventory/logs?product_id={product.id}", headers=STAFF).json["items"]
        assert sorted(l["change_type"] for l in logs) == ["MANUAL", "RESTOCK"]

    def test_unknown_field_rejected(self, client, db_session, make_product):
        product = make_product()
        response = client.post("/api/inventory/restock",
                               json={"product_id": product.id, "quantity": 1, "store_id": 1}, headers=STAFF)
        assert response.status_code == 400


class TestDealAndCouponRoutes:

    def test_create_deal_and_quote(self, client, db_session, make_product):
        product = make_product(price_cents=10000)
        body = {
            "product_id": product.id,
            "deal_type": "FLASH",
            "discount_bps": 2500,
            "start_time": "2026-01-01T00:00:00Z",
            "end_time": "2026-01-31T23:59:59Z",
        }
        response = client.post("/api/deals", json=body, headers=STAFF)
        assert response.status_code == 201

        assert client.post("/api/deals", json=body, headers=STAFF).status_code == 409

        quote = client.get(f"/api/deals/products/{product.id}/price?at=2026-01-15T00:00:00Z").json
        assert quote["unit_price_cents"] == 7500
        assert quote["deal_type"] == "FLASH"

    def test_coupon_admin_and_preview(self, client, db_session, make_product, category):
        product = make_product(price_cents=10000, category_id=category.id)
        body = {
            "code": "audio10",
            "coupon_type": "PERCENTAGE",
            "value": 1000,
            "start_date": "2026-01-01T00:00:00Z",
            "end_date": "2099-01-01T00:00:00Z",
            "category_ids": [category.id],
        }
        assert client.post("/api/coupons", json=body, headers=actor_headers(5)).status_code == 403
        response = client.post("/api/coupons", json=body, headers=STAFF)
        assert response.status_code == 201
        assert response.json["coupon"]["code"] == "AUDIO10"
        assert response.json["coupon"]["category_ids"] == [category.id]

        check = client.post("/api/coupons/validate", json={"code": "AUDIO10"}).json
        assert check == {"valid": True, "reason": None, "message": None}

        preview = client.post("/api/coupons/apply", json={
            "code": "AUDIO10",
            "subtotal_cents": 15000,
            "items": [
                {"product_id": product.id, "line_total_cents": 10000},
                {"product_id": 999999, "line_total_cents": 5000},
            ],
        }).json
        assert preview["discount_cents"] == 1000

        empty = client.post("/api/coupons/apply", json={"code": "AUDIO10", "subtotal_cents": 15000, "items": []})
        assert empty.status_code == 200
        assert empty.json["discount_cents"] == 0

        missing = client.post("/api/coupons/validate", json={"code": "NOPE"}).json
        assert missing["reason"] == "not_found"


class TestCartAndPaymentRoutes:

    def test_cart_flow(self, client, db_session, make_product):
        product = make_product(stock=5)
        assert client.get("/api/carts").status_code == 401

        response = client.post("/api/carts/items", json={"product_id": product.id, "quantity": 2},
                               headers=actor_headers(5))
        assert response.status_code == 201
        item_id = response.json["item"]["id"]

        assert len(client.get("/api/carts", headers=actor_headers(5)).json["items"]) == 1
        assert client.delete(f"/api/carts/items/{item_id}", headers=actor_headers(6)).status_code == 404
        assert client.delete(f"/api/carts/items/{item_id}", headers=actor_headers(5)).status_code == 200

    def test_webhook(self, client, db_session, make_product):
        product = make_product(stock=5)
        order_id = _checkout(client, (product, 1), headers=actor_headers(5)).json["order"]["id"]

        bad = client.post("/api/payments/webhooks", json={"event": "payment.lost", "order_id": order_id})
        assert bad.status_code == 400

        response = client.post("/api/payments/webhooks", json={
            "event": "payment.succeeded", "order_id": order_id, "payment_method": "card",
        })
        assert response.status_code == 200
        assert response.json["payment_status"] == "PAID"
        assert response.json["status"] == "PROCESSING"

    def test_webhook_secret(self, app, client, db_session, make_product):
        product = make_product(stock=5)
        order_id = _checkout(client, (product, 1), headers=actor_headers(5)).json["order"]["id"]

        app.config["PAYMENT_WEBHOOK_SECRET"] = "s3cret"
        try:
            body = {"event": "payment.failed", "order_id": order_id}
            assert client.post("/api/payments/webhooks", json=body).status_code == 401
            response = client.post("/api/payments/webhooks", json=body, headers={"X-Webhook-Secret": "s3cret"})
            assert response.status_code == 200
            assert response.json["payment_status"] == "FAILED"
        finally:
            app.config["PAYMENT_WEBHOOK_SECRET"] = None
