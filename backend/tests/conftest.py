"""
Pytest fixtures for storefront backend tests.

Provides test database setup, catalog / stock fixtures, and test client.
Fixtures commit their rows: services open their own serializable
transactions and refuse to start with unflushed changes pending.
"""

from datetime import datetime

import pytest
from storefront import create_app
from storefront.extensions import db
from storefront.models import Category, Product, ProductVariant
from storefront.services import inventory_service
from storefront.services.concurrency import serializable_transaction


ADDRESS = {
    "street": "1 Market St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "country": "US",
}

# Fixed pricing clock so deal and coupon windows are deterministic
NOW = datetime(2026, 6, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENT_WEBHOOK_SECRET': None,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def restock(product_id: int, quantity: int, variant_id: int | None = None):
    """Receive stock through the ledger in its own transaction."""
    with serializable_transaction() as tx:
        inventory_service.restock(tx, product_id=product_id, variant_id=variant_id, quantity=quantity)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: create and commit a product, optionally with initial stock."""
    counter = {"n": 0}

    def _make(
        *,
        price_cents: int = 10000,
        stock: int | None = None,
        title: str | None = None,
        currency: str = "USD",
        category_id: int | None = None,
        sub_category_id: int | None = None,
        discount_price_cents: int | None = None,
        is_active: bool = True,
    ) -> Product:
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:04d}",
            title=title or f"Product {counter['n']}",
            price_cents=price_cents,
            discount_price_cents=discount_price_cents,
            currency=currency,
            category_id=category_id,
            sub_category_id=sub_category_id,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        if stock:
            restock(product.id, stock)
        return product

    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    def _make(product: Product, *, name: str = "Large", price_cents: int | None = None) -> ProductVariant:
        variant = ProductVariant(
            product_id=product.id,
            variant_name=name,
            sku=f"{product.sku}-{name.upper()}",
            price_cents=price_cents,
        )
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def category(db_session):
    cat = Category(name="Audio")
    db_session.add(cat)
    db_session.commit()
    return cat


def order_payload(*items, user_id=None, coupon_code=None, currency=None) -> dict:
    """Build a checkout payload from (product, quantity) or (product, quantity, variant) tuples."""
    lines = []
    for item in items:
        product, quantity = item[0], item[1]
        variant = item[2] if len(item) > 2 else None
        lines.append({
            "product_id": product.id,
            "variant_id": variant.id if variant is not None else None,
            "quantity": quantity,
        })
    payload = {"items": lines, "shipping_address": dict(ADDRESS), "user_id": user_id}
    if coupon_code:
        payload["coupon_code"] = coupon_code
    if currency:
        payload["currency"] = currency
    return payload


def actor_headers(user_id: int, role: str = "customer") -> dict:
    """Helper to create gateway identity headers."""
    return {"X-User-Id": str(user_id), "X-User-Role": role}


STAFF = actor_headers(1, "admin")
