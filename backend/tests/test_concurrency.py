# Overview: Pytest coverage for concurrent checkouts against a shared database file.

"""
Concurrency Tests

Two shoppers race for the same stock. Each checkout runs in its own thread,
app context and database connection; serializable transactions must let
exactly one of them through and leave the ledger consistent.
"""

import threading

import pytest

from conftest import ADDRESS, NOW
from storefront import create_app
from storefront.errors import InsufficientStockError
from storefront.extensions import db
from storefront.models import Inventory, InventoryLog, Order, Product
from storefront.services import inventory_service, order_service
from storefront.services.concurrency import run_with_retry, serializable_transaction


def _payload(product_id: int, quantity: int, user_id: int) -> dict:
    return {
        "items": [{"product_id": product_id, "quantity": quantity}],
        "shipping_address": dict(ADDRESS),
        "user_id": user_id,
    }


@pytest.fixture
def file_app(tmp_path):
    """App bound to an on-disk SQLite file so threads get real separate connections."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


def _run_concurrently(app, payloads):
    barrier = threading.Barrier(len(payloads))
    results = [None] * len(payloads)

    def worker(idx, payload):
        with app.app_context():
            try:
                barrier.wait()
                order = run_with_retry(lambda: order_service.create_order(payload, at=NOW), attempts=5)
                results[idx] = ("ok", order.id)
            except InsufficientStockError as exc:
                results[idx] = ("insufficient", exc.details)
            except Exception as exc:  # surfaced by the assertions below
                results[idx] = ("error", repr(exc))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i, p)) for i, p in enumerate(payloads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


class TestTransactionScope:

    def test_opens_after_a_read_left_the_session_in_a_transaction(self, db_session):
        db_session.query(Product).count()

        with serializable_transaction() as tx:
            tx.add(Product(sku="SCOPE-1", title="Scoped", price_cents=100))

        db_session.rollback()
        assert db_session.query(Product).filter_by(sku="SCOPE-1").count() == 1

    def test_refuses_pending_changes(self, db_session):
        db_session.add(Product(sku="SCOPE-2", title="Pending", price_cents=100))
        with pytest.raises(RuntimeError):
            with serializable_transaction():
                pass
        db_session.rollback()
        assert db_session.query(Product).filter_by(sku="SCOPE-2").count() == 0

    def test_rolls_back_when_the_block_raises(self, db_session):
        with pytest.raises(ValueError):
            with serializable_transaction() as tx:
                tx.add(Product(sku="SCOPE-3", title="Doomed", price_cents=100))
                tx.flush()
                raise ValueError("boom")
        assert db_session.query(Product).filter_by(sku="SCOPE-3").count() == 0


class TestConcurrentCheckout:

    def test_only_one_of_two_competing_orders_succeeds(self, file_app):
        with file_app.app_context():
            product = Product(sku="RACE-1", title="Last units", price_cents=1000)
            db.session.add(product)
            db.session.commit()
            product_id = product.id
            with serializable_transaction() as tx:
                inventory_service.restock(tx, product_id=product_id, quantity=5)

        payloads = [_payload(product_id, 3, uid) for uid in (1, 2)]
        results = _run_concurrently(file_app, payloads)

        outcomes = sorted(r[0] for r in results)
        assert outcomes == ["insufficient", "ok"], results

        with file_app.app_context():
            row = db.session.query(Inventory).filter_by(product_id=product_id).one()
            assert row.stock_quantity == 2
            assert row.reserved_quantity == 0
            assert db.session.query(Order).count() == 1
            sales = db.session.query(InventoryLog).filter_by(product_id=product_id, change_type="SALE").all()
            assert [s.quantity_changed for s in sales] == [-3]
            assert db.session.get(Product, product_id).stock_quantity == 2

    def test_many_small_orders_never_oversell(self, file_app):
        with file_app.app_context():
            product = Product(sku="RACE-2", title="Popular", price_cents=1000)
            db.session.add(product)
            db.session.commit()
            product_id = product.id
            with serializable_transaction() as tx:
                inventory_service.restock(tx, product_id=product_id, quantity=4)

        payloads = [_payload(product_id, 1, uid) for uid in range(1, 7)]
        results = _run_concurrently(file_app, payloads)

        assert sum(1 for r in results if r[0] == "ok") == 4, results
        assert sum(1 for r in results if r[0] == "insufficient") == 2, results

        with file_app.app_context():
            row = db.session.query(Inventory).filter_by(product_id=product_id).one()
            assert (row.stock_quantity, row.reserved_quantity) == (0, 0)
