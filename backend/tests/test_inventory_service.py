# Overview: Pytest coverage for the inventory ledger.

"""
Inventory Ledger Tests

Every stock change goes through inventory_service inside a transaction
scope. These tests check the ledger arithmetic, the audit trail and the
product / variant stock caches.
"""

import pytest

from storefront.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.models import Inventory, InventoryLog
from storefront.services import inventory_service
from storefront.services.concurrency import serializable_transaction


def _row(db_session, product_id, variant_id=None) -> Inventory:
    return db_session.query(Inventory).filter_by(product_id=product_id, variant_id=variant_id).one()


def _logs(db_session, product_id, change_type=None):
    q = db_session.query(InventoryLog).filter_by(product_id=product_id)
    if change_type:
        q = q.filter_by(change_type=change_type)
    return q.order_by(InventoryLog.id.asc()).all()


class TestRestockAndAdjust:

    def test_restock_creates_row_and_logs(self, db_session, make_product):
        """First restock creates the inventory row and a RESTOCK log."""
        product = make_product()
        with serializable_transaction() as tx:
            inventory_service.restock(tx, product_id=product.id, quantity=10, note="PO 991")

        row = _row(db_session, product.id)
        assert row.stock_quantity == 10
        assert row.reserved_quantity == 0
        assert row.last_restocked_at is not None

        logs = _logs(db_session, product.id, "RESTOCK")
        assert len(logs) == 1
        assert logs[0].quantity_changed == 10
        assert logs[0].note == "PO 991"

    def test_restock_refreshes_stock_cache(self, db_session, make_product, make_variant):
        """Product cache totals all rows; variant cache mirrors its own row."""
        product = make_product(stock=5)
        variant = make_variant(product)
        with serializable_transaction() as tx:
            inventory_service.restock(tx, product_id=product.id, variant_id=variant.id, quantity=3)

        db_session.refresh(product)
        db_session.refresh(variant)
        assert variant.stock_quantity == 3
        assert product.stock_quantity == 8

    def test_restock_rejects_non_positive_quantity(self, db_session, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            with serializable_transaction() as tx:
                inventory_service.restock(tx, product_id=product.id, quantity=0)

    def test_restock_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            with serializable_transaction() as tx:
                inventory_service.restock(tx, product_id=99999, quantity=1)

    def test_adjust_cannot_drop_below_reserved(self, db_session, make_product):
        """Negative adjustment may only remove unreserved units."""
        product = make_product(stock=10)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=6)

        with pytest.raises(InsufficientStockError) as exc:
            with serializable_transaction() as tx:
                inventory_service.adjust(tx, product_id=product.id, quantity_delta=-5)
        assert exc.value.details["available"] == 4

        row = _row(db_session, product.id)
        assert row.stock_quantity == 10
        assert row.reserved_quantity == 6

    def test_adjust_logs_signed_delta(self, db_session, make_product):
        product = make_product(stock=10)
        with serializable_transaction() as tx:
            inventory_service.adjust(
                tx, product_id=product.id, quantity_delta=-2, change_type="ADJUSTMENT", note="damaged",
            )

        assert _row(db_session, product.id).stock_quantity == 8
        logs = _logs(db_session, product.id, "ADJUSTMENT")
        assert [l.quantity_changed for l in logs] == [-2]

    def test_adjust_rejects_unknown_change_type(self, db_session, make_product):
        product = make_product(stock=1)
        with pytest.raises(ValidationError):
            with serializable_transaction() as tx:
                inventory_service.adjust(tx, product_id=product.id, quantity_delta=1, change_type="SALE")


class TestReservations:

    def test_reserve_and_release(self, db_session, make_product):
        product = make_product(stock=10)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=4)
        assert _row(db_session, product.id).reserved_quantity == 4

        with serializable_transaction() as tx:
            inventory_service.release_reservation(tx, product_id=product.id, quantity=4)
        row = _row(db_session, product.id)
        assert row.reserved_quantity == 0
        assert row.stock_quantity == 10

        # Reservations are not audited
        assert _logs(db_session, product.id, "SALE") == []

    def test_reserve_beyond_available_fails(self, db_session, make_product):
        """Shortfall is reported and nothing changes."""
        product = make_product(stock=5)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=3)

        with pytest.raises(InsufficientStockError) as exc:
            with serializable_transaction() as tx:
                inventory_service.reserve(tx, product_id=product.id, quantity=3)

        assert exc.value.details["requested"] == 3
        assert exc.value.details["available"] == 2
        assert exc.value.details["shortfall"] == 1
        assert _row(db_session, product.id).reserved_quantity == 3

    def test_reserve_untracked_product(self, db_session, make_product):
        product = make_product()
        with pytest.raises(NotFoundError):
            with serializable_transaction() as tx:
                inventory_service.reserve(tx, product_id=product.id, quantity=1)

    def test_release_underflow_clamps_to_zero(self, db_session, make_product):
        product = make_product(stock=5)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=2)
        with serializable_transaction() as tx:
            inventory_service.release_reservation(tx, product_id=product.id, quantity=5)

        assert _row(db_session, product.id).reserved_quantity == 0


class TestSaleAndRestore:

    def test_commit_sale_consumes_reservation(self, db_session, make_product):
        product = make_product(stock=10)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=3)
            inventory_service.commit_sale(tx, product_id=product.id, quantity=3, note="Order ORD-1")

        row = _row(db_session, product.id)
        assert row.stock_quantity == 7
        assert row.reserved_quantity == 0

        sales = _logs(db_session, product.id, "SALE")
        assert len(sales) == 1
        assert sales[0].quantity_changed == -3
        assert sales[0].note == "Order ORD-1"

        db_session.refresh(product)
        assert product.stock_quantity == 7

    def test_restore_adds_stock_and_return_log(self, db_session, make_product):
        product = make_product(stock=10)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=2)
            inventory_service.commit_sale(tx, product_id=product.id, quantity=2)
        with serializable_transaction() as tx:
            inventory_service.restore(tx, product_id=product.id, quantity=2, note="returned")

        assert _row(db_session, product.id).stock_quantity == 10
        returns = _logs(db_session, product.id, "RETURN")
        assert [l.quantity_changed for l in returns] == [2]

    def test_failed_block_rolls_back_every_step(self, db_session, make_product):
        """A failure late in a scope undoes earlier ledger writes in it."""
        product = make_product(stock=10)
        with pytest.raises(InsufficientStockError):
            with serializable_transaction() as tx:
                inventory_service.reserve(tx, product_id=product.id, quantity=5)
                inventory_service.reserve(tx, product_id=product.id, quantity=6)

        assert _row(db_session, product.id).reserved_quantity == 0


class TestQueries:

    def test_availability_untracked(self, db_session, make_product):
        product = make_product()
        result = inventory_service.get_availability(product.id)
        assert result["tracked"] is False
        assert result["available_quantity"] == 0

    def test_availability_tracked(self, db_session, make_product):
        product = make_product(stock=8)
        with serializable_transaction() as tx:
            inventory_service.reserve(tx, product_id=product.id, quantity=3)

        result = inventory_service.get_availability(product.id)
        assert result == {
            "product_id": product.id,
            "variant_id": None,
            "stock_quantity": 8,
            "reserved_quantity": 3,
            "available_quantity": 5,
            "tracked": True,
        }

    def test_low_stock_listing(self, db_session, make_product):
        low = make_product(stock=2)
        make_product(stock=50)

        rows = inventory_service.list_low_stock()
        assert [r.product_id for r in rows] == [low.id]

    def test_logs_filter_by_change_type(self, db_session, make_product):
        product = make_product(stock=5)
        with serializable_transaction() as tx:
            inventory_service.adjust(tx, product_id=product.id, quantity_delta=1)

        logs = inventory_service.list_logs(product_id=product.id, change_type="MANUAL")
        assert len(logs) == 1
        with pytest.raises(ValidationError):
            inventory_service.list_logs(change_type="BOGUS")
