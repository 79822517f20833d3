# Overview: Pytest coverage for coupon validation, discount computation and redemption.

"""
Coupon Engine Tests

Validation runs in a fixed order and the first failure wins. Discounts:
- PERCENTAGE: basis points of the (eligible) subtotal, half-up
- FIXED_AMOUNT: capped at the subtotal
- FREE_SHIPPING: the cap on what comes off the shipping fee
"""

from datetime import datetime

import pytest

from conftest import NOW
from storefront.errors import ConflictError, ValidationError
from storefront.models import Category, Coupon, CouponUsage
from storefront.services import coupon_service
from storefront.services.coupon_service import CouponLine


START = datetime(2026, 1, 1)
END = datetime(2026, 12, 31)


def _coupon(code="SAVE10", coupon_type="PERCENTAGE", value=1000, **kwargs) -> Coupon:
    return coupon_service.create_coupon(
        code=code, coupon_type=coupon_type, value=value, start_date=START, end_date=END, **kwargs,
    )


class TestValidation:

    def test_valid_and_case_insensitive(self, db_session):
        _coupon(code="save10")
        result = coupon_service.validate_coupon("  Save10 ", at=NOW)
        assert result.valid
        assert result.coupon.code == "SAVE10"

    def test_not_found(self, db_session):
        result = coupon_service.validate_coupon("NOPE", at=NOW)
        assert not result.valid
        assert result.reason == "not_found"
        assert result.message == "Coupon not found"

    def test_inactive(self, db_session):
        _coupon(status="DISABLED")
        assert coupon_service.validate_coupon("SAVE10", at=NOW).reason == "inactive"

    def test_date_window(self, db_session):
        _coupon()
        assert coupon_service.validate_coupon("SAVE10", at=datetime(2025, 12, 31)).reason == "not_yet_active"
        assert coupon_service.validate_coupon("SAVE10", at=datetime(2027, 1, 1)).reason == "expired"

    def test_status_checked_before_dates(self, db_session):
        _coupon(status="DISABLED")
        assert coupon_service.validate_coupon("SAVE10", at=datetime(2027, 1, 1)).reason == "inactive"

    def test_total_usage_limit(self, db_session):
        _coupon(usage_limit=1)
        assert coupon_service.record_usage(order_id=None, user_id=3, code="SAVE10", discount_cents=100)
        assert coupon_service.validate_coupon("SAVE10", at=NOW).reason == "usage_limit_reached"

    def test_per_user_limit_only_for_known_users(self, db_session):
        _coupon(per_user_limit=1)
        coupon_service.record_usage(order_id=None, user_id=3, code="SAVE10", discount_cents=100)

        assert coupon_service.validate_coupon("SAVE10", user_id=3, at=NOW).reason == "user_limit_reached"
        assert coupon_service.validate_coupon("SAVE10", user_id=4, at=NOW).valid
        assert coupon_service.validate_coupon("SAVE10", user_id=None, at=NOW).valid


class TestComputeDiscount:

    def test_percentage(self, db_session):
        _coupon(value=1000)
        result = coupon_service.compute_discount("SAVE10", 12345, at=NOW)
        # 1234.5 rounds half-up
        assert result.discount_cents == 1235

    def test_fixed_amount_capped_at_subtotal(self, db_session):
        _coupon(code="FIVE", coupon_type="FIXED_AMOUNT", value=500)
        assert coupon_service.compute_discount("FIVE", 2000, at=NOW).discount_cents == 500
        assert coupon_service.compute_discount("FIVE", 300, at=NOW).discount_cents == 300

    def test_free_shipping_reports_cap(self, db_session):
        _coupon(code="SHIPFREE", coupon_type="FREE_SHIPPING", value=1500)
        result = coupon_service.compute_discount("SHIPFREE", 5000, at=NOW)
        assert result.is_shipping_discount
        assert result.discount_cents == 1500

    def test_minimum_purchase(self, db_session):
        _coupon(minimum_purchase_cents=5000)
        with pytest.raises(ValidationError) as exc:
            coupon_service.compute_discount("SAVE10", 4999, at=NOW)
        assert exc.value.details["reason"] == "minimum_purchase_not_met"
        assert "50.00" in exc.value.message

        assert coupon_service.compute_discount("SAVE10", 5000, at=NOW).discount_cents == 500

    def test_invalid_coupon_raises_with_reason(self, db_session):
        with pytest.raises(ValidationError) as exc:
            coupon_service.compute_discount("MISSING", 1000, at=NOW)
        assert exc.value.details["reason"] == "not_found"

    def test_category_scope(self, db_session, make_product, category):
        """Only lines in the coupon's categories count toward a PERCENTAGE discount."""
        in_scope = make_product(price_cents=10000, category_id=category.id)
        out_of_scope = make_product(price_cents=5000)
        _coupon(code="AUDIO10", value=1000, category_ids=[category.id])

        lines = [
            CouponLine(product_id=in_scope.id, line_total_cents=20000),
            CouponLine(product_id=out_of_scope.id, line_total_cents=5000),
        ]
        result = coupon_service.compute_discount("AUDIO10", 25000, lines, at=NOW)
        assert result.eligible_subtotal_cents == 20000
        assert result.discount_cents == 2000

    def test_sub_category_and_product_scope(self, db_session, make_product, category):
        sub = Category(name="Headphones", parent_id=category.id)
        db_session.add(sub)
        db_session.commit()

        by_sub = make_product(price_cents=4000, sub_category_id=sub.id)
        listed = make_product(price_cents=6000)
        other = make_product(price_cents=1000)
        _coupon(code="MIX", value=5000, category_ids=[sub.id], product_ids=[listed.id])

        lines = [
            CouponLine(product_id=by_sub.id, line_total_cents=4000),
            CouponLine(product_id=listed.id, line_total_cents=6000),
            CouponLine(product_id=other.id, line_total_cents=1000),
        ]
        assert coupon_service.compute_discount("MIX", 11000, lines, at=NOW).discount_cents == 5000

    def test_scoped_coupon_with_empty_lines_gives_nothing(self, db_session, category):
        """An empty line list has no eligible lines; omitting lines falls back to the subtotal."""
        _coupon(code="AUDIO10", value=1000, category_ids=[category.id])

        result = coupon_service.compute_discount("AUDIO10", 10000, [], at=NOW)
        assert result.eligible_subtotal_cents == 0
        assert result.discount_cents == 0

        assert coupon_service.compute_discount("AUDIO10", 10000, None, at=NOW).discount_cents == 1000


class TestRedemptionAndAdmin:

    def test_record_usage(self, db_session):
        coupon = _coupon()
        assert coupon_service.record_usage(order_id=None, user_id=9, code="save10", discount_cents=250)

        db_session.refresh(coupon)
        assert coupon.usage_count == 1
        history = coupon_service.get_usage_history(coupon.id)
        assert [(u.user_id, u.discount_cents) for u in history] == [(9, 250)]

    def test_record_usage_failure_is_reported_not_raised(self, db_session):
        assert coupon_service.record_usage(order_id=None, user_id=1, code="GHOST", discount_cents=1) is False
        assert db_session.query(CouponUsage).count() == 0

    def test_duplicate_code(self, db_session):
        _coupon(code="DUP")
        with pytest.raises(ConflictError):
            _coupon(code=" dup ")

    @pytest.mark.parametrize("coupon_type,value", [
        ("PERCENTAGE", 0),
        ("PERCENTAGE", 10001),
        ("FIXED_AMOUNT", -5),
        ("BOGO", 100),
    ])
    def test_invalid_definitions(self, db_session, coupon_type, value):
        with pytest.raises(ValidationError):
            _coupon(code="BAD", coupon_type=coupon_type, value=value)

    def test_update_rejects_code_change(self, db_session):
        coupon = _coupon()
        with pytest.raises(ValidationError):
            coupon_service.update_coupon(coupon.id, {"code": "OTHER"})

        updated = coupon_service.update_coupon(coupon.id, {"value": 1500, "status": "DISABLED"})
        assert updated.value == 1500
        assert updated.status == "DISABLED"

    def test_remove_unused_deletes_used_disables(self, db_session):
        unused = _coupon(code="UNUSED")
        used = _coupon(code="USED")
        coupon_service.record_usage(order_id=None, user_id=1, code="USED", discount_cents=10)

        unused_id, used_id = unused.id, used.id
        assert coupon_service.remove_coupon(unused_id) == "deleted"
        assert coupon_service.remove_coupon(used_id) == "disabled"

        assert db_session.get(Coupon, unused_id) is None
        assert db_session.get(Coupon, used_id).status == "DISABLED"
