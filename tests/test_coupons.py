from datetime import timedelta
from decimal import Decimal

import pytest

from course_payments import coupons
from course_payments.errors import ValidationError
from course_payments.models import Coupon, DiscountType, utcnow


@pytest.fixture
def add_coupon(session_factory):
    def add(code="SAVE", **overrides):
        values = dict(
            code=code,
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("20"),
            valid_from=utcnow() - timedelta(days=1),
            valid_to=utcnow() + timedelta(days=30),
            applicable_to_all=True,
        )
        values.update(overrides)
        with session_factory() as db:
            db.add(Coupon(**values))
            db.commit()
    return add


def price(session_factory, code, amount, course_id="course-1"):
    with session_factory() as db:
        return coupons.apply_coupon(db, code, course_id, Decimal(amount))


def test_percentage_discount(session_factory, add_coupon):
    add_coupon()

    discount = price(session_factory, "save", "49.99")

    assert discount.code == "SAVE"
    assert discount.discount == Decimal("10.00")
    assert discount.amount == Decimal("39.99")


def test_percentage_discount_is_capped(session_factory, add_coupon):
    add_coupon(discount_value=Decimal("50"), maximum_discount=Decimal("15"))

    assert price(session_factory, "SAVE", "100").amount == Decimal("85.00")


def test_fixed_discount(session_factory, add_coupon):
    add_coupon(discount_type=DiscountType.FIXED, discount_value=Decimal("5"))

    assert price(session_factory, "SAVE", "30").amount == Decimal("25.00")


def test_discount_covering_full_price_is_rejected(session_factory, add_coupon):
    add_coupon(discount_type=DiscountType.FIXED, discount_value=Decimal("50"))

    with pytest.raises(ValidationError):
        price(session_factory, "SAVE", "30")


@pytest.mark.parametrize("overrides", [
    {"is_active": False},
    {"valid_to": utcnow() - timedelta(days=1)},
    {"valid_from": utcnow() + timedelta(days=1)},
    {"usage_limit": 3, "usage_count": 3},
    {"applicable_to_all": False, "course_id": "course-2"},
    {"minimum_amount": Decimal("100")},
])
def test_inapplicable_coupons_are_rejected(session_factory, add_coupon, overrides):
    add_coupon(**overrides)

    with pytest.raises(ValidationError):
        price(session_factory, "SAVE", "50")


def test_unknown_coupon(session_factory):
    with pytest.raises(ValidationError):
        price(session_factory, "GHOST", "50")


def test_course_specific_coupon(session_factory, add_coupon):
    add_coupon(applicable_to_all=False, course_id="course-1")

    assert price(session_factory, "SAVE", "50", course_id="course-1").amount == Decimal("40.00")


def test_record_usage(session_factory, add_coupon):
    add_coupon()

    with session_factory() as db:
        coupons.record_usage(db, "SAVE")
        coupons.record_usage(db, None)
        db.commit()

    with session_factory() as db:
        assert db.query(Coupon).one().usage_count == 1
