from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from course_payments.errors import ValidationError
from course_payments.models import Coupon, DiscountType, as_utc, utcnow

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


@dataclass
class Discount:
    code: str
    original_amount: Decimal
    discount: Decimal
    amount: Decimal


def apply_coupon(db: Session, code: str, course_id: str, amount: Decimal) -> Discount:
    """Price `amount` for `course_id` with coupon `code`.

    Raises ValidationError when the coupon does not exist or does not apply.
    Usage is counted later, when the payment actually succeeds.
    """
    normalized = code.strip().upper()
    coupon = db.scalar(select(Coupon).where(Coupon.code == normalized))
    if coupon is None or not coupon.is_active:
        raise ValidationError(f"Coupon {normalized} is not valid")

    now = utcnow()
    if not (as_utc(coupon.valid_from) <= now <= as_utc(coupon.valid_to)):
        raise ValidationError(f"Coupon {normalized} is expired or not yet active")
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise ValidationError(f"Coupon {normalized} has reached its usage limit")
    if not coupon.applicable_to_all and coupon.course_id != course_id:
        raise ValidationError(f"Coupon {normalized} does not apply to this course")
    if coupon.minimum_amount is not None and amount < coupon.minimum_amount:
        raise ValidationError(
            f"Coupon {normalized} requires a minimum amount of {coupon.minimum_amount}"
        )

    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = (amount * Decimal(coupon.discount_value) / Decimal(100)).quantize(CENT)
        if coupon.maximum_discount is not None:
            discount = min(discount, Decimal(coupon.maximum_discount))
    else:
        discount = Decimal(coupon.discount_value)
    discount = min(discount, amount)

    final = (amount - discount).quantize(CENT)
    if final <= 0:
        raise ValidationError("Amount after discount must be positive")

    logger.info("coupon_applied", code=normalized, course_id=course_id, discount=str(discount))
    return Discount(code=normalized, original_amount=amount, discount=discount, amount=final)


def record_usage(db: Session, code: Optional[str]) -> None:
    if not code:
        return
    db.execute(
        update(Coupon)
        .where(Coupon.code == code)
        .values(usage_count=Coupon.usage_count + 1)
    )
