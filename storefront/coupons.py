import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import utcnow
from .errors import CouponNotFound, InvalidCoupon, StorageUnavailable, UsageLimitReached, ValidationFailed
from .models import Coupon

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CouponQuote:
    coupon: Coupon
    order_total: Decimal
    discount_amount: Decimal
    final_total: Decimal

    def to_dict(self) -> dict:
        return {
            "code": self.coupon.code,
            "discount_type": self.coupon.discount_type,
            "discount_value": self.coupon.discount_value,
            "order_total": self.order_total,
            "discount_amount": self.discount_amount,
            "final_total": self.final_total,
        }


def in_window(coupon: Coupon, now: datetime) -> bool:
    if coupon.valid_from is not None and coupon.valid_from > now:
        return False
    if coupon.valid_to is not None and coupon.valid_to < now:
        return False
    return True


def evaluate(coupon: Optional[Coupon], order_total: Decimal, now: Optional[datetime] = None) -> CouponQuote:
    """Check a coupon against an order total and compute the bounded discount.

    Checks short-circuit in a fixed order: existence/active/window, then the
    usage cap, then the discount value itself. The coupon's ``used_count`` is
    not touched here; see ``redeem``.
    """
    now = now or utcnow()
    if coupon is None or not coupon.is_active or not in_window(coupon, now):
        raise CouponNotFound()

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise UsageLimitReached()

    value = Decimal(coupon.discount_value)
    if value <= 0:
        raise InvalidCoupon()
    if coupon.discount_type == "percent":
        if value > 100:
            raise InvalidCoupon()
        discount = order_total * value / Decimal(100)
    elif coupon.discount_type == "fixed":
        discount = value
    else:
        raise InvalidCoupon("Unsupported discount_type")

    discount_amount = round_money(min(discount, order_total))
    final_total = round_money(max(order_total - discount_amount, Decimal(0)))
    return CouponQuote(coupon=coupon, order_total=order_total,
                       discount_amount=discount_amount, final_total=final_total)


def validate_coupon(db: Session, code: str, order_total: Optional[Decimal], now: Optional[datetime] = None) -> CouponQuote:
    code = (code or "").strip()
    if not code or order_total is None or not order_total.is_finite() or order_total <= 0:
        raise ValidationFailed("code and positive order_total are required")
    try:
        coupon = db.query(Coupon).filter(Coupon.code == code).first()
    except SQLAlchemyError as e:
        logger.error("coupon lookup failed: %s", e)
        raise StorageUnavailable("Failed to validate coupon") from e
    return evaluate(coupon, order_total, now)


def redeem(db: Session, coupon_id: int) -> bool:
    """Count one redemption, never past ``usage_limit``.

    A single conditional UPDATE, so two concurrent checkouts cannot both take
    the last use. Runs in the caller's transaction; returns False when the
    coupon was already exhausted (or is gone).
    """
    result = db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id,
               or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
