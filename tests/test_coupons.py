from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from storefront.coupons import evaluate, redeem, validate_coupon
from storefront.errors import CouponNotFound, InvalidCoupon, UsageLimitReached, ValidationFailed
from storefront.models import Coupon

NOW = datetime(2025, 6, 1, 12, 0, 0)


def coupon(**kw):
    fields = dict(code="SAVE10", discount_type="percent", discount_value=Decimal("10"), is_active=True,
                  valid_from=None, valid_to=None, usage_limit=None, used_count=0)
    fields.update(kw)
    return Coupon(**fields)


def test_percent_discount():
    quote = evaluate(coupon(), Decimal("200.00"), NOW)
    assert quote.discount_amount == Decimal("20.00")
    assert quote.final_total == Decimal("180.00")


def test_fixed_discount_is_capped_at_order_total():
    quote = evaluate(coupon(discount_type="fixed", discount_value=Decimal("50")), Decimal("30.00"), NOW)
    assert quote.discount_amount == Decimal("30.00")
    assert quote.final_total == Decimal("0.00")


def test_rounding_is_half_up():
    quote = evaluate(coupon(discount_value=Decimal("12.5")), Decimal("0.20"), NOW)
    assert quote.discount_amount == Decimal("0.03")
    assert quote.final_total == Decimal("0.17")


@pytest.mark.parametrize("kw", [
    {"is_active": False},
    {"valid_from": NOW + timedelta(days=1)},
    {"valid_to": NOW - timedelta(seconds=1)},
])
def test_unavailable_coupon_is_not_found(kw):
    with pytest.raises(CouponNotFound):
        evaluate(coupon(**kw), Decimal("100"), NOW)


def test_missing_coupon_is_not_found():
    with pytest.raises(CouponNotFound):
        evaluate(None, Decimal("100"), NOW)


def test_exhausted_coupon():
    with pytest.raises(UsageLimitReached):
        evaluate(coupon(usage_limit=3, used_count=3), Decimal("100"), NOW)


def test_availability_is_checked_before_usage():
    with pytest.raises(CouponNotFound):
        evaluate(coupon(is_active=False, usage_limit=1, used_count=1), Decimal("100"), NOW)


@pytest.mark.parametrize("kw", [
    {"discount_value": Decimal("0")},
    {"discount_value": Decimal("150")},
    {"discount_type": "bogus"},
])
def test_invalid_discount_values(kw):
    with pytest.raises(InvalidCoupon):
        evaluate(coupon(**kw), Decimal("100"), NOW)


def test_validate_requires_code_and_positive_total(db):
    with pytest.raises(ValidationFailed):
        validate_coupon(db, "  ", Decimal("10"))
    with pytest.raises(ValidationFailed):
        validate_coupon(db, "SAVE10", Decimal("0"))
    with pytest.raises(ValidationFailed):
        validate_coupon(db, "SAVE10", None)


def test_redeem_never_passes_usage_limit(db):
    c = coupon(usage_limit=2, used_count=1)
    db.add(c)
    db.commit()

    assert redeem(db, c.id) is True
    assert redeem(db, c.id) is False
    db.commit()
    db.refresh(c)
    assert c.used_count == 2


def test_redeem_unlimited(db):
    c = coupon()
    db.add(c)
    db.commit()
    for _ in range(3):
        assert redeem(db, c.id)
    db.commit()
    db.refresh(c)
    assert c.used_count == 3


def test_validate_endpoint(client, db):
    db.add(coupon(code="SPRING"))
    db.commit()

    resp = client.post("/coupons/validate", json={"code": "SPRING", "order_total": "59.90"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["code"] == "SPRING"
    assert data["discount_amount"] == 5.99
    assert data["final_total"] == 53.91


def test_validate_endpoint_errors(client, db):
    db.add(coupon(code="USEDUP", usage_limit=1, used_count=1))
    db.commit()

    resp = client.post("/coupons/validate", json={"code": "NOPE", "order_total": 10})
    assert resp.status_code == 404
    assert resp.json() == {"status": "error", "message": "Coupon not found or not currently valid"}

    resp = client.post("/coupons/validate", json={"code": "USEDUP", "order_total": 10})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Coupon usage limit reached"

    resp = client.post("/coupons/validate", json={"code": "", "order_total": 10})
    assert resp.status_code == 400
