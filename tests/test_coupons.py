from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors as pg_errors

from storefront.coupons import evaluate_coupon

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def coupon(**overrides):
    row = {
        "id": "cpn-1",
        "code": "SAVE10",
        "description": "10% off",
        "discount_type": "percentage",
        "discount_value": 10,
        "min_order_amount": None,
        "max_discount": None,
        "usage_limit": None,
        "used_count": 0,
        "starts_at": None,
        "expires_at": None,
        "is_active": True,
    }
    row.update(overrides)
    return row


def test_percentage_discount():
    result = evaluate_coupon(coupon(), 1000, now=NOW)
    assert result.valid
    assert result.discount == 100.0
    assert result.new_total == 900.0


def test_percentage_discount_capped_by_max_discount():
    result = evaluate_coupon(coupon(discount_value=50, max_discount=200), 1000, now=NOW)
    assert result.discount == 200.0
    assert result.new_total == 800.0


def test_fixed_discount_never_exceeds_total():
    result = evaluate_coupon(coupon(discount_type="fixed", discount_value=500), 300, now=NOW)
    assert result.valid
    assert result.discount == 300.0
    assert result.new_total == 0.0


def test_discount_rounds_half_up():
    result = evaluate_coupon(coupon(discount_value=12.5), 100.1, now=NOW)
    # 12.5% of 100.10 = 12.5125
    assert result.discount == 12.51
    assert result.new_total == 87.59


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"is_active": False}, "This coupon is no longer active"),
        ({"starts_at": NOW + timedelta(days=1)}, "This coupon is not yet active"),
        ({"expires_at": NOW - timedelta(seconds=1)}, "This coupon has expired"),
        ({"usage_limit": 5, "used_count": 5}, "This coupon has reached its usage limit"),
        ({"min_order_amount": 500}, "Minimum order amount is ৳500"),
    ],
)
def test_rejections(overrides, message):
    result = evaluate_coupon(coupon(**overrides), 400, now=NOW)
    assert not result.valid
    assert result.error == message
    assert result.discount == 0.0


def test_first_failing_check_wins():
    # inactive and expired: the active check runs first
    result = evaluate_coupon(coupon(is_active=False, expires_at=NOW - timedelta(days=3)), 400, now=NOW)
    assert result.error == "This coupon is no longer active"


def test_naive_timestamps_are_treated_as_utc():
    expires = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert evaluate_coupon(coupon(expires_at=expires), 100, now=NOW).valid


def test_validate_endpoint_success(client, fake_db):
    fake_db.on("FROM coupons WHERE code", [coupon()])
    resp = client.post("/api/coupons/validate", json={"code": " save10 ", "cart_total": 750})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["valid"] is True
    assert body["discount"] == 75.0
    assert body["new_total"] == 675.0
    assert body["code"] == "SAVE10"
    assert fake_db.executed("FROM coupons WHERE code") == [("SAVE10",)]


def test_validate_endpoint_unknown_code(client, fake_db):
    resp = client.post("/api/coupons/validate", json={"code": "NOPE", "cart_total": 100})
    assert resp.status_code == 200
    assert resp.get_json() == {"valid": False, "error": "Invalid coupon code"}


def test_validate_endpoint_reports_minimum(client, fake_db):
    fake_db.on("FROM coupons WHERE code", [coupon(min_order_amount=500)])
    body = client.post("/api/coupons/validate", json={"code": "SAVE10", "cart_total": 100}).get_json()
    assert body["valid"] is False
    assert body["min_order_amount"] == 500.0


def test_validate_endpoint_requires_code(client, fake_db):
    resp = client.post("/api/coupons/validate", json={"cart_total": 100})
    assert resp.status_code == 400


def test_admin_create_duplicate_code(client, fake_db, admin_headers):
    fake_db.on("INSERT INTO coupons", error=pg_errors.UniqueViolation("duplicate key"))
    resp = client.post(
        "/api/admin/coupons",
        json={"code": "save10", "discount_type": "percentage", "discount_value": 10},
        headers=admin_headers,
    )
    assert resp.status_code == 409


def test_admin_coupons_require_staff(client, fake_db, customer_headers):
    assert client.get("/api/admin/coupons", headers=customer_headers).status_code == 403
    assert client.get("/api/admin/coupons").status_code == 401
