import re
from datetime import datetime
from types import SimpleNamespace

import pytest

from storefront import orders
from storefront.errors import ValidationError
from storefront.orders import (
    generate_order_number,
    invoice_html,
    order_stats,
    phones_match,
    validate_order_request,
)


def checkout_body(**overrides):
    body = {
        "items": [{"product_id": "p1", "quantity": 2}],
        "customer_name": "Karim Uddin",
        "customer_phone": "01711-000000",
        "shipping_address": {"address": "House 12, Road 5", "city": "Dhaka"},
    }
    body.update(overrides)
    return body


def product_row(**overrides):
    row = {
        "id": "p1",
        "name": "Kacchi Biryani",
        "price": 350,
        "quantity": 10,
        "track_quantity": True,
        "is_active": True,
        "featured_image": "/kacchi.jpg",
        "category_id": "cat-rice",
    }
    row.update(overrides)
    return row


def echo_order(sql, params):
    # Mirror the INSERT parameters back as the stored row
    return [{
        "id": params[0],
        "order_number": params[1],
        "user_id": params[2],
        "status": params[3],
        "payment_status": params[4],
        "subtotal": params[8],
        "discount": params[9],
        "shipping_cost": params[10],
        "total": params[11],
        "currency": params[12],
        "customer_name": params[14],
        "customer_email": params[15],
        "customer_phone": params[16],
        "shipping_address": params[17].obj if params[17] is not None else None,
        "items": params[19].obj,
        "table_id": params[20],
    }]


def test_order_number_format():
    number = generate_order_number(now_ms=1717171717123)
    assert re.fullmatch(r"DC71717123[0-9A-Z]{4}", number)
    assert re.fullmatch(r"DC\d{8}[0-9A-Z]{4}", generate_order_number())


def test_validate_order_request_defaults():
    req = validate_order_request(checkout_body(coupon_code=" save10 "))
    assert req["order_type"] == "delivery"
    assert req["payment_method"] == "cod"
    assert req["payment_status"] == "pending"
    assert req["coupon_code"] == "SAVE10"
    assert req["items"] == [{"product_id": "p1", "variant_id": None, "quantity": 2}]


@pytest.mark.parametrize(
    "overrides",
    [
        {"items": []},
        {"customer_name": "  "},
        {"customer_phone": None},
        {"shipping_address": None},
    ],
)
def test_validate_order_request_missing_fields(overrides):
    with pytest.raises(ValidationError, match="Missing required fields"):
        validate_order_request(checkout_body(**overrides))


@pytest.mark.parametrize(
    "overrides",
    [
        {"items": [{"product_id": "p1", "quantity": 0}]},
        {"items": [{"product_id": "p1", "quantity": True}]},
        {"items": [{"quantity": 1}]},
        {"order_type": "drone"},
        {"payment_status": "refunded"},
        {"shipping_address": "Dhaka"},
        {"table_id": "t1"},
        {"order_type": "takeaway", "shipping_address": "Dhaka"},
    ],
)
def test_validate_order_request_rejects_bad_values(overrides):
    with pytest.raises(ValidationError):
        validate_order_request(checkout_body(**overrides))


def test_dine_in_order_needs_no_address():
    req = validate_order_request(checkout_body(order_type="dine_in", shipping_address=None, table_id="t1"))
    assert req["shipping_address"] is None
    assert req["table_id"] == "t1"


def test_phones_match_ignores_formatting_and_country_code():
    assert phones_match("+880 1711-000000", "01711000000")
    assert not phones_match("01711000001", "01711000000")
    assert not phones_match("", "01711000000")


def test_order_stats():
    rows = [
        {"status": "delivered", "total": 500},
        {"status": "pending", "total": 120.5},
        {"status": "cancelled", "total": 999},
        {"status": "confirmed", "total": 80},
    ]
    assert order_stats(rows) == {
        "total_orders": 4,
        "total_spent": 700.5,
        "pending_orders": 2,
        "delivered_orders": 1,
    }


def test_invoice_escapes_customer_text():
    html = invoice_html({
        "order_number": "DC12345678ABCD",
        "status": "delivered",
        "payment_status": "paid",
        "customer_name": "<script>x</script>",
        "items": [{"name": "Fuchka", "quantity": 2, "price": 60}],
        "subtotal": 120, "discount": 0, "shipping_cost": 60, "total": 180,
        "created_at": datetime(2026, 1, 5, 19, 30),
    })
    assert "&lt;script&gt;" in html
    assert "<script>" not in html
    assert "2026-01-05 19:30" in html
    assert "180.00" in html


def test_create_order_locks_prices_and_decrements_stock(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=checkout_body(order_type="delivery"))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["success"] is True
    assert body["order"]["order_number"].startswith("DC")
    # 2 x 350 + 60 delivery
    assert body["order"]["total"] == 760.0

    assert fake_db.executed("UPDATE products SET quantity = GREATEST") == [(2, "p1")]
    (insert,) = fake_db.executed("INSERT INTO orders")
    snapshot = insert[19].obj
    assert snapshot == [{
        "product_id": "p1",
        "variant_id": None,
        "category_id": "cat-rice",
        "name": "Kacchi Biryani",
        "price": 350.0,
        "quantity": 2,
        "image": "/kacchi.jpg",
        "total": 700.0,
    }]
    assert insert[2] is None
    assert fake_db.commits == 1


def test_takeaway_orders_skip_shipping(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=checkout_body(order_type="takeaway"))
    assert resp.get_json()["order"]["total"] == 700.0


def test_signed_in_orders_are_linked_to_user(client, fake_db, customer_headers):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    client.post("/api/orders", json=checkout_body(), headers=customer_headers)
    (insert,) = fake_db.executed("INSERT INTO orders")
    assert insert[2] == "user-1"


def test_create_order_applies_coupon_and_counts_use(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("FROM coupons WHERE code", [{
        "id": "cpn-1", "code": "FLAT100", "discount_type": "fixed", "discount_value": 100,
        "is_active": True, "usage_limit": None, "used_count": 0,
    }])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=checkout_body(coupon_code="flat100"))
    assert resp.status_code == 201
    assert resp.get_json()["order"]["total"] == 660.0
    assert fake_db.executed("UPDATE coupons SET used_count") == [("cpn-1",)]


def test_create_order_insufficient_stock(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row(quantity=1)])
    resp = client.post("/api/orders", json=checkout_body())
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Insufficient stock"
    assert body["details"] == {"product_name": "Kacchi Biryani", "requested": 2, "available": 1}
    assert fake_db.executed("INSERT INTO orders") == []
    assert fake_db.rollbacks == 1


def test_stock_check_sums_lines_for_the_same_product(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row(quantity=1)])
    body = checkout_body(items=[{"product_id": "p1", "quantity": 1}, {"product_id": "p1", "quantity": 1}])
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["details"] == {"product_name": "Kacchi Biryani", "requested": 2, "available": 1}
    assert fake_db.executed("INSERT INTO orders") == []
    assert fake_db.executed("UPDATE products SET quantity") == []


def test_dine_in_order_at_table(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("FROM tables WHERE id", [{"id": "t1"}])
    fake_db.on("INSERT INTO orders", echo_order)
    body = checkout_body(order_type="dine_in", shipping_address=None, table_id="t1")
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 201
    assert resp.get_json()["order"]["total"] == 700.0
    (insert,) = fake_db.executed("INSERT INTO orders")
    assert insert[17] is None
    assert insert[20] == "t1"


def test_dine_in_order_unknown_table(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    body = checkout_body(order_type="dine_in", table_id="t404")
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Table not found"
    assert fake_db.executed("INSERT INTO orders") == []


def test_table_on_delivery_order_rejected(client, fake_db):
    resp = client.post("/api/orders", json=checkout_body(table_id="t1"))
    assert resp.status_code == 400
    assert fake_db.queries == []


def test_untracked_stock_is_not_checked(client, fake_db):
    fake_db.on("FROM products WHERE id = ANY", [product_row(quantity=0, track_quantity=False)])
    fake_db.on("INSERT INTO orders", echo_order)
    assert client.post("/api/orders", json=checkout_body()).status_code == 201
    assert fake_db.executed("UPDATE products SET quantity") == []


def test_create_order_unknown_product(client, fake_db):
    resp = client.post("/api/orders", json=checkout_body())
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Product not found: p1"


def test_paid_order_requires_verified_payment(client, fake_db, monkeypatch):
    resp = client.post("/api/orders", json=checkout_body(payment_status="paid"))
    assert resp.status_code == 402

    monkeypatch.setattr(orders.payments, "succeeded_intent", lambda intent_id: None)
    resp = client.post("/api/orders", json=checkout_body(payment_status="paid", transaction_id="pi_123"))
    assert resp.status_code == 402
    assert fake_db.queries == []


def paid_checkout(monkeypatch, amount=76000, currency="bdt"):
    intent = SimpleNamespace(id="pi_123", status="succeeded", amount=amount, currency=currency)
    monkeypatch.setattr(orders.payments, "succeeded_intent", lambda intent_id: intent if intent_id == "pi_123" else None)
    return checkout_body(payment_status="paid", payment_method="stripe", transaction_id="pi_123")


def test_paid_order_is_confirmed(client, fake_db, monkeypatch):
    body = paid_checkout(monkeypatch)
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 201
    (insert,) = fake_db.executed("INSERT INTO orders")
    assert insert[3] == "confirmed"
    assert insert[6] == "pi_123"
    assert fake_db.executed("FROM orders WHERE transaction_id") == [("pi_123",)]


@pytest.mark.parametrize("amount, currency", [(100, "bdt"), (75999, "bdt"), (76000, "usd")])
def test_paid_order_must_match_the_charged_amount(client, fake_db, monkeypatch, amount, currency):
    body = paid_checkout(monkeypatch, amount=amount, currency=currency)
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 402
    assert resp.get_json()["error"] == "Payment amount does not match order total"
    assert resp.get_json()["details"]["expected"] == 76000
    assert fake_db.executed("INSERT INTO orders") == []
    assert fake_db.executed("UPDATE products SET quantity") == []
    assert fake_db.commits == 0


def test_payment_cannot_pay_for_two_orders(client, fake_db, monkeypatch):
    body = paid_checkout(monkeypatch)
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("FROM orders WHERE transaction_id", [{"order_number": "DC11111111AAAA"}])
    fake_db.on("INSERT INTO orders", echo_order)
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "Payment has already been used for another order"
    assert fake_db.executed("INSERT INTO orders") == []
    assert fake_db.rollbacks == 1


def test_guest_checkout_can_be_disabled(client, fake_db, monkeypatch):
    monkeypatch.setenv("FEATURE_GUEST_CHECKOUT", "false")
    assert client.post("/api/orders", json=checkout_body()).status_code == 401


def test_confirmation_email_sent_for_orders_with_email(client, fake_db, monkeypatch):
    sent = []

    class Result:
        success = True
        error = None

    monkeypatch.setattr(orders.mailer, "send_order_confirmation_email", lambda order: sent.append(order) or Result())
    fake_db.on("FROM products WHERE id = ANY", [product_row()])
    fake_db.on("INSERT INTO orders", echo_order)
    client.post("/api/orders", json=checkout_body(customer_email="karim@example.com"))
    assert [o["customer_email"] for o in sent] == ["karim@example.com"]


def test_track_order_checks_phone(client, fake_db):
    fake_db.on("FROM orders WHERE order_number", [{
        "id": "o1", "order_number": "DC12345678ABCD", "user_id": "user-1", "transaction_id": "pi_1",
        "status": "pending", "customer_phone": "01711000000", "total": 760,
    }])
    ok = client.get("/api/orders/track", query_string={"order_number": "dc12345678abcd", "phone": "+8801711000000"})
    assert ok.status_code == 200
    order = ok.get_json()["order"]
    assert "user_id" not in order and "transaction_id" not in order
    assert fake_db.executed("FROM orders WHERE order_number")[0] == ("DC12345678ABCD",)

    wrong = client.get("/api/orders/track?order_number=DC12345678ABCD&phone=01999999999")
    assert wrong.status_code == 404


def test_customer_can_only_cancel_pending_orders(client, fake_db, customer_headers):
    fake_db.on("FROM orders WHERE id = %s AND user_id = %s FOR UPDATE", [{
        "id": "o1", "order_number": "DC1", "status": "shipped", "items": [],
    }])
    resp = client.post("/api/user/orders/o1/cancel", headers=customer_headers)
    assert resp.status_code == 400


def test_cancel_restores_stock(client, fake_db, customer_headers):
    fake_db.on("FROM orders WHERE id = %s AND user_id = %s FOR UPDATE", [{
        "id": "o1", "order_number": "DC1", "status": "pending",
        "items": [{"product_id": "p1", "quantity": 2}, {"product_id": "p1", "quantity": 1}],
    }])
    fake_db.on("UPDATE orders SET status = 'cancelled'", [{"id": "o1", "status": "cancelled"}])
    resp = client.post("/api/user/orders/o1/cancel", headers=customer_headers)
    assert resp.status_code == 200
    assert fake_db.executed("UPDATE products SET quantity = quantity +") == [(3, "p1")]


def test_admin_status_change_to_cancelled_restores_stock(client, fake_db, admin_headers):
    current = {"id": "o1", "order_number": "DC1", "status": "confirmed", "customer_email": None,
               "items": [{"product_id": "p1", "quantity": 2}]}
    fake_db.on("FROM orders WHERE id = %s FOR UPDATE", [current])
    fake_db.on("UPDATE orders SET", [{**current, "status": "cancelled"}])
    resp = client.patch("/api/admin/orders/o1", json={"status": "cancelled"}, headers=admin_headers)
    assert resp.status_code == 200
    assert fake_db.executed("UPDATE products SET quantity = quantity +") == [(2, "p1")]


@pytest.mark.parametrize("closed", ["cancelled", "refunded"])
def test_admin_cannot_reopen_closed_order(client, fake_db, admin_headers, closed):
    current = {"id": "o1", "order_number": "DC1", "status": closed, "customer_email": None,
               "items": [{"product_id": "p1", "quantity": 2}]}
    fake_db.on("FROM orders WHERE id = %s FOR UPDATE", [current])
    resp = client.patch("/api/admin/orders/o1", json={"status": "pending"}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == f"A {closed} order cannot be reopened"
    assert fake_db.executed("UPDATE orders SET") == []
    assert fake_db.executed("UPDATE products SET quantity") == []


def test_refunding_a_cancelled_order_keeps_stock(client, fake_db, admin_headers):
    current = {"id": "o1", "order_number": "DC1", "status": "cancelled", "customer_email": None,
               "items": [{"product_id": "p1", "quantity": 2}]}
    fake_db.on("FROM orders WHERE id = %s FOR UPDATE", [current])
    fake_db.on("UPDATE orders SET", [{**current, "status": "refunded"}])
    resp = client.patch("/api/admin/orders/o1", json={"status": "refunded"}, headers=admin_headers)
    assert resp.status_code == 200
    assert fake_db.executed("UPDATE products SET quantity") == []


def test_admin_order_update_validation(client, fake_db, admin_headers, customer_headers):
    assert client.patch("/api/admin/orders/o1", json={"status": "lost"}, headers=admin_headers).status_code == 400
    assert client.patch("/api/admin/orders/o1", json={}, headers=admin_headers).status_code == 400
    assert client.patch("/api/admin/orders/o1", json={"status": "ready"}, headers=admin_headers).status_code == 404
    assert client.patch("/api/admin/orders/o1", json={"status": "ready"}, headers=customer_headers).status_code == 403


def test_user_order_stats_endpoint(client, fake_db, customer_headers):
    fake_db.on("SELECT status, total FROM orders", [{"status": "delivered", "total": 300}])
    body = client.get("/api/user/orders/stats", headers=customer_headers).get_json()
    assert body["total_spent"] == 300.0
    assert body["delivered_orders"] == 1
