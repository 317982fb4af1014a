from psycopg import errors as pg_errors

from storefront.account import merge_preferences, profile_completion

ADDRESS = {"name": "Ayesha Rahman", "phone": "01711000000", "address": "House 12, Road 5", "city": "Dhaka"}


def test_profile_completion():
    assert profile_completion({"name": "A", "email": "a@example.com"}, False)["percentage"] == 40
    full = profile_completion({"name": "A", "email": "a@example.com", "phone": "017", "image": "/a.png"}, True)
    assert full["percentage"] == 100
    assert full["has_address"] is True


def test_merge_preferences_fills_defaults():
    assert merge_preferences(None) == {"language": "en", "currency": "BDT"}
    assert merge_preferences({"language": "bn"}) == {"language": "bn", "currency": "BDT"}


def test_profile_overview(client, fake_db, customer_headers):
    fake_db.on("preferences FROM users WHERE id", [{
        "id": "user-1", "name": "Ayesha Rahman", "email": "ayesha@example.com", "phone": None,
        "image": None, "role": "customer", "preferences": {"language": "bn"},
    }])
    fake_db.on("COALESCE(SUM(total), 0) AS total_spent", [{"order_count": 2, "total_spent": 1520}])
    fake_db.on("FROM wishlist WHERE user_id", [{"n": 3}])
    fake_db.on("FROM orders WHERE user_id = %s ORDER BY", [{
        "id": "o1", "order_number": "DC1", "status": "delivered", "total": 760, "items": [{}, {}], "created_at": None,
    }])
    body = client.get("/api/user/profile", headers=customer_headers).get_json()
    assert body["profile"]["preferences"] == {"language": "bn", "currency": "BDT"}
    assert body["stats"] == {"order_count": 2, "total_spent": 1520.0, "wishlist_count": 3}
    assert body["recent_orders"][0]["item_count"] == 2
    assert body["default_address"] is None
    assert body["profile_completion"]["percentage"] == 40


def test_profile_update_rejects_empty_name(client, fake_db, customer_headers):
    assert client.patch("/api/user/profile", json={"name": "  "}, headers=customer_headers).status_code == 400
    assert client.patch("/api/user/profile", json={"role": "admin"}, headers=customer_headers).status_code == 400


def test_profile_update(client, fake_db, customer_headers):
    fake_db.on("UPDATE users SET", [{"id": "user-1", "name": "Ayesha R.", "phone": "01711000000"}])
    resp = client.patch("/api/user/profile", json={"name": " Ayesha R. ", "phone": "01711000000"}, headers=customer_headers)
    assert resp.status_code == 200
    (params,) = fake_db.executed("UPDATE users SET")
    assert params == ("Ayesha R.", "01711000000", "user-1")


def test_preferences_update_merges(client, fake_db, customer_headers):
    fake_db.on("SELECT preferences FROM users WHERE id = %s FOR UPDATE", [{"preferences": {"language": "bn"}}])
    resp = client.put("/api/user/preferences", json={"currency": "usd"}, headers=customer_headers)
    assert resp.get_json()["preferences"] == {"language": "bn", "currency": "USD"}
    ((saved, user_id),) = fake_db.executed("UPDATE users SET preferences")
    assert saved.obj == {"language": "bn", "currency": "USD"}
    assert user_id == "user-1"


def test_preferences_validation(client, fake_db, customer_headers):
    assert client.put("/api/user/preferences", json={"language": "fr"}, headers=customer_headers).status_code == 400
    assert client.put("/api/user/preferences", json={"currency": "TAKA"}, headers=customer_headers).status_code == 400


def test_first_address_becomes_default(client, fake_db, customer_headers):
    fake_db.on("SELECT COUNT(*) AS n FROM addresses", [{"n": 0}])
    fake_db.on("INSERT INTO addresses", lambda sql, params: [{"id": params[0], "is_default": params[10]}])
    resp = client.post("/api/user/addresses", json=ADDRESS, headers=customer_headers)
    assert resp.status_code == 201
    assert resp.get_json()["address"]["is_default"] is True
    (params,) = fake_db.executed("INSERT INTO addresses")
    assert params[2] == "home"
    assert params[9] == "BD"
    assert fake_db.executed("UPDATE addresses SET is_default = FALSE") == []


def test_new_default_address_clears_previous(client, fake_db, customer_headers):
    fake_db.on("SELECT COUNT(*) AS n FROM addresses", [{"n": 2}])
    fake_db.on("INSERT INTO addresses", lambda sql, params: [{"id": params[0], "is_default": params[10]}])
    client.post("/api/user/addresses", json={**ADDRESS, "is_default": True}, headers=customer_headers)
    assert fake_db.executed("UPDATE addresses SET is_default = FALSE") == [("user-1",)]


def test_address_limit(client, fake_db, customer_headers):
    fake_db.on("SELECT COUNT(*) AS n FROM addresses", [{"n": 5}])
    resp = client.post("/api/user/addresses", json=ADDRESS, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Maximum 5 addresses allowed"


def test_address_requires_fields(client, fake_db, customer_headers):
    resp = client.post("/api/user/addresses", json={**ADDRESS, "city": ""}, headers=customer_headers)
    assert resp.status_code == 400


def test_update_address_of_other_user(client, fake_db, customer_headers):
    resp = client.put("/api/user/addresses", json={"id": "addr-9", "city": "Sylhet"}, headers=customer_headers)
    assert resp.status_code == 404


def test_deleting_default_promotes_oldest(client, fake_db, customer_headers):
    fake_db.on("DELETE FROM addresses", [{"is_default": True}])
    resp = client.delete("/api/user/addresses?id=addr-1", headers=customer_headers)
    assert resp.status_code == 200
    assert fake_db.executed("UPDATE addresses SET is_default = TRUE") == [("user-1",)]


def test_delete_missing_address(client, fake_db, customer_headers):
    assert client.delete("/api/user/addresses?id=addr-1", headers=customer_headers).status_code == 404
    assert client.delete("/api/user/addresses", headers=customer_headers).status_code == 400


def test_wishlist_lists_stock(client, fake_db, customer_headers):
    fake_db.on("FROM wishlist w", [{
        "id": "w1", "product_id": "p1", "created_at": None, "name": "Kacchi", "slug": "kacchi",
        "price": 350, "compare_at_price": None, "featured_image": None, "images": [],
        "quantity": 0, "track_quantity": True, "is_active": True,
    }])
    body = client.get("/api/user/wishlist", headers=customer_headers).get_json()
    assert body["count"] == 1
    assert body["items"][0]["product"]["in_stock"] is False
    assert body["items"][0]["product"]["price"] == 350


def test_wishlist_duplicate(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("INSERT INTO wishlist", error=pg_errors.UniqueViolation("wishlist_user_product_key"))
    resp = client.post("/api/user/wishlist", json={"product_id": "p1"}, headers=customer_headers)
    assert resp.status_code == 409


def test_wishlist_add_and_remove(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("INSERT INTO wishlist", [{"id": "w1", "product_id": "p1"}])
    assert client.post("/api/user/wishlist", json={"product_id": "p1"}, headers=customer_headers).status_code == 201
    fake_db.rules.clear()
    assert client.post("/api/user/wishlist", json={"product_id": "nope"}, headers=customer_headers).status_code == 404
    assert client.delete("/api/user/wishlist/p1", headers=customer_headers).status_code == 404


def test_wishlist_feature_flag(client, fake_db, customer_headers, monkeypatch):
    monkeypatch.setenv("FEATURE_WISHLIST", "0")
    assert client.post("/api/user/wishlist", json={"product_id": "p1"}, headers=customer_headers).status_code == 404
