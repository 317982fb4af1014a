from psycopg import errors as pg_errors

from storefront import cache


def review_echo(sql, params):
    return [{
        "id": params[0], "product_id": params[1], "user_id": params[2], "rating": params[3],
        "title": params[4], "content": params[5], "is_verified": params[6], "is_approved": False,
    }]


def test_review_requires_login(client, fake_db):
    assert client.post("/api/reviews", json={"product_id": "p1", "rating": 5}).status_code == 401


def test_review_from_verified_buyer(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("jsonb_array_elements", [{"?column?": 1}])
    fake_db.on("INSERT INTO reviews", review_echo)
    resp = client.post(
        "/api/reviews",
        json={"product_id": "p1", "rating": 5, "title": "  Best kacchi  ", "content": "Tender and fragrant"},
        headers=customer_headers,
    )
    assert resp.status_code == 201
    review = resp.get_json()["review"]
    assert review["is_verified"] is True
    assert review["is_approved"] is False
    assert review["title"] == "Best kacchi"
    assert fake_db.executed("jsonb_array_elements") == [("user-1", "p1")]


def test_review_without_purchase_is_unverified(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("INSERT INTO reviews", review_echo)
    resp = client.post("/api/reviews", json={"product_id": "p1", "rating": 3}, headers=customer_headers)
    assert resp.get_json()["review"]["is_verified"] is False


def test_review_rating_bounds(client, fake_db, customer_headers):
    for rating in (0, 6, "5", 4.5, True):
        resp = client.post("/api/reviews", json={"product_id": "p1", "rating": rating}, headers=customer_headers)
        assert resp.status_code == 400


def test_review_unknown_product(client, fake_db, customer_headers):
    resp = client.post("/api/reviews", json={"product_id": "nope", "rating": 4}, headers=customer_headers)
    assert resp.status_code == 404


def test_second_review_rejected(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("SELECT id FROM reviews", [{"id": "r1"}])
    resp = client.post("/api/reviews", json={"product_id": "p1", "rating": 4}, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "You have already reviewed this product"


def test_concurrent_duplicate_hits_unique_index(client, fake_db, customer_headers):
    fake_db.on("SELECT id FROM products WHERE id", [{"id": "p1"}])
    fake_db.on("INSERT INTO reviews", error=pg_errors.UniqueViolation("reviews_product_user_key"))
    resp = client.post("/api/reviews", json={"product_id": "p1", "rating": 4}, headers=customer_headers)
    assert resp.status_code == 400


def test_reviews_feature_flag(client, fake_db, customer_headers, monkeypatch):
    monkeypatch.setenv("FEATURE_REVIEWS", "false")
    resp = client.post("/api/reviews", json={"product_id": "p1", "rating": 4}, headers=customer_headers)
    assert resp.status_code == 404


def test_admin_pending_filter(client, fake_db, admin_headers):
    client.get("/api/admin/reviews?status=pending", headers=admin_headers)
    (sql, params), = fake_db.queries
    assert "r.is_approved = FALSE" in sql
    assert params == (50, 0)


def test_approving_review_clears_catalog_cache(client, fake_db, admin_headers):
    cache.cache_set(f"{cache.CATALOG_PREFIX}:product:kacchi", {"name": "Kacchi"}, 60)
    fake_db.on("UPDATE reviews SET is_approved", [{"id": "r1", "is_approved": True}])
    resp = client.patch("/api/admin/reviews/r1", json={"is_approved": True}, headers=admin_headers)
    assert resp.status_code == 200
    assert cache.cache_get(f"{cache.CATALOG_PREFIX}:product:kacchi") is None


def test_admin_review_update_validation(client, fake_db, admin_headers):
    assert client.patch("/api/admin/reviews/r1", json={"is_approved": "yes"}, headers=admin_headers).status_code == 400
    assert client.patch("/api/admin/reviews/r1", json={"is_approved": False}, headers=admin_headers).status_code == 404
    assert client.delete("/api/admin/reviews/r1", headers=admin_headers).status_code == 404
