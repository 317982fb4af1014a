from storefront.catalog import is_in_stock


def product(**overrides):
    row = {"id": "p1", "name": "Kacchi Biryani", "slug": "kacchi-biryani", "price": 350,
           "quantity": 4, "track_quantity": True, "category_id": "cat-rice", "is_active": True}
    row.update(overrides)
    return row


def test_is_in_stock():
    assert is_in_stock({"track_quantity": True, "quantity": 1})
    assert not is_in_stock({"track_quantity": True, "quantity": 0})
    assert is_in_stock({"track_quantity": False, "quantity": 0})


def test_products_listing_paginates(client, fake_db):
    fake_db.on("COUNT(*) AS total FROM products", [{"total": 45}])
    fake_db.on("FROM products p WHERE", [product(), product(id="p2", quantity=0)])
    body = client.get("/api/products?page=2&limit=20&sort=price-low").get_json()
    assert body["total"] == 45
    assert body["total_pages"] == 3
    assert [p["in_stock"] for p in body["products"]] == [True, False]
    sql, params = fake_db.queries[0]
    assert "ORDER BY p.price ASC" in sql
    assert params[-2:] == (20, 20)


def test_products_listing_filters(client, fake_db):
    client.get("/api/products?category=rice&min_price=100&search=biryani")
    sql, params = fake_db.queries[0]
    assert "p.price >= %s" in sql
    assert params[:3] == ("rice", "rice", 100.0)
    assert "%biryani%" in params


def test_products_listing_is_cached(client, fake_db):
    client.get("/api/products?limit=5")
    client.get("/api/products?limit=5")
    assert len(fake_db.queries) == 2
    client.get("/api/products?limit=6")
    assert len(fake_db.queries) == 4


def test_product_detail(client, fake_db):
    fake_db.on("(p.slug = %s OR p.id = %s)", [product(category_name="Rice")])
    fake_db.on("FROM reviews r", [{"id": "r1", "rating": 5}, {"id": "r2", "rating": 4}])
    fake_db.on("p.category_id = %s AND p.id <> %s", [product(id="p3", slug="beef-tehari")])
    body = client.get("/api/products/kacchi-biryani").get_json()
    assert body["product"]["slug"] == "kacchi-biryani"
    assert body["average_rating"] == 4.5
    assert body["review_count"] == 2
    assert [p["id"] for p in body["related_products"]] == ["p3"]


def test_product_not_found(client, fake_db):
    resp = client.get("/api/products/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Product not found"}


def test_search(client, fake_db):
    fake_db.on("FROM products p WHERE", [product()])
    fake_db.on("SELECT DISTINCT c.id, c.name", [{"id": "cat-rice", "name": "Rice"}])
    body = client.get("/api/products/search?q=Kacchi").get_json()
    assert body["total"] == 1
    assert body["categories"] == [{"id": "cat-rice", "name": "Rice"}]
    assert fake_db.queries[0][1] == ("%kacchi%", "%kacchi%", "%kacchi%")


def test_categories_featured_flag(client, fake_db):
    fake_db.on("FROM categories c", [
        {"id": "c1", "name": "Rice", "slug": "rice", "product_count": 12},
        {"id": "c2", "name": "Drinks", "slug": "drinks", "product_count": 3},
    ])
    body = client.get("/api/categories?featured=true&limit=2").get_json()
    assert body["total"] == 2
    assert [c["is_featured"] for c in body["categories"]] == [True, False]
    assert fake_db.queries[0][1] == (2,)
