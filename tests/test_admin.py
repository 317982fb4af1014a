import pytest
from psycopg import errors as pg_errors

from conftest import bearer
from storefront import cache
from storefront.admin import PRODUCT_FIELDS, clean_columns


def test_clean_columns_coerces_types():
    values = clean_columns(
        {
            "name": "Beef Tehari", "price": "280", "quantity": "15", "is_featured": "true",
            "track_quantity": 0, "slug": "Beef Tehari Special", "category_id": "", "images": ["/a.jpg"],
            "unknown_column": "dropped",
        },
        PRODUCT_FIELDS,
    )
    assert values["price"] == 280.0
    assert values["quantity"] == 15
    assert values["is_featured"] is True
    assert values["track_quantity"] is False
    assert values["slug"] == "beef-tehari-special"
    assert values["category_id"] is None
    assert values["images"].obj == ["/a.jpg"]
    assert "unknown_column" not in values


@pytest.mark.parametrize(
    "body",
    [
        {"price": -1},
        {"price": "cheap"},
        {"quantity": -5},
        {"images": "/a.jpg"},
        {"name": ""},
        {"spiciness_level": 4},
    ],
)
def test_clean_columns_rejects(body):
    with pytest.raises(ValueError):
        clean_columns(body, PRODUCT_FIELDS)


def test_create_product(client, fake_db, admin_headers):
    fake_db.on("INSERT INTO products", lambda sql, params: [{"id": params[0], "name": "Beef Tehari", "slug": "beef-tehari",
                                                              "price": 280, "quantity": 0, "track_quantity": False}])
    cache.cache_set(f"{cache.CATALOG_PREFIX}:products:page=1", {"products": []}, 60)
    resp = client.post("/api/admin/products", json={"name": "Beef Tehari", "price": 280}, headers=admin_headers)
    assert resp.status_code == 201
    (sql, params), = [(s, p) for s, p in fake_db.queries if "INSERT INTO products" in s]
    assert "slug" in sql
    assert "beef-tehari" in params
    assert cache.cache_get(f"{cache.CATALOG_PREFIX}:products:page=1") is None


def test_create_product_conflicts(client, fake_db, admin_headers):
    fake_db.on("INSERT INTO products", error=pg_errors.UniqueViolation("products_slug_key"), once=True)
    resp = client.post("/api/admin/products", json={"name": "Beef Tehari", "price": 280}, headers=admin_headers)
    assert resp.status_code == 409

    fake_db.on("INSERT INTO products", error=pg_errors.ForeignKeyViolation("products_category_id_fkey"))
    resp = client.post(
        "/api/admin/products", json={"name": "Beef Tehari", "price": 280, "category_id": "cat-x"}, headers=admin_headers
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Category not found"


def test_create_product_requires_name_and_price(client, fake_db, admin_headers):
    assert client.post("/api/admin/products", json={"name": "Tea"}, headers=admin_headers).status_code == 400
    assert client.post("/api/admin/products", json={"price": 20}, headers=admin_headers).status_code == 400


def test_update_missing_product(client, fake_db, admin_headers):
    resp = client.patch("/api/admin/products/p404", json={"price": 10}, headers=admin_headers)
    assert resp.status_code == 404


def test_staff_can_manage_products(client, fake_db):
    staff = bearer(role="staff", user_id="staff-1")
    fake_db.on("DELETE FROM products", rowcount=1)
    assert client.delete("/api/admin/products/p1", headers=staff).status_code == 200


def test_delete_category_in_use(client, fake_db, admin_headers):
    fake_db.on("COUNT(*) AS n FROM products WHERE category_id", [{"n": 3}])
    resp = client.delete("/api/admin/categories/cat-rice", headers=admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Category is used by 3 product(s)"
    assert fake_db.executed("DELETE FROM categories") == []


def test_delete_empty_category(client, fake_db, admin_headers):
    fake_db.on("COUNT(*) AS n FROM products WHERE category_id", [{"n": 0}])
    fake_db.on("DELETE FROM categories", rowcount=1)
    assert client.delete("/api/admin/categories/cat-rice", headers=admin_headers).status_code == 200
    assert fake_db.commits == 1


def test_category_cannot_be_own_parent(client, fake_db, admin_headers):
    resp = client.patch("/api/admin/categories/cat-1", json={"parent_id": "cat-1"}, headers=admin_headers)
    assert resp.status_code == 400


def test_admin_cannot_demote_self(client, fake_db, admin_headers):
    resp = client.patch("/api/admin/customers/admin-1", json={"role": "customer"}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.patch("/api/admin/customers/user-2", json={"role": "wizard"}, headers=admin_headers)
    assert resp.status_code == 400


def test_admin_changes_role(client, fake_db, admin_headers):
    fake_db.on("UPDATE users SET role", [{"id": "user-2", "name": "Rafi", "email": "rafi@example.com", "role": "chef"}])
    resp = client.patch("/api/admin/customers/user-2", json={"role": "chef"}, headers=admin_headers)
    assert resp.get_json()["customer"]["role"] == "chef"


def test_settings_defaults_and_overrides(client, fake_db, admin_headers):
    fake_db.on("FROM site_settings", [{"settings": {"enable_bkash": True}}])
    settings = client.get("/api/admin/settings", headers=admin_headers).get_json()["settings"]
    assert settings["enable_bkash"] is True
    assert settings["store_name"] == "DC Store"
    assert settings["free_delivery_threshold"] == 1000


def test_save_settings(client, fake_db, admin_headers):
    resp = client.post("/api/admin/settings", json={"enable_cod": False}, headers=admin_headers)
    assert resp.get_json()["settings"]["enable_cod"] is False
    ((saved, user_id),) = fake_db.executed("INSERT INTO site_settings")
    assert saved.obj == {"enable_cod": False}
    assert user_id == "admin-1"

    resp = client.post("/api/admin/settings", json={"launch_rockets": True}, headers=admin_headers)
    assert resp.status_code == 400
