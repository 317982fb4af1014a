from flask import jsonify, request
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from . import db
from .auth import ROLES, STAFF_ROLES, current_user_id, requires_auth
from .cache import invalidate_catalog
from .catalog import PRODUCT_COLUMNS, product_card
from .config import get_config
from .utils import as_bool, json_body, new_id, page_args, serialize, slugify

PRODUCT_FIELDS = (
    "name", "slug", "description", "short_description", "price", "compare_at_price",
    "cost_price", "sku", "quantity", "low_stock_threshold", "track_quantity", "category_id",
    "images", "featured_image", "is_active", "is_featured", "is_vegetarian", "is_vegan",
    "is_gluten_free", "spiciness_level", "preparation_time",
)
CATEGORY_FIELDS = ("name", "slug", "description", "image", "parent_id", "sort_order", "is_active")
JSON_FIELDS = ("images",)
NUMERIC_FIELDS = ("price", "compare_at_price", "cost_price")
INT_FIELDS = ("quantity", "low_stock_threshold", "spiciness_level", "preparation_time", "sort_order")


def default_settings() -> dict:
    cfg = get_config()
    return {
        "store_name": cfg.BRAND_NAME,
        "store_email": cfg.CONTACT_EMAIL,
        "store_phone": cfg.CONTACT_PHONE,
        "store_address": "Dhaka, Bangladesh",
        "delivery_inside_dhaka": cfg.DEFAULT_SHIPPING,
        "delivery_outside_dhaka": cfg.EXPRESS_SHIPPING,
        "free_delivery_threshold": cfg.FREE_SHIPPING_THRESHOLD,
        "enable_free_delivery": True,
        "enable_cod": True,
        "enable_stripe": True,
        "enable_bkash": False,
        "notify_new_order": True,
        "notify_low_stock": True,
        "low_stock_threshold": 5,
    }


def clean_columns(body: dict, allowed: tuple[str, ...]) -> dict:
    """Keep whitelisted columns and coerce them to their storage types."""
    values = {}
    for key in allowed:
        if key not in body:
            continue
        value = body[key]
        try:
            if key in NUMERIC_FIELDS and value is not None:
                value = float(value)
                if value < 0:
                    raise ValueError
            elif key in INT_FIELDS and value is not None:
                value = int(value)
                if value < 0:
                    raise ValueError
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be a non-negative number")
        if key.startswith("is_") or key == "track_quantity":
            value = bool(as_bool(value))
        elif key in JSON_FIELDS:
            if not isinstance(value, list):
                raise ValueError(f"{key} must be a list")
            value = Jsonb(value)
        elif key == "slug" and value:
            value = slugify(str(value))
        elif key in ("category_id", "parent_id"):
            value = value or None
        values[key] = value
    for key in ("name", "price"):
        if key in values and values[key] in (None, ""):
            raise ValueError(f"{key} cannot be empty")
    if "spiciness_level" in values and values["spiciness_level"] is not None and values["spiciness_level"] > 3:
        raise ValueError("spiciness_level must be between 0 and 3")
    return values


def _insert(table: str, values: dict) -> dict:
    columns = ", ".join(values)
    placeholders = ", ".join(["%s"] * len(values))
    return db.execute(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
        tuple(values.values()),
        returning=True,
    )


def _update(table: str, row_id: str, values: dict) -> dict | None:
    assignments = ", ".join(f"{k} = %s" for k in values)
    return db.execute(
        f"UPDATE {table} SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
        (*values.values(), row_id),
        returning=True,
    )


def register_admin(app):
    # Products
    @app.get("/api/admin/products")
    @requires_auth(STAFF_ROLES)
    def admin_products():
        page, limit, offset = page_args(default_limit=20)
        where, params = ["TRUE"], []
        search = (request.args.get("search") or "").strip()
        if search:
            where.append("(p.name ILIKE %s OR p.sku ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        if request.args.get("category"):
            where.append("p.category_id = %s")
            params.append(request.args["category"])
        status = request.args.get("status")
        if status in ("active", "inactive"):
            where.append("p.is_active = %s")
            params.append(status == "active")
        where_sql = " AND ".join(where)
        rows = db.fetch_all(
            f"""
            SELECT {PRODUCT_COLUMNS}, p.cost_price, c.name AS category_name
            FROM products p LEFT JOIN categories c ON c.id = p.category_id
            WHERE {where_sql}
            ORDER BY p.created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        count = db.fetch_one(f"SELECT COUNT(*) AS total FROM products p WHERE {where_sql}", tuple(params))
        total = int((count or {}).get("total") or 0)
        return jsonify({
            "products": [product_card(r) for r in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "total_pages": (total + limit - 1) // limit},
        })

    @app.get("/api/admin/products/<product_id>")
    @requires_auth(STAFF_ROLES)
    def admin_product(product_id: str):
        row = db.fetch_one(
            f"SELECT {PRODUCT_COLUMNS}, p.cost_price FROM products p WHERE p.id = %s",
            (product_id,),
        )
        if not row:
            return jsonify({"error": "Product not found"}), 404
        variants = db.fetch_all(
            "SELECT * FROM product_variants WHERE product_id = %s ORDER BY created_at", (product_id,)
        )
        product = product_card(row)
        product["variants"] = serialize(variants)
        return jsonify({"product": product})

    @app.post("/api/admin/products")
    @requires_auth(STAFF_ROLES)
    def admin_create_product():
        body = json_body()
        name = str(body.get("name") or "").strip()
        if not name or body.get("price") is None:
            return jsonify({"error": "name and price are required"}), 400
        try:
            values = clean_columns(body, PRODUCT_FIELDS)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        values["name"] = name
        values["slug"] = values.get("slug") or slugify(name)
        values = {"id": new_id(), **values}
        try:
            row = _insert("products", values)
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A product with this slug already exists"}), 409
        except pg_errors.ForeignKeyViolation:
            return jsonify({"error": "Category not found"}), 400
        invalidate_catalog()
        app.logger.info("product %s created by %s", row["id"], current_user_id())
        return jsonify({"success": True, "product": product_card(row)}), 201

    @app.patch("/api/admin/products/<product_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_product(product_id: str):
        try:
            values = clean_columns(json_body(), PRODUCT_FIELDS)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        if not values:
            return jsonify({"error": "No fields to update"}), 400
        try:
            row = _update("products", product_id, values)
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A product with this slug already exists"}), 409
        except pg_errors.ForeignKeyViolation:
            return jsonify({"error": "Category not found"}), 400
        if not row:
            return jsonify({"error": "Product not found"}), 404
        invalidate_catalog()
        return jsonify({"success": True, "product": product_card(row)})

    @app.delete("/api/admin/products/<product_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_product(product_id: str):
        if not db.execute("DELETE FROM products WHERE id = %s", (product_id,)):
            return jsonify({"error": "Product not found"}), 404
        invalidate_catalog()
        app.logger.info("product %s deleted by %s", product_id, current_user_id())
        return jsonify({"success": True})

    # Categories
    @app.get("/api/admin/categories")
    @requires_auth(STAFF_ROLES)
    def admin_categories():
        rows = db.fetch_all(
            """
            SELECT c.*, COUNT(p.id) AS product_count
            FROM categories c LEFT JOIN products p ON p.category_id = c.id
            GROUP BY c.id
            ORDER BY c.sort_order ASC, c.name ASC
            """
        )
        return jsonify({"categories": serialize(rows)})

    @app.post("/api/admin/categories")
    @requires_auth(STAFF_ROLES)
    def admin_create_category():
        body = json_body()
        name = str(body.get("name") or "").strip()
        if not name:
            return jsonify({"error": "name is required"}), 400
        try:
            values = clean_columns(body, CATEGORY_FIELDS)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        values["name"] = name
        values["slug"] = values.get("slug") or slugify(name)
        try:
            row = _insert("categories", {"id": new_id(), **values})
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A category with this slug already exists"}), 409
        invalidate_catalog()
        return jsonify({"success": True, "category": serialize(row)}), 201

    @app.patch("/api/admin/categories/<category_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_category(category_id: str):
        try:
            values = clean_columns(json_body(), CATEGORY_FIELDS)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        if not values:
            return jsonify({"error": "No fields to update"}), 400
        if values.get("parent_id") == category_id:
            return jsonify({"error": "A category cannot be its own parent"}), 400
        try:
            row = _update("categories", category_id, values)
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A category with this slug already exists"}), 409
        if not row:
            return jsonify({"error": "Category not found"}), 404
        invalidate_catalog()
        return jsonify({"success": True, "category": serialize(row)})

    @app.delete("/api/admin/categories/<category_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_category(category_id: str):
        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT COUNT(*) AS n FROM products WHERE category_id = %s", (category_id,))
                    in_use = int(cur.fetchone()["n"])
                    if in_use:
                        return in_use, 0
                    cur.execute("DELETE FROM categories WHERE id = %s", (category_id,))
                    deleted = cur.rowcount
                conn.commit()
                return 0, deleted

        in_use, deleted = db.run_db(_work)
        if in_use:
            return jsonify({"error": f"Category is used by {in_use} product(s)"}), 400
        if not deleted:
            return jsonify({"error": "Category not found"}), 404
        invalidate_catalog()
        return jsonify({"success": True})

    # Customers
    @app.get("/api/admin/customers")
    @requires_auth(STAFF_ROLES)
    def admin_customers():
        page, limit, offset = page_args(default_limit=20)
        where, params = ["TRUE"], []
        search = (request.args.get("search") or "").strip()
        if search:
            where.append("(u.name ILIKE %s OR u.email ILIKE %s OR u.phone ILIKE %s)")
            params.extend([f"%{search}%"] * 3)
        if request.args.get("role") in ROLES:
            where.append("u.role = %s")
            params.append(request.args["role"])
        where_sql = " AND ".join(where)
        rows = db.fetch_all(
            f"""
            SELECT u.id, u.name, u.email, u.phone, u.image, u.role, u.created_at,
                   COUNT(o.id) AS order_count, COALESCE(SUM(o.total), 0) AS total_spent
            FROM users u LEFT JOIN orders o ON o.user_id = u.id
            WHERE {where_sql}
            GROUP BY u.id
            ORDER BY u.created_at DESC
            LIMIT %s OFFSET %s
            """,
            (*params, limit, offset),
        )
        count = db.fetch_one(f"SELECT COUNT(*) AS total FROM users u WHERE {where_sql}", tuple(params))
        total = int((count or {}).get("total") or 0)
        return jsonify({
            "customers": serialize(rows),
            "pagination": {"page": page, "limit": limit, "total": total, "total_pages": (total + limit - 1) // limit},
        })

    @app.get("/api/admin/customers/<user_id>")
    @requires_auth(STAFF_ROLES)
    def admin_customer(user_id: str):
        user = db.fetch_one(
            "SELECT id, name, email, phone, image, role, auth_provider, created_at FROM users WHERE id = %s",
            (user_id,),
        )
        if not user:
            return jsonify({"error": "Customer not found"}), 404
        orders = db.fetch_all(
            """
            SELECT id, order_number, status, payment_status, total, created_at
            FROM orders WHERE user_id = %s ORDER BY created_at DESC LIMIT 10
            """,
            (user_id,),
        )
        addresses = db.fetch_all("SELECT * FROM addresses WHERE user_id = %s ORDER BY is_default DESC", (user_id,))
        return jsonify({"customer": serialize(user), "orders": serialize(orders), "addresses": serialize(addresses)})

    @app.patch("/api/admin/customers/<user_id>")
    @requires_auth("admin")
    def admin_update_customer(user_id: str):
        role = json_body().get("role")
        if role not in ROLES:
            return jsonify({"error": f"role must be one of: {', '.join(ROLES)}"}), 400
        if user_id == current_user_id() and role != "admin":
            return jsonify({"error": "You cannot remove your own admin role"}), 400
        row = db.execute(
            "UPDATE users SET role = %s, updated_at = NOW() WHERE id = %s RETURNING id, name, email, role",
            (role, user_id),
            returning=True,
        )
        if not row:
            return jsonify({"error": "Customer not found"}), 404
        app.logger.info("user %s role set to %s by %s", user_id, role, current_user_id())
        return jsonify({"success": True, "customer": serialize(row)})

    # Settings
    @app.get("/api/admin/settings")
    @requires_auth("admin")
    def admin_get_settings():
        row = db.fetch_one("SELECT settings FROM site_settings WHERE id = 'default'")
        return jsonify({"settings": {**default_settings(), **((row or {}).get("settings") or {})}})

    @app.post("/api/admin/settings")
    @requires_auth("admin")
    def admin_save_settings():
        body = json_body()
        unknown = sorted(set(body) - set(default_settings()))
        if unknown:
            return jsonify({"error": f"Unknown settings: {', '.join(unknown)}"}), 400
        db.execute(
            """
            INSERT INTO site_settings (id, settings, updated_by) VALUES ('default', %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                settings = EXCLUDED.settings, updated_by = EXCLUDED.updated_by, updated_at = NOW()
            """,
            (Jsonb(body), current_user_id()),
        )
        return jsonify({"success": True, "settings": {**default_settings(), **body}})
