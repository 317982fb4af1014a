"""Customer self-service: profile, preferences, saved addresses and wishlist."""
from flask import jsonify, request
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from . import db
from .auth import USER_COLUMNS, current_user_id, requires_auth
from .catalog import is_in_stock
from .config import get_config
from .utils import json_body, new_id, serialize

MAX_ADDRESSES = 5
LANGUAGES = ("en", "bn")
ADDRESS_FIELDS = ("label", "name", "phone", "address", "city", "state", "postal_code", "country")
REQUIRED_ADDRESS_FIELDS = ("name", "phone", "address", "city")
PROFILE_FIELDS = ("name", "phone", "image")


def default_preferences() -> dict:
    return {"language": "en", "currency": get_config().CURRENCY_CODE}


def merge_preferences(saved: dict | None) -> dict:
    return {**default_preferences(), **(saved or {})}


def profile_completion(user: dict, has_address: bool) -> dict:
    checks = {
        "has_name": bool(user.get("name")),
        "has_email": bool(user.get("email")),
        "has_phone": bool(user.get("phone")),
        "has_address": has_address,
        "has_image": bool(user.get("image")),
    }
    checks["percentage"] = 20 * sum(1 for v in checks.values() if v)
    return checks


def _clean_address(body: dict) -> dict:
    values = {}
    for key in ADDRESS_FIELDS:
        if key in body:
            value = body[key]
            values[key] = str(value).strip() if value is not None else None
    return values


def register_account(app):
    @app.get("/api/user/profile")
    @requires_auth()
    def get_profile():
        user_id = current_user_id()
        user = db.fetch_one(f"SELECT {USER_COLUMNS}, preferences FROM users WHERE id = %s", (user_id,))
        if not user:
            return jsonify({"error": "User not found"}), 404
        stats = db.fetch_one(
            """
            SELECT COUNT(*) AS order_count, COALESCE(SUM(total), 0) AS total_spent
            FROM orders WHERE user_id = %s
            """,
            (user_id,),
        ) or {}
        wishlist = db.fetch_one("SELECT COUNT(*) AS n FROM wishlist WHERE user_id = %s", (user_id,)) or {}
        default_address = db.fetch_one(
            "SELECT * FROM addresses WHERE user_id = %s AND is_default = TRUE LIMIT 1", (user_id,)
        )
        recent = db.fetch_all(
            """
            SELECT id, order_number, status, total, items, created_at
            FROM orders WHERE user_id = %s ORDER BY created_at DESC LIMIT 5
            """,
            (user_id,),
        )
        user["preferences"] = merge_preferences(user.get("preferences"))
        return jsonify({
            "profile": serialize(user),
            "default_address": serialize(default_address),
            "stats": {
                "order_count": int(stats.get("order_count") or 0),
                "total_spent": float(stats.get("total_spent") or 0),
                "wishlist_count": int(wishlist.get("n") or 0),
            },
            "recent_orders": [
                {
                    "id": o["id"],
                    "order_number": o["order_number"],
                    "status": o["status"],
                    "total": float(o["total"]),
                    "item_count": len(o.get("items") or []),
                    "date": serialize(o["created_at"]),
                }
                for o in recent
            ],
            "profile_completion": profile_completion(user, default_address is not None),
        })

    @app.patch("/api/user/profile")
    @requires_auth()
    def update_profile():
        body = json_body()
        updates = {}
        for key in PROFILE_FIELDS:
            if key in body:
                value = (str(body[key]).strip() if body[key] is not None else "") or None
                if key == "name" and not value:
                    return jsonify({"error": "Name cannot be empty"}), 400
                updates[key] = value
        if not updates:
            return jsonify({"error": "No fields to update"}), 400
        assignments = ", ".join(f"{k} = %s" for k in updates)
        row = db.execute(
            f"UPDATE users SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING {USER_COLUMNS}",
            (*updates.values(), current_user_id()),
            returning=True,
        )
        if not row:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"success": True, "profile": serialize(row)})

    @app.get("/api/user/preferences")
    @requires_auth()
    def get_preferences():
        row = db.fetch_one("SELECT preferences FROM users WHERE id = %s", (current_user_id(),))
        return jsonify({"preferences": merge_preferences((row or {}).get("preferences"))})

    @app.put("/api/user/preferences")
    @requires_auth()
    def update_preferences():
        body = json_body()
        language = body.get("language")
        currency = body.get("currency")
        if language is not None and language not in LANGUAGES:
            return jsonify({"error": "language must be one of: en, bn"}), 400
        if currency is not None and (not isinstance(currency, str) or len(currency) != 3):
            return jsonify({"error": "currency must be a 3-letter code"}), 400
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT preferences FROM users WHERE id = %s FOR UPDATE", (user_id,))
                    row = cur.fetchone()
                    saved = {**((row or {}).get("preferences") or {})}
                    if language is not None:
                        saved["language"] = language
                    if currency is not None:
                        saved["currency"] = currency.upper()
                    cur.execute(
                        "UPDATE users SET preferences = %s, updated_at = NOW() WHERE id = %s",
                        (Jsonb(saved), user_id),
                    )
                conn.commit()
                return saved

        saved = db.run_db(_work)
        return jsonify({"success": True, "preferences": merge_preferences(saved)})

    @app.get("/api/user/addresses")
    @requires_auth()
    def list_addresses():
        rows = db.fetch_all(
            "SELECT * FROM addresses WHERE user_id = %s ORDER BY is_default DESC, created_at ASC",
            (current_user_id(),),
        )
        return jsonify({"addresses": serialize(rows), "total": len(rows)})

    @app.post("/api/user/addresses")
    @requires_auth()
    def add_address():
        body = json_body()
        values = _clean_address(body)
        if any(not values.get(k) for k in REQUIRED_ADDRESS_FIELDS):
            return jsonify({"error": "Name, phone, address and city are required"}), 400
        make_default = bool(body.get("is_default"))
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT COUNT(*) AS n FROM addresses WHERE user_id = %s", (user_id,))
                    count = int(cur.fetchone()["n"])
                    if count >= MAX_ADDRESSES:
                        return None
                    is_default = make_default or count == 0
                    if is_default and count:
                        cur.execute(
                            "UPDATE addresses SET is_default = FALSE, updated_at = NOW() WHERE user_id = %s",
                            (user_id,),
                        )
                    cur.execute(
                        """
                        INSERT INTO addresses (id, user_id, label, name, phone, address, city, state,
                                               postal_code, country, is_default)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            new_id(), user_id, values.get("label") or "home", values["name"], values["phone"],
                            values["address"], values["city"], values.get("state"), values.get("postal_code"),
                            values.get("country") or "BD", is_default,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
                return row

        row = db.run_db(_work)
        if row is None:
            return jsonify({"error": f"Maximum {MAX_ADDRESSES} addresses allowed"}), 400
        return jsonify({"success": True, "address": serialize(row)}), 201

    @app.put("/api/user/addresses")
    @requires_auth()
    def update_address():
        body = json_body()
        address_id = body.get("id")
        if not address_id:
            return jsonify({"error": "Address ID is required"}), 400
        values = _clean_address(body)
        for key in REQUIRED_ADDRESS_FIELDS:
            if key in values and not values[key]:
                return jsonify({"error": f"{key} cannot be empty"}), 400
        if "is_default" in body:
            values["is_default"] = bool(body["is_default"])
        if not values:
            return jsonify({"error": "No fields to update"}), 400
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute(
                        "SELECT id FROM addresses WHERE id = %s AND user_id = %s FOR UPDATE",
                        (address_id, user_id),
                    )
                    if not cur.fetchone():
                        return None
                    if values.get("is_default"):
                        cur.execute(
                            "UPDATE addresses SET is_default = FALSE, updated_at = NOW() WHERE user_id = %s AND id <> %s",
                            (user_id, address_id),
                        )
                    assignments = ", ".join(f"{k} = %s" for k in values)
                    cur.execute(
                        f"UPDATE addresses SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
                        (*values.values(), address_id),
                    )
                    row = cur.fetchone()
                conn.commit()
                return row

        row = db.run_db(_work)
        if row is None:
            return jsonify({"error": "Address not found"}), 404
        return jsonify({"success": True, "address": serialize(row)})

    @app.delete("/api/user/addresses")
    @requires_auth()
    def delete_address():
        address_id = request.args.get("id")
        if not address_id:
            return jsonify({"error": "Address ID is required"}), 400
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute(
                        "DELETE FROM addresses WHERE id = %s AND user_id = %s RETURNING is_default",
                        (address_id, user_id),
                    )
                    deleted = cur.fetchone()
                    if deleted and deleted["is_default"]:
                        # Promote the oldest remaining address
                        cur.execute(
                            """
                            UPDATE addresses SET is_default = TRUE, updated_at = NOW()
                            WHERE id = (SELECT id FROM addresses WHERE user_id = %s ORDER BY created_at ASC LIMIT 1)
                            """,
                            (user_id,),
                        )
                conn.commit()
                return deleted

        if db.run_db(_work) is None:
            return jsonify({"error": "Address not found"}), 404
        return jsonify({"success": True})

    @app.get("/api/user/wishlist")
    @requires_auth()
    def get_wishlist():
        rows = db.fetch_all(
            """
            SELECT w.id, w.product_id, w.created_at,
                   p.name, p.slug, p.price, p.compare_at_price, p.featured_image, p.images,
                   p.quantity, p.track_quantity, p.is_active
            FROM wishlist w
            JOIN products p ON p.id = w.product_id
            WHERE w.user_id = %s
            ORDER BY w.created_at DESC
            """,
            (current_user_id(),),
        )
        items = []
        for r in rows:
            product = {k: r[k] for k in ("name", "slug", "price", "compare_at_price", "featured_image",
                                         "images", "quantity", "is_active")}
            product["id"] = r["product_id"]
            product["in_stock"] = is_in_stock(r)
            items.append({
                "id": r["id"],
                "product_id": r["product_id"],
                "created_at": r["created_at"],
                "product": product,
            })
        return jsonify({"items": serialize(items), "count": len(items)})

    @app.post("/api/user/wishlist")
    @requires_auth()
    def add_to_wishlist():
        if not get_config().FEATURE_WISHLIST:
            return jsonify({"error": "Wishlist is disabled"}), 404
        product_id = json_body().get("product_id")
        if not product_id:
            return jsonify({"error": "Product ID is required"}), 400
        if not db.fetch_one("SELECT id FROM products WHERE id = %s", (product_id,)):
            return jsonify({"error": "Product not found"}), 404
        try:
            row = db.execute(
                "INSERT INTO wishlist (id, user_id, product_id) VALUES (%s, %s, %s) RETURNING *",
                (new_id(), current_user_id(), product_id),
                returning=True,
            )
        except pg_errors.UniqueViolation:
            return jsonify({"error": "Product already in wishlist"}), 409
        return jsonify({"success": True, "item": serialize(row)}), 201

    @app.delete("/api/user/wishlist/<product_id>")
    @requires_auth()
    def remove_from_wishlist(product_id: str):
        if not db.execute(
            "DELETE FROM wishlist WHERE user_id = %s AND product_id = %s",
            (current_user_id(), product_id),
        ):
            return jsonify({"error": "Item not found in wishlist"}), 404
        return jsonify({"success": True})
