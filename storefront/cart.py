from flask import jsonify
from psycopg.types.json import Jsonb

from . import db
from .auth import current_user_id, requires_auth
from .config import get_config
from .utils import json_body, money, new_id


def shipping_cost(subtotal: float, express: bool = False, config=None) -> float:
    """Delivery charge for a cart subtotal.

    Empty carts and carts at or above the free-shipping threshold ship free;
    otherwise the express or default rate applies.
    """
    cfg = config or get_config()
    if subtotal <= 0 or subtotal >= cfg.FREE_SHIPPING_THRESHOLD:
        return 0.0
    return money(cfg.EXPRESS_SHIPPING if express else cfg.DEFAULT_SHIPPING)


def item_key(item: dict) -> str:
    return f"{item.get('product_id')}-{item.get('variant_id') or 'default'}"


def _load_cart(cur, user_id: str, create: bool = True) -> dict | None:
    cur.execute("SELECT id, user_id, items FROM carts WHERE user_id = %s LIMIT 1", (user_id,))
    cart = cur.fetchone()
    if cart is None and create:
        cur.execute(
            "INSERT INTO carts (id, user_id, items) VALUES (%s, %s, %s) RETURNING id, user_id, items",
            (new_id(), user_id, Jsonb([])),
        )
        cart = cur.fetchone()
    return cart


def _save_items(cur, cart_id: str, items: list[dict]) -> None:
    cur.execute(
        "UPDATE carts SET items = %s, updated_at = NOW() WHERE id = %s",
        (Jsonb(items), cart_id),
    )


def summarize(cart_id: str, items: list[dict], products: dict[str, dict]) -> dict:
    enriched = []
    for item in items:
        product = products.get(item.get("product_id")) or {}
        enriched.append({
            "id": item_key(item),
            "product_id": item.get("product_id"),
            "variant_id": item.get("variant_id"),
            "name": product.get("name") or item.get("name"),
            "image": product.get("featured_image") or item.get("image") or "",
            "price": money(item.get("price")),
            "quantity": int(item.get("quantity") or 0),
            "max_quantity": int(product["quantity"]) if product.get("track_quantity") else 999,
        })
    subtotal = money(sum(i["price"] * i["quantity"] for i in enriched))
    shipping = shipping_cost(subtotal)
    return {
        "id": cart_id,
        "items": enriched,
        "subtotal": subtotal,
        "shipping_cost": shipping,
        "discount": 0,
        "total": money(subtotal + shipping),
        "item_count": sum(i["quantity"] for i in enriched),
    }


def register_cart(app):
    @app.get("/api/cart")
    @requires_auth()
    def get_cart():
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cart = _load_cart(cur, user_id)
                    items = cart.get("items") or []
                    product_ids = list({i.get("product_id") for i in items})
                    products = {}
                    if product_ids:
                        cur.execute(
                            "SELECT id, name, featured_image, quantity, track_quantity FROM products WHERE id = ANY(%s)",
                            (product_ids,),
                        )
                        products = {p["id"]: p for p in cur.fetchall()}
                conn.commit()
                return summarize(cart["id"], items, products)

        return jsonify({"cart": db.run_db(_work)})

    @app.post("/api/cart/items")
    @requires_auth()
    def add_cart_item():
        body = json_body()
        product_id = body.get("product_id")
        variant_id = body.get("variant_id") or None
        quantity = body.get("quantity", 1)
        if not product_id:
            return jsonify({"error": "Product ID is required"}), 400
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            return jsonify({"error": "Quantity must be a positive integer"}), 400
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute(
                        """
                        SELECT id, name, price, quantity, track_quantity, featured_image
                        FROM products WHERE id = %s AND is_active = TRUE
                        """,
                        (product_id,),
                    )
                    product = cur.fetchone()
                    if not product:
                        return jsonify({"error": "Product not found"}), 404
                    price = product["price"]
                    name = product["name"]
                    if variant_id:
                        cur.execute(
                            "SELECT name, price FROM product_variants WHERE id = %s AND product_id = %s AND is_active = TRUE",
                            (variant_id, product_id),
                        )
                        variant = cur.fetchone()
                        if not variant:
                            return jsonify({"error": "Variant not found"}), 404
                        price = variant["price"]
                        name = f"{name} ({variant['name']})"

                    cart = _load_cart(cur, user_id)
                    items = list(cart.get("items") or [])
                    key = f"{product_id}-{variant_id or 'default'}"
                    existing = next((i for i in items if item_key(i) == key), None)
                    wanted = quantity + (int(existing["quantity"]) if existing else 0)
                    available = int(product["quantity"] or 0)
                    if product["track_quantity"] and available < wanted:
                        return jsonify({
                            "error": "Insufficient stock",
                            "message": f"Only {available} items available",
                            "available": available,
                        }), 400
                    if existing:
                        existing["quantity"] = wanted
                    else:
                        items.append({
                            "product_id": product_id,
                            "variant_id": variant_id,
                            "name": name,
                            "price": money(price),
                            "quantity": quantity,
                            "image": product.get("featured_image"),
                        })
                    _save_items(cur, cart["id"], items)
                conn.commit()
                return jsonify({"success": True, "message": "Item added to cart"})

        return db.run_db(_work)

    @app.patch("/api/cart/items/<item_id>")
    @requires_auth()
    def update_cart_item(item_id: str):
        quantity = json_body().get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            return jsonify({"error": "Invalid quantity"}), 400
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cart = _load_cart(cur, user_id, create=False)
                    if not cart:
                        return jsonify({"error": "Cart not found"}), 404
                    items = list(cart.get("items") or [])
                    if quantity == 0:
                        items = [i for i in items if item_key(i) != item_id]
                    else:
                        for i in items:
                            if item_key(i) == item_id:
                                i["quantity"] = quantity
                    _save_items(cur, cart["id"], items)
                conn.commit()
                return jsonify({"success": True, "message": "Cart updated"})

        return db.run_db(_work)

    @app.delete("/api/cart/items/<item_id>")
    @requires_auth()
    def remove_cart_item(item_id: str):
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cart = _load_cart(cur, user_id, create=False)
                    if not cart:
                        return jsonify({"error": "Cart not found"}), 404
                    items = [i for i in (cart.get("items") or []) if item_key(i) != item_id]
                    _save_items(cur, cart["id"], items)
                conn.commit()
                return jsonify({"success": True, "message": "Item removed from cart"})

        return db.run_db(_work)

    @app.delete("/api/cart")
    @requires_auth()
    def clear_cart():
        db.execute(
            "UPDATE carts SET items = %s, updated_at = NOW() WHERE user_id = %s",
            (Jsonb([]), current_user_id()),
        )
        return jsonify({"success": True, "message": "Cart cleared"})
