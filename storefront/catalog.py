import json
import os

from flask import jsonify, request

from . import db
from .cache import CATALOG_PREFIX, cache_memo
from .utils import as_bool, page_args, serialize

CATALOG_TTL = int(os.getenv("CATALOG_CACHE_TTL", "60"))

PRODUCT_COLUMNS = """
    p.id, p.name, p.slug, p.description, p.short_description, p.price,
    p.compare_at_price, p.sku, p.quantity, p.low_stock_threshold, p.track_quantity,
    p.category_id, p.images, p.featured_image, p.is_active, p.is_featured,
    p.is_vegetarian, p.is_vegan, p.is_gluten_free, p.spiciness_level,
    p.preparation_time, p.created_at, p.updated_at
"""

SORTS = {
    "price-low": "p.price ASC",
    "price-high": "p.price DESC",
    "newest": "p.created_at DESC",
    "name": "p.name ASC",
}


def is_in_stock(product: dict) -> bool:
    if not product.get("track_quantity", True):
        return True
    return int(product.get("quantity") or 0) > 0


def product_card(row: dict) -> dict:
    """Serialize a product row for API output and add ``in_stock``."""
    out = serialize(dict(row))
    out["in_stock"] = is_in_stock(row)
    return out


def _product_filters(args) -> tuple[list[str], list]:
    where = ["p.is_active = TRUE"]
    params: list = []
    category = args.get("category")
    if category:
        where.append("(p.category_id = %s OR p.category_id = (SELECT id FROM categories WHERE slug = %s))")
        params.extend([category, category])
    min_price = args.get("min_price", type=float)
    if min_price is not None:
        where.append("p.price >= %s")
        params.append(min_price)
    max_price = args.get("max_price", type=float)
    if max_price is not None:
        where.append("p.price <= %s")
        params.append(max_price)
    featured = as_bool(args.get("featured"))
    if featured is not None:
        where.append("p.is_featured = %s")
        params.append(featured)
    search = (args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        where.append("(p.name ILIKE %s OR p.description ILIKE %s OR p.short_description ILIKE %s)")
        params.extend([like, like, like])
    return where, params


def list_products(args, page: int, limit: int, offset: int) -> dict:
    where, params = _product_filters(args)
    order_by = SORTS.get(args.get("sort") or "newest", SORTS["newest"])
    where_sql = " AND ".join(where)
    rows = db.fetch_all(
        f"SELECT {PRODUCT_COLUMNS} FROM products p WHERE {where_sql} ORDER BY {order_by} LIMIT %s OFFSET %s",
        (*params, limit, offset),
    )
    count = db.fetch_one(f"SELECT COUNT(*) AS total FROM products p WHERE {where_sql}", tuple(params))
    total = int((count or {}).get("total") or 0)
    return {
        "products": [product_card(r) for r in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if limit else 0,
    }


def get_product_detail(slug: str) -> dict | None:
    product = db.fetch_one(
        f"""
        SELECT {PRODUCT_COLUMNS}, c.name AS category_name, c.slug AS category_slug
        FROM products p
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE (p.slug = %s OR p.id = %s) AND p.is_active = TRUE
        LIMIT 1
        """,
        (slug, slug),
    )
    if not product:
        return None
    reviews = db.fetch_all(
        """
        SELECT r.id, r.rating, r.title, r.content, r.is_verified, r.created_at,
               u.name AS reviewer_name, u.image AS reviewer_image
        FROM reviews r
        LEFT JOIN users u ON u.id = r.user_id
        WHERE r.product_id = %s AND r.is_approved = TRUE
        ORDER BY r.created_at DESC
        """,
        (product["id"],),
    )
    if product.get("category_id"):
        related = db.fetch_all(
            f"""
            SELECT {PRODUCT_COLUMNS} FROM products p
            WHERE p.is_active = TRUE AND p.category_id = %s AND p.id <> %s
            ORDER BY p.created_at DESC LIMIT 4
            """,
            (product["category_id"], product["id"]),
        )
    else:
        related = db.fetch_all(
            f"""
            SELECT {PRODUCT_COLUMNS} FROM products p
            WHERE p.is_active = TRUE AND p.id <> %s
            ORDER BY p.created_at DESC LIMIT 4
            """,
            (product["id"],),
        )
    ratings = [int(r["rating"]) for r in reviews]
    return {
        "product": product_card(product),
        "reviews": serialize(reviews),
        "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else 0,
        "review_count": len(ratings),
        "related_products": [product_card(r) for r in related],
    }


def list_categories(featured: bool = False, limit: int = 10) -> list[dict]:
    order = "product_count DESC, c.sort_order ASC" if featured else "c.sort_order ASC, c.name ASC"
    sql = f"""
        SELECT c.id, c.name, c.slug, c.description, c.image, c.parent_id, c.sort_order,
               c.is_active, c.created_at, COUNT(p.id) AS product_count
        FROM categories c
        LEFT JOIN products p ON p.category_id = c.id AND p.is_active = TRUE
        WHERE c.is_active = TRUE
        GROUP BY c.id
        ORDER BY {order}
    """
    params: tuple = ()
    if featured:
        sql += " LIMIT %s"
        params = (limit,)
    rows = db.fetch_all(sql, params)
    out = []
    for r in rows:
        rec = serialize(dict(r))
        rec["product_count"] = int(r.get("product_count") or 0)
        rec["is_featured"] = rec["product_count"] > 10
        out.append(rec)
    return out


def _cache_key(name: str) -> str:
    args = json.dumps(sorted(request.args.items(multi=True)), separators=(",", ":"))
    return f"{CATALOG_PREFIX}:{name}:{args}"


def register_catalog(app):
    @app.get("/api/products")
    def products_index():
        page, limit, offset = page_args(default_limit=20, max_limit=100)
        args = request.args
        body = cache_memo(_cache_key("products"), CATALOG_TTL, lambda: list_products(args, page, limit, offset))
        return jsonify(body)

    @app.get("/api/products/search")
    def products_search():
        query = (request.args.get("q") or "").strip().lower()
        category = request.args.get("category")
        featured = request.args.get("featured") == "true"

        def _produce():
            where = ["p.is_active = TRUE"]
            params: list = []
            if query:
                like = f"%{query}%"
                where.append("(p.name ILIKE %s OR p.description ILIKE %s OR p.slug ILIKE %s)")
                params.extend([like, like, like])
            if category:
                where.append("p.category_id = %s")
                params.append(category)
            if featured:
                where.append("p.is_featured = TRUE")
            rows = db.fetch_all(
                f"SELECT {PRODUCT_COLUMNS} FROM products p WHERE {' AND '.join(where)} ORDER BY p.created_at DESC",
                tuple(params),
            )
            cats = db.fetch_all(
                """
                SELECT DISTINCT c.id, c.name FROM categories c
                JOIN products p ON p.category_id = c.id AND p.is_active = TRUE
                ORDER BY c.name
                """
            )
            return {
                "products": [product_card(r) for r in rows],
                "categories": serialize(cats),
                "total": len(rows),
            }

        return jsonify(cache_memo(_cache_key("search"), CATALOG_TTL, _produce))

    @app.get("/api/products/<slug>")
    def product_detail(slug: str):
        body = cache_memo(f"{CATALOG_PREFIX}:product:{slug}", CATALOG_TTL, lambda: get_product_detail(slug))
        if body is None:
            return jsonify({"error": "Product not found"}), 404
        return jsonify(body)

    @app.get("/api/categories")
    def categories_index():
        featured = request.args.get("featured") == "true"
        limit = request.args.get("limit", default=10, type=int) or 10
        cats = cache_memo(_cache_key("categories"), CATALOG_TTL, lambda: list_categories(featured, limit))
        return jsonify({"categories": cats, "total": len(cats)})
