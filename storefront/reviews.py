from flask import jsonify, request
from psycopg import errors as pg_errors

from . import db
from .auth import STAFF_ROLES, current_user_id, requires_auth
from .cache import invalidate_catalog
from .config import get_config
from .utils import json_body, new_id, page_args, serialize

VERIFIED_PURCHASE_SQL = """
    SELECT 1 FROM orders o
    WHERE o.user_id = %s AND o.status = 'delivered'
      AND EXISTS (
        SELECT 1 FROM jsonb_array_elements(o.items) AS item
        WHERE item->>'product_id' = %s
      )
    LIMIT 1
"""


def register_reviews(app):
    @app.post("/api/reviews")
    @requires_auth()
    def create_review():
        if not get_config().FEATURE_REVIEWS:
            return jsonify({"error": "Reviews are disabled"}), 404
        body = json_body()
        product_id = body.get("product_id")
        rating = body.get("rating")
        if not product_id or not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            return jsonify({"error": "product_id and a rating between 1 and 5 are required"}), 400
        title = (body.get("title") or "").strip()[:200] or None
        content = (body.get("content") or "").strip()[:5000] or None
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT id FROM products WHERE id = %s", (product_id,))
                    if not cur.fetchone():
                        return None, "missing"
                    cur.execute(
                        "SELECT id FROM reviews WHERE product_id = %s AND user_id = %s",
                        (product_id, user_id),
                    )
                    if cur.fetchone():
                        return None, "duplicate"
                    cur.execute(VERIFIED_PURCHASE_SQL, (user_id, product_id))
                    verified = cur.fetchone() is not None
                    cur.execute(
                        """
                        INSERT INTO reviews (id, product_id, user_id, rating, title, content, is_verified, is_approved)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE)
                        RETURNING *
                        """,
                        (new_id(), product_id, user_id, rating, title, content, verified),
                    )
                    row = cur.fetchone()
                conn.commit()
                return row, None

        try:
            review, problem = db.run_db(_work)
        except pg_errors.UniqueViolation:
            problem = "duplicate"
        if problem == "missing":
            return jsonify({"error": "Product not found"}), 404
        if problem == "duplicate":
            return jsonify({"error": "You have already reviewed this product"}), 400
        app.logger.info("review %s created product=%s verified=%s", review["id"], product_id, review["is_verified"])
        return jsonify({"success": True, "review": serialize(review)}), 201

    @app.get("/api/admin/reviews")
    @requires_auth(STAFF_ROLES)
    def admin_reviews():
        page, limit, offset = page_args(default_limit=50)
        status = request.args.get("status")
        where = ""
        if status == "pending":
            where = "WHERE r.is_approved = FALSE"
        elif status == "approved":
            where = "WHERE r.is_approved = TRUE"
        rows = db.fetch_all(
            f"""
            SELECT r.*, p.name AS product_name, p.slug AS product_slug,
                   u.name AS user_name, u.email AS user_email
            FROM reviews r
            LEFT JOIN products p ON p.id = r.product_id
            LEFT JOIN users u ON u.id = r.user_id
            {where}
            ORDER BY r.created_at DESC
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return jsonify({"reviews": serialize(rows), "page": page, "limit": limit})

    @app.patch("/api/admin/reviews/<review_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_review(review_id: str):
        body = json_body()
        if not isinstance(body.get("is_approved"), bool):
            return jsonify({"error": "is_approved must be a boolean"}), 400
        row = db.execute(
            "UPDATE reviews SET is_approved = %s, updated_at = NOW() WHERE id = %s RETURNING *",
            (body["is_approved"], review_id),
            returning=True,
        )
        if not row:
            return jsonify({"error": "Review not found"}), 404
        invalidate_catalog()
        return jsonify({"success": True, "review": serialize(row)})

    @app.delete("/api/admin/reviews/<review_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_review(review_id: str):
        if not db.execute("DELETE FROM reviews WHERE id = %s", (review_id,)):
            return jsonify({"error": "Review not found"}), 404
        invalidate_catalog()
        return jsonify({"success": True})
