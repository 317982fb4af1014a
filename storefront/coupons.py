from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal

from flask import jsonify
from psycopg import errors as pg_errors

from . import db
from .auth import STAFF_ROLES, requires_auth
from .config import get_config
from .utils import as_bool, json_body, money, new_id, serialize


@dataclass
class CouponResult:
    valid: bool
    discount: float = 0.0
    new_total: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _aware(value):
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def evaluate_coupon(coupon: dict, cart_total, now: datetime | None = None) -> CouponResult:
    """Apply a coupon row to a cart total.

    Checks run in a fixed order (active, start, expiry, usage, minimum order)
    and the first failure wins. The discount never exceeds the cart total.
    """
    now = _aware(now) or datetime.now(timezone.utc)
    total = Decimal(str(cart_total or 0))

    if not coupon.get("is_active"):
        return CouponResult(False, error="This coupon is no longer active")
    starts_at = _aware(coupon.get("starts_at"))
    if starts_at and now < starts_at:
        return CouponResult(False, error="This coupon is not yet active")
    expires_at = _aware(coupon.get("expires_at"))
    if expires_at and now > expires_at:
        return CouponResult(False, error="This coupon has expired")
    usage_limit = coupon.get("usage_limit")
    if usage_limit and int(coupon.get("used_count") or 0) >= int(usage_limit):
        return CouponResult(False, error="This coupon has reached its usage limit")
    min_order = coupon.get("min_order_amount")
    if min_order and total < Decimal(str(min_order)):
        symbol = get_config().CURRENCY_SYMBOL
        return CouponResult(False, error=f"Minimum order amount is {symbol}{money(min_order):g}")

    value = Decimal(str(coupon.get("discount_value") or 0))
    if coupon.get("discount_type") == "percentage":
        discount = total * value / 100
        max_discount = coupon.get("max_discount")
        if max_discount and discount > Decimal(str(max_discount)):
            discount = Decimal(str(max_discount))
    else:
        discount = value
    discount = min(discount, total)
    return CouponResult(True, discount=money(discount), new_total=money(total - discount))


def find_coupon(code: str, cur=None) -> dict | None:
    sql = "SELECT * FROM coupons WHERE code = %s LIMIT 1"
    params = (code.strip().upper(),)
    if cur is not None:
        cur.execute(sql, params)
        return cur.fetchone()
    return db.fetch_one(sql, params)


COUPON_FIELDS = (
    "description", "discount_type", "discount_value", "min_order_amount",
    "max_discount", "usage_limit", "starts_at", "expires_at", "is_active",
)


def register_coupons(app):
    @app.post("/api/coupons/validate")
    def validate_coupon():
        body = json_body()
        code = (body.get("code") or "").strip()
        if not code:
            return jsonify({"valid": False, "error": "Coupon code is required"}), 400
        try:
            cart_total = float(body.get("cart_total") or 0)
        except (TypeError, ValueError):
            return jsonify({"valid": False, "error": "cart_total must be a number"}), 400

        coupon = find_coupon(code)
        if not coupon:
            return jsonify({"valid": False, "error": "Invalid coupon code"})
        result = evaluate_coupon(coupon, cart_total)
        if not result.valid:
            payload = result.to_dict()
            if coupon.get("min_order_amount") and "Minimum" in (result.error or ""):
                payload["min_order_amount"] = money(coupon["min_order_amount"])
            return jsonify(payload)
        return jsonify({
            **result.to_dict(),
            "coupon_id": coupon["id"],
            "code": coupon["code"],
            "description": coupon.get("description"),
            "discount_type": coupon["discount_type"],
            "discount_value": money(coupon["discount_value"]),
        })

    @app.get("/api/admin/coupons")
    @requires_auth(STAFF_ROLES)
    def admin_list_coupons():
        rows = db.fetch_all("SELECT * FROM coupons ORDER BY created_at DESC")
        return jsonify({"coupons": serialize(rows)})

    @app.post("/api/admin/coupons")
    @requires_auth(STAFF_ROLES)
    def admin_create_coupon():
        body = json_body()
        code = (body.get("code") or "").strip().upper()
        discount_type = body.get("discount_type")
        discount_value = body.get("discount_value")
        if not code or discount_type not in ("percentage", "fixed") or discount_value is None:
            return jsonify({"error": "code, discount_type (percentage|fixed) and discount_value are required"}), 400
        try:
            if float(discount_value) < 0:
                raise ValueError
        except (TypeError, ValueError):
            return jsonify({"error": "discount_value must be a non-negative number"}), 400
        values = {f: body.get(f) for f in COUPON_FIELDS}
        values["is_active"] = as_bool(body.get("is_active", True))
        try:
            row = db.execute(
                """
                INSERT INTO coupons (id, code, description, discount_type, discount_value,
                    min_order_amount, max_discount, usage_limit, starts_at, expires_at, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), code, *[values[f] for f in COUPON_FIELDS]),
                returning=True,
            )
        except pg_errors.UniqueViolation:
            return jsonify({"error": "Coupon code already exists"}), 409
        app.logger.info("coupon created code=%s", code)
        return jsonify({"coupon": serialize(row)}), 201

    @app.patch("/api/admin/coupons/<coupon_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_coupon(coupon_id: str):
        body = json_body()
        updates = {f: body[f] for f in COUPON_FIELDS if f in body}
        if "is_active" in updates:
            updates["is_active"] = as_bool(updates["is_active"])
        if not updates:
            return jsonify({"error": "No fields to update"}), 400
        assignments = ", ".join(f"{f} = %s" for f in updates)
        row = db.execute(
            f"UPDATE coupons SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
            (*updates.values(), coupon_id),
            returning=True,
        )
        if not row:
            return jsonify({"error": "Coupon not found"}), 404
        return jsonify({"coupon": serialize(row)})

    @app.delete("/api/admin/coupons/<coupon_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_coupon(coupon_id: str):
        deleted = db.execute("DELETE FROM coupons WHERE id = %s", (coupon_id,))
        if not deleted:
            return jsonify({"error": "Coupon not found"}), 404
        return jsonify({"success": True})
