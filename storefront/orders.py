"""Checkout, order tracking, customer order history and admin order management."""
import logging
import re
import time
from html import escape

from flask import Response, jsonify, request
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from . import analytics, db, mailer, payments
from .auth import STAFF_ROLES, current_user_id, optional_user, requires_auth
from .cache import invalidate_catalog
from .cart import shipping_cost
from .config import get_config
from .coupons import evaluate_coupon
from .errors import AuthError, NotFoundError, PaymentError, ValidationError
from .utils import client_ip, json_body, money, new_id, page_args, random_base36, serialize

logger = logging.getLogger(__name__)

ORDER_STATUSES = (
    "pending", "confirmed", "processing", "preparing", "ready",
    "shipped", "served", "delivered", "cancelled", "refunded",
)
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
ORDER_TYPES = ("dine_in", "takeaway", "delivery")
CLOSED_STATUSES = ("cancelled", "refunded")
OPEN_STATUSES = ("pending", "confirmed", "processing")
TRANSACTION_CONSTRAINT = "uq_orders_transaction_id"


def generate_order_number(now_ms: int | None = None) -> str:
    """``DC`` + last 8 digits of the epoch-millisecond clock + 4 base-36 chars."""
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"DC{str(ms)[-8:]}{random_base36(4)}"


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_order_request(body: dict) -> dict:
    """Normalise a checkout payload or raise ValidationError.

    A shipping address is required for delivery only; dine-in orders may
    name the table they are served at.
    """
    items = body.get("items")
    name = (body.get("customer_name") or "").strip()
    phone = (body.get("customer_phone") or "").strip()
    address = body.get("shipping_address") or None
    order_type = body.get("order_type") or "delivery"
    if order_type not in ORDER_TYPES:
        raise ValidationError(f"order_type must be one of {', '.join(ORDER_TYPES)}")
    if not isinstance(items, list) or not items or not name or not phone:
        raise ValidationError("Missing required fields")
    if order_type == "delivery" and not address:
        raise ValidationError("Missing required fields")
    if address is not None and not isinstance(address, dict):
        raise ValidationError("shipping_address must be an object")
    table_id = body.get("table_id") or None
    if table_id and order_type != "dine_in":
        raise ValidationError("table_id is only valid for dine_in orders")

    lines = []
    for item in items:
        if not isinstance(item, dict) or not item.get("product_id"):
            raise ValidationError("Each item needs a product_id")
        if not _positive_int(item.get("quantity")):
            raise ValidationError("Item quantity must be a positive integer", {"product_id": item.get("product_id")})
        lines.append({
            "product_id": str(item["product_id"]),
            "variant_id": item.get("variant_id") or None,
            "quantity": item["quantity"],
        })

    payment_status = body.get("payment_status") or "pending"
    if payment_status not in ("pending", "paid"):
        raise ValidationError("payment_status must be pending or paid")
    return {
        "items": lines,
        "customer_name": name[:255],
        "customer_phone": phone,
        "customer_email": (body.get("customer_email") or "").strip() or None,
        "shipping_address": address,
        "notes": body.get("notes") or None,
        "payment_method": body.get("payment_method") or "cod",
        "payment_status": payment_status,
        "transaction_id": body.get("transaction_id") or None,
        "coupon_code": (body.get("coupon_code") or "").strip().upper() or None,
        "express": bool(body.get("express_shipping")),
        "order_type": order_type,
        "table_id": table_id,
    }


def _requested_quantities(lines: list[dict]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for line in lines:
        totals[line["product_id"]] = totals.get(line["product_id"], 0) + line["quantity"]
    return totals


def check_payment(cur, intent, transaction_id: str, total: float, currency: str) -> None:
    """Reject a captured payment that does not cover this order or already paid for another one."""
    expected = payments.to_minor_units(total)
    paid_currency = (getattr(intent, "currency", None) or "").lower()
    if intent.amount != expected or paid_currency != currency.lower():
        raise PaymentError(
            "Payment amount does not match order total",
            {"paid": intent.amount, "paid_currency": paid_currency, "expected": expected},
            status_code=402,
        )
    cur.execute("SELECT order_number FROM orders WHERE transaction_id = %s", (transaction_id,))
    if cur.fetchone():
        raise PaymentError("Payment has already been used for another order", status_code=409)


def place_order(req: dict, user_id: str | None) -> dict:
    """Run the checkout transaction and return the stored order row.

    Product rows are locked for the duration of the transaction so two
    concurrent checkouts cannot both take the last unit. A paid order must
    carry the captured PaymentIntent in ``req["payment_intent"]``.
    """
    wanted = _requested_quantities(req["items"])
    cfg = get_config()

    def _work():
        with db.get_connection() as conn:
            with conn.cursor(row_factory=db.dict_row) as cur:
                cur.execute(
                    """
                    SELECT id, name, price, quantity, track_quantity, is_active,
                           featured_image, category_id
                    FROM products
                    WHERE id = ANY(%s)
                    ORDER BY id
                    FOR UPDATE
                    """,
                    (list(wanted),),
                )
                products = {r["id"]: r for r in cur.fetchall()}

                for product_id, quantity in wanted.items():
                    product = products.get(product_id)
                    if not product or not product["is_active"]:
                        raise NotFoundError(f"Product not found: {product_id}")
                    available = int(product["quantity"] or 0)
                    if product["track_quantity"] and available < quantity:
                        raise ValidationError(
                            "Insufficient stock",
                            {"product_name": product["name"], "requested": quantity, "available": available},
                        )

                if req.get("table_id"):
                    cur.execute("SELECT id FROM tables WHERE id = %s", (req["table_id"],))
                    if not cur.fetchone():
                        raise NotFoundError("Table not found")

                variant_ids = [line["variant_id"] for line in req["items"] if line["variant_id"]]
                variants = {}
                if variant_ids:
                    cur.execute(
                        "SELECT id, product_id, name, price FROM product_variants WHERE id = ANY(%s) AND is_active = TRUE",
                        (variant_ids,),
                    )
                    variants = {v["id"]: v for v in cur.fetchall()}

                snapshot = []
                for line in req["items"]:
                    product = products[line["product_id"]]
                    price = product["price"]
                    name = product["name"]
                    if line["variant_id"]:
                        variant = variants.get(line["variant_id"])
                        if not variant or variant["product_id"] != product["id"]:
                            raise NotFoundError(f"Variant not found: {line['variant_id']}")
                        price = variant["price"]
                        name = f"{name} ({variant['name']})"
                    unit = money(price)
                    snapshot.append({
                        "product_id": product["id"],
                        "variant_id": line["variant_id"],
                        "category_id": product.get("category_id"),
                        "name": name,
                        "price": unit,
                        "quantity": line["quantity"],
                        "image": product.get("featured_image"),
                        "total": money(unit * line["quantity"]),
                    })
                subtotal = money(sum(i["total"] for i in snapshot))

                discount = 0.0
                coupon = None
                if req["coupon_code"]:
                    cur.execute("SELECT * FROM coupons WHERE code = %s FOR UPDATE", (req["coupon_code"],))
                    coupon = cur.fetchone()
                    if not coupon:
                        raise ValidationError("Invalid coupon code")
                    result = evaluate_coupon(coupon, subtotal)
                    if not result.valid:
                        raise ValidationError(result.error)
                    discount = result.discount

                # Only delivery orders pay for shipping
                shipping = shipping_cost(subtotal, express=req["express"], config=cfg) if req["order_type"] == "delivery" else 0.0
                total = money(subtotal - discount + shipping)
                if req.get("payment_intent") is not None:
                    check_payment(cur, req["payment_intent"], req["transaction_id"], total, cfg.CURRENCY_CODE)
                status = "confirmed" if req["payment_status"] == "paid" else "pending"

                try:
                    cur.execute(
                        """
                        INSERT INTO orders (
                            id, order_number, user_id, status, payment_status, payment_method, transaction_id,
                            order_type, subtotal, discount, shipping_cost, tax, total, currency, coupon_code,
                            customer_name, customer_email, customer_phone, shipping_address, notes, items, table_id
                        ) VALUES (
                            %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                        )
                        RETURNING *
                        """,
                        (
                            new_id(), generate_order_number(), user_id, status, req["payment_status"],
                            req["payment_method"], req["transaction_id"], req["order_type"], subtotal, discount,
                            shipping, total, cfg.CURRENCY_CODE, coupon["code"] if coupon else None,
                            req["customer_name"], req["customer_email"], req["customer_phone"],
                            Jsonb(req["shipping_address"]) if req["shipping_address"] is not None else None,
                            req["notes"], Jsonb(snapshot), req.get("table_id"),
                        ),
                    )
                except pg_errors.UniqueViolation as e:
                    if e.diag.constraint_name == TRANSACTION_CONSTRAINT:
                        raise PaymentError("Payment has already been used for another order", status_code=409) from e
                    raise
                order = cur.fetchone()

                for product_id, quantity in wanted.items():
                    if products[product_id]["track_quantity"]:
                        cur.execute(
                            "UPDATE products SET quantity = GREATEST(quantity - %s, 0), updated_at = NOW() WHERE id = %s",
                            (quantity, product_id),
                        )
                if coupon:
                    cur.execute(
                        "UPDATE coupons SET used_count = used_count + 1, updated_at = NOW() WHERE id = %s",
                        (coupon["id"],),
                    )
            conn.commit()
            return order

    order = db.run_db(_work)
    logger.info("order %s placed total=%s items=%s", order["order_number"], order["total"], len(req["items"]))
    return order


def notify_order_placed(order: dict, tracking: dict) -> None:
    """Send the purchase event and the confirmation email; failures are logged only."""
    items = order.get("items") or []
    address = order.get("shipping_address") or {}
    name_parts = (order.get("customer_name") or "").split(" ")
    try:
        analytics.purchase(
            order_id=order["order_number"],
            value=money(order["total"]),
            content_ids=[i["product_id"] for i in items],
            num_items=sum(int(i["quantity"]) for i in items),
            currency=order.get("currency"),
            user_data={
                "email": order.get("customer_email"),
                "phone": order.get("customer_phone"),
                "first_name": name_parts[0] if name_parts else None,
                "last_name": " ".join(name_parts[1:]) or None,
                "city": address.get("city"),
                "state": address.get("state"),
                "country": address.get("country") or "BD",
                "external_id": order.get("user_id"),
                "client_ip_address": tracking.get("ip"),
                "client_user_agent": tracking.get("user_agent"),
            },
            event_source_url=tracking.get("referer"),
        )
    except Exception:
        logger.exception("facebook purchase event failed for order %s", order["order_number"])

    if order.get("customer_email"):
        try:
            result = mailer.send_order_confirmation_email(order)
            if not result.success:
                logger.warning("confirmation email failed for order %s: %s", order["order_number"], result.error)
        except Exception:
            logger.exception("confirmation email error for order %s", order["order_number"])


def restore_stock(cur, items: list[dict]) -> None:
    for product_id, quantity in _requested_quantities(
        [{"product_id": i["product_id"], "quantity": int(i["quantity"])} for i in items or []]
    ).items():
        cur.execute(
            "UPDATE products SET quantity = quantity + %s, updated_at = NOW() WHERE id = %s AND track_quantity = TRUE",
            (quantity, product_id),
        )


def _digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def phones_match(given: str, stored: str) -> bool:
    """Compare phone numbers ignoring formatting and country prefix."""
    a, b = _digits(given), _digits(stored)
    if not a or not b:
        return False
    return a[-10:] == b[-10:]


def public_order(order: dict) -> dict:
    out = serialize(dict(order))
    out.pop("user_id", None)
    out.pop("transaction_id", None)
    return out


def order_stats(rows: list[dict]) -> dict:
    return {
        "total_orders": len(rows),
        "total_spent": money(sum(money(r["total"]) for r in rows if r["status"] not in CLOSED_STATUSES)),
        "pending_orders": sum(1 for r in rows if r["status"] in OPEN_STATUSES),
        "delivered_orders": sum(1 for r in rows if r["status"] == "delivered"),
    }


def invoice_html(order: dict) -> str:
    cfg = get_config()
    sym = cfg.CURRENCY_SYMBOL
    rows = "".join(
        f"<tr><td>{escape(str(i.get('name', '')))}</td><td>{int(i.get('quantity') or 0)}</td>"
        f"<td>{sym}{money(i.get('price')):,.2f}</td>"
        f"<td>{sym}{money(i.get('price')) * int(i.get('quantity') or 0):,.2f}</td></tr>"
        for i in order.get("items") or []
    )
    address = order.get("shipping_address") or {}
    address_text = ", ".join(
        escape(str(address[k])) for k in ("address", "city", "state", "postal_code", "country") if address.get(k)
    )
    created = order.get("created_at")
    created_text = created.strftime("%Y-%m-%d %H:%M") if hasattr(created, "strftime") else escape(str(created or ""))
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Invoice {escape(order["order_number"])}</title>
<style>body{{font-family:sans-serif;max-width:720px;margin:auto;padding:24px}}
table{{width:100%;border-collapse:collapse}}td,th{{border-bottom:1px solid #eee;padding:8px;text-align:left}}</style>
</head>
<body>
<h1>{escape(cfg.BRAND_NAME)}</h1>
<p>{escape(cfg.CONTACT_EMAIL)} &middot; {escape(cfg.CONTACT_PHONE)}</p>
<h2>Invoice {escape(order["order_number"])}</h2>
<p>Date: {created_text}<br>Status: {escape(order["status"])} &middot; Payment: {escape(order["payment_status"])}</p>
<p><strong>{escape(order.get("customer_name") or "")}</strong><br>{escape(order.get("customer_phone") or "")}<br>{address_text}</p>
<table>
<thead><tr><th>Item</th><th>Qty</th><th>Price</th><th>Total</th></tr></thead>
<tbody>{rows}</tbody>
</table>
<p>Subtotal: {sym}{money(order.get("subtotal")):,.2f}<br>
Discount: -{sym}{money(order.get("discount")):,.2f}<br>
Shipping: {sym}{money(order.get("shipping_cost")):,.2f}<br>
<strong>Total: {sym}{money(order.get("total")):,.2f}</strong></p>
</body>
</html>"""


def _tracking_info() -> dict:
    return {
        "ip": client_ip(),
        "user_agent": request.headers.get("User-Agent"),
        "referer": request.headers.get("Referer"),
    }


def register_orders(app):
    @app.post("/api/orders")
    def create_order():
        req = validate_order_request(json_body())
        user = optional_user()
        if user is None and not get_config().FEATURE_GUEST_CHECKOUT:
            raise AuthError("Sign in to place an order")
        if req["payment_status"] == "paid":
            intent = payments.succeeded_intent(req["transaction_id"]) if req["transaction_id"] else None
            if intent is None:
                return jsonify({"error": "Payment could not be verified"}), 402
            req["payment_intent"] = intent
        order = place_order(req, (user or {}).get("sub"))
        notify_order_placed(order, _tracking_info())
        invalidate_catalog()
        return jsonify({
            "success": True,
            "order": {"id": order["id"], "order_number": order["order_number"], "total": money(order["total"])},
        }), 201

    @app.get("/api/orders/track")
    def track_order():
        order_number = (request.args.get("order_number") or "").strip().upper()
        phone = request.args.get("phone")
        if not order_number:
            return jsonify({"error": "Order number is required"}), 400
        order = db.fetch_one("SELECT * FROM orders WHERE order_number = %s", (order_number,))
        if not order or (phone and not phones_match(phone, order["customer_phone"])):
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order": public_order(order)})

    @app.get("/api/user/orders")
    @requires_auth()
    def my_orders():
        rows = db.fetch_all(
            "SELECT * FROM orders WHERE user_id = %s ORDER BY created_at DESC",
            (current_user_id(),),
        )
        return jsonify({"orders": serialize(rows)})

    @app.get("/api/user/orders/stats")
    @requires_auth()
    def my_order_stats():
        rows = db.fetch_all("SELECT status, total FROM orders WHERE user_id = %s", (current_user_id(),))
        return jsonify(order_stats(rows))

    @app.get("/api/user/orders/<order_id>")
    @requires_auth()
    def my_order(order_id: str):
        order = db.fetch_one(
            "SELECT * FROM orders WHERE id = %s AND user_id = %s",
            (order_id, current_user_id()),
        )
        if not order:
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order": serialize(order)})

    @app.post("/api/user/orders/<order_id>/cancel")
    @requires_auth()
    def cancel_my_order(order_id: str):
        user_id = current_user_id()

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute(
                        "SELECT * FROM orders WHERE id = %s AND user_id = %s FOR UPDATE",
                        (order_id, user_id),
                    )
                    order = cur.fetchone()
                    if not order:
                        return jsonify({"error": "Order not found"}), 404
                    if order["status"] != "pending":
                        return jsonify({"error": "Only pending orders can be cancelled"}), 400
                    cur.execute(
                        "UPDATE orders SET status = 'cancelled', updated_at = NOW() WHERE id = %s RETURNING *",
                        (order_id,),
                    )
                    updated = cur.fetchone()
                    restore_stock(cur, order["items"])
                conn.commit()
                app.logger.info("order %s cancelled by customer", order["order_number"])
                return jsonify({"success": True, "order": serialize(updated)})

        resp = db.run_db(_work)
        invalidate_catalog()
        return resp

    @app.get("/api/user/orders/<order_id>/invoice")
    @requires_auth()
    def my_order_invoice(order_id: str):
        order = db.fetch_one(
            "SELECT * FROM orders WHERE id = %s AND user_id = %s",
            (order_id, current_user_id()),
        )
        if not order:
            return jsonify({"error": "Order not found"}), 404
        return Response(invoice_html(order), mimetype="text/html")

    @app.get("/api/admin/orders")
    @requires_auth(STAFF_ROLES | {"chef"})
    def admin_orders():
        page, limit, offset = page_args(default_limit=20, max_limit=100)
        where, params = ["TRUE"], []
        status = request.args.get("status")
        if status and status != "all":
            where.append("status = %s")
            params.append(status)
        search = (request.args.get("search") or "").strip()
        if search:
            where.append("(order_number ILIKE %s OR customer_name ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        if request.args.get("date_from"):
            where.append("created_at >= %s::date")
            params.append(request.args["date_from"])
        if request.args.get("date_to"):
            where.append("created_at < %s::date + INTERVAL '1 day'")
            params.append(request.args["date_to"])
        where_sql = " AND ".join(where)
        rows = db.fetch_all(
            f"SELECT * FROM orders WHERE {where_sql} ORDER BY created_at DESC LIMIT %s OFFSET %s",
            (*params, limit, offset),
        )
        count = db.fetch_one(f"SELECT COUNT(*) AS total FROM orders WHERE {where_sql}", tuple(params))
        total = int((count or {}).get("total") or 0)
        return jsonify({
            "orders": serialize(rows),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        })

    @app.get("/api/admin/orders/<order_id>")
    @requires_auth(STAFF_ROLES | {"chef"})
    def admin_order(order_id: str):
        order = db.fetch_one("SELECT * FROM orders WHERE id = %s", (order_id,))
        if not order:
            return jsonify({"error": "Order not found"}), 404
        return jsonify({"order": serialize(order)})

    @app.patch("/api/admin/orders/<order_id>")
    @requires_auth(STAFF_ROLES | {"chef"})
    def admin_update_order(order_id: str):
        body = json_body()
        status = body.get("status")
        payment_status = body.get("payment_status")
        if status is not None and status not in ORDER_STATUSES:
            return jsonify({"error": "Invalid status"}), 400
        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            return jsonify({"error": "Invalid payment status"}), 400
        if status is None and payment_status is None and "notes" not in body:
            return jsonify({"error": "No fields to update"}), 400

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT * FROM orders WHERE id = %s FOR UPDATE", (order_id,))
                    current = cur.fetchone()
                    if not current:
                        raise NotFoundError("Order not found")
                    # Stock has already been returned for closed orders
                    if status is not None and current["status"] in CLOSED_STATUSES and status not in CLOSED_STATUSES:
                        raise ValidationError(f"A {current['status']} order cannot be reopened")
                    updates = {}
                    if status is not None:
                        updates["status"] = status
                    if payment_status is not None:
                        updates["payment_status"] = payment_status
                    if "notes" in body:
                        updates["notes"] = body.get("notes")
                    assignments = ", ".join(f"{k} = %s" for k in updates)
                    cur.execute(
                        f"UPDATE orders SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
                        (*updates.values(), order_id),
                    )
                    updated = cur.fetchone()
                    if status in CLOSED_STATUSES and current["status"] not in CLOSED_STATUSES:
                        restore_stock(cur, current["items"])
                conn.commit()
                return current, updated

        previous, order = db.run_db(_work)
        if status and status != previous["status"]:
            app.logger.info("order %s status %s -> %s", order["order_number"], previous["status"], status)
            invalidate_catalog()
            if order.get("customer_email"):
                try:
                    result = mailer.send_order_status_email(
                        order["customer_email"], order["customer_name"], order["order_number"], status
                    )
                    if not result.success:
                        app.logger.warning("status email failed for %s: %s", order["order_number"], result.error)
                except Exception:
                    app.logger.exception("status email error for %s", order["order_number"])
        return jsonify({"success": True, "order": serialize(order)})
