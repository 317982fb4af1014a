"""Back-office dashboard statistics and sales reports.

Only paid orders count towards revenue. Day series are zero-filled so charts
always get one point per day of the requested window.
"""
import logging
import os
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone

from flask import jsonify, request

from . import db
from .auth import STAFF_ROLES, requires_auth
from .cache import DASHBOARD_PREFIX, cache_memo, cache_set
from .utils import money, serialize

logger = logging.getLogger(__name__)

DASHBOARD_TTL = int(os.getenv("CACHE_TTL_DASHBOARD", "60"))
MAX_REPORT_DAYS = 365


def _today() -> date:
    return datetime.now(timezone.utc).date()


def fill_days(rows: list[dict], days: int, today: date | None = None) -> list[dict]:
    """One entry per day ending today; days without paid orders get zeros."""
    today = today or _today()
    by_day = {}
    for r in rows:
        key = r["day"].isoformat() if isinstance(r["day"], date) else str(r["day"])
        by_day[key] = r
    series = []
    for offset in range(days - 1, -1, -1):
        day = (today - timedelta(days=offset)).isoformat()
        row = by_day.get(day) or {}
        series.append({
            "date": day,
            "revenue": money(row.get("revenue") or 0),
            "orders": int(row.get("orders") or 0),
        })
    return series


def fill_hours(rows: list[dict]) -> list[dict]:
    by_hour = {int(r["hour"]): r for r in rows}
    return [
        {"date": f"{h:02d}:00", "revenue": money((by_hour.get(h) or {}).get("revenue") or 0)}
        for h in range(24)
    ]


def revenue_by_category(item_lists: list[list[dict]], category_names: dict[str, str]) -> list[dict]:
    """Aggregate line totals from order snapshots into category revenue, highest first."""
    totals: dict[str, float] = defaultdict(float)
    for items in item_lists:
        for item in items or []:
            line = item.get("total")
            if line is None:
                line = float(item.get("price") or 0) * int(item.get("quantity") or 0)
            name = category_names.get(item.get("category_id") or "") or "Uncategorized"
            totals[name] += float(line)
    return sorted(
        ({"name": name, "revenue": money(revenue)} for name, revenue in totals.items() if revenue > 0),
        key=lambda c: c["revenue"],
        reverse=True,
    )


def _window_start(days: int) -> datetime:
    start = _today() - timedelta(days=days - 1)
    return datetime(start.year, start.month, start.day, tzinfo=timezone.utc)


def compute_dashboard_stats(days: int = 7) -> dict:
    since = _window_start(days)
    with db.get_connection() as conn:
        with conn.cursor(row_factory=db.dict_row) as cur:
            cur.execute("SELECT COALESCE(SUM(total), 0) AS revenue FROM orders WHERE payment_status = 'paid'")
            total_revenue = money(cur.fetchone()["revenue"])
            cur.execute("SELECT COUNT(*) AS n FROM orders")
            total_orders = int(cur.fetchone()["n"])
            cur.execute("SELECT COUNT(*) AS n FROM orders WHERE created_at >= CURRENT_DATE")
            orders_today = int(cur.fetchone()["n"])
            cur.execute("SELECT COUNT(*) AS n FROM users WHERE role = 'customer'")
            total_customers = int(cur.fetchone()["n"])
            cur.execute("SELECT COUNT(*) AS n FROM products WHERE is_active = TRUE")
            active_products = int(cur.fetchone()["n"])
            cur.execute("SELECT status, COUNT(*) AS n FROM orders GROUP BY status")
            by_status = {r["status"]: int(r["n"]) for r in cur.fetchall()}
            cur.execute(
                """
                SELECT id, name, slug, quantity, low_stock_threshold
                FROM products
                WHERE track_quantity = TRUE AND is_active = TRUE AND quantity <= low_stock_threshold
                ORDER BY quantity ASC LIMIT 10
                """
            )
            low_stock = cur.fetchall()
            cur.execute(
                """
                SELECT id, order_number, customer_name, total, status, payment_status, created_at
                FROM orders ORDER BY created_at DESC LIMIT 5
                """
            )
            recent = cur.fetchall()
            if days == 1:
                cur.execute(
                    """
                    SELECT EXTRACT(HOUR FROM created_at)::int AS hour, COALESCE(SUM(total), 0) AS revenue
                    FROM orders
                    WHERE payment_status = 'paid' AND created_at >= %s
                    GROUP BY hour
                    """,
                    (since,),
                )
                chart = fill_hours(cur.fetchall())
            else:
                cur.execute(
                    """
                    SELECT DATE(created_at) AS day, COALESCE(SUM(total), 0) AS revenue, COUNT(*) AS orders
                    FROM orders
                    WHERE payment_status = 'paid' AND created_at >= %s
                    GROUP BY day
                    """,
                    (since,),
                )
                chart = fill_days(cur.fetchall(), days)
    return {
        "total_revenue": total_revenue,
        "total_orders": total_orders,
        "orders_today": orders_today,
        "pending_orders": by_status.get("pending", 0),
        "total_customers": total_customers,
        "active_products": active_products,
        "orders_by_status": by_status,
        "low_stock_products": serialize(low_stock),
        "recent_orders": serialize(recent),
        "revenue_chart": chart,
    }


def build_report(days: int) -> dict:
    since = _window_start(days)
    with db.get_connection() as conn:
        with conn.cursor(row_factory=db.dict_row) as cur:
            cur.execute(
                """
                SELECT DATE(created_at) AS day, COALESCE(SUM(total), 0) AS revenue, COUNT(*) AS orders
                FROM orders
                WHERE payment_status = 'paid' AND created_at >= %s
                GROUP BY day
                """,
                (since,),
            )
            daily = fill_days(cur.fetchall(), days)
            cur.execute(
                "SELECT items FROM orders WHERE payment_status = 'paid' AND created_at >= %s",
                (since,),
            )
            item_lists = [r["items"] for r in cur.fetchall()]
            cur.execute("SELECT id, name FROM categories")
            names = {r["id"]: r["name"] for r in cur.fetchall()}
            cur.execute(
                """
                SELECT MAX(customer_name) AS customer_name, customer_email,
                       SUM(total) AS total_spent, COUNT(*) AS order_count
                FROM orders
                WHERE payment_status = 'paid' AND created_at >= %s
                GROUP BY customer_email
                ORDER BY total_spent DESC
                LIMIT 10
                """,
                (since,),
            )
            top_customers = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS n FROM users WHERE created_at >= %s", (since,))
            new_customers = int(cur.fetchone()["n"])

    total_revenue = money(sum(d["revenue"] for d in daily))
    total_orders = sum(d["orders"] for d in daily)
    return {
        "summary": {
            "total_revenue": total_revenue,
            "total_orders": total_orders,
            "avg_order_value": money(total_revenue / total_orders) if total_orders else 0.0,
            "new_customers": new_customers,
        },
        "revenue_by_day": daily,
        "revenue_by_category": revenue_by_category(item_lists, names),
        "top_customers": serialize(top_customers),
    }


def _days_arg(default: int) -> int:
    days = request.args.get("days", default=default, type=int) or default
    return max(1, min(MAX_REPORT_DAYS, days))


def start_dashboard_prewarm() -> threading.Thread:
    """Keep the default dashboard entry warm from a background thread."""
    interval = int(os.getenv("DASHBOARD_PREWARM_INTERVAL", "60"))

    def _loop():
        while True:
            try:
                cache_set(f"{DASHBOARD_PREFIX}:stats:days=7", db.run_db(compute_dashboard_stats), DASHBOARD_TTL)
            except Exception:
                logger.warning("dashboard prewarm failed", exc_info=True)
            time.sleep(interval)

    t = threading.Thread(target=_loop, name="dashboard-prewarm", daemon=True)
    t.start()
    return t


def register_reports(app):
    @app.get("/api/admin/stats")
    @requires_auth(STAFF_ROLES)
    def admin_stats():
        days = _days_arg(7)
        stats = cache_memo(
            f"{DASHBOARD_PREFIX}:stats:days={days}",
            DASHBOARD_TTL,
            lambda: db.run_db(lambda: compute_dashboard_stats(days)),
        )
        return jsonify(stats)

    @app.get("/api/admin/reports")
    @requires_auth(STAFF_ROLES)
    def admin_reports():
        days = _days_arg(30)
        return jsonify(db.run_db(lambda: build_report(days)))
