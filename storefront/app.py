import hmac
import logging
import os
import time

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS

from . import db
from .account import register_account
from .admin import register_admin
from .analytics import register_analytics
from .auth import register_auth
from .cache import CATALOG_PREFIX, DASHBOARD_PREFIX, cache_invalidate, cache_metrics
from .cart import register_cart
from .catalog import register_catalog
from .chat import register_chat
from .config import get_config
from .coupons import register_coupons
from .dining import register_dining
from .errors import register_error_handlers
from .oauth import register_oauth
from .orders import register_orders
from .payments import register_payments
from .reports import register_reports, start_dashboard_prewarm
from .reviews import register_reviews
from .utils import json_body

REVALIDATE_PREFIXES = (CATALOG_PREFIX, DASHBOARD_PREFIX)


def _install_timing(app: Flask) -> None:
    slow_request_ms = int(os.getenv("SLOW_REQUEST_MS", "500"))
    slow_db_ms = int(os.getenv("SLOW_DB_MS", "400"))

    @app.before_request
    def _timing_start():
        g._req_start = time.perf_counter()
        g.db_time_ms = 0.0

    @app.after_request
    def _timing_end(resp):
        start = getattr(g, "_req_start", None)
        if start is None:
            return resp
        dur_ms = (time.perf_counter() - start) * 1000.0
        db_ms = float(getattr(g, "db_time_ms", 0.0) or 0.0)
        resp.headers["X-Request-Duration"] = f"{dur_ms:.2f}ms"
        resp.headers["X-DB-Time"] = f"{db_ms:.2f}ms"
        resp.headers["Server-Timing"] = f"app;dur={dur_ms:.2f}, db;dur={db_ms:.2f}"
        if dur_ms >= slow_request_ms:
            app.logger.warning(
                "SLOW_REQUEST method=%s path=%s status=%s dur_ms=%.2f db_ms=%.2f",
                request.method, request.path, resp.status_code, dur_ms, db_ms,
            )
        if db_ms >= slow_db_ms:
            app.logger.warning(
                "SLOW_DB method=%s path=%s status=%s db_ms=%.2f total_ms=%.2f",
                request.method, request.path, resp.status_code, db_ms, dur_ms,
            )
        return resp


def create_app() -> Flask:
    # Load env from .env for local dev
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": os.getenv("CORS_ORIGINS", "*")}})

    if os.getenv("ENABLE_COMPRESSION") == "1":
        from flask_compress import Compress

        Compress(app)

    if os.getenv("LOG_TIMING") == "1":
        _install_timing(app)

    try:
        db.init_pool()
    except Exception:
        # Health still answers without a database in dev
        app.logger.warning("database pool unavailable at startup", exc_info=True)

    if os.getenv("DASHBOARD_PREWARM") == "1":
        start_dashboard_prewarm()

    register_error_handlers(app)

    @app.get("/health")
    def health():
        try:
            db.fetch_one("SELECT 1 AS ok")
            db_ok = True
        except Exception:
            db_ok = False
        resp = jsonify({"status": "ok", "db": db_ok})
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return resp

    @app.get("/metrics")
    def metrics():
        m = {"cache": cache_metrics()}
        if os.getenv("METRICS_PROMETHEUS") == "1":
            lines = [
                f"app_cache_hits_total {m['cache']['hits']}",
                f"app_cache_misses_total {m['cache']['misses']}",
                f"app_cache_expired_total {m['cache']['expired']}",
            ]
            return ("\n".join(lines) + "\n", 200, {"Content-Type": "text/plain; version=0.0.4"})
        return jsonify(m)

    @app.post("/api/revalidate")
    def revalidate():
        secret = get_config().REVALIDATE_SECRET
        given = request.headers.get("X-Revalidate-Secret") or request.args.get("secret") or ""
        if not secret or not hmac.compare_digest(given, secret):
            return jsonify({"error": "Invalid secret"}), 401
        prefix = json_body().get("prefix") or CATALOG_PREFIX
        if not any(prefix.startswith(p) for p in REVALIDATE_PREFIXES):
            return jsonify({"error": "Unknown cache prefix"}), 400
        cache_invalidate(prefix)
        app.logger.info("revalidated cache prefix=%s", prefix)
        return jsonify({"revalidated": True, "prefix": prefix, "now": int(time.time() * 1000)})

    register_auth(app)
    register_oauth(app)
    register_catalog(app)
    register_cart(app)
    register_coupons(app)
    register_orders(app)
    register_dining(app)
    register_payments(app)
    register_analytics(app)
    register_chat(app)
    register_reviews(app)
    register_account(app)
    register_admin(app)
    register_reports(app)
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG") == "1")
