import os
from datetime import datetime, timedelta, timezone
from functools import wraps

import bcrypt
import jwt
from flask import g, jsonify, request

from . import db
from .config import get_config
from .utils import json_body, new_id, serialize

ROLES = ("customer", "admin", "staff", "chef")
STAFF_ROLES = {"admin", "staff"}


def _secret() -> str:
    return get_config().SECRET_KEY


def make_access_token(payload: dict) -> str:
    ttl_hours = int(os.getenv("TOKEN_TTL_HOURS", "24"))
    to_encode = dict(payload)
    to_encode.setdefault("exp", datetime.now(timezone.utc) + timedelta(hours=ttl_hours))
    return jwt.encode(to_encode, _secret(), algorithm="HS256")


def token_for_user(user: dict) -> str:
    return make_access_token({
        "sub": str(user["id"]),
        "email": user.get("email"),
        "name": user.get("name"),
        "role": user.get("role") or "customer",
    })


def _bearer_token() -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def decode_token(token: str) -> dict:
    return jwt.decode(token, _secret(), algorithms=["HS256"])


def requires_auth(role=None):
    """Guard a view with a bearer JWT.

    ``role`` may be a single role name or a collection of accepted roles.
    The decoded claims are available as ``g.user`` inside the view.
    """
    allowed = {role} if isinstance(role, str) else set(role or ())

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            token = _bearer_token()
            if not token:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401
            try:
                claims = decode_token(token)
            except jwt.PyJWTError as e:
                return jsonify({"error": f"Invalid token: {e}"}), 401
            if allowed and claims.get("role") not in allowed:
                return jsonify({"error": "Forbidden"}), 403
            g.user = claims
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def optional_user() -> dict | None:
    """Claims of the caller when a valid bearer token is present, else None."""
    if getattr(g, "user", None):
        return g.user
    token = _bearer_token()
    if not token:
        return None
    try:
        claims = decode_token(token)
    except jwt.PyJWTError:
        return None
    g.user = claims
    return claims


def current_user_id() -> str | None:
    claims = getattr(g, "user", None) or {}
    return claims.get("sub")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # malformed hash
        return False


def admin_role_for(email: str) -> str | None:
    admin_emails = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
    admin_domain = os.getenv("ADMIN_EMAIL_DOMAIN", "").lower().strip()
    email = email.lower()
    if email in admin_emails or (admin_domain and email.endswith("@" + admin_domain)):
        return "admin"
    return None


USER_COLUMNS = "id, name, email, email_verified, image, role, phone, auth_provider, created_at"


def register_auth(app):
    @app.post("/api/register")
    def register():
        body = json_body()
        name = (body.get("name") or "").strip()
        email = (body.get("email") or "").strip().lower()
        password = body.get("password") or ""
        phone = (body.get("phone") or "").strip() or None
        if not name or not email or not password:
            return jsonify({"error": "Name, email and password are required"}), 400
        if "@" not in email:
            return jsonify({"error": "Invalid email address"}), 400
        if len(password) < 8:
            return jsonify({"error": "Password must be at least 8 characters"}), 400

        role = admin_role_for(email) or "customer"

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute("SELECT id FROM users WHERE email = %s LIMIT 1", (email,))
                    if cur.fetchone():
                        return None
                    cur.execute(
                        f"""
                        INSERT INTO users (id, name, email, password_hash, role, phone, auth_provider)
                        VALUES (%s, %s, %s, %s, %s, %s, 'password')
                        RETURNING {USER_COLUMNS}
                        """,
                        (new_id(), name[:255], email, hash_password(password), role, phone),
                    )
                    row = cur.fetchone()
                conn.commit()
                return row

        user = db.run_db(_work)
        if user is None:
            return jsonify({"error": "An account with this email already exists"}), 409
        app.logger.info("registered user id=%s role=%s", user["id"], user["role"])
        return jsonify({
            "access_token": token_for_user(user),
            "token_type": "Bearer",
            "user": _public_user(user),
        }), 201

    @app.post("/api/login")
    def login():
        body = json_body()
        email = (body.get("email") or body.get("username") or "").strip().lower()
        password = body.get("password") or ""
        if not email or not password:
            return jsonify({"error": "Missing email or password"}), 400
        row = db.fetch_one(
            f"SELECT {USER_COLUMNS}, password_hash FROM users WHERE email = %s LIMIT 1",
            (email,),
        )
        if not row or not check_password(password, row.get("password_hash")):
            return jsonify({"error": "Invalid credentials"}), 401
        return jsonify({
            "access_token": token_for_user(row),
            "token_type": "Bearer",
            "user": _public_user(row),
        })

    @app.get("/api/auth/me")
    @requires_auth()
    def me():
        row = db.fetch_one(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s", (current_user_id(),))
        if not row:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": _public_user(row)})


def _public_user(row: dict) -> dict:
    return serialize({k: v for k, v in row.items() if k != "password_hash"})
