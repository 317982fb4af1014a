import os

import requests
from flask import jsonify

from . import db
from .auth import USER_COLUMNS, admin_role_for, token_for_user
from .errors import StorefrontError
from .utils import json_body, new_id, serialize

GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_TOKEN_INFO = "https://oauth2.googleapis.com/tokeninfo"


class OAuthError(StorefrontError):
    status_code = 400


def verify_id_token(id_token: str, audiences: set[str]) -> dict:
    """Verify a Google id_token via the tokeninfo endpoint (signature + audience)."""
    info_resp = requests.get(GOOGLE_TOKEN_INFO, params={"id_token": id_token}, timeout=10)
    if info_resp.status_code != 200:
        raise OAuthError("id_token verification failed", {"response": info_resp.text})
    info = info_resp.json()
    if audiences and info.get("aud") not in audiences:
        raise OAuthError("Invalid audience")
    if not info.get("email") or str(info.get("email_verified")).lower() != "true":
        raise OAuthError("Email missing or not verified")
    return info


def upsert_google_user(info: dict) -> dict:
    """Find or create the user for a verified Google identity."""
    email = info["email"].lower()
    name = info.get("name") or email
    picture = info.get("picture")
    promoted = admin_role_for(email)

    def _work():
        with db.get_connection() as conn:
            with conn.cursor(row_factory=db.dict_row) as cur:
                cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE email = %s LIMIT 1", (email,))
                row = cur.fetchone()
                if not row:
                    cur.execute(
                        f"""
                        INSERT INTO users (id, name, email, email_verified, image, role, auth_provider)
                        VALUES (%s, %s, %s, TRUE, %s, %s, 'google')
                        RETURNING {USER_COLUMNS}
                        """,
                        (new_id(), name[:255], email, picture, promoted or "customer"),
                    )
                    row = cur.fetchone()
                elif promoted and row["role"] != promoted:
                    # Upgrade role when the address newly qualifies
                    cur.execute(
                        f"UPDATE users SET role = %s, updated_at = NOW() WHERE id = %s RETURNING {USER_COLUMNS}",
                        (promoted, row["id"]),
                    )
                    row = cur.fetchone()
            conn.commit()
            return row

    return db.run_db(_work)


def _session_response(user: dict, provider: str):
    return jsonify({
        "access_token": token_for_user(user),
        "token_type": "Bearer",
        "provider": provider,
        "email": user["email"],
        "role": user["role"],
        "user": serialize(user),
    })


def register_oauth(app):
    """Register Google sign-in endpoints.

    Web flow (Authorization Code + PKCE):
      1. The browser generates code_verifier and code_challenge = BASE64URL(SHA256(verifier)).
      2. It redirects to Google with response_type=code and the S256 challenge.
      3. Google redirects back with code & state.
      4. The browser POSTs code + code_verifier to /api/oauth/google/exchange.
      5. The API exchanges the code, verifies the id_token, upserts the user and returns a JWT.

    Mobile apps obtain an id_token natively and POST it to /api/auth/mobile-google.
    """

    @app.post("/api/oauth/google/exchange")
    def google_oauth_exchange():
        body = json_body()
        code = body.get("code")
        code_verifier = body.get("code_verifier")
        if not code or not code_verifier:
            return jsonify({"error": "Missing code or code_verifier"}), 400

        client_id = os.getenv("GOOGLE_OAUTH_CLIENT_ID")
        client_secret = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET")
        redirect_uri = os.getenv("GOOGLE_OAUTH_REDIRECT_URI")
        if not (client_id and client_secret and redirect_uri):
            return jsonify({"error": "OAuth2 not fully configured"}), 500

        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        try:
            token_resp = requests.post(GOOGLE_TOKEN_ENDPOINT, data=data, timeout=15)
            if token_resp.status_code != 200:
                return jsonify({"error": "Token exchange failed", "details": token_resp.text}), 400
            id_token = token_resp.json().get("id_token")
            if not id_token:
                return jsonify({"error": "Missing id_token in response"}), 400
            info = verify_id_token(id_token, {client_id})
        except requests.RequestException as e:
            app.logger.warning("google token exchange failed: %s", e)
            return jsonify({"error": "Google is unreachable"}), 502

        user = upsert_google_user(info)
        return _session_response(user, "google")

    @app.post("/api/auth/mobile-google")
    def mobile_google():
        body = json_body()
        id_token = body.get("id_token") or body.get("idToken")
        if not id_token:
            return jsonify({"error": "Missing id_token"}), 400
        audiences = {
            a.strip()
            for a in (
                os.getenv("GOOGLE_OAUTH_CLIENT_ID", ""),
                *os.getenv("GOOGLE_MOBILE_CLIENT_IDS", "").split(","),
            )
            if a.strip()
        }
        try:
            info = verify_id_token(id_token, audiences)
        except requests.RequestException as e:
            app.logger.warning("google tokeninfo failed: %s", e)
            return jsonify({"error": "Google is unreachable"}), 502

        user = upsert_google_user(info)
        return _session_response(user, "google_mobile")
