#!/usr/bin/env python3
"""Create an admin (or staff) account, or reset its password.

Usage:
  export DATABASE_URL=postgresql://...
  python scripts/create_admin_user.py --email owner@example.com --password 'Admin!234' --name Owner
  python scripts/create_admin_user.py --email cook@example.com --password 'Chef!2345' --role chef
"""
import argparse
import os
import secrets
import string

import bcrypt
import psycopg
from dotenv import load_dotenv


def hash_pw(pw: str, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(pw.encode("utf-8"), salt).decode("utf-8")


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--email", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--name", default="Store Admin")
    ap.add_argument("--role", default="admin", choices=["admin", "staff", "chef"])
    ap.add_argument("--rounds", type=int, default=int(os.getenv("BCRYPT_ROUNDS", "12")))
    args = ap.parse_args()
    if len(args.password) < 8:
        raise SystemExit("--password must be at least 8 characters")

    load_dotenv(os.getenv("DOTENV_PATH", ".env"))
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise SystemExit("DATABASE_URL not set (ensure .env exists or export DATABASE_URL)")

    email = args.email.strip().lower()
    hpw = hash_pw(args.password, args.rounds)
    user_id = "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(21))
    with psycopg.connect(db_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, name, email, password_hash, role, auth_provider, email_verified)
                VALUES (%s, %s, %s, %s, %s, 'password', TRUE)
                ON CONFLICT (email) DO UPDATE SET
                    password_hash = EXCLUDED.password_hash, role = EXCLUDED.role, updated_at = NOW()
                RETURNING id, (xmax = 0) AS inserted
                """,
                (user_id, args.name, email, hpw, args.role),
            )
            row_id, inserted = cur.fetchone()
        conn.commit()
    print(f"{'Created' if inserted else 'Updated'} {args.role} user {email} (id={row_id}).")


if __name__ == "__main__":
    main()
