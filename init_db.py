import argparse
import os

import psycopg
from dotenv import load_dotenv

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "db", "schema.sql")


def main():
    ap = argparse.ArgumentParser(description="Create the storefront tables in DATABASE_URL.")
    ap.add_argument("--seed", action="store_true", help="Also seed categories and menu products")
    args = ap.parse_args()

    # Load environment variables from .env
    load_dotenv()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("Error: DATABASE_URL is not set in the environment.")

    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        sql = f.read()

    with psycopg.connect(database_url) as conn:
        # Multi-statement script; no parameters so the simple query protocol is used
        conn.execute(sql)
        conn.commit()
    print("Database initialized successfully!")

    if args.seed:
        from db.seed_menu import seed

        seed(database_url)


if __name__ == "__main__":
    main()
