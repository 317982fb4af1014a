"""Bulk demo data: customers and historical paid orders over the seeded menu.

Gives the dashboard, reports and load tests something realistic to chew on.
Run ``python -m db.seed_menu`` first so there are products to order.
"""
import os
import random
import secrets
import string
import time
from datetime import datetime, timedelta, timezone

import bcrypt
import psycopg
from dotenv import load_dotenv
from faker import Faker
from psycopg.types.json import Jsonb

# Scale targets (can be overridden via environment variables)
TARGET_CUSTOMERS = int(os.getenv("SCALE_CUSTOMERS", 500))
TARGET_ORDERS = int(os.getenv("SCALE_ORDERS", 5000))
HISTORY_DAYS = int(os.getenv("SCALE_HISTORY_DAYS", 90))
CHUNK_SIZE = int(os.getenv("SCALE_CHUNK_SIZE", 1000))
DEMO_PASSWORD = os.getenv("SCALE_PASSWORD", "Customer!23")

STATUS_WEIGHTS = {"delivered": 70, "served": 10, "confirmed": 8, "pending": 7, "cancelled": 5}
CITIES = ["Dhaka", "Chattogram", "Sylhet", "Khulna", "Rajshahi"]
_ALPHABET = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def _id() -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(21))


def chunked(items, size):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _order_number(created: datetime) -> str:
    ms = str(int(created.timestamp() * 1000))[-8:]
    return "DC" + ms + "".join(secrets.choice(_BASE36) for _ in range(4))


def _fake_order(fake, customer, products, created):
    lines = []
    for product in random.sample(products, k=min(len(products), random.randint(1, 4))):
        pid, name, price, category_id, image = product
        qty = random.randint(1, 3)
        lines.append({
            "product_id": pid,
            "variant_id": None,
            "name": name,
            "price": float(price),
            "quantity": qty,
            "total": round(float(price) * qty, 2),
            "image": image,
            "category_id": category_id,
        })
    subtotal = round(sum(line["total"] for line in lines), 2)
    order_type = random.choice(["delivery", "delivery", "takeaway", "dine_in"])
    shipping = 0.0 if order_type != "delivery" or subtotal >= 1000 else 60.0
    status = random.choices(list(STATUS_WEIGHTS), weights=list(STATUS_WEIGHTS.values()))[0]
    paid = status in ("delivered", "served", "confirmed")
    user_id, name, email, phone = customer
    return (
        _id(), _order_number(created), user_id, status, "paid" if paid else "pending",
        random.choice(["cod", "stripe"]), order_type, subtotal, shipping, round(subtotal + shipping, 2),
        name, email, phone,
        Jsonb({"address": fake.street_address(), "city": random.choice(CITIES), "country": "BD"}),
        Jsonb(lines), created, created,
    )


def main():
    load_dotenv()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set in the environment")

    fake = Faker()
    start_all = time.time()
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            def existing_count(table, where="TRUE"):
                cur.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}")
                return cur.fetchone()[0]

            # 1) Customers
            t0 = time.time()
            current = existing_count("users", "role = 'customer'")
            target_insert = max(0, TARGET_CUSTOMERS - current)
            print(f"[scale] Customers existing={current} target_total={TARGET_CUSTOMERS} will_insert={target_insert}")
            if target_insert:
                password_hash = bcrypt.hashpw(DEMO_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")
                rows = []
                for _ in range(target_insert):
                    joined = datetime.now(timezone.utc) - timedelta(days=random.randint(0, HISTORY_DAYS))
                    rows.append((
                        _id(), fake.name()[:255], fake.unique.email(), password_hash,
                        "01" + "".join(random.choices(string.digits, k=9)), joined, joined,
                    ))
                for batch in chunked(rows, CHUNK_SIZE):
                    cur.executemany(
                        """
                        INSERT INTO users (id, name, email, password_hash, role, phone, auth_provider, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, 'customer', %s, 'password', %s, %s)
                        ON CONFLICT (email) DO NOTHING
                        """,
                        batch,
                    )
            print(f"[timing] Customers phase {time.time()-t0:.2f}s")

            cur.execute("SELECT id, name, email, phone FROM users WHERE role = 'customer'")
            customers = cur.fetchall()
            cur.execute("SELECT id, name, price, category_id, featured_image FROM products WHERE is_active = TRUE")
            products = cur.fetchall()
            if not customers or not products:
                raise SystemExit("Need customers and products; run python -m db.seed_menu first")

            # 2) Orders spread over the history window
            t0 = time.time()
            current = existing_count("orders")
            target_insert = max(0, TARGET_ORDERS - current)
            print(f"[scale] Orders existing={current} target_total={TARGET_ORDERS} will_insert={target_insert}")
            now = datetime.now(timezone.utc)
            rows = [
                _fake_order(
                    fake,
                    random.choice(customers),
                    products,
                    now - timedelta(minutes=random.randint(0, HISTORY_DAYS * 24 * 60)),
                )
                for _ in range(target_insert)
            ]
            for batch in chunked(rows, CHUNK_SIZE):
                cur.executemany(
                    """
                    INSERT INTO orders (
                        id, order_number, user_id, status, payment_status, payment_method, order_type,
                        subtotal, shipping_cost, total, customer_name, customer_email, customer_phone,
                        shipping_address, items, created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (order_number) DO NOTHING
                    """,
                    batch,
                )
            print(f"[timing] Orders phase {time.time()-t0:.2f}s")

        conn.commit()
    print(f"[scale] Complete in {time.time()-start_all:.2f}s")


if __name__ == "__main__":
    main()
