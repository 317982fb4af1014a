"""Seed categories and menu products.

Usage:
  export DATABASE_URL=postgresql://...
  python -m db.seed_menu
"""
import os
import secrets
import string

import psycopg
from dotenv import load_dotenv
from psycopg.types.json import Jsonb

CATEGORIES = [
    ("Rice", "rice", "Biryani, polao and khichuri", 1),
    ("Curry", "curry", "Slow-cooked curries and bhuna", 2),
    ("Kebab", "kebab", "Charcoal grilled kebabs", 3),
    ("Snacks", "snacks", "Street food and starters", 4),
    ("Desserts", "desserts", "Sweets and puddings", 5),
    ("Drinks", "drinks", "Lassi, juices and tea", 6),
]

# name, category slug, price, spiciness, vegetarian, prep minutes
MENU = [
    ("Kacchi Biryani", "rice", 450, 2, False, 25),
    ("Chicken Biryani", "rice", 350, 2, False, 20),
    ("Morog Polao", "rice", 380, 1, False, 20),
    ("Bhuna Khichuri", "rice", 250, 1, True, 15),
    ("Beef Kala Bhuna", "curry", 420, 3, False, 30),
    ("Chicken Rezala", "curry", 320, 1, False, 25),
    ("Shorshe Ilish", "curry", 550, 2, False, 25),
    ("Mixed Vegetable Curry", "curry", 180, 1, True, 15),
    ("Beef Sheek Kebab", "kebab", 280, 2, False, 20),
    ("Chicken Tikka", "kebab", 260, 2, False, 20),
    ("Shami Kebab", "kebab", 160, 1, False, 15),
    ("Fuchka", "snacks", 120, 2, True, 10),
    ("Chotpoti", "snacks", 110, 2, True, 10),
    ("Vegetable Singara", "snacks", 60, 1, True, 10),
    ("Mishti Doi", "desserts", 90, 0, True, 5),
    ("Firni", "desserts", 100, 0, True, 5),
    ("Rasmalai", "desserts", 150, 0, True, 5),
    ("Borhani", "drinks", 80, 1, True, 5),
    ("Mango Lassi", "drinks", 120, 0, True, 5),
    ("Masala Cha", "drinks", 40, 0, True, 5),
]

_ALPHABET = string.ascii_letters + string.digits


def _id() -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(21))


def _slug(name: str) -> str:
    return "-".join(name.lower().split())


def seed(database_url: str) -> None:
    print("Seeding menu...")
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            for name, slug, description, order in CATEGORIES:
                cur.execute(
                    """
                    INSERT INTO categories (id, name, slug, description, sort_order)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (slug) DO NOTHING
                    """,
                    (_id(), name, slug, description, order),
                )
            cur.execute("SELECT slug, id FROM categories")
            category_ids = dict(cur.fetchall())
            for i, (name, category, price, spice, veg, prep) in enumerate(MENU):
                image = f"/images/menu/{_slug(name)}.jpg"
                cur.execute(
                    """
                    INSERT INTO products (
                        id, name, slug, description, price, quantity, track_quantity, category_id,
                        images, featured_image, is_featured, is_vegetarian, spiciness_level, preparation_time
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (slug) DO NOTHING
                    """,
                    (
                        _id(), name, _slug(name), f"House-made {name.lower()}.", price, 50, True,
                        category_ids.get(category), Jsonb([image]), image, i % 5 == 0, veg, spice, prep,
                    ),
                )
        conn.commit()
    print(f"Seeded {len(CATEGORIES)} categories and {len(MENU)} products.")


def main():
    load_dotenv()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set in the environment")
    seed(database_url)


if __name__ == "__main__":
    main()
