"""storefront schema

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16

"""
import os

from alembic import op

# revision identifiers, used by Alembic.
revision = '20261016_0001'
down_revision = None
branch_labels = None
depends_on = None

SCHEMA_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'db', 'schema.sql'))

# Children first so foreign keys never block the drop
TABLES = (
    'site_settings', 'chat_messages', 'chat_conversations', 'support_tickets',
    'wishlist', 'reviews', 'reservations', 'orders', 'tables', 'coupons', 'carts', 'product_variants',
    'products', 'categories', 'addresses', 'users',
)


def _statements(sql):
    for chunk in sql.split(';'):
        lines = [ln for ln in chunk.splitlines() if not ln.strip().startswith('--')]
        stmt = '\n'.join(lines).strip()
        if stmt:
            yield stmt


def upgrade():
    # schema.sql guards every statement with IF NOT EXISTS
    with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
        sql = f.read()
    for stmt in _statements(sql):
        op.execute(stmt)


def downgrade():
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
