"""dining tables, reservations and single-use payments

Revision ID: 20261016_0002
Revises: 20261016_0001
Create Date: 2026-10-16

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = '20261016_0002'
down_revision = '20261016_0001'
branch_labels = None
depends_on = None


def upgrade():
    # Databases created from the current schema.sql already have all of this
    op.execute("""
        CREATE TABLE IF NOT EXISTS tables (
            id TEXT PRIMARY KEY,
            table_number TEXT NOT NULL UNIQUE,
            capacity INT NOT NULL CHECK (capacity > 0),
            location TEXT,
            status TEXT NOT NULL DEFAULT 'available'
                CHECK (status IN ('available', 'occupied', 'reserved', 'cleaning')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("ALTER TABLE orders ADD COLUMN IF NOT EXISTS table_id TEXT REFERENCES tables(id) ON DELETE SET NULL")
    op.execute("""
        CREATE TABLE IF NOT EXISTS reservations (
            id TEXT PRIMARY KEY,
            user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            phone TEXT NOT NULL,
            email TEXT,
            table_id TEXT REFERENCES tables(id) ON DELETE SET NULL,
            guest_count INT NOT NULL CHECK (guest_count > 0),
            reservation_time TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'confirmed', 'cancelled', 'completed')),
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_reservations_time ON reservations (reservation_time)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations (user_id, reservation_time DESC)")
    op.execute("DROP INDEX IF EXISTS idx_orders_transaction")
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_transaction_id ON orders (transaction_id) "
        "WHERE transaction_id IS NOT NULL"
    )


def downgrade():
    op.execute("DROP INDEX IF EXISTS uq_orders_transaction_id")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_orders_transaction ON orders (transaction_id) "
        "WHERE transaction_id IS NOT NULL"
    )
    op.execute("DROP TABLE IF EXISTS reservations")
    op.execute("ALTER TABLE orders DROP COLUMN IF EXISTS table_id")
    op.execute("DROP TABLE IF EXISTS tables")
