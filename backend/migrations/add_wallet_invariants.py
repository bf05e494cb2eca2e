"""
Migration: Add wallet invariants and optimistic version column.

For databases created before the ledger enforced its invariants in the
schema:
1. sc_wallets.version - bumped by every conditional balance update
2. CHECK locked >= 0
3. CHECK balance >= locked
4. CHECK exactly one owner (division xor user_id)

Rows that already violate an invariant abort the migration; fix them from
the ledger first.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/sc_engine"
)

CONSTRAINTS = {
    "ck_wallet_locked_non_negative": "locked >= 0",
    "ck_wallet_balance_covers_locked": "balance >= locked",
    "ck_wallet_single_owner": "(division IS NULL AND user_id IS NOT NULL) OR (division IS NOT NULL AND user_id IS NULL)",
}


def column_exists(conn, table_name: str, column_name: str) -> bool:
    """Check if a column exists on a table."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.columns
            WHERE table_name = :table_name AND column_name = :column_name
        )
    """), {"table_name": table_name, "column_name": column_name})
    return result.fetchone()[0]


def constraint_exists(conn, constraint_name: str) -> bool:
    """Check if a named constraint exists."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.table_constraints
            WHERE constraint_name = :constraint_name
        )
    """), {"constraint_name": constraint_name})
    return result.fetchone()[0]


def run_migration():
    """Add version column and invariant constraints to sc_wallets."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        if column_exists(conn, "sc_wallets", "version"):
            print("sc_wallets.version already exists")
        else:
            conn.execute(text("""
                ALTER TABLE sc_wallets ADD COLUMN version INTEGER NOT NULL DEFAULT 0
            """))
            print("Added sc_wallets.version")

        violations = conn.execute(text("""
            SELECT COUNT(*) FROM sc_wallets
            WHERE locked < 0 OR balance < locked
        """)).scalar()
        if violations:
            raise RuntimeError(f"{violations} wallets violate balance >= locked >= 0; reconcile before migrating")

        for name, expression in CONSTRAINTS.items():
            if constraint_exists(conn, name):
                print(f"{name} already exists")
                continue
            conn.execute(text(f"ALTER TABLE sc_wallets ADD CONSTRAINT {name} CHECK ({expression})"))
            print(f"Added {name}")

        conn.commit()
        print("\nWallet invariants migration completed successfully!")


if __name__ == "__main__":
    run_migration()
