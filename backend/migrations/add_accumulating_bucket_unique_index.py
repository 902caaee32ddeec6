"""
Migration: Add partial unique index on ACCUMULATING buckets.

At most one bucket per (bucketing_rule_id, grouping_key) may be
ACCUMULATING. Databases created before the index existed may already hold
duplicates; those are reported and the index is not created until an
operator resolves them.
"""
from sqlalchemy import create_engine, text
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./remit_engine.db")

INDEX_NAME = "uq_buckets_accumulating_key"


def run_migration():
    """Create uq_buckets_accumulating_key if it is safe to do so."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        duplicates = conn.execute(text("""
            SELECT bucketing_rule_id, grouping_key, COUNT(*) AS n
            FROM buckets
            WHERE status = 'ACCUMULATING'
            GROUP BY bucketing_rule_id, grouping_key
            HAVING COUNT(*) > 1
        """)).fetchall()

        if duplicates:
            print(f"Found {len(duplicates)} keys with more than one ACCUMULATING bucket:")
            for rule_id, grouping_key, count in duplicates:
                print(f"  rule={rule_id} key={grouping_key} buckets={count}")
            print("Resolve these (merge or fail the extras) and re-run the migration.")
            return False

        conn.execute(text(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {INDEX_NAME}
            ON buckets (bucketing_rule_id, grouping_key)
            WHERE status = 'ACCUMULATING'
        """))
        print(f"Ensured {INDEX_NAME} on buckets")

        conn.commit()
    return True


if __name__ == "__main__":
    run_migration()
