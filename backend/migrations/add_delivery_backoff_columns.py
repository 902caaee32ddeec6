"""
Migration: Add delivery backoff and version columns to file_generation_history.

- next_attempt_at: earliest time the next delivery attempt is eligible
- version: optimistic-lock counter used to claim a delivery attempt
"""
from sqlalchemy import create_engine, inspect, text
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./remit_engine.db")

COLUMNS = {
    "next_attempt_at": "TIMESTAMP",
    "version": "INTEGER NOT NULL DEFAULT 1",
}


def run_migration():
    """Add any missing delivery columns."""
    engine = create_engine(DATABASE_URL)
    existing = {column["name"] for column in inspect(engine).get_columns("file_generation_history")}

    with engine.connect() as conn:
        for name, ddl in COLUMNS.items():
            if name in existing:
                print(f"{name} column already exists")
                continue
            conn.execute(text(f"ALTER TABLE file_generation_history ADD COLUMN {name} {ddl}"))
            print(f"Added {name} column to file_generation_history")

        conn.commit()


if __name__ == "__main__":
    run_migration()
