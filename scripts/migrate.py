#!/usr/bin/env python3
"""Install the auth schema into a PostgreSQL database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/authcore python scripts/migrate.py
    python scripts/migrate.py --dsn postgresql://localhost:5432/authcore

Every statement in schema.sql is idempotent, so re-running is safe.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def apply_schema(dsn: str, schema_path: Path = SCHEMA_PATH) -> None:
    sql = schema_path.read_text()
    with psycopg.connect(dsn) as conn:
        with conn.transaction():
            conn.execute(sql)


def main():
    parser = argparse.ArgumentParser(
        description="Install the AuthCore Postgres schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres connection string (or set DATABASE_URL env var)",
    )
    args = parser.parse_args()

    if not args.dsn:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        apply_schema(args.dsn)
    except psycopg.Error as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Schema installed from {SCHEMA_PATH.name}")


if __name__ == "__main__":
    main()
