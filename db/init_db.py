#!/usr/bin/env python3
"""Initialize the local Postgres with the region scanner schema.

Usage:
  python -m db.init_db               # uses env (.env) DB_* to connect and apply schema
  POSTGRES_DSN='host=... user=... password=... dbname=...' python -m db.init_db

Dependencies:
  - psycopg (v3)
  - python-dotenv (for loading .env)
"""

from __future__ import annotations

from pathlib import Path

import psycopg

from .config import redact_dsn, resolve_dsn


def _read_schema_sql() -> str:
    here = Path(__file__).resolve().parent
    schema_path = here / "schema.sql"
    if not schema_path.exists():
        raise SystemExit(f"schema.sql not found at {schema_path}")
    return schema_path.read_text(encoding="utf-8")


def ensure_extensions(cur) -> None:
    # gen_random_uuid() on servers older than 13
    cur.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")


def apply_schema(cur, sql: str) -> None:
    cur.execute(sql)


def main() -> None:
    dsn = resolve_dsn()
    print("Connecting with DSN:", redact_dsn(dsn))

    # autocommit to allow CREATE EXTENSION
    with psycopg.connect(dsn, autocommit=True) as conn:
        with conn.cursor() as cur:
            print("Ensuring extensions (pgcrypto)...")
            ensure_extensions(cur)
            print("Applying schema.sql ...")
            apply_schema(cur, _read_schema_sql())
            print("Schema applied.")


if __name__ == "__main__":
    main()
