#!/usr/bin/env python3
"""Quick health check for the scanner's Postgres setup.

Prints available extensions and verifies presence of core tables.
"""

from __future__ import annotations

import psycopg

from .config import resolve_dsn

EXPECTED_TABLES = ("scan_jobs", "sites", "known_sites", "tile_cache")


def missing_tables(present) -> list:
    return [t for t in EXPECTED_TABLES if t not in present]


def main():
    with psycopg.connect(resolve_dsn()) as conn:
        with conn.cursor() as cur:
            print("Extensions:")
            cur.execute("SELECT extname FROM pg_extension ORDER BY 1;")
            for (name,) in cur.fetchall():
                print(" -", name)

            print("\nTables present:")
            cur.execute(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname='public'
                ORDER BY tablename
                """
            )
            tables = [r[0] for r in cur.fetchall()]
            for t in tables:
                print(" -", t)

            missing = missing_tables(tables)
            if missing:
                print("\nMissing tables:", ", ".join(missing))
            else:
                print("\nAll expected tables are present.")


if __name__ == "__main__":
    main()
