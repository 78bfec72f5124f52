"""Database utilities package for the scanner's Postgres store.

Provides connection helpers and the DbClient job store. See db/init_db.py
to initialize schema on a local Postgres instance.
"""

from .config import build_dsn, resolve_dsn

__all__ = ["build_dsn", "resolve_dsn"]
