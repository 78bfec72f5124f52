from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

import psycopg
from psycopg.rows import dict_row

from geom.proximity import KM_PER_DEGREE, degree_window
from geom.tile_math import BoundingBox, TileCoordinate
from jobs import ScanJob, PotentialSite

from .config import resolve_dsn

# Columns update_job_status may touch besides status; never interpolate anything else
UPDATABLE_JOB_COLUMNS = frozenset({
    "scanned_tiles",
    "sites_found",
    "current_tile_x",
    "current_tile_y",
    "started_at",
    "paused_at",
    "completed_at",
    "error_message",
    "heartbeat_at",
})

# Planar distance in km, same approximation as geom.proximity.planar_distance_km
_DISTANCE_SQL = (
    "sqrt(power((lat - %(lat)s) * %(kpd)s, 2)"
    " + power((lng - %(lng)s) * %(kpd)s * cos(radians(%(lat)s)), 2))"
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


class DbClient:
    """Postgres-backed job store, site sink and dedup query for the scanner.

    Every scan-job mutation goes through ``update_job_status``; callers pass
    ``expected`` to make a write conditional on the row's current status.
    """

    def __init__(self, dsn: Optional[str] = None, conn: Any = None) -> None:
        self.dsn = resolve_dsn(dsn) if conn is None else dsn
        self.conn = conn if conn is not None else psycopg.connect(self.dsn, row_factory=dict_row)
        # enable autocommit; every statement stands alone
        self.conn.autocommit = True

    def close(self) -> None:
        self.conn.close()

    # ---------- scan jobs ----------
    def create_job(self, fields: Dict[str, Any]) -> ScanJob:
        bbox: BoundingBox = fields["bbox"]
        sql = (
            "INSERT INTO scan_jobs (name, region_type, region_id, north, south, east, west,\n"
            "                       zoom_level, status, total_tiles, scanned_tiles, sites_found,\n"
            "                       current_tile_x, current_tile_y)\n"
            "VALUES (%s,%s,%s,%s,%s,%s,%s,%s,'queued',%s,0,0,%s,%s)\n"
            "RETURNING *;"
        )
        params = (
            fields["name"],
            fields["region_type"],
            fields.get("region_id"),
            bbox.north,
            bbox.south,
            bbox.east,
            bbox.west,
            int(fields["zoom_level"]),
            int(fields["total_tiles"]),
            fields.get("current_tile_x"),
            fields.get("current_tile_y"),
        )
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return ScanJob.from_row(cur.fetchone())

    def get_job(self, job_id: str) -> Optional[ScanJob]:
        if not _is_uuid(job_id):
            return None
        with self.conn.cursor() as cur:
            cur.execute("SELECT * FROM scan_jobs WHERE id = %s;", (job_id,))
            row = cur.fetchone()
        return ScanJob.from_row(row) if row else None

    def list_jobs(self, limit: int = 50, statuses: Optional[Iterable[str]] = None) -> List[ScanJob]:
        sql = "SELECT * FROM scan_jobs"
        params: list = []
        if statuses:
            sql += " WHERE status = ANY(%s)"
            params.append(list(statuses))
        sql += " ORDER BY created_at DESC LIMIT %s;"
        params.append(int(limit))
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return [ScanJob.from_row(r) for r in cur.fetchall()]

    def update_job_status(
        self,
        job_id: str,
        status: Optional[str],
        fields: Optional[Dict[str, Any]] = None,
        expected: Optional[Iterable[str]] = None,
    ) -> bool:
        """Set ``status`` (None keeps it) plus ``fields``; True if a row changed.

        With ``expected``, the row is only written while its status is one of
        those values, which is how a cancel wins over an in-flight progress write.
        """
        sets: List[str] = []
        params: List[Any] = []
        if status is not None:
            sets.append("status = %s")
            params.append(status)
        for col, value in (fields or {}).items():
            if col not in UPDATABLE_JOB_COLUMNS:
                raise ValueError(f"Column {col!r} is not updatable")
            sets.append(f"{col} = %s")
            params.append(value)
        if not sets:
            raise ValueError("Nothing to update")
        sql = f"UPDATE scan_jobs SET {', '.join(sets)} WHERE id = %s"
        params.append(job_id)
        if expected is not None:
            sql += " AND status = ANY(%s)"
            params.append(list(expected))
        with self.conn.cursor() as cur:
            cur.execute(sql + ";", params)
            return cur.rowcount > 0

    def claim_runner(self, job_id: str, runner_id: str, stale_after: float) -> bool:
        """Take the job's runner slot unless another live runner holds it."""
        sql = (
            "UPDATE scan_jobs SET runner_id = %s, heartbeat_at = NOW()\n"
            "WHERE id = %s AND (runner_id IS NULL OR runner_id = %s\n"
            "                   OR heartbeat_at IS NULL\n"
            "                   OR heartbeat_at < NOW() - make_interval(secs => %s));"
        )
        with self.conn.cursor() as cur:
            cur.execute(sql, (runner_id, job_id, runner_id, float(stale_after)))
            return cur.rowcount > 0

    def release_runner(self, job_id: str, runner_id: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE scan_jobs SET runner_id = NULL WHERE id = %s AND runner_id = %s;",
                (job_id, runner_id),
            )

    # ---------- sites ----------
    def insert_potential_site(self, site: PotentialSite) -> str:
        sql = (
            "INSERT INTO sites (name, lat, lng, status, review_status, feature_type, confidence,\n"
            "                   size_meters, description, ml_model, ml_reasoning,\n"
            "                   tile_z, tile_x, tile_y, scan_job_id)\n"
            "VALUES (%s,%s,%s,'potential',%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)\n"
            "RETURNING id;"
        )
        params = (
            site.name,
            float(site.lat),
            float(site.lng),
            site.review_status,
            site.feature_kind,
            float(site.confidence),
            site.size_meters,
            site.description,
            site.model_id,
            site.model_rationale,
            site.tile.zoom,
            site.tile.x,
            site.tile.y,
            site.scan_job_id,
        )
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return str(cur.fetchone()["id"])

    def exists_nearby_confirmed_site(self, lat: float, lng: float, radius_km: float) -> bool:
        """Any known or verified site, or reference site, within ``radius_km``."""
        dlat, dlng = degree_window(lat, radius_km)
        window = "lat BETWEEN %(s)s AND %(n)s AND lng BETWEEN %(w)s AND %(e)s"
        sql = (
            "SELECT EXISTS (\n"
            f"  SELECT 1 FROM sites WHERE (status = 'known' OR review_status = 'verified')\n"
            f"    AND {window} AND {_DISTANCE_SQL} <= %(r)s\n"
            "  UNION ALL\n"
            f"  SELECT 1 FROM known_sites WHERE {window} AND {_DISTANCE_SQL} <= %(r)s\n"
            ") AS hit;"
        )
        params = {
            "lat": float(lat),
            "lng": float(lng),
            "kpd": KM_PER_DEGREE,
            "r": float(radius_km),
            "n": lat + dlat,
            "s": lat - dlat,
            "e": lng + dlng,
            "w": lng - dlng,
        }
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            return bool(row and row["hit"])

    # ---------- tile cache ----------
    def is_tile_analyzed(self, tile: TileCoordinate) -> bool:
        with self.conn.cursor() as cur:
            cur.execute("SELECT analyzed FROM tile_cache WHERE tile_key = %s;", (tile.key,))
            row = cur.fetchone()
            return bool(row and row["analyzed"])

    def mark_tile_analyzed(self, tile: TileCoordinate, bbox: BoundingBox) -> None:
        sql = (
            "INSERT INTO tile_cache (tile_key, z, x, y, north, south, east, west, analyzed, analyzed_at)\n"
            "VALUES (%s,%s,%s,%s,%s,%s,%s,%s,TRUE,NOW())\n"
            "ON CONFLICT (tile_key) DO UPDATE SET analyzed = TRUE, analyzed_at = EXCLUDED.analyzed_at;"
        )
        with self.conn.cursor() as cur:
            cur.execute(sql, (tile.key, tile.zoom, tile.x, tile.y, bbox.north, bbox.south, bbox.east, bbox.west))

    # ---------- diagnostics ----------
    def tables_present(self, tables: Iterable[str]) -> Dict[str, bool]:
        out = {}
        with self.conn.cursor() as cur:
            for t in tables:
                cur.execute("SELECT to_regclass(%s) IS NOT NULL AS present;", (t,))
                out[t] = bool(cur.fetchone()["present"])
        return out
