"""
Tests for DbClient SQL building against a recording fake connection.
"""

import pytest

from db.config import build_dsn, redact_dsn
from db.writer import DbClient
from geom.tile_math import BoundingBox, TileCoordinate
from jobs import PAUSED, SCANNING, PotentialSite

JOB_ID = "6f1c9a52-3b8e-4d1e-9a47-2c5b1f0e8d31"
BOX = BoundingBox(north=38.8, south=38.5, east=-89.9, west=-90.3)


class FakeCursor:
    def __init__(self, conn) -> None:
        self.conn = conn
        self.rowcount = conn.rowcount

    def execute(self, sql, params=None) -> None:
        self.conn.executed.append((sql, params))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeConn:
    def __init__(self, rows=None, rowcount=1) -> None:
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.executed = []
        self.autocommit = False
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


def job_row(**overrides) -> dict:
    row = {
        "id": JOB_ID, "name": "Cahokia", "region_type": "hot_zone", "region_id": "cahokia-region",
        "north": 38.8, "south": 38.5, "east": -89.9, "west": -90.3, "zoom_level": 13,
        "status": "queued", "total_tiles": 100, "scanned_tiles": 0, "sites_found": 0,
        "current_tile_x": 2041, "current_tile_y": 3136,
    }
    row.update(overrides)
    return row


class TestJobs:
    def test_autocommit_enabled(self) -> None:
        conn = FakeConn()
        DbClient(conn=conn)
        assert conn.autocommit is True

    def test_create_job_maps_row(self) -> None:
        conn = FakeConn(rows=[job_row()])
        job = DbClient(conn=conn).create_job({
            "name": "Cahokia", "region_type": "hot_zone", "region_id": "cahokia-region", "bbox": BOX,
            "zoom_level": 13, "total_tiles": 100, "current_tile_x": 2041, "current_tile_y": 3136,
        })
        sql, params = conn.executed[0]
        assert sql.startswith("INSERT INTO scan_jobs")
        assert params[3:7] == (38.8, 38.5, -89.9, -90.3)
        assert job.id == JOB_ID
        assert job.bbox == BOX
        assert (job.total_tiles, job.current_tile_x) == (100, 2041)

    def test_get_job_rejects_non_uuid_without_query(self) -> None:
        conn = FakeConn()
        assert DbClient(conn=conn).get_job("not-a-uuid") is None
        assert conn.executed == []

    def test_list_jobs_filters_by_status(self) -> None:
        conn = FakeConn(rows=[job_row(status=PAUSED)])
        jobs = DbClient(conn=conn).list_jobs(limit=1, statuses=(SCANNING, PAUSED))
        sql, params = conn.executed[0]
        assert "status = ANY(%s)" in sql
        assert params == [[SCANNING, PAUSED], 1]
        assert jobs[0].status == PAUSED

    def test_update_is_conditional_on_expected_status(self) -> None:
        conn = FakeConn(rowcount=0)
        ok = DbClient(conn=conn).update_job_status(JOB_ID, None, {"scanned_tiles": 3}, expected=(SCANNING, PAUSED))
        sql, params = conn.executed[0]
        assert sql == "UPDATE scan_jobs SET scanned_tiles = %s WHERE id = %s AND status = ANY(%s);"
        assert params == [3, JOB_ID, [SCANNING, PAUSED]]
        assert ok is False

    def test_update_sets_status(self) -> None:
        conn = FakeConn(rowcount=1)
        assert DbClient(conn=conn).update_job_status(JOB_ID, PAUSED)
        assert conn.executed[0] == ("UPDATE scan_jobs SET status = %s WHERE id = %s;", [PAUSED, JOB_ID])

    def test_update_rejects_unknown_columns(self) -> None:
        client = DbClient(conn=FakeConn())
        with pytest.raises(ValueError):
            client.update_job_status(JOB_ID, None, {"status; DROP TABLE scan_jobs": 1})
        with pytest.raises(ValueError):
            client.update_job_status(JOB_ID, None, {})

    def test_claim_runner(self) -> None:
        conn = FakeConn(rowcount=0)
        assert not DbClient(conn=conn).claim_runner(JOB_ID, "abc", 600)
        sql, params = conn.executed[0]
        assert "make_interval" in sql
        assert params == ("abc", JOB_ID, "abc", 600.0)


class TestSites:
    def test_insert_potential_site(self) -> None:
        conn = FakeConn(rows=[{"id": 42}])
        site = PotentialSite(
            lat=38.66, lng=-90.06, feature_kind="mound", confidence=0.85, size_meters=30.0,
            description="round rise", model_id="m", model_rationale="r",
            tile=TileCoordinate(17, 32700, 50200), scan_job_id=JOB_ID,
        )
        assert DbClient(conn=conn).insert_potential_site(site) == "42"
        sql, params = conn.executed[0]
        assert "'potential'" in sql
        assert params[0] == "Potential mound"
        assert params[-4:] == (17, 32700, 50200, JOB_ID)

    def test_nearby_query_checks_both_tables(self) -> None:
        conn = FakeConn(rows=[{"hit": True}])
        assert DbClient(conn=conn).exists_nearby_confirmed_site(38.66, -90.06, 0.05)
        sql, params = conn.executed[0]
        assert "review_status = 'verified'" in sql
        assert "known_sites" in sql
        assert params["s"] < 38.66 < params["n"]
        assert params["r"] == 0.05

    def test_tile_cache(self) -> None:
        conn = FakeConn(rows=[None])
        client = DbClient(conn=conn)
        tile = TileCoordinate(17, 32700, 50200)
        assert client.is_tile_analyzed(tile) is False
        client.mark_tile_analyzed(tile, BOX)
        sql, params = conn.executed[1]
        assert "ON CONFLICT (tile_key)" in sql
        assert params[0] == "17/32700/50200"


class TestDsn:
    def test_build_and_redact(self) -> None:
        dsn = build_dsn(host="db", port="5432", dbname="scans", user="app", password="secret")
        assert "secret" in dsn
        assert "secret" not in redact_dsn(dsn)
