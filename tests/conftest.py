"""
Shared fixtures: in-memory job store, scripted imagery and detector.
"""

import io
import threading
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional

import pytest
from PIL import Image

from analyzer import DetectedFeature, DetectionResult
from db.writer import UPDATABLE_JOB_COLUMNS
from geom.proximity import any_within
from geom.tile_math import BoundingBox, TileCoordinate, tile_center_latlon
from jobs import ScanJob, utcnow
from scanner import ScanConfig, ScanEngine


class MemoryJobStore:
    """Job store, site sink, dedup query and tile cache backed by dicts."""

    def __init__(self) -> None:
        self.jobs: Dict[str, ScanJob] = {}
        self.sites: List = []
        self.confirmed: List[tuple] = []
        self.analyzed: Dict[str, BoundingBox] = {}
        self.fail_inserts = False
        self.status_writes: List[tuple] = []
        self._lock = threading.Lock()
        self._seq = 0

    # ----- jobs -----
    def create_job(self, fields) -> ScanJob:
        with self._lock:
            self._seq += 1
            job = ScanJob(
                id=str(uuid.uuid4()),
                name=fields["name"],
                region_type=fields["region_type"],
                region_id=fields.get("region_id"),
                bbox=fields["bbox"],
                zoom_level=fields["zoom_level"],
                total_tiles=fields["total_tiles"],
                current_tile_x=fields.get("current_tile_x"),
                current_tile_y=fields.get("current_tile_y"),
                created_at=utcnow(),
            )
            job._seq = self._seq
            self.jobs[job.id] = job
            return replace(job)

    def get_job(self, job_id):
        with self._lock:
            job = self.jobs.get(job_id)
            return replace(job) if job else None

    def list_jobs(self, limit=50, statuses=None):
        with self._lock:
            jobs = [j for j in self.jobs.values() if not statuses or j.status in statuses]
            jobs.sort(key=lambda j: j._seq, reverse=True)
            return [replace(j) for j in jobs[:limit]]

    def update_job_status(self, job_id, status, fields=None, expected=None) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                return False
            if expected is not None and job.status not in expected:
                return False
            for k in (fields or {}):
                if k not in UPDATABLE_JOB_COLUMNS:
                    raise ValueError(k)
            if status is not None:
                job.status = status
            for k, v in (fields or {}).items():
                setattr(job, k, v)
            self.status_writes.append((status, dict(fields or {})))
            return True

    def claim_runner(self, job_id, runner_id, stale_after) -> bool:
        with self._lock:
            job = self.jobs[job_id]
            if job.runner_id not in (None, runner_id):
                return False
            job.runner_id = runner_id
            return True

    def release_runner(self, job_id, runner_id) -> None:
        with self._lock:
            job = self.jobs[job_id]
            if job.runner_id == runner_id:
                job.runner_id = None

    # ----- sites -----
    def insert_potential_site(self, site) -> str:
        if self.fail_inserts:
            raise RuntimeError("insert failed")
        self.sites.append(site)
        return str(len(self.sites))

    def exists_nearby_confirmed_site(self, lat, lng, radius_km) -> bool:
        return any_within(lat, lng, self.confirmed, radius_km)

    def is_tile_analyzed(self, tile) -> bool:
        return tile.key in self.analyzed

    def mark_tile_analyzed(self, tile, bbox) -> None:
        self.analyzed[tile.key] = bbox


class FakeImagery:
    """Returns ``b"tile:z/x/y"`` so the fake detector knows which tile it got."""

    def __init__(self, fail_on=()) -> None:
        self.fail_on = set(fail_on)
        self.calls: List[str] = []

    def fetch_tile(self, tile: TileCoordinate) -> bytes:
        self.calls.append(tile.key)
        if tile.key in self.fail_on:
            raise OSError(f"imagery unavailable for {tile.key}")
        return f"tile:{tile.key}".encode()


class FakeDetector:
    """Scripted detector keyed by tile key; ``hook(key)`` runs before answering."""

    def __init__(self, features: Optional[Dict[str, List[DetectedFeature]]] = None, fail_on=(),
                 hook: Optional[Callable[[str], None]] = None) -> None:
        self.features = features or {}
        self.fail_on = set(fail_on)
        self.hook = hook
        self.calls: List[str] = []

    def detect(self, image_bytes: bytes) -> DetectionResult:
        key = image_bytes.decode().split(":", 1)[1]
        self.calls.append(key)
        if self.hook is not None:
            self.hook(key)
        if key in self.fail_on:
            raise ValueError(f"unparseable answer for {key}")
        return DetectionResult(
            features=list(self.features.get(key, [])),
            rationale="scripted",
            model_id="test-model",
            processing_time=0.01,
        )


class FakeMessage:
    def __init__(self, content):
        self.content = content


class FakeLLM:
    """Stands in for ChatOpenAI: ``invoke`` returns canned replies in order."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return FakeMessage(reply)


def grid_bbox(x0: int, y0: int, cols: int, rows: int, zoom: int) -> BoundingBox:
    """Bbox through tile centers that covers exactly cols x rows tiles."""
    north, west = tile_center_latlon(TileCoordinate(zoom, x0, y0))
    south, east = tile_center_latlon(TileCoordinate(zoom, x0 + cols - 1, y0 + rows - 1))
    return BoundingBox(north=north, south=south, east=east, west=west)


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def imagery() -> FakeImagery:
    return FakeImagery()


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector()


@pytest.fixture
def config() -> ScanConfig:
    return ScanConfig(zoom_level=16, delay_between_tiles=0, max_tiles=None)


@pytest.fixture
def engine(store, imagery, detector, config) -> ScanEngine:
    return ScanEngine(store, imagery, detector, config=config)


@pytest.fixture
def ten_tile_bbox() -> BoundingBox:
    # 5 x 2 tiles at zoom 16 near Cahokia
    return grid_bbox(16384, 25139, 5, 2, 16)


@pytest.fixture
def jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), (90, 120, 60)).save(buf, format="JPEG")
    return buf.getvalue()
