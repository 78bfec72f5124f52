"""
Scan job records, the job state machine and the scanner's error types.

A job moves ``queued -> scanning -> (paused <-> scanning) -> complete``;
cancellation and engine faults end in ``failed``. ``complete`` and
``failed`` are terminal.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from geom.tile_math import BoundingBox, TileCoordinate

QUEUED = "queued"
SCANNING = "scanning"
PAUSED = "paused"
COMPLETE = "complete"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETE, FAILED)

TRANSITIONS = {
    QUEUED: (SCANNING, FAILED),
    SCANNING: (PAUSED, COMPLETE, FAILED),
    PAUSED: (SCANNING, FAILED),
    COMPLETE: (),
    FAILED: (),
}

REGION_TYPES = ("hot_zone", "custom")
REVIEW_STATUSES = ("pending", "verified", "rejected", "skipped")

CANCELLED_MESSAGE = "Cancelled by user"


class ScanError(Exception):
    """Base class for scanner errors surfaced to callers."""


class RegionValidationError(ScanError, ValueError):
    """Region rejected before a job is created."""


class JobNotFoundError(ScanError):
    pass


class InvalidTransitionError(ScanError):
    def __init__(self, job_id: str, current: str, target: str, message: Optional[str] = None) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(message or f"Scan job {job_id} cannot go from '{current}' to '{target}'")


class ScanAlreadyRunningError(ScanError):
    pass


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def check_transition(job_id: str, current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(job_id, current, target)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass
class ScanJob:
    id: str
    name: str
    region_type: str
    region_id: Optional[str]
    bbox: BoundingBox
    zoom_level: int
    status: str = QUEUED
    total_tiles: int = 0
    scanned_tiles: int = 0
    sites_found: int = 0
    current_tile_x: Optional[int] = None
    current_tile_y: Optional[int] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    runner_id: Optional[str] = None
    heartbeat_at: Optional[datetime] = None

    @property
    def remaining_tiles(self) -> int:
        return max(0, self.total_tiles - self.scanned_tiles)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def percent(self) -> int:
        if self.total_tiles <= 0:
            return 100 if self.status == COMPLETE else 0
        return max(0, min(100, int(100 * self.scanned_tiles / self.total_tiles)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "region_type": self.region_type,
            "region_id": self.region_id,
            "bbox": self.bbox.to_dict(),
            "zoom_level": self.zoom_level,
            "status": self.status,
            "progress": {
                "total_tiles": self.total_tiles,
                "scanned_tiles": self.scanned_tiles,
                "sites_found": self.sites_found,
                "current_tile_x": self.current_tile_x,
                "current_tile_y": self.current_tile_y,
                "percent": self.percent,
            },
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "paused_at": _iso(self.paused_at),
            "completed_at": _iso(self.completed_at),
            "error_message": self.error_message,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScanJob":
        """Build a job from a ``scan_jobs`` row (column names as in db/schema.sql)."""
        return cls(
            id=str(row["id"]),
            name=row["name"],
            region_type=row["region_type"],
            region_id=row.get("region_id"),
            bbox=BoundingBox(
                north=float(row["north"]),
                south=float(row["south"]),
                east=float(row["east"]),
                west=float(row["west"]),
            ),
            zoom_level=int(row["zoom_level"]),
            status=row["status"],
            total_tiles=int(row.get("total_tiles") or 0),
            scanned_tiles=int(row.get("scanned_tiles") or 0),
            sites_found=int(row.get("sites_found") or 0),
            current_tile_x=row.get("current_tile_x"),
            current_tile_y=row.get("current_tile_y"),
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            paused_at=row.get("paused_at"),
            completed_at=row.get("completed_at"),
            error_message=row.get("error_message"),
            runner_id=row.get("runner_id"),
            heartbeat_at=row.get("heartbeat_at"),
        )


@dataclass
class PotentialSite:
    """An accepted, geolocated finding waiting for human review."""
    lat: float
    lng: float
    feature_kind: str
    confidence: float
    size_meters: Optional[float]
    description: str
    model_id: str
    model_rationale: str
    tile: TileCoordinate
    scan_job_id: str
    review_status: str = "pending"
    name: str = field(default="")

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"Potential {self.feature_kind}"
        if self.review_status not in REVIEW_STATUSES:
            raise ValueError(f"Unknown review status: {self.review_status}")
