"""
Region scanner: walk every tile of a region once, ask the vision model about
each one, and record what it finds.

Scans are resumable. Progress is persisted after every tile as the count of
completed tiles, and the tile order is row-major and fixed for a given bbox
and zoom, so a paused or crashed scan continues at exactly the next tile.

CLI usage:
  python scanner.py regions
  python scanner.py create --zone cahokia-region --zoom 13
  python scanner.py run <job_id>
  python scanner.py pause|resume|cancel|status <job_id>
  python scanner.py status            # the scanning or paused job, if any
"""

import os
import sys
import time
import json
import uuid
import argparse
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from analyzer import DetectionResult, locate_feature
from dedup import DEFAULT_DEDUP_RADIUS_KM, DedupGate
from geom.tile_math import BoundingBox, TileCoordinate, bbox_to_tile_range, tile_to_bbox
from jobs import (
    CANCELLED_MESSAGE,
    COMPLETE,
    FAILED,
    PAUSED,
    QUEUED,
    REGION_TYPES,
    SCANNING,
    InvalidTransitionError,
    JobNotFoundError,
    PotentialSite,
    RegionValidationError,
    ScanAlreadyRunningError,
    ScanError,
    ScanJob,
    can_transition,
    check_transition,
    utcnow,
)
from regions import MAX_REGION_SIZE_KM2, validate_region

load_dotenv()

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ScanJob], None]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ScanConfig:
    zoom_level: int = 17
    delay_between_tiles: float = 1.0  # seconds
    confidence_threshold: float = 0.5
    skip_analyzed_tiles: bool = True
    dedup_radius_km: float = DEFAULT_DEDUP_RADIUS_KM
    max_tiles: Optional[int] = 20000
    avg_seconds_per_tile: float = 3.0
    runner_stale_after: float = 600.0  # seconds without a heartbeat before a claim is abandoned
    events_log: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ScanConfig":
        d = cls()
        max_tiles = int(os.getenv("SCANNER_MAX_TILES", str(d.max_tiles or 0)))
        return cls(
            zoom_level=int(os.getenv("SCANNER_ZOOM", str(d.zoom_level))),
            delay_between_tiles=float(os.getenv("SCANNER_DELAY", str(d.delay_between_tiles))),
            confidence_threshold=float(os.getenv("SCANNER_CONFIDENCE_THRESHOLD", str(d.confidence_threshold))),
            skip_analyzed_tiles=_env_bool("SCANNER_SKIP_ANALYZED", d.skip_analyzed_tiles),
            dedup_radius_km=float(os.getenv("SCANNER_DEDUP_RADIUS_KM", str(d.dedup_radius_km))),
            max_tiles=max_tiles or None,
            avg_seconds_per_tile=float(os.getenv("SCANNER_AVG_SECONDS_PER_TILE", str(d.avg_seconds_per_tile))),
            runner_stale_after=float(os.getenv("SCANNER_RUNNER_STALE_AFTER", str(d.runner_stale_after))),
            events_log=os.getenv("SCANNER_EVENTS_LOG") or None,
        )


class EventLogger:
    """Thread-safe JSONL event logger for per-tile visibility.

    Writes compact JSON objects per line to a file. Each event gets a monotonically
    increasing sequence number `seq` and a timestamp `ts`.
    """
    def __init__(self, path: Optional[str]) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._seq = 0
        self._fp = None
        if path:
            # Lazy open on first write
            os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)

    def _ensure_open(self):
        if self._fp is None and self.path:
            self._fp = open(self.path, "a", encoding="utf-8")

    def emit(self, ev: Dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            with self._lock:
                self._ensure_open()
                self._seq += 1
                ev_out = dict(ev)
                ev_out.setdefault("seq", self._seq)
                ev_out.setdefault("ts", time.time())
                self._fp.write(json.dumps(ev_out, ensure_ascii=False, default=str) + "\n")
                self._fp.flush()
        except OSError as e:
            # Never let the event log break the scanner
            logger.warning("Event log write failed (%s): %s", self.path, e)

    def close(self):
        with self._lock:
            if self._fp is not None:
                self._fp.close()
                self._fp = None


def silence_external_loggers():
    """Reduce noisy INFO logs from HTTP/LLM libs unless explicitly enabled.
    Controlled by env var SCANNER_SILENCE_HTTP (default: '1' = silence)."""
    if os.getenv("SCANNER_SILENCE_HTTP", "1") != "1":
        return
    for name in ("httpx", "httpcore", "openai", "langchain", "langchain_core", "langchain_openai", "urllib3"):
        lg = logging.getLogger(name)
        lg.setLevel(logging.WARNING)
        lg.propagate = False


# ---------- engine ----------
class ScanEngine:
    """Runs one scan job at a time, tile by tile.

    Collaborators:
      store    -- job store (create_job/get_job/update_job_status/claim_runner/release_runner)
      imagery  -- ``fetch_tile(tile) -> bytes``
      detector -- ``detect(image_bytes) -> DetectionResult``
      sites    -- site sink + dedup query + tile cache; defaults to ``store``
    """

    def __init__(self, store, imagery, detector, sites=None, config: Optional[ScanConfig] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.store = store
        self.imagery = imagery
        self.detector = detector
        self.sites = sites if sites is not None else store
        self.config = config or ScanConfig()
        self.dedup = DedupGate(self.sites.exists_nearby_confirmed_site, self.config.dedup_radius_km)
        self.events = EventLogger(self.config.events_log)
        self._sleep = sleep

    # ----- per tile -----
    def process_tile(self, job_id: str, tile: TileCoordinate) -> int:
        """Fetch, detect, geolocate, dedupe and store one tile. Returns sites persisted.

        Every failure in here is logged and absorbed; the caller always advances.
        """
        cfg = self.config
        if cfg.skip_analyzed_tiles:
            try:
                if self.sites.is_tile_analyzed(tile):
                    logger.debug("Tile %s already analyzed, skipping", tile.key)
                    self.events.emit({"type": "skipped", "job_id": job_id, "tile": tile.key})
                    return 0
            except Exception as e:
                logger.warning("Tile cache lookup failed for %s, analyzing anyway: %s", tile.key, e)

        self.events.emit({"type": "queued", "job_id": job_id, "tile": tile.key})
        try:
            image = self.imagery.fetch_tile(tile)
        except Exception as e:
            logger.warning("Failed to fetch tile %s: %s", tile.key, e)
            self.events.emit({"type": "error", "job_id": job_id, "tile": tile.key, "stage": "imagery", "error": str(e)})
            return 0

        try:
            result: DetectionResult = self.detector.detect(image)
        except Exception as e:
            logger.warning("Failed to analyze tile %s: %s", tile.key, e)
            self.events.emit({"type": "error", "job_id": job_id, "tile": tile.key, "stage": "detection", "error": str(e)})
            return 0

        tile_bbox = tile_to_bbox(tile)
        try:
            self.sites.mark_tile_analyzed(tile, tile_bbox)
        except Exception as e:
            logger.warning("Could not mark tile %s analyzed: %s", tile.key, e)

        stored = 0
        for feature in result.features:
            try:
                confidence = feature.confidence
            except ValueError as e:
                logger.warning("Dropping %s on tile %s: %s", feature.kind, tile.key, e)
                continue
            if confidence < cfg.confidence_threshold:
                continue
            lat, lng = locate_feature(feature, tile_bbox)
            try:
                if self.dedup.is_duplicate(lat, lng):
                    continue
                site = PotentialSite(
                    lat=lat,
                    lng=lng,
                    feature_kind=feature.kind,
                    confidence=confidence,
                    size_meters=feature.size_meters,
                    description=feature.rationale,
                    model_id=result.model_id,
                    model_rationale=result.rationale,
                    tile=tile,
                    scan_job_id=job_id,
                )
                self.sites.insert_potential_site(site)
            except Exception as e:
                logger.warning("Failed to store %s at %.6f, %.6f (tile %s): %s", feature.kind, lat, lng, tile.key, e)
                continue
            stored += 1

        self.events.emit({
            "type": "done",
            "job_id": job_id,
            "tile": tile.key,
            "features": len(result.features),
            "stored": stored,
            "model": result.model_id,
            "processing_time": result.processing_time,
        })
        return stored

    # ----- job loop -----
    def _get(self, job_id: str) -> ScanJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Scan job {job_id} not found")
        return job

    def run(self, job_id: str, on_progress: Optional[ProgressCallback] = None) -> ScanJob:
        """Scan ``job_id`` from its persisted cursor until done, paused or cancelled.

        Accepts a job that is queued, paused, or already marked scanning (a
        resume, or a crashed runner whose claim went stale). Returns the job as
        last persisted.
        """
        job = self._get(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(job_id, job.status, SCANNING)

        first = True
        while True:
            runner_id = uuid.uuid4().hex
            if not self.store.claim_runner(job_id, runner_id, self.config.runner_stale_after):
                if first:
                    raise ScanAlreadyRunningError(f"Scan job {job_id} is already being run by another worker")
                # Someone else picked the resumed job up between our release and re-claim
                return self._get(job_id)
            try:
                self._run_claimed(job, on_progress)
            finally:
                self.store.release_runner(job_id, runner_id)

            # A resume that arrived while this runner was stopping could not claim the job;
            # it is scanning again with nobody behind it unless we carry on.
            latest = self._get(job_id)
            if latest.status != SCANNING:
                return latest
            logger.info("Scan %s was resumed while its runner was stopping; continuing", job_id)
            job = latest
            first = False

    def _run_claimed(self, job: ScanJob, on_progress: Optional[ProgressCallback]) -> ScanJob:
        job_id = job.id
        fields: Dict[str, Any] = {"heartbeat_at": utcnow()}
        if job.started_at is None:
            fields["started_at"] = fields["heartbeat_at"]
        if not self.store.update_job_status(job_id, SCANNING, fields, expected=(job.status,)):
            # Lost a race with pause/cancel between the read and the write
            logger.info("Scan %s changed state before it could start", job_id)
            return self._get(job_id)

        tiles = bbox_to_tile_range(job.bbox, job.zoom_level)
        if tiles.count != job.total_tiles:
            raise ScanError(f"Scan job {job_id} expects {job.total_tiles} tiles but its region has {tiles.count}")

        cursor = min(job.scanned_tiles, tiles.count)
        if cursor < tiles.count and job.current_tile_x is not None:
            stored = TileCoordinate(job.zoom_level, job.current_tile_x, job.current_tile_y)
            stored_index = tiles.index_of(stored) if stored in tiles else None
            if stored_index != cursor:
                logger.warning(
                    "Scan %s cursor mismatch: stored tile %s (index %s), resuming at %s from completed count %d",
                    job_id, stored.key, stored_index, tiles.tile_at(cursor).key, cursor,
                )
        if cursor:
            logger.info("Resuming scan %s at tile %d/%d", job_id, cursor + 1, tiles.count)
        else:
            logger.info("Starting scan %s: %d tiles at z%d", job_id, tiles.count, job.zoom_level)

        sites_found = job.sites_found
        for index, tile in tiles.iter_from(cursor):
            current = self._get(job_id)
            if current.status != SCANNING:
                logger.info("Scan %s %s at tile %d/%d", job_id, current.status, index, tiles.count)
                return current

            sites_found += self.process_tile(job_id, tile)
            scanned = index + 1
            nxt = tiles.tile_at(scanned) if scanned < tiles.count else tile
            # A paused job still records the tile it finished; a cancelled one does not
            written = self.store.update_job_status(
                job_id,
                None,
                {
                    "scanned_tiles": scanned,
                    "sites_found": sites_found,
                    "current_tile_x": nxt.x,
                    "current_tile_y": nxt.y,
                    "heartbeat_at": utcnow(),
                },
                expected=(SCANNING, PAUSED),
            )
            if not written:
                logger.info("Scan %s is no longer active; progress after tile %s not recorded", job_id, tile.key)
                return self._get(job_id)

            if on_progress is not None:
                try:
                    on_progress(self._get(job_id))
                except Exception:
                    logger.exception("Progress callback failed for scan %s", job_id)

            if scanned < tiles.count and self.config.delay_between_tiles > 0:
                self._sleep(self.config.delay_between_tiles)

        completed = self.store.update_job_status(
            job_id,
            COMPLETE,
            {"scanned_tiles": tiles.count, "sites_found": sites_found, "completed_at": utcnow()},
            expected=(SCANNING,),
        )
        final = self._get(job_id)
        if completed:
            logger.info("Scan %s complete. Found %d sites in %d tiles.", job_id, final.sites_found, final.scanned_tiles)
        return final


# ---------- control operations ----------
def create_scan_job(
    store,
    name: Optional[str],
    bbox: BoundingBox,
    region_type: str,
    region_id: Optional[str] = None,
    config: Optional[ScanConfig] = None,
    zoom_level: Optional[int] = None,
) -> ScanJob:
    """Validate the region and persist a queued job with its cursor on the first tile."""
    cfg = config or ScanConfig()
    zoom = cfg.zoom_level if zoom_level is None else int(zoom_level)
    if region_type not in REGION_TYPES:
        raise RegionValidationError(f"Invalid region type: {region_type}")
    validate_region(
        bbox,
        zoom,
        max_area_km2=MAX_REGION_SIZE_KM2 if region_type == "custom" else None,
        max_tiles=cfg.max_tiles,
    )
    tiles = bbox_to_tile_range(bbox, zoom)
    first = tiles.tile_at(0)
    job = store.create_job({
        "name": name or ("Custom region scan" if region_type == "custom" else f"{region_id} scan"),
        "region_type": region_type,
        "region_id": region_id,
        "bbox": bbox,
        "zoom_level": zoom,
        "total_tiles": tiles.count,
        "current_tile_x": first.x,
        "current_tile_y": first.y,
    })
    logger.info("Created scan job %s (%s): %d tiles at z%d", job.id, job.name, job.total_tiles, zoom)
    return job


def _get_job(store, job_id: str) -> ScanJob:
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Scan job {job_id} not found")
    return job


def _transition(store, job_id: str, target: str, fields: Dict[str, Any]) -> ScanJob:
    job = _get_job(store, job_id)
    check_transition(job_id, job.status, target)
    sources = tuple(s for s in (QUEUED, SCANNING, PAUSED) if can_transition(s, target))
    if not store.update_job_status(job_id, target, fields, expected=sources):
        latest = _get_job(store, job_id)
        raise InvalidTransitionError(job_id, latest.status, target)
    return _get_job(store, job_id)


def pause_scan(store, job_id: str) -> ScanJob:
    """Ask a running scan to stop after its in-flight tile."""
    job = _transition(store, job_id, PAUSED, {"paused_at": utcnow()})
    logger.info("Paused scan %s at %d/%d tiles", job_id, job.scanned_tiles, job.total_tiles)
    return job


def resume_scan(store, job_id: str) -> ScanJob:
    """Flip a paused job back to scanning; the caller then hands it to ``ScanEngine.run``."""
    job = _get_job(store, job_id)
    if job.status != PAUSED:
        raise InvalidTransitionError(job_id, job.status, SCANNING, f"Scan job {job_id} is not paused")
    return _transition(store, job_id, SCANNING, {})


def cancel_scan(store, job_id: str) -> ScanJob:
    job = _transition(store, job_id, FAILED, {"error_message": CANCELLED_MESSAGE, "completed_at": utcnow()})
    logger.info("Cancelled scan %s", job_id)
    return job


def mark_scan_failed(store, job_id: str, message: str) -> bool:
    """Record an engine-level fault; no-op if the job already ended."""
    return store.update_job_status(
        job_id, FAILED, {"error_message": message, "completed_at": utcnow()},
        expected=(QUEUED, SCANNING, PAUSED),
    )


def get_active_scan_job(store) -> Optional[ScanJob]:
    """Most recent job that is scanning or paused, if any."""
    jobs = store.list_jobs(limit=1, statuses=(SCANNING, PAUSED))
    return jobs[0] if jobs else None


def estimate_time_remaining(job: ScanJob, avg_seconds_per_tile: float = 3.0) -> str:
    seconds = job.remaining_tiles * avg_seconds_per_tile
    if seconds < 60:
        return f"~{int(round(seconds))} seconds"
    if seconds < 3600:
        return f"~{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"~{seconds / 3600:.1f} hours"
    return f"~{seconds / 86400:.1f} days"


def build_engine(config: Optional[ScanConfig] = None, store=None, model: Optional[str] = None) -> ScanEngine:
    """Production wiring: Postgres store, NAIP/Esri imagery, OpenRouter detector."""
    from analyzer import FeatureDetector
    from db.writer import DbClient
    from grab_imagery import ImageryClient

    store = store or DbClient()
    return ScanEngine(store, ImageryClient(), FeatureDetector.from_env(model), config=config or ScanConfig.from_env())


# ---------- CLI ----------
def _print_job(job: ScanJob, cfg: ScanConfig) -> None:
    out = job.to_dict()
    if job.status == SCANNING:
        out["estimated_time_remaining"] = estimate_time_remaining(job, cfg.avg_seconds_per_tile)
    print(json.dumps(out, indent=2))


def _run_and_report(engine: ScanEngine, store, job_id: str) -> ScanJob:
    def report(job: ScanJob) -> None:
        logger.info("[%s] %d/%d tiles (%d%%), %d sites", job_id[:8], job.scanned_tiles, job.total_tiles,
                    job.percent, job.sites_found)

    try:
        return engine.run(job_id, on_progress=report)
    except (JobNotFoundError, InvalidTransitionError, ScanAlreadyRunningError):
        raise
    except Exception as e:
        logger.exception("Scan %s failed", job_id)
        mark_scan_failed(store, job_id, f"{e.__class__.__name__}: {e}")
        raise


def main() -> None:
    from regions import (
        format_area,
        format_estimated_time,
        get_hot_zone,
        get_hot_zones_by_priority,
        calculate_area_km2,
        parse_bbox,
    )

    parser = argparse.ArgumentParser(description="Scan a region tile by tile for potential archaeological sites.")
    parser.add_argument("--debug", action="store_true", help="Verbose logging.")
    parser.add_argument("--dsn", type=str, default=None, help="Postgres DSN (default: POSTGRES_DSN or DB_* env).")
    parser.add_argument("--events_log", type=str, default=None, help="Append per-tile events as JSONL to this path.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("regions", help="List preset regions.")

    p_create = sub.add_parser("create", help="Create a queued scan job.")
    p_create.add_argument("--zone", type=str, default=None, help="Preset region id.")
    p_create.add_argument("--bbox", type=float, nargs=4, metavar=("NORTH", "SOUTH", "EAST", "WEST"), default=None)
    p_create.add_argument("--name", type=str, default=None)
    p_create.add_argument("--zoom", type=int, default=None)
    p_create.add_argument("--max_tiles", type=int, default=None, help="Safety cap on number of tiles (default 20000).")
    p_create.add_argument("--run", action="store_true", help="Start scanning right away.")

    p_run = sub.add_parser("run", help="Run (or continue) a scan job in the foreground.")
    p_run.add_argument("job_id")
    p_run.add_argument("--delay", type=float, default=None, help="Seconds between tiles.")
    p_run.add_argument("--confidence_threshold", type=float, default=None)
    p_run.add_argument("--rescan", action="store_true", help="Analyze tiles even if already cached.")
    p_run.add_argument("--model", type=str, default=None, help="OpenRouter model id (default SCANNER_MODEL).")

    sub.add_parser("list", help="List recent scan jobs.")
    p_status = sub.add_parser("status", help="Show a scan job (default: the active one).")
    p_status.add_argument("job_id", nargs="?", default=None)
    for name in ("pause", "resume", "cancel"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a scan job.")
        p.add_argument("job_id")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")
    silence_external_loggers()

    cfg = ScanConfig.from_env()
    if args.events_log:
        cfg.events_log = args.events_log

    if args.command == "regions":
        for zone in get_hot_zones_by_priority():
            print(f"[P{zone.priority}] {zone.id:26s} {zone.name} | {format_area(calculate_area_km2(zone.bbox))} | "
                  f"~{zone.estimated_tiles} tiles at z17 | {format_estimated_time(zone.estimated_hours)}")
        return

    from db.writer import DbClient
    store = DbClient(args.dsn)
    try:
        if args.command == "create":
            if args.max_tiles is not None:
                cfg.max_tiles = args.max_tiles or None
            if args.zone:
                zone = get_hot_zone(args.zone)
                if zone is None:
                    raise SystemExit(f"Unknown zone {args.zone!r}")
                job = create_scan_job(store, args.name or zone.name, zone.bbox, "hot_zone", zone.id, cfg, args.zoom)
            elif args.bbox:
                n, s, e, w = args.bbox
                bbox = parse_bbox({"north": n, "south": s, "east": e, "west": w})
                job = create_scan_job(store, args.name, bbox, "custom", None, cfg, args.zoom)
            else:
                raise SystemExit("--zone or --bbox is required")
            _print_job(job, cfg)
            if args.run:
                _print_job(_run_and_report(build_engine(cfg, store), store, job.id), cfg)
        elif args.command == "run":
            if args.delay is not None:
                cfg.delay_between_tiles = args.delay
            if args.confidence_threshold is not None:
                cfg.confidence_threshold = args.confidence_threshold
            if args.rescan:
                cfg.skip_analyzed_tiles = False
            _print_job(_run_and_report(build_engine(cfg, store, args.model), store, args.job_id), cfg)
        elif args.command == "list":
            for job in store.list_jobs():
                print(f"{job.id}  {job.status:9s} {job.scanned_tiles:>7d}/{job.total_tiles:<7d} "
                      f"{job.sites_found:>4d} sites  {job.name}")
        elif args.command == "status":
            job = _get_job(store, args.job_id) if args.job_id else get_active_scan_job(store)
            if job is None:
                print("No active scan.")
            else:
                _print_job(job, cfg)
        elif args.command == "pause":
            _print_job(pause_scan(store, args.job_id), cfg)
        elif args.command == "resume":
            resume_scan(store, args.job_id)
            _print_job(_run_and_report(build_engine(cfg, store), store, args.job_id), cfg)
        elif args.command == "cancel":
            _print_job(cancel_scan(store, args.job_id), cfg)
    except ScanError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
