import os
import threading
import logging
from typing import Optional

from flask import Flask, jsonify, request

from jobs import (
    SCANNING,
    InvalidTransitionError,
    JobNotFoundError,
    RegionValidationError,
    ScanAlreadyRunningError,
)
from regions import (
    UnknownRegionError,
    calculate_area_km2,
    format_area,
    format_estimated_time,
    get_hot_zones_by_priority,
    get_total_estimated_hours,
    parse_bbox,
    resolve_region,
    validate_region,
    MAX_REGION_SIZE_KM2,
)
from scanner import (
    ScanConfig,
    build_engine,
    cancel_scan,
    create_scan_job,
    estimate_time_remaining,
    get_active_scan_job,
    mark_scan_failed,
    pause_scan,
    resume_scan,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)


# Reduce noisy request logs for status polling endpoints to keep console readable.
def _configure_request_logging():
    wl = logging.getLogger('werkzeug')
    # Filter frequent polling endpoints by default
    if os.getenv('SCANNER_SILENCE_POLL_LOGS', '1') == '1':
        class _StatusEndpointFilter(logging.Filter):
            def filter(self, record):
                msg = record.getMessage()
                if '"GET /scanner/' in msg:
                    return 0
                return 1
        wl.addFilter(_StatusEndpointFilter())
    # Optionally suppress all werkzeug request logs below WARNING
    if os.getenv('SCANNER_SILENCE_REQUEST_LOGS', '0') == '1':
        wl.setLevel(logging.WARNING)
        wl.propagate = False

_configure_request_logging()


# -------- Scan orchestration (background threads) --------
SCAN_STATE = {
    "engine": None,   # built lazily from env; tests inject their own
    "threads": {},    # job_id -> Thread
}
SCAN_LOCK = threading.Lock()


def get_engine():
    with SCAN_LOCK:
        if SCAN_STATE["engine"] is None:
            SCAN_STATE["engine"] = build_engine(ScanConfig.from_env())
        return SCAN_STATE["engine"]


def _fail(message: str, status: int):
    return jsonify({"success": False, "message": message}), status


def _run_in_background(engine, job_id: str) -> None:
    try:
        engine.run(job_id)
    except ScanAlreadyRunningError as e:
        # The runner that holds the claim carries the resumed job on
        logger.info("Not starting a second runner for %s: %s", job_id, e)
    except (JobNotFoundError, InvalidTransitionError) as e:
        logger.warning("Background scan %s did not start: %s", job_id, e)
    except Exception as e:
        logger.exception("Background scan %s failed", job_id)
        mark_scan_failed(engine.store, job_id, f"{e.__class__.__name__}: {e}")


def start_scan_thread(engine, job_id: str) -> threading.Thread:
    t = threading.Thread(target=_run_in_background, args=(engine, job_id), daemon=True,
                         name=f"scan-{job_id[:8]}")
    with SCAN_LOCK:
        threads = SCAN_STATE["threads"]
        for done in [jid for jid, th in threads.items() if not th.is_alive()]:
            del threads[done]
        threads[job_id] = t
    t.start()
    return t


def _job_payload(job, cfg: ScanConfig) -> dict:
    return {
        "success": True,
        "job": job.to_dict(),
        "eta": estimate_time_remaining(job, cfg.avg_seconds_per_tile) if job.status == SCANNING else None,
    }


# -------- Regions --------
@app.route("/regions", methods=["GET"])
def regions_list():
    zones = [z.to_dict() for z in get_hot_zones_by_priority()]
    return jsonify({
        "success": True,
        "regions": zones,
        "total_estimated_hours": get_total_estimated_hours(),
        "total_estimated_time": format_estimated_time(get_total_estimated_hours()),
    })


@app.route("/regions/validate", methods=["POST"])
def regions_validate():
    payload = request.get_json(silent=True) or {}
    try:
        bbox = parse_bbox(payload.get("bbox"))
        zoom = payload.get("zoomLevel")
        zoom = int(zoom) if zoom is not None else ScanConfig.from_env().zoom_level
    except (RegionValidationError, TypeError, ValueError) as e:
        return _fail(str(e), 400)
    area = calculate_area_km2(bbox)
    try:
        result = validate_region(bbox, zoom, max_area_km2=MAX_REGION_SIZE_KM2,
                                 max_tiles=ScanConfig.from_env().max_tiles)
    except RegionValidationError as e:
        return jsonify({"success": True, "valid": False, "message": str(e),
                        "area_km2": area, "area": format_area(area)})
    return jsonify({
        "success": True,
        "valid": True,
        "area_km2": result["area_km2"],
        "area": format_area(result["area_km2"]),
        "tile_count": result["tile_count"],
    })


# -------- Scan jobs --------
@app.route("/scanner", methods=["GET"])
def scanner_list():
    engine = get_engine()
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return _fail("limit must be an integer", 400)
    jobs = engine.store.list_jobs(limit=limit)
    active = get_active_scan_job(engine.store)
    return jsonify({
        "success": True,
        "jobs": [j.to_dict() for j in jobs],
        "active": _job_payload(active, engine.config) if active else None,
    })


@app.route("/scanner", methods=["POST"])
def scanner_start():
    payload = request.get_json(silent=True) or {}
    region_type = payload.get("regionType")
    region_id: Optional[str] = payload.get("regionId")
    try:
        custom_bbox = parse_bbox(payload["bbox"]) if payload.get("bbox") is not None else None
        bbox, zone = resolve_region(region_type, region_id, custom_bbox)
    except UnknownRegionError:
        return _fail(f"Hot zone '{region_id}' not found", 404)
    except RegionValidationError as e:
        return _fail(str(e), 400)

    try:
        engine = get_engine()
    except RuntimeError as e:
        return _fail(f"ML analysis not configured: {e}", 400)

    cfg: ScanConfig = engine.config
    name = payload.get("name") or (f"Scan: {zone.name}" if zone else "Custom Region Scan")
    try:
        zoom = int(payload["zoomLevel"]) if payload.get("zoomLevel") is not None else None
        job = create_scan_job(engine.store, name, bbox, region_type, region_id if zone else None, cfg, zoom)
    except (RegionValidationError, TypeError, ValueError) as e:
        return _fail(str(e), 400)
    except Exception as e:
        logger.exception("Failed to create scan job")
        return _fail(f"Failed to create scan job: {e}", 500)

    start_scan_thread(engine, job.id)
    return jsonify({
        "success": True,
        "job": job.to_dict(),
        "message": f"Scan started: {job.total_tiles} tiles to process",
    })


@app.route("/scanner/<job_id>", methods=["GET"])
def scanner_status(job_id: str):
    engine = get_engine()
    job = engine.store.get_job(job_id)
    if job is None:
        return _fail("Scan job not found", 404)
    return jsonify(_job_payload(job, engine.config))


@app.route("/scanner/<job_id>", methods=["POST"])
def scanner_control(job_id: str):
    engine = get_engine()
    payload = request.get_json(silent=True) or {}
    action = payload.get("action")
    try:
        if action == "pause":
            pause_scan(engine.store, job_id)
            message = "Scan paused"
        elif action == "resume":
            resume_scan(engine.store, job_id)
            start_scan_thread(engine, job_id)
            message = "Scan resumed"
        elif action == "cancel":
            cancel_scan(engine.store, job_id)
            message = "Scan cancelled"
        else:
            return _fail('Invalid action. Must be "pause", "resume", or "cancel"', 400)
    except JobNotFoundError:
        return _fail("Scan job not found", 404)
    except InvalidTransitionError as e:
        return _fail(str(e), 400)
    except ScanAlreadyRunningError as e:
        return _fail(str(e), 409)
    except Exception as e:
        logger.exception("Failed to %s scan %s", action, job_id)
        return _fail(f"Failed to {action} scan: {e}", 500)
    job = engine.store.get_job(job_id)
    out = _job_payload(job, engine.config)
    out["message"] = message
    return jsonify(out)


@app.route("/db/status")
def db_status():
    """Quick DB diagnostics: connection ok, DSN (redacted), table presence.

    Returns JSON with fields: connected, dsn, error, tables_present.
    """
    from db.config import redact_dsn, resolve_dsn
    from db.health_check import EXPECTED_TABLES
    from db.writer import DbClient

    out = {"connected": False, "dsn": None, "error": None, "tables_present": {}}
    try:
        dsn = resolve_dsn()
        out["dsn"] = redact_dsn(dsn)
        db = DbClient(dsn)
    except Exception as e:
        out["error"] = str(e)
        logger.warning("DB status check failed: %s", e)
        return jsonify(out)
    try:
        out["connected"] = True
        out["tables_present"] = db.tables_present(EXPECTED_TABLES)
    except Exception as e:
        out["error"] = str(e)
        logger.warning("DB status check failed: %s", e)
    finally:
        db.close()
    return jsonify(out)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    app.run(debug=False, port=5001)
