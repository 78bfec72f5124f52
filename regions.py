"""
Preset scan regions ("hot zones") and region validation.
Hot zones are documented concentrations of mound sites and earthworks; a
custom region is any user-drawn bounding box that passes validation.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from geom.tile_math import MAX_LATITUDE, BoundingBox, tile_count
from jobs import REGION_TYPES, RegionValidationError

EARTH_RADIUS_KM = 6371.0

# Custom regions only; presets are curated and may be larger
MAX_REGION_SIZE_KM2 = 100.0
MIN_REGION_SIZE_KM2 = 0.01
MAX_SCAN_LATITUDE = 85.0

ESTIMATE_ZOOM = 17


@dataclass(frozen=True)
class HotZone:
    """A named region with high archaeological potential."""
    id: str
    name: str
    description: str
    bbox: BoundingBox
    zoom: int  # map zoom used to frame the region, not the scan zoom
    priority: int  # 1 = highest
    estimated_hours: float
    known_site_count: str
    cultures: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def center(self) -> Tuple[float, float]:
        return self.bbox.center

    @property
    def estimated_tiles(self) -> int:
        return tile_count(self.bbox, ESTIMATE_ZOOM)

    def to_dict(self) -> Dict:
        lat, lng = self.center
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "bbox": self.bbox.to_dict(),
            "center": {"lat": lat, "lng": lng},
            "zoom": self.zoom,
            "priority": self.priority,
            "estimated_tiles": self.estimated_tiles,
            "estimated_hours": self.estimated_hours,
            "known_site_count": self.known_site_count,
            "cultures": list(self.cultures),
        }


def _zone(id, name, description, north, south, east, west, zoom, priority, hours, known, cultures) -> HotZone:
    return HotZone(
        id=id,
        name=name,
        description=description,
        bbox=BoundingBox(north=north, south=south, east=east, west=west),
        zoom=zoom,
        priority=priority,
        estimated_hours=hours,
        known_site_count=known,
        cultures=tuple(cultures),
    )


HOT_ZONES: Dict[str, HotZone] = {z.id: z for z in (
    # Priority 1: highest concentration of sites
    _zone("cahokia-region", "Cahokia Region",
          "American Bottom floodplain - densest concentration of Mississippian sites",
          38.8, 38.5, -89.9, -90.3, 13, 1, 2, "100+", ["Mississippian"]),
    _zone("poverty-point-region", "Poverty Point Region",
          "Late Archaic monumental architecture complex in Louisiana",
          32.75, 32.5, -91.3, -91.55, 13, 1, 1, "20+", ["Poverty Point culture"]),
    _zone("newark-earthworks", "Newark Earthworks Area",
          "Largest geometric earthen enclosures in the world",
          40.1, 40.0, -82.35, -82.5, 14, 1, 0.5, "10+", ["Hopewell"]),
    # Priority 2: major archaeological regions
    _zone("lower-mississippi-valley", "Lower Mississippi Valley",
          "Louisiana-Mississippi border region with numerous mound sites",
          33.5, 31.0, -90.5, -92.0, 10, 2, 15, "200+", ["Mississippian", "Plaquemine", "Poverty Point"]),
    _zone("ohio-valley-hopewell", "Ohio Valley Hopewell Heartland",
          "Core Hopewell region along Scioto and Ohio rivers",
          40.0, 39.0, -82.5, -83.5, 11, 2, 8, "100+", ["Hopewell", "Adena"]),
    _zone("moundville-region", "Moundville Region",
          "Black Warrior River Valley - major Mississippian center",
          33.15, 32.85, -87.5, -87.75, 13, 2, 1, "30+", ["Mississippian"]),
    _zone("etowah-region", "Etowah River Valley",
          "Georgia Mississippian complex around Etowah Mounds",
          34.25, 34.0, -84.7, -84.95, 13, 2, 1, "15+", ["Mississippian"]),
    _zone("kincaid-region", "Kincaid-Angel Mounds Corridor",
          "Ohio-Wabash confluence area with major Mississippian sites",
          38.1, 37.0, -87.2, -88.7, 11, 2, 10, "50+", ["Mississippian"]),
    _zone("great-serpent-region", "Great Serpent Mound Region",
          "Adams County Ohio effigy and burial mound concentration",
          39.1, 38.9, -83.3, -83.55, 13, 2, 0.5, "10+", ["Fort Ancient", "Adena"]),
    # Priority 3: wider survey areas
    _zone("upper-mississippi", "Upper Mississippi Valley",
          "Wisconsin-Illinois-Iowa border effigy mound region",
          43.5, 42.0, -89.5, -91.5, 10, 3, 20, "500+ effigy mounds", ["Effigy Mound", "Middle Woodland"]),
    _zone("tennessee-cumberland", "Tennessee-Cumberland Region",
          "Middle Tennessee mound complexes",
          36.5, 35.5, -86.0, -87.5, 10, 3, 12, "50+", ["Mississippian", "Middle Woodland"]),
    _zone("spiro-region", "Spiro Mounds Region",
          "Arkansas River Valley Caddoan ceremonial center",
          35.4, 35.1, -94.4, -94.8, 13, 3, 1, "15+", ["Caddoan Mississippian"]),
    _zone("ocmulgee-region", "Ocmulgee-Oconee Corridor",
          "Central Georgia Mississippian sites",
          33.0, 32.6, -83.4, -83.8, 12, 3, 2, "20+", ["Mississippian"]),
)}


class UnknownRegionError(RegionValidationError, KeyError):
    """No preset region with that id."""

    def __str__(self) -> str:
        return Exception.__str__(self)


def get_hot_zone(zone_id: str) -> Optional[HotZone]:
    return HOT_ZONES.get(zone_id)


def get_available_hot_zones() -> List[str]:
    return list(HOT_ZONES.keys())


def get_hot_zones_by_priority() -> List[HotZone]:
    return sorted(HOT_ZONES.values(), key=lambda z: z.priority)


def get_total_estimated_hours() -> float:
    return sum(z.estimated_hours for z in HOT_ZONES.values())


def format_estimated_time(hours: float) -> str:
    if hours < 1:
        return f"~{round(hours * 60)} min"
    if hours < 24:
        return f"~{hours:.1f} hrs"
    return f"~{hours / 24:.1f} days"


# ---------- area / validation ----------
def calculate_area_km2(bbox: BoundingBox) -> float:
    """Approximate area of a small bbox on a spherical earth."""
    height_km = math.radians(bbox.north - bbox.south) * EARTH_RADIUS_KM
    avg_lat = math.radians((bbox.north + bbox.south) / 2.0)
    width_km = math.radians(bbox.east - bbox.west) * EARTH_RADIUS_KM * math.cos(avg_lat)
    return abs(height_km * width_km)


def format_area(area_km2: float) -> str:
    if area_km2 < 1:
        return f"{area_km2 * 1_000_000:.0f} sq m"
    return f"{area_km2:.1f} sq km"


def parse_bbox(raw) -> BoundingBox:
    """Build a BoundingBox from a request payload, turning bad input into a validation error."""
    if not isinstance(raw, dict):
        raise RegionValidationError("bbox must be an object with north, south, east and west")
    try:
        return BoundingBox.from_dict(raw)
    except KeyError as e:
        raise RegionValidationError(f"bbox is missing {e.args[0]!r}")
    except (TypeError, ValueError) as e:
        raise RegionValidationError(f"Malformed bounding box: {e}")


def validate_region(
    bbox: BoundingBox,
    zoom: int,
    *,
    max_area_km2: Optional[float] = MAX_REGION_SIZE_KM2,
    min_area_km2: float = MIN_REGION_SIZE_KM2,
    max_tiles: Optional[int] = None,
) -> Dict:
    """Reject regions the scanner should never start on.

    Returns ``{"area_km2", "tile_count"}`` for a valid region; raises
    RegionValidationError otherwise. ``max_area_km2=None`` skips the size cap
    (used for curated presets).
    """
    if not 0 <= zoom <= 22:
        raise RegionValidationError(f"Zoom level {zoom} outside 0..22")
    for lat in (bbox.north, bbox.south):
        if abs(lat) > min(MAX_SCAN_LATITUDE, MAX_LATITUDE):
            raise RegionValidationError(f"Latitude {lat} outside the mapped range (±{MAX_SCAN_LATITUDE}°)")
    for lng in (bbox.east, bbox.west):
        if abs(lng) > 180.0:
            raise RegionValidationError(f"Longitude {lng} outside -180..180")

    area = calculate_area_km2(bbox)
    tiles = tile_count(bbox, zoom)
    if max_area_km2 is not None and area > max_area_km2:
        raise RegionValidationError(
            f"Region too large ({area:.1f} sq km). This would require ~{tiles} API calls. "
            f"Please select a smaller area (max {max_area_km2:g} sq km)."
        )
    if area < min_area_km2:
        raise RegionValidationError("Region too small. Please select a larger area for meaningful analysis.")
    if max_tiles and tiles > max_tiles:
        raise RegionValidationError(f"Refusing to scan {tiles} tiles (> max {max_tiles}). Reduce area or zoom.")
    return {"area_km2": area, "tile_count": tiles}


def resolve_region(
    region_type: str,
    region_id: Optional[str] = None,
    bbox: Optional[BoundingBox] = None,
) -> Tuple[BoundingBox, Optional[HotZone]]:
    """Turn a scan request's region fields into a bbox (and the preset, if any)."""
    if region_type == "hot_zone":
        if not region_id:
            raise RegionValidationError("regionId is required for hot_zone scans")
        zone = get_hot_zone(region_id)
        if zone is None:
            raise UnknownRegionError(f"Unknown hot zone: {region_id}")
        return zone.bbox, zone
    if region_type == "custom":
        if bbox is None:
            raise RegionValidationError("bbox is required for custom scans")
        return bbox, None
    raise RegionValidationError(f"Invalid region type: {region_type}. Available: {', '.join(REGION_TYPES)}")
