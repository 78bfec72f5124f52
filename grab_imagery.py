# grab_imagery.py
import io, os, time, argparse, logging
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlencode
from urllib.request import urlopen, Request
from urllib.error import HTTPError, URLError

import numpy as np
from PIL import Image

from geom.tile_math import BoundingBox, TileCoordinate, bbox_to_tile_range, tile_to_bbox

logger = logging.getLogger(__name__)

# USDA NAIP WMS: 30-60cm aerial imagery of the continental US
NAIP_WMS_URL = "https://gis.apfo.usda.gov/arcgis/services/NAIP/USDA_CONUS_PRIME/ImageServer/WMSServer"
# Fallback: Esri World Imagery, better coverage, not NAIP
ESRI_TILE_URL = "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}"

NAIP_SIZE = 512
ESRI_SIZE = 256
USER_AGENT = "region-scanner/1.0"


class ImageryError(Exception):
    """No usable imagery could be fetched for a tile."""


@dataclass
class FetchedTile:
    tile: TileCoordinate
    bbox: BoundingBox
    data: bytes
    source: str  # "naip" | "esri"
    width: int
    height: int


# ---------- placeholder detection ----------
def looks_like_placeholder(image_rgb: Image.Image) -> bool:
    """Heuristic for Esri 'no data' tiles:
       - mostly flat gray (#C9C9C9~#D0D0D0), maybe tiny white text/dashes
       Decide 'placeholder' if >95% pixels within 12 gray value of 200 and near-neutral.
    """
    arr = np.asarray(image_rgb, dtype=np.uint8)
    # how close to gray?
    rg = np.abs(arr[:,:,0].astype(int) - arr[:,:,1].astype(int))
    gb = np.abs(arr[:,:,1].astype(int) - arr[:,:,2].astype(int))
    gray_like = (rg < 6) & (gb < 6)

    # close to the typical background gray ~200
    mean_gray = arr.mean(axis=2)
    near_200 = np.abs(mean_gray - 200) < 12

    mask = gray_like & near_200
    frac = mask.mean()
    return frac > 0.95


def has_real_imagery(data: bytes) -> bool:
    try:
        img = Image.open(io.BytesIO(data)).convert("RGB")
    except OSError:
        return False
    if looks_like_placeholder(img):
        return False
    # also reject truly uniform tiles
    extrema = img.getextrema()
    return not all(lo == hi for (lo, hi) in extrema)


# ---------- HTTP ----------
class ImageryClient:
    """Fetch imagery for one tile: NAIP WMS first, Esri World Imagery second.

    ``opener`` defaults to urllib's ``urlopen``; tests pass a fake.
    """

    def __init__(self, timeout: float = 15, use_naip: bool = True, use_esri: bool = True,
                 opener: Optional[Callable] = None) -> None:
        if not (use_naip or use_esri):
            raise ValueError("at least one imagery source must be enabled")
        self.timeout = timeout
        self.use_naip = use_naip
        self.use_esri = use_esri
        self._open = opener or urlopen

    def _get(self, url: str, headers: dict):
        req = Request(url, headers={"User-Agent": USER_AGENT, **headers})
        with self._open(req, timeout=self.timeout) as r:
            content_type = r.headers.get("Content-Type", "") if getattr(r, "headers", None) is not None else ""
            return r.read(), content_type or ""

    def fetch_bbox(self, bbox: BoundingBox, width: int = NAIP_SIZE, height: int = NAIP_SIZE) -> bytes:
        """NAIP WMS GetMap for an arbitrary box."""
        params = {
            "SERVICE": "WMS",
            "VERSION": "1.1.1",
            "REQUEST": "GetMap",
            "LAYERS": "0",
            "STYLES": "",
            "FORMAT": "image/jpeg",
            "TRANSPARENT": "false",
            "SRS": "EPSG:4326",
            "BBOX": f"{bbox.west},{bbox.south},{bbox.east},{bbox.north}",
            "WIDTH": str(width),
            "HEIGHT": str(height),
        }
        url = f"{NAIP_WMS_URL}?{urlencode(params)}"
        try:
            data, content_type = self._get(url, {"Accept": "image/jpeg,image/png,image/*"})
        except (HTTPError, URLError, OSError) as e:
            raise ImageryError(f"NAIP WMS request failed: {e}")
        if "xml" in content_type.lower():
            # WMS reports errors as an XML document with a 200 status
            raise ImageryError(f"NAIP WMS error: {data[:200].decode('utf-8', 'replace')}")
        if not data:
            raise ImageryError("NAIP WMS returned an empty body")
        return data

    def fetch_esri(self, tile: TileCoordinate) -> bytes:
        url = ESRI_TILE_URL.format(z=tile.zoom, y=tile.y, x=tile.x)
        try:
            data, _ = self._get(url, {"Referer": "https://www.arcgis.com"})
        except (HTTPError, URLError, OSError) as e:
            raise ImageryError(f"Esri tile request failed: {e}")
        if not has_real_imagery(data):
            raise ImageryError(f"Esri has no imagery for {tile.key}")
        return data

    def fetch_tile_imagery(self, tile: TileCoordinate) -> FetchedTile:
        bbox = tile_to_bbox(tile)
        errors = []
        if self.use_naip:
            try:
                data = self.fetch_bbox(bbox)
                return FetchedTile(tile, bbox, data, "naip", NAIP_SIZE, NAIP_SIZE)
            except ImageryError as e:
                logger.debug("NAIP failed for %s, falling back: %s", tile.key, e)
                errors.append(str(e))
        if self.use_esri:
            try:
                data = self.fetch_esri(tile)
                return FetchedTile(tile, bbox, data, "esri", ESRI_SIZE, ESRI_SIZE)
            except ImageryError as e:
                errors.append(str(e))
        raise ImageryError(f"No imagery for {tile.key}: " + "; ".join(errors))

    def fetch_tile(self, tile: TileCoordinate) -> bytes:
        return self.fetch_tile_imagery(tile).data


# ---------- CLI ----------
def main():
    from regions import get_hot_zone, get_available_hot_zones

    ap = argparse.ArgumentParser(description="Save NAIP/Esri imagery for a region as z/x/y.jpg tiles.")
    ap.add_argument("--zone", type=str, default=None, help=f"Preset region id ({', '.join(get_available_hot_zones())}).")
    ap.add_argument("--bbox", type=float, nargs=4, metavar=("NORTH", "SOUTH", "EAST", "WEST"), default=None)
    ap.add_argument("--zoom", type=int, default=17)
    ap.add_argument("--max_tiles", type=int, default=20000, help="Safety cap on number of tiles (default ~20000).")
    ap.add_argument("--delay", type=float, default=0.03, help="Delay between tile requests.")
    ap.add_argument("--esri_only", action="store_true", help="Skip NAIP and fetch Esri tiles directly.")
    ap.add_argument("--save_tiles_dir", type=str, required=True, help="Directory to save tiles as z/x/y.jpg.")
    args = ap.parse_args()

    if args.zone:
        zone = get_hot_zone(args.zone)
        if zone is None:
            raise SystemExit(f"Unknown zone {args.zone!r}")
        bbox = zone.bbox
    elif args.bbox:
        n, s, e, w = args.bbox
        bbox = BoundingBox(north=n, south=s, east=e, west=w)
    else:
        raise SystemExit("--zone or --bbox is required")

    tiles = bbox_to_tile_range(bbox, args.zoom)
    total_tiles = tiles.count
    if args.max_tiles and total_tiles > args.max_tiles:
        raise SystemExit(f"Refusing to fetch {total_tiles} tiles (> max {args.max_tiles}). Reduce area or zoom.")
    print(f"Tiles: {tiles.width} x {tiles.height} = {total_tiles} | z={args.zoom}")

    client = ImageryClient(use_naip=not args.esri_only)
    k = saved = 0
    for tile in tiles:
        try:
            fetched = client.fetch_tile_imagery(tile)
            img = Image.open(io.BytesIO(fetched.data)).convert("RGB")
            tile_dir = os.path.join(args.save_tiles_dir, str(tile.zoom), str(tile.x))
            os.makedirs(tile_dir, exist_ok=True)
            img.save(os.path.join(tile_dir, f"{tile.y}.jpg"), format="JPEG")
            saved += 1
        except (ImageryError, OSError) as e:
            print(f"skip {tile.key}: {e}")
        k += 1
        if k % 100 == 0:
            print(f"{k}/{total_tiles} tiles")
        time.sleep(args.delay)
    print(f"Saved {saved}/{total_tiles} tiles under {args.save_tiles_dir}")


if __name__ == "__main__":
    main()
