import math
from dataclasses import dataclass
from typing import Iterator, Tuple

MAX_LATITUDE = 85.0511287798  # Web Mercator latitude limit


@dataclass(frozen=True)
class BoundingBox:
    """North/south/east/west rectangle in decimal degrees (EPSG:4326)."""
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        if not self.north > self.south:
            raise ValueError(f"north ({self.north}) must be greater than south ({self.south})")
        if not self.east > self.west:
            raise ValueError(f"east ({self.east}) must be greater than west ({self.west})")

    @property
    def center(self) -> Tuple[float, float]:
        return (self.north + self.south) / 2.0, (self.east + self.west) / 2.0

    def contains(self, other: "BoundingBox") -> bool:
        return (
            self.north >= other.north
            and self.south <= other.south
            and self.east >= other.east
            and self.west <= other.west
        )

    def to_dict(self) -> dict:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}

    @classmethod
    def from_dict(cls, d: dict) -> "BoundingBox":
        return cls(
            north=float(d["north"]),
            south=float(d["south"]),
            east=float(d["east"]),
            west=float(d["west"]),
        )


@dataclass(frozen=True)
class TileCoordinate:
    """Slippy-map tile: origin top-left, x grows east, y grows south."""
    zoom: int
    x: int
    y: int

    def __post_init__(self) -> None:
        n = 1 << self.zoom
        if not (0 <= self.x < n and 0 <= self.y < n):
            raise ValueError(f"tile {self.zoom}/{self.x}/{self.y} outside 0..{n - 1}")

    @property
    def key(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"


# ---------- tile math ----------
def latlon_to_tile(lat: float, lon: float, z: int) -> Tuple[int, int]:
    """Fractional tile indices floored to the tile containing (lat, lon), clamped to the grid."""
    lat_rad = math.radians(lat)
    n = 2.0 ** z
    x = int(math.floor((lon + 180.0) / 360.0 * n))
    y = int(math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n))
    last = (1 << z) - 1
    return min(max(x, 0), last), min(max(y, 0), last)


def tile_to_latlon(x: int, y: int, z: int) -> Tuple[float, float]:
    """Lat/lon of the top-left (north-west) corner of tile z/x/y."""
    n = 2.0 ** z
    lon = x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))
    return lat, lon


def tile_center_latlon(tile: TileCoordinate) -> Tuple[float, float]:
    lat0, lon0 = tile_to_latlon(tile.x, tile.y, tile.zoom)
    lat1, lon1 = tile_to_latlon(tile.x + 1, tile.y + 1, tile.zoom)
    return (lat0 + lat1) / 2.0, (lon0 + lon1) / 2.0


def tile_to_bbox(tile: TileCoordinate) -> BoundingBox:
    """Ground footprint of a single tile."""
    north, west = tile_to_latlon(tile.x, tile.y, tile.zoom)
    south, east = tile_to_latlon(tile.x + 1, tile.y + 1, tile.zoom)
    return BoundingBox(north=north, south=south, east=east, west=west)


@dataclass(frozen=True)
class TileRange:
    """Inclusive tile index range at one zoom, walked in row-major order.

    The linear index of a tile is ``(y - min_y) * width + (x - min_x)``; the
    scan cursor relies on this ordering never changing for a given range.
    """
    zoom: int
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def count(self) -> int:
        return self.width * self.height

    def __len__(self) -> int:
        return self.count

    def __iter__(self) -> Iterator[TileCoordinate]:
        for y in range(self.min_y, self.max_y + 1):
            for x in range(self.min_x, self.max_x + 1):
                yield TileCoordinate(self.zoom, x, y)

    def __contains__(self, tile: object) -> bool:
        return (
            isinstance(tile, TileCoordinate)
            and tile.zoom == self.zoom
            and self.min_x <= tile.x <= self.max_x
            and self.min_y <= tile.y <= self.max_y
        )

    def index_of(self, tile: TileCoordinate) -> int:
        if tile not in self:
            raise ValueError(f"tile {tile.key} outside range")
        return (tile.y - self.min_y) * self.width + (tile.x - self.min_x)

    def tile_at(self, index: int) -> TileCoordinate:
        if not 0 <= index < self.count:
            raise IndexError(f"tile index {index} outside 0..{self.count - 1}")
        row, col = divmod(index, self.width)
        return TileCoordinate(self.zoom, self.min_x + col, self.min_y + row)

    def iter_from(self, index: int) -> Iterator[Tuple[int, TileCoordinate]]:
        """Yield (index, tile) pairs starting at ``index``."""
        for i in range(max(0, index), self.count):
            yield i, self.tile_at(i)

    @property
    def corner_tiles(self) -> Tuple[TileCoordinate, TileCoordinate]:
        """(north-west, south-east) tiles of the range."""
        return (
            TileCoordinate(self.zoom, self.min_x, self.min_y),
            TileCoordinate(self.zoom, self.max_x, self.max_y),
        )

    def covering_bbox(self) -> BoundingBox:
        nw, se = self.corner_tiles
        nw_box = tile_to_bbox(nw)
        se_box = tile_to_bbox(se)
        return BoundingBox(north=nw_box.north, south=se_box.south, east=se_box.east, west=nw_box.west)


def bbox_to_tile_range(bbox: BoundingBox, zoom: int) -> TileRange:
    # Y grows southward: the north edge gives min_y, the south edge max_y
    min_x, min_y = latlon_to_tile(bbox.north, bbox.west, zoom)
    max_x, max_y = latlon_to_tile(bbox.south, bbox.east, zoom)
    return TileRange(zoom=zoom, min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y)


def tile_count(bbox: BoundingBox, zoom: int) -> int:
    return bbox_to_tile_range(bbox, zoom).count

