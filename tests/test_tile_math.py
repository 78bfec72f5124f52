"""
Tests for slippy-map tile math and the row-major tile range.
"""

import pytest

from geom.tile_math import (
    BoundingBox,
    TileCoordinate,
    TileRange,
    bbox_to_tile_range,
    latlon_to_tile,
    tile_count,
    tile_to_bbox,
    tile_to_latlon,
)

CAHOKIA = BoundingBox(north=38.8, south=38.5, east=-89.9, west=-90.3)


class TestBoundingBox:
    """Tests for bounding box invariants."""

    def test_rejects_inverted_latitudes(self) -> None:
        with pytest.raises(ValueError):
            BoundingBox(north=38.5, south=38.8, east=-89.9, west=-90.3)

    def test_rejects_inverted_longitudes(self) -> None:
        with pytest.raises(ValueError):
            BoundingBox(north=38.8, south=38.5, east=-90.3, west=-89.9)

    def test_round_trips_through_dict(self) -> None:
        assert BoundingBox.from_dict(CAHOKIA.to_dict()) == CAHOKIA

    def test_center(self) -> None:
        lat, lng = CAHOKIA.center
        assert lat == pytest.approx(38.65)
        assert lng == pytest.approx(-90.1)


class TestTileCoordinate:
    """Tests for tile coordinate validation."""

    def test_key_format(self) -> None:
        assert TileCoordinate(13, 2041, 3136).key == "13/2041/3136"

    @pytest.mark.parametrize("x,y", [(-1, 0), (0, -1), (4, 0), (0, 4)])
    def test_out_of_grid(self, x, y) -> None:
        with pytest.raises(ValueError):
            TileCoordinate(2, x, y)


class TestConversions:
    """Tests for lat/lon to tile conversions."""

    def test_known_tile(self) -> None:
        assert latlon_to_tile(38.8, -90.3, 13) == (2041, 3136)
        assert latlon_to_tile(38.5, -89.9, 13) == (2050, 3145)

    def test_clamps_to_grid(self) -> None:
        assert latlon_to_tile(89.9, 180.0, 3) == (7, 0)
        assert latlon_to_tile(-89.9, -180.0, 3) == (0, 7)

    def test_tile_bbox_contains_its_corner_point(self) -> None:
        tile = TileCoordinate(13, 2045, 3140)
        box = tile_to_bbox(tile)
        lat, lon = tile_to_latlon(tile.x, tile.y, tile.zoom)
        assert box.north == pytest.approx(lat)
        assert box.west == pytest.approx(lon)
        inner = latlon_to_tile((box.north + box.south) / 2, (box.east + box.west) / 2, 13)
        assert inner == (tile.x, tile.y)

    def test_adjacent_tiles_share_edges(self) -> None:
        a = tile_to_bbox(TileCoordinate(10, 300, 400))
        right = tile_to_bbox(TileCoordinate(10, 301, 400))
        below = tile_to_bbox(TileCoordinate(10, 300, 401))
        assert a.east == pytest.approx(right.west)
        assert a.south == pytest.approx(below.north)


class TestTileRange:
    """Tests for region decomposition and iteration order."""

    def test_cahokia_zoom_13(self) -> None:
        tiles = bbox_to_tile_range(CAHOKIA, 13)
        assert (tiles.min_x, tiles.max_x, tiles.min_y, tiles.max_y) == (2041, 2050, 3136, 3145)
        assert tiles.count == 100
        assert tile_count(CAHOKIA, 13) == 100

    def test_cahokia_is_reproducible(self) -> None:
        first = [t.key for t in bbox_to_tile_range(CAHOKIA, 13)]
        second = [t.key for t in bbox_to_tile_range(CAHOKIA, 13)]
        assert first == second
        assert len(set(first)) == len(first) == 100

    def test_covering_bbox_over_covers_region(self) -> None:
        for zoom in (10, 13, 15):
            cover = bbox_to_tile_range(CAHOKIA, zoom).covering_bbox()
            assert cover.contains(CAHOKIA)

    def test_row_major_order(self) -> None:
        tiles = TileRange(zoom=5, min_x=3, max_x=5, min_y=7, max_y=8)
        assert [(t.x, t.y) for t in tiles] == [(3, 7), (4, 7), (5, 7), (3, 8), (4, 8), (5, 8)]

    def test_index_and_tile_at_are_inverse(self) -> None:
        tiles = bbox_to_tile_range(CAHOKIA, 13)
        for i, tile in enumerate(tiles):
            assert tiles.index_of(tile) == i
            assert tiles.tile_at(i) == tile

    def test_tile_at_bounds(self) -> None:
        tiles = TileRange(zoom=5, min_x=3, max_x=5, min_y=7, max_y=8)
        with pytest.raises(IndexError):
            tiles.tile_at(6)
        with pytest.raises(IndexError):
            tiles.tile_at(-1)

    def test_iter_from_resumes_mid_range(self) -> None:
        tiles = TileRange(zoom=5, min_x=3, max_x=5, min_y=7, max_y=8)
        rest = list(tiles.iter_from(4))
        assert [i for i, _ in rest] == [4, 5]
        assert [(t.x, t.y) for _, t in rest] == [(4, 8), (5, 8)]

    def test_index_of_rejects_foreign_tile(self) -> None:
        tiles = TileRange(zoom=5, min_x=3, max_x=5, min_y=7, max_y=8)
        with pytest.raises(ValueError):
            tiles.index_of(TileCoordinate(5, 9, 9))
