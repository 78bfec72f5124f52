"""Geometry helpers: slippy-map tile math and short-range distances."""

from .tile_math import BoundingBox, TileCoordinate, TileRange, bbox_to_tile_range, tile_to_bbox

__all__ = ["BoundingBox", "TileCoordinate", "TileRange", "bbox_to_tile_range", "tile_to_bbox"]
