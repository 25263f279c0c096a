"""Tile grid planning for a fixed geographic extent.

Converts a WGS84 bounding box into the exhaustive list of XYZ tiles that
cover it at one zoom level, using standard Web Mercator tile math from
``mercantile``. The covering set is the inclusive rectangle between the
tile holding the north-west corner and the tile holding the south-east
corner, returned row-major (north to south, west to east within a row).

A malformed extent is a configuration problem, so ``validate`` is meant to
run once when settings load; ``plan`` re-validates for direct callers.

Example:
    Plan the tiles covering central Nagoya at zoom 14:
        >>> from tilesync.db.models import BoundingBox
        >>> from tilesync.services import tile_grid
        >>> bbox = BoundingBox(136.88, 35.15, 136.92, 35.19)
        >>> tiles = tile_grid.plan(bbox, 14)
        >>> all(tile.z == 14 for tile in tiles)
        True
"""

from __future__ import annotations

import mercantile

from tilesync.db import models as db_models

MAX_LATITUDE = 85.0511287798066
MAX_ZOOM = 24


class InvalidBoundingBoxError(ValueError):
    """Raised when a bounding box or zoom level cannot be tiled."""


def validate(bbox: db_models.BoundingBox, zoom: int) -> None:
    """Check that a bounding box and zoom level describe a tileable area.

    Args:
        bbox: Extent in WGS84 degrees.
        zoom: Tile pyramid zoom level.

    Raises:
        InvalidBoundingBoxError: If the zoom is out of range, a coordinate
            is outside the Web Mercator domain, or the box is inverted.
    """
    if not 0 <= zoom <= MAX_ZOOM:
        raise InvalidBoundingBoxError(
            f"zoom must be between 0 and {MAX_ZOOM}, got {zoom}"
        )
    for lng in (bbox.min_lng, bbox.max_lng):
        if not -180.0 <= lng <= 180.0:
            raise InvalidBoundingBoxError(f"longitude out of range: {lng}")
    for lat in (bbox.min_lat, bbox.max_lat):
        if not -MAX_LATITUDE <= lat <= MAX_LATITUDE:
            raise InvalidBoundingBoxError(f"latitude out of range: {lat}")
    if bbox.min_lng > bbox.max_lng:
        raise InvalidBoundingBoxError("min_lng is greater than max_lng")
    if bbox.min_lat > bbox.max_lat:
        raise InvalidBoundingBoxError("min_lat is greater than max_lat")


def corner_tiles(
    bbox: db_models.BoundingBox, zoom: int
) -> tuple[db_models.TileCoordinate, db_models.TileCoordinate]:
    """Return the north-west and south-east corner tiles of an extent."""
    nw = mercantile.tile(bbox.min_lng, bbox.max_lat, zoom)
    se = mercantile.tile(bbox.max_lng, bbox.min_lat, zoom)
    return (
        db_models.TileCoordinate(nw.x, nw.y, zoom),
        db_models.TileCoordinate(se.x, se.y, zoom),
    )


def plan(
    bbox: db_models.BoundingBox, zoom: int
) -> list[db_models.TileCoordinate]:
    """List every tile intersecting ``bbox`` at ``zoom``.

    Args:
        bbox: Extent in WGS84 degrees.
        zoom: Tile pyramid zoom level.

    Returns:
        Tiles ordered row-major, each appearing exactly once.

    Raises:
        InvalidBoundingBoxError: If the extent or zoom is invalid.
    """
    validate(bbox, zoom)
    nw, se = corner_tiles(bbox, zoom)
    return [
        db_models.TileCoordinate(x, y, zoom)
        for y in range(nw.y, se.y + 1)
        for x in range(nw.x, se.x + 1)
    ]
