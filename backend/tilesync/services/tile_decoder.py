"""Vector tile decoding into reprojected, classified features.

Parses a Mapbox Vector Tile (protobuf ``.pbf``) with ``mapbox_vector_tile``
and turns every feature of every allow-listed layer into ``GeoFeature``
objects in WGS84 longitude/latitude. Layers missing from the
classification table are skipped: a new upstream layer must be listed
before its data is trusted.

Coordinates in a tile are integers in ``[0, extent]`` measured from the
tile's top-left corner. They are mapped linearly onto the tile's Web
Mercator bounds and converted to lng/lat with ``mercantile``.

Multi-part geometries are split into one feature per part because a dedup
key identifies exactly one geometry in the store.

Example:
    Decode a fetched tile for the designated roads source:
        >>> from tilesync.services import sources, tile_decoder
        >>> features = tile_decoder.decode(
        ...     content,
        ...     TileCoordinate(14422, 6480, 14),
        ...     sources.ROAD_LAYERS,
        ...     sources.ROAD_KEY_FIELDS,
        ... )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import mapbox_vector_tile
import mercantile
from google.protobuf import message as protobuf_message

from tilesync.db import models as db_models
from tilesync.services import dedup

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_EXTENT = 4096

SOURCE_LAYER_ATTRIBUTE = "_source_layer"
TILE_COORD_ATTRIBUTE = "_tile_coord"

_DECODE_OPTIONS = {"y_coord_down": True, "geojson": True}

# Single-part type and its multi-part counterpart per layer kind.
_ACCEPTED_TYPES: dict[db_models.LayerKind, tuple[str, str]] = {
    "line": ("LineString", "MultiLineString"),
    "polygon": ("Polygon", "MultiPolygon"),
}

Point = tuple[float, float]


class TileDecodeError(ValueError):
    """Raised when a tile body is not a readable vector tile."""


def tile_projector(
    tile: db_models.TileCoordinate, extent: int = DEFAULT_EXTENT
) -> Callable[[float, float], Point]:
    """Build a function mapping tile-local coordinates to (lng, lat).

    Args:
        tile: Tile the coordinates are relative to.
        extent: Number of coordinate units along one tile edge.

    Returns:
        Callable taking ``(px, py)`` with ``py`` growing downwards and
        returning ``(lng, lat)`` in degrees.
    """
    bounds = mercantile.xy_bounds(tile.x, tile.y, tile.z)
    width = bounds.right - bounds.left
    height = bounds.top - bounds.bottom

    def project(px: float, py: float) -> Point:
        mx = bounds.left + width * px / extent
        my = bounds.top - height * py / extent
        lng, lat = mercantile.lnglat(mx, my)
        return (lng, lat)

    return project


def _project_line(
    coordinates: Sequence[Sequence[float]],
    project: Callable[[float, float], Point],
) -> list[list[float]]:
    return [list(project(point[0], point[1])) for point in coordinates]


def _project_polygon(
    rings: Sequence[Sequence[Sequence[float]]],
    project: Callable[[float, float], Point],
) -> list[list[list[float]]]:
    return [_project_line(ring, project) for ring in rings]


def _split_parts(
    geometry: Mapping[str, Any],
    kind: db_models.LayerKind,
    project: Callable[[float, float], Point],
) -> list[dict[str, Any]]:
    """Reproject a decoded geometry and split it into single parts.

    Geometries of a family other than ``kind`` yield no parts.
    """
    single, multi = _ACCEPTED_TYPES[kind]
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates") or []
    if geom_type == single:
        parts = [coordinates]
    elif geom_type == multi:
        parts = list(coordinates)
    else:
        return []

    reproject = _project_line if kind == "line" else _project_polygon
    return [
        {"type": single, "coordinates": reproject(part, project)}
        for part in parts
    ]


def _decode_layers(content: bytes) -> dict[str, Any]:
    try:
        return mapbox_vector_tile.decode(
            content, default_options=_DECODE_OPTIONS
        )
    except (
        protobuf_message.DecodeError,
        ValueError,
        TypeError,
        IndexError,
        KeyError,
    ) as exc:
        raise TileDecodeError(f"unreadable vector tile: {exc}") from exc


def decode(
    content: bytes,
    tile: db_models.TileCoordinate,
    layers: Mapping[str, db_models.LayerClassification],
    key_fields: Sequence[str] = dedup.DEFAULT_KEY_FIELDS,
) -> list[db_models.GeoFeature]:
    """Decode a vector tile into classified, reprojected features.

    Args:
        content: Raw protobuf tile body.
        tile: Coordinate of the tile, used as the projection anchor.
        layers: Classification table of allow-listed layer names.
        key_fields: Dedup key priority passed to ``dedup.resolve_key``.

    Returns:
        One ``GeoFeature`` per geometry part of every feature in an
        allow-listed layer. Each carries ``_source_layer`` and
        ``_tile_coord`` attributes.

    Raises:
        TileDecodeError: If the body cannot be parsed as a vector tile.
    """
    decoded = _decode_layers(content)
    features: list[db_models.GeoFeature] = []

    for layer_name, layer in decoded.items():
        classification = layers.get(layer_name)
        if classification is None:
            continue

        project = tile_projector(tile, layer.get("extent") or DEFAULT_EXTENT)
        for raw in layer.get("features", []):
            attributes = {
                **(raw.get("properties") or {}),
                SOURCE_LAYER_ATTRIBUTE: layer_name,
                TILE_COORD_ATTRIBUTE: tile.key,
            }
            dedup_key = dedup.resolve_key(attributes, key_fields)
            parts = _split_parts(
                raw.get("geometry") or {}, classification.kind, project
            )
            for part in parts:
                features.append(
                    db_models.GeoFeature(
                        source_layer=layer_name,
                        dedup_key=dedup_key,
                        geometry_type=part["type"],
                        geometry=part,
                        attributes=dict(attributes),
                        category=classification.category,
                    )
                )

    logger.debug("Decoded %d features from tile %s", len(features), tile.key)
    return features
