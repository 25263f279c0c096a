"""Shared fixtures: vector tile bodies, fake HTTP sessions and tile extents.

Tiles are encoded with ``mapbox_vector_tile`` using tile-local coordinates
(0..4096, y growing downwards), the same convention the decoder reads.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

import mapbox_vector_tile
import mercantile
import pytest
from mapbox_vector_tile.Mapbox import vector_tile_pb2

from tilesync.core import config
from tilesync.db import models as db_models

ROADS_URL = "https://tiles.test/roads"
BUILDINGS_URL = "https://tiles.test/buildings"
DOCUMENTS_URL = "https://docs.test/pdf"

# Inside Nagoya at zoom 14.
ORIGIN = db_models.TileCoordinate(14422, 6480, 14)

TileLayers = dict[str, Iterable[tuple[str, dict[str, Any]]]]


def encode_tile(layers: TileLayers) -> bytes:
    """Encode ``{layer: [(wkt, properties), ...]}`` into a tile body."""
    return mapbox_vector_tile.encode(
        [
            {
                "name": name,
                "features": [
                    {"geometry": wkt, "properties": properties}
                    for wkt, properties in features
                ],
            }
            for name, features in layers.items()
        ],
        default_options={"y_coord_down": True},
    )


def encode_mistagged_tile(layer: str) -> bytes:
    """Valid protobuf whose only line feature has tags but no keys or values."""
    tile = vector_tile_pb2.tile()
    tile_layer = tile.layers.add()
    tile_layer.name = layer
    tile_layer.version = 2
    tile_layer.extent = 4096
    feature = tile_layer.features.add()
    feature.type = vector_tile_pb2.tile.LineString
    feature.tags.extend([7, 3])
    # MoveTo(10, 10) then LineTo(+5, +5).
    feature.geometry.extend([9, 20, 20, 10, 10, 10])
    return tile.SerializeToString()


def grid_bbox(
    origin: db_models.TileCoordinate, columns: int, rows: int
) -> tuple[float, float, float, float]:
    """Extent covering exactly ``columns`` x ``rows`` tiles from ``origin``."""
    nw = mercantile.bounds(origin.x, origin.y, origin.z)
    se = mercantile.bounds(
        origin.x + columns - 1, origin.y + rows - 1, origin.z
    )
    margin = 1e-7
    return (
        nw.west + margin,
        se.south + margin,
        se.east - margin,
        nw.north - margin,
    )


class FakeResponse:
    def __init__(
        self, status_code: int = 200, content: bytes = b"", reason: str = "OK"
    ) -> None:
        self.status_code = status_code
        self.content = content
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class FakeSession:
    """Serves canned responses by URL; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.headers: dict[str, str] = {}
        self.responses: dict[str, FakeResponse | Exception] = {}
        self.requested: list[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def serve(self, url: str, response: FakeResponse | Exception) -> None:
        self.responses[url] = response

    def serve_status(
        self, base_url: str, tile: db_models.TileCoordinate, status_code: int,
        reason: str = "Error",
    ) -> None:
        self.serve(
            f"{base_url}/{tile.z}/{tile.x}/{tile.y}.pbf",
            FakeResponse(status_code, reason=reason),
        )

    def serve_tile(
        self, base_url: str, tile: db_models.TileCoordinate, content: bytes
    ) -> None:
        self.serve(
            f"{base_url}/{tile.z}/{tile.x}/{tile.y}.pbf", FakeResponse(200, content)
        )

    def get(self, url: str, timeout: float | None = None) -> FakeResponse:
        with self._lock:
            self.requested.append(url)
        response = self.responses.get(url)
        if response is None:
            return FakeResponse(404, reason="Not Found")
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


class BlockingSession(FakeSession):
    """Holds every request until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def get(self, url: str, timeout: float | None = None) -> FakeResponse:
        self.started.set()
        self.release.wait(5)
        return super().get(url, timeout)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def blocking_session() -> Iterable[BlockingSession]:
    session = BlockingSession()
    yield session
    session.release.set()


@pytest.fixture
def tile_encoder() -> Callable[[TileLayers], bytes]:
    return encode_tile


@pytest.fixture
def mistagged_tile() -> Callable[[str], bytes]:
    return encode_mistagged_tile


@pytest.fixture
def make_settings() -> Callable[..., config.Settings]:
    """Build settings over a small tile grid at ``ORIGIN``."""

    def factory(columns: int = 2, rows: int = 2, **overrides: Any) -> config.Settings:
        values: dict[str, Any] = {
            "sync_bbox": grid_bbox(ORIGIN, columns, rows),
            "sync_zoom": ORIGIN.z,
            "sync_delay_seconds": 0,
            "sync_concurrency": 2,
            "roads_tile_url": ROADS_URL,
            "buildings_tile_url": BUILDINGS_URL,
            "document_base_url": DOCUMENTS_URL,
        }
        values.update(overrides)
        return config.Settings(**values)

    return factory


@pytest.fixture
def origin() -> db_models.TileCoordinate:
    return ORIGIN


@pytest.fixture
def grid_extent() -> Callable[[int, int], db_models.BoundingBox]:
    """Build the extent covering ``columns`` x ``rows`` tiles at ``ORIGIN``."""

    def factory(columns: int, rows: int) -> db_models.BoundingBox:
        return db_models.BoundingBox(*grid_bbox(ORIGIN, columns, rows))

    return factory
