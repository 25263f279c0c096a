"""Data models for tile synchronization runs and decoded features.

This module defines the core data structures shared by the sync pipeline:
tile coordinates and bounding boxes used by the grid planner, decoded
features handed from the tile decoder to the upsert engine, and the
``SyncRun`` aggregate that the sync manager mutates while a run is in
flight and persists as checkpoints.

Example:
    Identify a tile and build its checkpoint key:
        >>> from tilesync.db.models import TileCoordinate
        >>> tile = TileCoordinate(x=14422, y=6480, z=14)
        >>> tile.key
        '14/14422/6480'

    Create a run and record progress:
        >>> run = SyncRun(id="NSL-abc", source="designated_roads",
        ...               total_tiles=4, max_errors=100)
        >>> run.record_tile_completed("14/14422/6480")
        1
        >>> run.snapshot().completed_tile_count
        1
"""

from __future__ import annotations

import collections
import dataclasses
import datetime
import enum
import threading
from typing import Any, Literal, NamedTuple

LayerKind = Literal["line", "polygon"]
GeometryType = Literal["LineString", "Polygon"]

GEOMETRY_TYPES: dict[LayerKind, GeometryType] = {
    "line": "LineString",
    "polygon": "Polygon",
}


class TileCoordinate(NamedTuple):
    """One tile in the power-of-two XYZ tile pyramid."""

    x: int
    y: int
    z: int

    @property
    def key(self) -> str:
        """Checkpoint key in ``{z}/{x}/{y}`` form."""
        return f"{self.z}/{self.x}/{self.y}"


class BoundingBox(NamedTuple):
    """Geographic extent in WGS84 degrees."""

    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float


@dataclasses.dataclass(frozen=True)
class LayerClassification:
    """How a tile layer is materialized.

    Attributes:
        kind: Geometry family the layer is stored as ("line" or "polygon").
        category: Human-readable label stored alongside each feature.
    """

    kind: LayerKind
    category: str


@dataclasses.dataclass
class GeoFeature:
    """A single decoded, reprojected feature with one geometry part.

    Attributes:
        source_layer: Name of the tile layer the feature came from.
        dedup_key: Stable identity key resolved from the attributes.
        geometry_type: "LineString" or "Polygon".
        geometry: GeoJSON geometry mapping in lng/lat (EPSG:4326).
        attributes: Raw feature properties plus the synthetic
            ``_source_layer`` and ``_tile_coord`` entries.
        category: Category label from the layer classification.
    """

    source_layer: str
    dedup_key: str
    geometry_type: GeometryType
    geometry: dict[str, Any]
    attributes: dict[str, Any]
    category: str = ""

    @property
    def identity(self) -> tuple[str, str]:
        return (self.source_layer, self.dedup_key)


@dataclasses.dataclass
class FeatureRecord:
    """Store-side row for one feature, unique per (source_layer, dedup_key).

    Attributes:
        id: Record id; kept from the first insert on later overwrites.
        source_layer: Tile layer the feature came from.
        dedup_key: Identity key within the layer.
        category: Category label of the layer.
        columns: Promoted attribute values keyed by column name.
        raw_props: All feature properties.
        geometry: GeoJSON geometry in EPSG:4326.
        synced_at: Time of the last write.
    """

    id: str
    source_layer: str
    dedup_key: str
    category: str | None
    columns: dict[str, Any]
    raw_props: dict[str, Any]
    geometry: dict[str, Any]
    synced_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.UTC)
    )


class SyncStatus(enum.StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclasses.dataclass
class ResumeState:
    """Tile keys processed by a run, used to seed a resumed run."""

    completed_tile_keys: set[str] = dataclasses.field(default_factory=set)
    error_tile_keys: set[str] = dataclasses.field(default_factory=set)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "completed_tiles": sorted(self.completed_tile_keys),
            "error_tiles": sorted(self.error_tile_keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ResumeState:
        if not data:
            return cls()
        return cls(
            completed_tile_keys=set(data.get("completed_tiles") or ()),
            error_tile_keys=set(data.get("error_tiles") or ()),
        )


@dataclasses.dataclass(frozen=True)
class SyncRunStatus:
    """Read-only snapshot of a run, safe to hand to API callers."""

    id: str
    source: str
    status: SyncStatus
    started_at: datetime.datetime
    completed_at: datetime.datetime | None
    total_tiles: int
    completed_tile_count: int
    error_tile_count: int
    created_count: int
    updated_count: int
    cancel_requested: bool
    errors: list[str]


@dataclasses.dataclass
class SyncLogEntry:
    """Persisted summary row of one sync run."""

    id: str
    source: str
    status: SyncStatus
    started_at: datetime.datetime
    completed_at: datetime.datetime | None
    total_tiles: int
    completed_tiles: int = 0
    error_tiles: int = 0
    created_count: int = 0
    updated_count: int = 0
    error_message: str | None = None
    error_details: list[str] | None = None
    resume_state: ResumeState = dataclasses.field(default_factory=ResumeState)


ERROR_MESSAGE_TAIL = 10
ERROR_MESSAGE_MAX_LENGTH = 4000


@dataclasses.dataclass
class SyncRun:
    """Mutable aggregate for one pipeline execution.

    Worker threads report tile outcomes concurrently, so every mutation
    goes through a method holding ``_lock``. Once a terminal status is set
    via ``finish`` the run is no longer mutated.
    """

    id: str
    source: str
    total_tiles: int
    max_errors: int
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.UTC)
    )
    completed_at: datetime.datetime | None = None
    completed_tile_count: int = 0
    error_tile_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    cancel_requested: bool = False
    resume_state: ResumeState = dataclasses.field(default_factory=ResumeState)
    errors: collections.deque[str] = dataclasses.field(
        default_factory=collections.deque, init=False
    )
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self.errors = collections.deque(maxlen=self.max_errors)

    def seed(self, completed_tile_keys: set[str]) -> None:
        """Mark tiles finished by a previous run as already completed."""
        with self._lock:
            self.resume_state.completed_tile_keys |= completed_tile_keys
            self.completed_tile_count = len(self.resume_state.completed_tile_keys)

    def record_tile_completed(
        self, tile_key: str, created: int = 0, updated: int = 0
    ) -> int:
        """Count a processed tile and return the new completed count."""
        with self._lock:
            if tile_key not in self.resume_state.completed_tile_keys:
                self.resume_state.completed_tile_keys.add(tile_key)
                self.completed_tile_count += 1
            self.created_count += created
            self.updated_count += updated
            return self.completed_tile_count

    def record_tile_error(self, tile_key: str, message: str) -> None:
        with self._lock:
            self.resume_state.error_tile_keys.add(tile_key)
            self.error_tile_count += 1
            self.errors.append(message)

    def add_errors(self, messages: list[str]) -> None:
        with self._lock:
            self.errors.extend(messages)

    def request_cancel(self) -> None:
        with self._lock:
            self.cancel_requested = True

    def finish(self, status: SyncStatus) -> None:
        with self._lock:
            self.status = status
            self.completed_at = datetime.datetime.now(datetime.UTC)

    def snapshot(self) -> SyncRunStatus:
        with self._lock:
            return SyncRunStatus(
                id=self.id,
                source=self.source,
                status=self.status,
                started_at=self.started_at,
                completed_at=self.completed_at,
                total_tiles=self.total_tiles,
                completed_tile_count=self.completed_tile_count,
                error_tile_count=self.error_tile_count,
                created_count=self.created_count,
                updated_count=self.updated_count,
                cancel_requested=self.cancel_requested,
                errors=list(self.errors),
            )

    def to_log_entry(self) -> SyncLogEntry:
        """Build the persisted checkpoint row for the current state."""
        with self._lock:
            errors = list(self.errors)
            message = None
            if errors:
                message = "; ".join(errors[-ERROR_MESSAGE_TAIL:])
                message = message[:ERROR_MESSAGE_MAX_LENGTH]
            return SyncLogEntry(
                id=self.id,
                source=self.source,
                status=self.status,
                started_at=self.started_at,
                completed_at=self.completed_at,
                total_tiles=self.total_tiles,
                completed_tiles=self.completed_tile_count,
                error_tiles=self.error_tile_count,
                created_count=self.created_count,
                updated_count=self.updated_count,
                error_message=message,
                error_details=errors or None,
                resume_state=ResumeState(
                    completed_tile_keys=set(self.resume_state.completed_tile_keys),
                    error_tile_keys=set(self.resume_state.error_tile_keys),
                ),
            )
