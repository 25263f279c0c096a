"""Sync control and synced feature query API endpoints.

This module exposes the sync manager over REST: starting and stopping
runs, live status, persisted run history and per-source statistics, and
read access to the features a source has materialized.

Example:
    Start a resumed designated road sync and poll it:
        >>> client.post("/api/sync/designated_roads/start?resume=true")
        >>> client.get("/api/sync/status").json()
        >>> # Returns: {"is_running": True,
        >>> #           "progress": {"id": "NSL-1f0c9a2b3d", ...}}

    Query synced road lines inside a bounding box:
        >>> client.get(
        ...     "/api/sync/designated_roads/features",
        ...     params={"kind": "line", "bbox": "136.9,35.1,136.95,35.15"},
        ... )
"""

import dataclasses
import datetime
from typing import Any, Literal

import fastapi

from tilesync.db import models as db_models
from tilesync.services import sources, sync_manager, tile_grid

router = fastapi.APIRouter(prefix="/api/sync", tags=["sync"])


def _get_manager() -> sync_manager.SyncManager:
    """Resolve the process-wide sync manager dependency."""
    return sync_manager.get_sync_manager()


def _convert_to_string(data: dict[str, Any]) -> dict[str, Any]:
    """Convert datetimes, enums and sets in a dictionary to JSON values."""
    converted: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, datetime.datetime):
            converted[key] = value.isoformat()
        elif isinstance(value, db_models.SyncStatus):
            converted[key] = value.value
        elif isinstance(value, set):
            converted[key] = sorted(value)
        elif isinstance(value, dict):
            converted[key] = _convert_to_string(value)
        else:
            converted[key] = value
    return converted


def _status_dict(status: db_models.SyncRunStatus | None) -> dict[str, Any] | None:
    if status is None:
        return None
    return _convert_to_string(dataclasses.asdict(status))


def _log_dict(entry: db_models.SyncLogEntry) -> dict[str, Any]:
    data = dataclasses.asdict(entry)
    data["resume_state"] = entry.resume_state.to_dict()
    return _convert_to_string(data)


def _feature_dict(record: db_models.FeatureRecord) -> dict[str, Any]:
    return _convert_to_string(dataclasses.asdict(record))


def _parse_bbox(raw: str | None) -> db_models.BoundingBox | None:
    """Parse ``minLng,minLat,maxLng,maxLat`` into a bounding box.

    Raises:
        HTTPException: 400 if the value is malformed or not a valid extent.
    """
    if raw is None:
        return None
    try:
        values = [float(part) for part in raw.split(",")]
        if len(values) != 4:
            raise ValueError("bbox needs four comma-separated numbers")
        bbox = db_models.BoundingBox(*values)
        tile_grid.validate(bbox, 0)
    except ValueError as exc:
        raise fastapi.HTTPException(
            status_code=400, detail=f"Invalid bbox: {exc}"
        ) from exc
    return bbox


def _not_found(exc: sources.UnknownSourceError) -> fastapi.HTTPException:
    return fastapi.HTTPException(status_code=404, detail=str(exc.args[0]))


@router.post("/{source}/start")
async def start_sync(
    source: str,
    resume: bool = False,
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any] | None:
    """Start a sync for a source.

    If a run is already in progress, for this or another source, its status
    is returned unchanged and no new run starts.

    Args:
        source: Tile source name.
        resume: Continue from the latest stopped run of the source.
        manager: Sync manager (injected via FastAPI Depends).

    Returns:
        Status of the started or already running sync.

    Raises:
        HTTPException: If the source is not configured (404 status code).
    """
    try:
        status = manager.start_sync(source, resume=resume)
    except sources.UnknownSourceError as exc:
        raise _not_found(exc) from exc
    return _status_dict(status)


@router.post("/stop")
async def stop_sync(
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    """Request cancellation of the running sync."""
    status = manager.stop_sync()
    if status is None:
        return {"stopped": False, "message": "No sync is running"}
    return {"stopped": True, "progress": _status_dict(status)}


@router.get("/status")
async def get_status(
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    status = manager.get_status()
    return {
        "is_running": status is not None
        and status.status == db_models.SyncStatus.RUNNING,
        "progress": _status_dict(status),
    }


@router.get("/logs")
async def get_logs(
    limit: int = fastapi.Query(20, ge=1, le=100),  # noqa: B008
    offset: int = fastapi.Query(0, ge=0),  # noqa: B008
    source: str | None = None,
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    """List persisted sync runs, newest first.

    Args:
        limit: Maximum number of runs returned.
        offset: Number of runs skipped.
        source: Only list runs of this source.
        manager: Sync manager (injected via FastAPI Depends).

    Returns:
        Dictionary with the ``logs`` page and the ``total`` run count.
    """
    entries, total = manager.get_logs(limit=limit, offset=offset, source=source)
    return {"logs": [_log_dict(entry) for entry in entries], "total": total}


@router.get("/{source}/statistics")
async def get_statistics(
    source: str,
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    """Feature counts per table and layer, plus the last completed sync."""
    try:
        stats = manager.get_statistics(source)
    except sources.UnknownSourceError as exc:
        raise _not_found(exc) from exc
    return _convert_to_string(dataclasses.asdict(stats))


@router.get("/{source}/features")
async def list_features(
    source: str,
    kind: Literal["line", "polygon"] = "line",
    bbox: str | None = None,
    source_layer: str | None = None,
    limit: int = fastapi.Query(100, ge=1, le=1000),  # noqa: B008
    offset: int = fastapi.Query(0, ge=0),  # noqa: B008
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    """Page through synced features of a source.

    Args:
        source: Tile source name.
        kind: Geometry family to query ("line" or "polygon").
        bbox: Optional ``minLng,minLat,maxLng,maxLat`` filter; features
            intersecting it are returned.
        source_layer: Optional tile layer name filter.
        limit: Maximum number of features returned.
        offset: Number of features skipped.
        manager: Sync manager (injected via FastAPI Depends).

    Returns:
        Dictionary with the ``features`` page and the ``total`` match count.

    Raises:
        HTTPException: 404 if the source or its table for ``kind`` does not
            exist, 400 if ``bbox`` is invalid.
    """
    parsed = _parse_bbox(bbox)
    try:
        records, total = manager.query_features(
            source,
            kind,
            bbox=parsed,
            source_layer=source_layer,
            limit=limit,
            offset=offset,
        )
    except sources.UnknownSourceError as exc:
        raise _not_found(exc) from exc
    return {
        "features": [_feature_dict(record) for record in records],
        "total": total,
    }


@router.get("/{source}/features/{feature_id}")
async def get_feature(
    source: str,
    feature_id: str,
    kind: Literal["line", "polygon"] = "line",
    manager: sync_manager.SyncManager = fastapi.Depends(_get_manager),  # noqa: B008
) -> dict[str, Any]:
    try:
        record = manager.get_feature(source, kind, feature_id)
    except sources.UnknownSourceError as exc:
        raise _not_found(exc) from exc
    if record is None:
        raise fastapi.HTTPException(status_code=404, detail="Feature not found")
    return _feature_dict(record)
