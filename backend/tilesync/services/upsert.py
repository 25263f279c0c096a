"""Idempotent materialization of decoded features into the feature store.

Features of one tile are collapsed on ``(source_layer, dedup_key)`` before
writing, the first occurrence winning, because a feature split across
several parts or repeated in a tile must produce a single record. Each
surviving feature is written with one atomic upsert and counted as created
or updated from the store's answer, never from a prior existence check.

A feature that cannot be stored is reported as an error string carrying
``[layer/key, geom:Type/parts]`` context; the rest of the batch proceeds.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from typing import TYPE_CHECKING, Any

import shapely.errors
import shapely.geometry

from tilesync.db import database
from tilesync.db import models as db_models
from tilesync.services import sources

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

_KIND_BY_GEOMETRY: dict[str, db_models.LayerKind] = {
    "LineString": "line",
    "Polygon": "polygon",
}


@dataclasses.dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)


def collapse(
    features: Iterable[db_models.GeoFeature],
) -> list[db_models.GeoFeature]:
    """Keep the first feature for every ``(source_layer, dedup_key)``."""
    seen: dict[tuple[str, str], db_models.GeoFeature] = {}
    for feature in features:
        seen.setdefault(feature.identity, feature)
    return list(seen.values())


def describe(feature: db_models.GeoFeature) -> str:
    """Short context tag used in per-feature error messages."""
    parts = len(feature.geometry.get("coordinates") or [])
    return (
        f"[{feature.source_layer}/{feature.dedup_key}, "
        f"geom:{feature.geometry_type}/{parts}]"
    )


def _coerce(value: Any, column: sources.Column) -> Any:
    if value is None or value == "":
        return None
    if column.sql_type == "INTEGER":
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
    return str(value)


def promoted_columns(
    table: sources.FeatureTable,
    attributes: dict[str, Any],
    document_base_url: str | None = None,
) -> dict[str, Any]:
    """Pick and type the attributes stored in a table's own columns.

    The document column, when configured, is rewritten to a full URL under
    ``document_base_url``.

    Example:
        >>> promoted_columns(
        ...     sources.DESIGNATED_AREAS_TABLE, {"gid": "12", "keycode": 7}
        ... )
        {'gid': 12, 'keycode': '7'}
    """
    values = {
        column.name: _coerce(attributes.get(column.name), column)
        for column in table.columns
    }
    document = table.document_column
    if document and document_base_url and values.get(document):
        values[document] = f"{document_base_url.rstrip('/')}/{values[document]}"
    return values


def new_record_id(table: sources.FeatureTable) -> str:
    return f"{table.id_prefix}-{uuid.uuid4().hex[:10]}"


class UpsertEngine:
    """Writes decoded features of one source into its feature tables.

    Args:
        store: Feature store receiving the upserts.
        source: Tile source the features were decoded for.
    """

    def __init__(
        self,
        store: database.FeatureStoreProtocol,
        source: sources.TileSource,
    ) -> None:
        self.store = store
        self.source = source

    def to_record(
        self, feature: db_models.GeoFeature
    ) -> tuple[sources.FeatureTable, db_models.FeatureRecord]:
        """Build the target table and record for a feature.

        Raises:
            ValueError: If the geometry is empty or malformed.
            sources.UnknownSourceError: If the source has no table for the
                feature's geometry family.
        """
        try:
            geometry = shapely.geometry.shape(feature.geometry)
        except (shapely.errors.GEOSException, TypeError, IndexError) as exc:
            raise ValueError(f"invalid geometry: {exc}") from exc
        if geometry.is_empty:
            raise ValueError("empty geometry")

        table = self.source.table_for(_KIND_BY_GEOMETRY[feature.geometry_type])
        record = db_models.FeatureRecord(
            id=new_record_id(table),
            source_layer=feature.source_layer,
            dedup_key=feature.dedup_key,
            category=feature.category or None,
            columns=promoted_columns(
                table, feature.attributes, self.source.document_base_url
            ),
            raw_props=dict(feature.attributes),
            geometry=feature.geometry,
        )
        return table, record

    def upsert(self, features: Iterable[db_models.GeoFeature]) -> UpsertResult:
        """Collapse and write a batch of features.

        Args:
            features: Decoded features of one tile.

        Returns:
            Created and updated counts plus one message per failed feature.
        """
        result = UpsertResult()
        batch = collapse(features)
        if not batch:
            return result

        with self.store.writer() as writer:
            for feature in batch:
                try:
                    table, record = self.to_record(feature)
                except (ValueError, sources.UnknownSourceError) as exc:
                    result.errors.append(f"Skipping {describe(feature)}: {exc}")
                    continue
                try:
                    inserted = writer.upsert(table, record)
                except database.FeatureWriteError as exc:
                    result.errors.append(
                        f"Failed to upsert {describe(feature)}: {exc}"
                    )
                    continue
                if inserted:
                    result.created += 1
                else:
                    result.updated += 1

        logger.debug(
            "Upserted %d features (%d created, %d updated, %d errors)",
            len(batch),
            result.created,
            result.updated,
            len(result.errors),
        )
        return result
