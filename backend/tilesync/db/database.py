"""Database helpers and repositories for synced features and run history."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import json
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import shapely.geometry
from psycopg2 import sql

from tilesync.db import models as db_models
from tilesync.services import sources

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Iterator

    from tilesync.core import config


class FeatureWriteError(RuntimeError):
    """Raised when the store rejects a single feature write."""


class FeatureWriterProtocol(Protocol):
    """Writes features one atomic upsert at a time."""

    def upsert(
        self,
        table: sources.FeatureTable,
        record: db_models.FeatureRecord,
    ) -> bool: ...


class FeatureStoreProtocol(Protocol):
    """Protocol interface for persisting and querying synced features.

    Records are unique per ``(source_layer, dedup_key)`` within a table and
    are overwritten in full by later upserts; the sync never deletes them.
    """

    def writer(self) -> contextlib.AbstractContextManager[FeatureWriterProtocol]: ...

    def query(
        self,
        table: sources.FeatureTable,
        *,
        bbox: db_models.BoundingBox | None = None,
        source_layer: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[db_models.FeatureRecord], int]: ...

    def get(
        self, table: sources.FeatureTable, feature_id: str
    ) -> db_models.FeatureRecord | None: ...

    def count_by_layer(self, table: sources.FeatureTable) -> dict[str, int]: ...


class SyncLogRepositoryProtocol(Protocol):
    """Protocol interface for the append-only run history."""

    def create(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry: ...

    def update(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry: ...

    def get(self, run_id: str) -> db_models.SyncLogEntry | None: ...

    def latest(
        self,
        source: str,
        statuses: Collection[db_models.SyncStatus] | None = None,
    ) -> db_models.SyncLogEntry | None: ...

    def mark_interrupted(self) -> int: ...

    def page(
        self, limit: int, offset: int, source: str | None = None
    ) -> tuple[list[db_models.SyncLogEntry], int]: ...

    def last_completed_at(self, source: str) -> datetime.datetime | None: ...


class InMemoryFeatureStore(FeatureStoreProtocol, FeatureWriterProtocol):
    """Simple in-memory feature store for tests and local development.

    Upserts are serialized by a lock so that concurrent workers observe the
    same insert-or-overwrite semantics as the PostgreSQL store.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._lock = threading.Lock()
        self._rows: dict[tuple[str, str, str], db_models.FeatureRecord] = {}

    @contextlib.contextmanager
    def writer(self) -> Iterator[FeatureWriterProtocol]:
        yield self

    def upsert(
        self,
        table: sources.FeatureTable,
        record: db_models.FeatureRecord,
    ) -> bool:
        """Insert a record or overwrite the one sharing its key.

        Returns:
            True if the record was inserted, False if it replaced one.
        """
        key = (table.name, record.source_layer, record.dedup_key)
        with self._lock:
            existing = self._rows.get(key)
            if existing is None:
                self._rows[key] = record
                return True
            self._rows[key] = dataclasses.replace(record, id=existing.id)
            return False

    def _table_rows(
        self, table: sources.FeatureTable
    ) -> list[db_models.FeatureRecord]:
        with self._lock:
            return [
                record
                for (table_name, _, _), record in self._rows.items()
                if table_name == table.name
            ]

    def query(
        self,
        table: sources.FeatureTable,
        *,
        bbox: db_models.BoundingBox | None = None,
        source_layer: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[db_models.FeatureRecord], int]:
        rows = self._table_rows(table)
        if source_layer is not None:
            rows = [row for row in rows if row.source_layer == source_layer]
        if bbox is not None:
            envelope = shapely.geometry.box(*bbox)
            rows = [
                row
                for row in rows
                if shapely.geometry.shape(row.geometry).intersects(envelope)
            ]
        rows.sort(key=lambda row: row.id)
        return rows[offset : offset + limit], len(rows)

    def get(
        self, table: sources.FeatureTable, feature_id: str
    ) -> db_models.FeatureRecord | None:
        for row in self._table_rows(table):
            if row.id == feature_id:
                return row
        return None

    def count_by_layer(self, table: sources.FeatureTable) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self._table_rows(table):
            counts[row.source_layer] = counts.get(row.source_layer, 0) + 1
        return counts


class InMemorySyncLogRepository(SyncLogRepositoryProtocol):
    """In-memory run history for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[str, db_models.SyncLogEntry] = {}

    def create(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        with self._lock:
            self._store[entry.id] = entry
        return entry

    def update(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        with self._lock:
            if entry.id not in self._store:
                raise KeyError(entry.id)
            self._store[entry.id] = entry
        return entry

    def get(self, run_id: str) -> db_models.SyncLogEntry | None:
        with self._lock:
            return self._store.get(run_id)

    def _newest_first(
        self, source: str | None = None
    ) -> list[db_models.SyncLogEntry]:
        with self._lock:
            entries = list(self._store.values())
        if source is not None:
            entries = [entry for entry in entries if entry.source == source]
        # Later inserts win ties on started_at.
        return sorted(
            reversed(entries), key=lambda entry: entry.started_at, reverse=True
        )

    def latest(
        self,
        source: str,
        statuses: Collection[db_models.SyncStatus] | None = None,
    ) -> db_models.SyncLogEntry | None:
        entries = [
            entry
            for entry in self._newest_first(source)
            if statuses is None or entry.status in statuses
        ]
        return entries[0] if entries else None

    def mark_interrupted(self) -> int:
        with self._lock:
            orphans = [
                entry
                for entry in self._store.values()
                if entry.status == db_models.SyncStatus.RUNNING
            ]
            for entry in orphans:
                self._store[entry.id] = dataclasses.replace(
                    entry, status=db_models.SyncStatus.STOPPED
                )
        return len(orphans)

    def page(
        self, limit: int, offset: int, source: str | None = None
    ) -> tuple[list[db_models.SyncLogEntry], int]:
        entries = self._newest_first(source)
        return entries[offset : offset + limit], len(entries)

    def last_completed_at(self, source: str) -> datetime.datetime | None:
        completed = [
            entry.completed_at
            for entry in self._newest_first(source)
            if entry.status == db_models.SyncStatus.COMPLETED
            and entry.completed_at is not None
        ]
        return max(completed) if completed else None


class PostgresFeatureStore(FeatureStoreProtocol):
    """PostgreSQL/PostGIS-backed feature store.

    Creates every feature table on initialization. Upserts rely on
    ``ON CONFLICT (source_layer, dedup_key)`` and report whether the row was
    inserted via ``xmax = 0`` so no existence check precedes a write.
    """

    def __init__(
        self,
        settings: config.Settings,
        tables: Iterable[sources.FeatureTable] = sources.ALL_TABLES,
    ) -> None:
        """Initialize store with database settings.

        Args:
            settings: Application settings containing database connection URL.
            tables: Feature tables to create if missing.
        """
        self.settings = settings
        self.tables = tuple(tables)
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    @staticmethod
    def _create_table_sql(table: sources.FeatureTable) -> sql.Composed:
        definitions = [
            sql.SQL("id TEXT PRIMARY KEY"),
            sql.SQL("source_layer TEXT NOT NULL"),
            sql.SQL("dedup_key TEXT NOT NULL"),
            sql.SQL("category TEXT"),
            *(
                sql.SQL("{} {}").format(
                    sql.Identifier(column.name), sql.SQL(column.sql_type)
                )
                for column in table.columns
            ),
            sql.SQL("raw_props JSONB"),
            sql.SQL("geometry GEOMETRY({}, 4326) NOT NULL").format(
                sql.SQL(table.geometry_type)
            ),
            sql.SQL("synced_at TIMESTAMPTZ NOT NULL DEFAULT now()"),
            sql.SQL("UNIQUE (source_layer, dedup_key)"),
        ]
        return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({});").format(
            sql.Identifier(table.name), sql.SQL(", ").join(definitions)
        )

    def _ensure_schema(self) -> None:
        """Ensure PostGIS and every feature table with its indexes exist."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            for table in self.tables:
                cur.execute(self._create_table_sql(table))
                cur.execute(
                    sql.SQL(
                        "CREATE INDEX IF NOT EXISTS {} ON {} USING GIST (geometry);"
                    ).format(
                        sql.Identifier(f"idx_{table.name}_geom"),
                        sql.Identifier(table.name),
                    )
                )
                cur.execute(
                    sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} (source_layer);").format(
                        sql.Identifier(f"idx_{table.name}_layer"),
                        sql.Identifier(table.name),
                    )
                )
            conn.commit()

    @staticmethod
    def _upsert_sql(table: sources.FeatureTable) -> sql.Composed:
        names = [column.name for column in table.columns]
        insert_columns = [
            "id", "source_layer", "dedup_key", "category", *names, "raw_props",
            "geometry", "synced_at",
        ]
        values = [
            sql.Placeholder("id"),
            sql.Placeholder("source_layer"),
            sql.Placeholder("dedup_key"),
            sql.Placeholder("category"),
            *(sql.Placeholder(f"col_{name}") for name in names),
            sql.Placeholder("raw_props"),
            sql.SQL("ST_SetSRID(ST_GeomFromGeoJSON({}), 4326)").format(
                sql.Placeholder("geometry")
            ),
            sql.SQL("now()"),
        ]
        overwritten = ["category", *names, "raw_props", "geometry"]
        assignments = [
            sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(name))
            for name in overwritten
        ]
        assignments.append(sql.SQL("synced_at = now()"))
        return sql.SQL(
            """
            INSERT INTO {table} ({columns}) VALUES ({values})
            ON CONFLICT (source_layer, dedup_key) DO UPDATE SET {assignments}
            RETURNING (xmax = 0) AS inserted;
            """
        ).format(
            table=sql.Identifier(table.name),
            columns=sql.SQL(", ").join(map(sql.Identifier, insert_columns)),
            values=sql.SQL(", ").join(values),
            assignments=sql.SQL(", ").join(assignments),
        )

    @staticmethod
    def _to_params(record: db_models.FeatureRecord) -> dict[str, Any]:
        """Convert a FeatureRecord to upsert query parameters."""
        params: dict[str, Any] = {
            "id": record.id,
            "source_layer": record.source_layer,
            "dedup_key": record.dedup_key,
            "category": record.category,
            "raw_props": psycopg2.extras.Json(record.raw_props),
            "geometry": json.dumps(record.geometry),
        }
        for name, value in record.columns.items():
            params[f"col_{name}"] = value
        return params

    @contextlib.contextmanager
    def writer(self) -> Iterator[FeatureWriterProtocol]:
        """Open one autocommit connection for a batch of upserts.

        Each statement commits on its own, so one rejected feature does not
        roll back the others.
        """
        with contextlib.closing(self._connection()) as conn:
            conn.autocommit = True
            yield _PostgresFeatureWriter(conn)

    def _select_sql(
        self, table: sources.FeatureTable, where: sql.Composable
    ) -> sql.Composed:
        columns = sql.SQL(", ").join(
            sql.Identifier(column.name) for column in table.columns
        )
        return sql.SQL(
            """
            SELECT id, source_layer, dedup_key, category, {columns},
                   raw_props, ST_AsGeoJSON(geometry)::json AS geometry,
                   synced_at
            FROM {table}
            WHERE {where}
            """
        ).format(columns=columns, table=sql.Identifier(table.name), where=where)

    def query(
        self,
        table: sources.FeatureTable,
        *,
        bbox: db_models.BoundingBox | None = None,
        source_layer: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[db_models.FeatureRecord], int]:
        conditions: list[sql.Composable] = [sql.SQL("TRUE")]
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if bbox is not None:
            conditions.append(
                sql.SQL(
                    "ST_Intersects(geometry, ST_MakeEnvelope("
                    "%(min_lng)s, %(min_lat)s, %(max_lng)s, %(max_lat)s, 4326))"
                )
            )
            params.update(bbox._asdict())
        if source_layer is not None:
            conditions.append(sql.SQL("source_layer = %(source_layer)s"))
            params["source_layer"] = source_layer
        where = sql.SQL(" AND ").join(conditions)

        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL("{} ORDER BY id LIMIT %(limit)s OFFSET %(offset)s").format(
                    self._select_sql(table, where)
                ),
                params,
            )
            rows = [self._from_row(table, row) for row in cur.fetchall()]
            cur.execute(
                sql.SQL("SELECT COUNT(*)::int AS count FROM {} WHERE {}").format(
                    sql.Identifier(table.name), where
                ),
                params,
            )
            count_row = cur.fetchone()
        total = int(count_row["count"]) if count_row else 0
        return rows, total

    def get(
        self, table: sources.FeatureTable, feature_id: str
    ) -> db_models.FeatureRecord | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                self._select_sql(table, sql.SQL("id = %(id)s")),
                {"id": feature_id},
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(table, row)

    def count_by_layer(self, table: sources.FeatureTable) -> dict[str, int]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    "SELECT source_layer, COUNT(*)::int AS count "
                    "FROM {} GROUP BY source_layer"
                ).format(sql.Identifier(table.name))
            )
            return {
                str(row["source_layer"]): int(row["count"])
                for row in cur.fetchall()
            }

    @staticmethod
    def _from_row(
        table: sources.FeatureTable, row: dict[str, Any]
    ) -> db_models.FeatureRecord:
        """Convert a database row dictionary to a FeatureRecord."""
        return db_models.FeatureRecord(
            id=str(row["id"]),
            source_layer=str(row["source_layer"]),
            dedup_key=str(row["dedup_key"]),
            category=row.get("category"),
            columns={column.name: row.get(column.name) for column in table.columns},
            raw_props=cast(dict[str, Any], row.get("raw_props") or {}),
            geometry=cast(dict[str, Any], row["geometry"]),
            synced_at=cast(datetime.datetime, row["synced_at"]),
        )


class _PostgresFeatureWriter(FeatureWriterProtocol):
    def __init__(self, conn: psycopg2.extensions.connection) -> None:
        self._conn = conn

    def upsert(
        self,
        table: sources.FeatureTable,
        record: db_models.FeatureRecord,
    ) -> bool:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    PostgresFeatureStore._upsert_sql(table),
                    PostgresFeatureStore._to_params(record),
                )
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise FeatureWriteError(str(exc).strip()) from exc
        return bool(row and row["inserted"])


class PostgresSyncLogRepository(SyncLogRepositoryProtocol):
    """PostgreSQL-backed run history, one row per run."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS sync_logs (
      id TEXT PRIMARY KEY,
      source TEXT NOT NULL,
      status TEXT NOT NULL,
      started_at TIMESTAMPTZ NOT NULL,
      completed_at TIMESTAMPTZ,
      total_tiles INTEGER NOT NULL,
      completed_tiles INTEGER NOT NULL DEFAULT 0,
      error_tiles INTEGER NOT NULL DEFAULT 0,
      created_count INTEGER NOT NULL DEFAULT 0,
      updated_count INTEGER NOT NULL DEFAULT 0,
      error_message TEXT,
      error_details JSONB,
      resume_state JSONB
    );
    CREATE INDEX IF NOT EXISTS idx_sync_logs_source_started
      ON sync_logs (source, started_at DESC);
    CREATE INDEX IF NOT EXISTS idx_sync_logs_status ON sync_logs (status);
    """

    COLUMNS = (
        "id, source, status, started_at, completed_at, total_tiles, "
        "completed_tiles, error_tiles, created_count, updated_count, "
        "error_message, error_details, resume_state"
    )

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )

    def _ensure_schema(self) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()

    def create(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO sync_logs ({self.COLUMNS})
                VALUES (%(id)s, %(source)s, %(status)s, %(started_at)s,
                    %(completed_at)s, %(total_tiles)s, %(completed_tiles)s,
                    %(error_tiles)s, %(created_count)s, %(updated_count)s,
                    %(error_message)s, %(error_details)s, %(resume_state)s)
                """,
                self._to_row(entry),
            )
            conn.commit()
        return entry

    def update(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE sync_logs SET
                    status = %(status)s,
                    completed_at = %(completed_at)s,
                    completed_tiles = %(completed_tiles)s,
                    error_tiles = %(error_tiles)s,
                    created_count = %(created_count)s,
                    updated_count = %(updated_count)s,
                    error_message = %(error_message)s,
                    error_details = %(error_details)s,
                    resume_state = %(resume_state)s
                WHERE id = %(id)s
                """,
                self._to_row(entry),
            )
            conn.commit()
        return entry

    def get(self, run_id: str) -> db_models.SyncLogEntry | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT {self.COLUMNS} FROM sync_logs WHERE id = %s", (run_id,)
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def latest(
        self,
        source: str,
        statuses: Collection[db_models.SyncStatus] | None = None,
    ) -> db_models.SyncLogEntry | None:
        where = "WHERE source = %(source)s"
        if statuses is not None:
            where += " AND status = ANY(%(statuses)s)"
        params = {
            "source": source,
            "statuses": [status.value for status in statuses or ()],
        }
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {self.COLUMNS} FROM sync_logs {where}
                ORDER BY started_at DESC
                LIMIT 1
                """,
                params,
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def mark_interrupted(self) -> int:
        """Mark runs left ``running`` by a dead process as ``stopped``."""
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE sync_logs SET status = %s WHERE status = %s",
                (
                    db_models.SyncStatus.STOPPED.value,
                    db_models.SyncStatus.RUNNING.value,
                ),
            )
            count = cur.rowcount
            conn.commit()
        return count

    def page(
        self, limit: int, offset: int, source: str | None = None
    ) -> tuple[list[db_models.SyncLogEntry], int]:
        where = "WHERE source = %(source)s" if source is not None else ""
        params = {"limit": limit, "offset": offset, "source": source}
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {self.COLUMNS} FROM sync_logs {where}
                ORDER BY started_at DESC
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                params,
            )
            entries = [self._from_row(row) for row in cur.fetchall()]
            cur.execute(
                f"SELECT COUNT(*)::int AS count FROM sync_logs {where}", params
            )
            count_row = cur.fetchone()
        total = int(count_row["count"]) if count_row else 0
        return entries, total

    def last_completed_at(self, source: str) -> datetime.datetime | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT completed_at FROM sync_logs
                WHERE source = %s AND status = %s AND completed_at IS NOT NULL
                ORDER BY completed_at DESC
                LIMIT 1
                """,
                (source, db_models.SyncStatus.COMPLETED.value),
            )
            row = cur.fetchone()
        return cast(datetime.datetime, row["completed_at"]) if row else None

    @staticmethod
    def _to_row(entry: db_models.SyncLogEntry) -> dict[str, object]:
        """Convert a SyncLogEntry to a parameter dictionary."""
        return {
            "id": entry.id,
            "source": entry.source,
            "status": entry.status.value,
            "started_at": entry.started_at,
            "completed_at": entry.completed_at,
            "total_tiles": entry.total_tiles,
            "completed_tiles": entry.completed_tiles,
            "error_tiles": entry.error_tiles,
            "created_count": entry.created_count,
            "updated_count": entry.updated_count,
            "error_message": entry.error_message,
            "error_details": (
                psycopg2.extras.Json({"errors": entry.error_details})
                if entry.error_details
                else None
            ),
            "resume_state": psycopg2.extras.Json(entry.resume_state.to_dict()),
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.SyncLogEntry:
        """Convert a database row dictionary to a SyncLogEntry."""
        details = row.get("error_details") or {}
        return db_models.SyncLogEntry(
            id=str(row["id"]),
            source=str(row["source"]),
            status=db_models.SyncStatus(str(row["status"])),
            started_at=cast(datetime.datetime, row["started_at"]),
            completed_at=cast(datetime.datetime | None, row.get("completed_at")),
            total_tiles=int(row["total_tiles"]),
            completed_tiles=int(row.get("completed_tiles") or 0),
            error_tiles=int(row.get("error_tiles") or 0),
            created_count=int(row.get("created_count") or 0),
            updated_count=int(row.get("updated_count") or 0),
            error_message=cast(str | None, row.get("error_message")),
            error_details=list(details.get("errors") or []) or None,
            resume_state=db_models.ResumeState.from_dict(row.get("resume_state")),
        )


def get_feature_store(settings: config.Settings) -> FeatureStoreProtocol:
    """Factory function to create the feature store.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresFeatureStore instance for production use.
    """
    return PostgresFeatureStore(settings)


def get_sync_log_repository(
    settings: config.Settings,
) -> SyncLogRepositoryProtocol:
    """Factory function to create the run history repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresSyncLogRepository instance for production use.
    """
    return PostgresSyncLogRepository(settings)

