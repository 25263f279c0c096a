"""Sync run lifecycle: start, progress, checkpoints, cancellation.

The ``SyncManager`` owns the single in-flight ``SyncRun``. Starting a sync
plans the tile grid, subtracts tiles already completed by a stopped run
when resuming, and hands the work list to a ``TileFetcher`` on a background
thread. Each tile outcome is decoded and upserted on the worker thread
that fetched it, and every ``checkpoint_interval`` completed tiles the run
summary is persisted.

Runs end in one of three states:

- ``completed``: every planned tile was processed, with or without errors.
- ``stopped``: cancellation was requested before all tiles were processed.
- ``failed``: an exception escaped tile processing, e.g. a checkpoint
  write failed.

A final checkpoint is always written before the run slot is released.

Example:
    Start a run and wait for it:
        >>> manager = get_sync_manager()
        >>> status = manager.start_sync("designated_roads")
        >>> manager.wait().status
        <SyncStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import dataclasses
import datetime
import functools
import logging
import threading
import uuid
from typing import TYPE_CHECKING

from tilesync.core import config
from tilesync.db import database
from tilesync.db import models as db_models
from tilesync.services import sources, tile_decoder, tile_fetcher, tile_grid, upsert

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

# Failed runs are skipped; a completed run means there is nothing to resume.
RESUME_CANDIDATES = frozenset(
    {
        db_models.SyncStatus.STOPPED,
        db_models.SyncStatus.RUNNING,
        db_models.SyncStatus.COMPLETED,
    }
)


@dataclasses.dataclass
class ActiveRun:
    """A running sync together with what is needed to control it."""

    run: db_models.SyncRun
    source: sources.TileSource
    token: tile_fetcher.CancellationToken
    thread: threading.Thread | None = None


class ActiveRunSlot:
    """Holds at most one active run; claim and release are atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: ActiveRun | None = None

    def current(self) -> ActiveRun | None:
        with self._lock:
            return self._active

    def claim(self, active: ActiveRun) -> ActiveRun | None:
        """Occupy the slot.

        Returns:
            None if ``active`` now holds the slot, otherwise the run that
            already holds it.
        """
        with self._lock:
            if self._active is not None:
                return self._active
            self._active = active
            return None

    def release(self, active: ActiveRun) -> None:
        with self._lock:
            if self._active is active:
                self._active = None


@dataclasses.dataclass(frozen=True)
class SourceStatistics:
    """Stored feature counts of a source and its last successful run.

    Attributes:
        source: Source name.
        total: Number of stored features across all tables.
        tables: Per table, the feature count of every source layer.
        last_completed_at: Completion time of the latest completed run.
    """

    source: str
    total: int
    tables: dict[str, dict[str, int]]
    last_completed_at: datetime.datetime | None


def new_run_id(source: sources.TileSource) -> str:
    return f"{source.run_prefix}-{uuid.uuid4().hex[:10]}"


class SyncManager:
    """Coordinates sync runs for the configured tile sources.

    Args:
        settings: Application settings (extent, zoom, fetch tuning).
        tile_sources: Configured sources keyed by name.
        feature_store: Store receiving decoded features.
        log_repository: Persistent run history.
        fetcher_factory: Builds the fetcher for a source; defaults to a
            ``TileFetcher`` configured from ``settings``.
        slot: Run slot shared by every manager that must not overlap.
    """

    def __init__(
        self,
        settings: config.Settings,
        tile_sources: Mapping[str, sources.TileSource],
        feature_store: database.FeatureStoreProtocol,
        log_repository: database.SyncLogRepositoryProtocol,
        fetcher_factory: Callable[[sources.TileSource], tile_fetcher.TileFetcher]
        | None = None,
        slot: ActiveRunSlot | None = None,
    ) -> None:
        self.settings = settings
        self.sources = dict(tile_sources)
        self.feature_store = feature_store
        self.log_repository = log_repository
        self._fetcher_factory = fetcher_factory or self._default_fetcher
        self._slot = slot or ActiveRunSlot()
        self._last: ActiveRun | None = None
        if self._slot.current() is None:
            interrupted = self.log_repository.mark_interrupted()
            if interrupted:
                logger.warning(
                    "Marked %d interrupted sync runs as stopped", interrupted
                )

    def _default_fetcher(
        self, source: sources.TileSource
    ) -> tile_fetcher.TileFetcher:
        return tile_fetcher.TileFetcher(
            source.base_url,
            concurrency=self.settings.sync_concurrency,
            delay=self.settings.sync_delay_seconds,
            timeout=self.settings.sync_request_timeout,
            user_agent=self.settings.sync_user_agent,
        )

    def source(self, name: str) -> sources.TileSource:
        return sources.get_source(self.sources, name)

    def _resume_keys(
        self, source: sources.TileSource, planned: set[str]
    ) -> set[str]:
        # Called with the slot free, so a running row belongs to a dead process.
        previous = self.log_repository.latest(source.name, RESUME_CANDIDATES)
        if previous is None or previous.status == db_models.SyncStatus.COMPLETED:
            return set()
        logger.info("Resuming from %s run %s", previous.status.value, previous.id)
        return previous.resume_state.completed_tile_keys & planned

    def start_sync(
        self, source_name: str, resume: bool = False
    ) -> db_models.SyncRunStatus:
        """Start a run for a source, or report the run already in flight.

        Args:
            source_name: Name of a configured tile source.
            resume: Skip tiles completed by the source's latest stopped or
                interrupted run, unless a completed run came after it.

        Returns:
            Snapshot of the new run, or of the active run if one exists.

        Raises:
            sources.UnknownSourceError: If the source is not configured.
        """
        source = self.source(source_name)
        current = self._slot.current()
        if current is not None:
            return current.run.snapshot()

        tiles = tile_grid.plan(self.settings.bounding_box, self.settings.sync_zoom)
        done = (
            self._resume_keys(source, {tile.key for tile in tiles})
            if resume
            else set()
        )
        work = [tile for tile in tiles if tile.key not in done]

        run = db_models.SyncRun(
            id=new_run_id(source),
            source=source.name,
            total_tiles=len(tiles),
            max_errors=self.settings.max_error_messages,
        )
        run.seed(done)
        active = ActiveRun(
            run=run, source=source, token=tile_fetcher.CancellationToken()
        )
        existing = self._slot.claim(active)
        if existing is not None:
            return existing.run.snapshot()

        self._last = active
        try:
            self.log_repository.create(run.to_log_entry())
            active.thread = threading.Thread(
                target=self._execute,
                args=(active, work),
                name=f"sync-{run.id}",
                daemon=True,
            )
            active.thread.start()
        except Exception:
            self._slot.release(active)
            raise

        self._last = active
        logger.info(
            "Started sync %s for %s: %d tiles planned, %d to fetch",
            run.id,
            source.name,
            len(tiles),
            len(work),
        )
        return run.snapshot()

    def _checkpoint(self, run: db_models.SyncRun) -> None:
        self.log_repository.update(run.to_log_entry())

    def _process_tile(
        self,
        active: ActiveRun,
        engine: upsert.UpsertEngine,
        tile: db_models.TileCoordinate,
        outcome: tile_fetcher.FetchOutcome,
    ) -> None:
        run = active.run
        if isinstance(outcome, tile_fetcher.TileFetchError):
            logger.warning("Tile %s failed: %s", tile.key, outcome.reason)
            run.record_tile_error(tile.key, f"Tile {tile.key}: {outcome.reason}")
            return

        result = upsert.UpsertResult()
        if isinstance(outcome, tile_fetcher.TileFetched):
            try:
                features = tile_decoder.decode(
                    outcome.content,
                    tile,
                    active.source.layers,
                    active.source.key_fields,
                )
                result = engine.upsert(features)
            except tile_decoder.TileDecodeError as exc:
                logger.warning("Tile %s could not be decoded: %s", tile.key, exc)
                run.record_tile_error(tile.key, f"Tile {tile.key}: {exc}")
                return
            except Exception as exc:
                logger.exception("Tile %s could not be stored", tile.key)
                run.record_tile_error(tile.key, f"Tile {tile.key}: {exc}")
                return
            if result.errors:
                run.add_errors(result.errors)

        completed = run.record_tile_completed(
            tile.key, created=result.created, updated=result.updated
        )
        if completed % self.settings.checkpoint_interval == 0:
            self._checkpoint(run)
            logger.info(
                "Sync %s checkpoint: %d/%d tiles",
                run.id,
                completed,
                run.total_tiles,
            )

    def _execute(
        self, active: ActiveRun, work: Sequence[db_models.TileCoordinate]
    ) -> None:
        run = active.run
        engine = upsert.UpsertEngine(self.feature_store, active.source)
        status = db_models.SyncStatus.FAILED
        fetcher: tile_fetcher.TileFetcher | None = None
        try:
            fetcher = self._fetcher_factory(active.source)
            handled = fetcher.run(
                work,
                functools.partial(self._process_tile, active, engine),
                active.token,
            )
            if handled < len(work):
                status = db_models.SyncStatus.STOPPED
            else:
                status = db_models.SyncStatus.COMPLETED
        except Exception as exc:
            logger.exception("Sync %s failed", run.id)
            run.add_errors([f"Sync failed: {exc}"])
        finally:
            run.finish(status)
            try:
                self._checkpoint(run)
            except Exception:
                logger.exception("Final checkpoint for sync %s failed", run.id)
            if fetcher is not None:
                fetcher.close()
            self._slot.release(active)

        snapshot = run.snapshot()
        logger.info(
            "Sync %s %s: %d/%d tiles, %d errors, %d created, %d updated",
            run.id,
            snapshot.status.value,
            snapshot.completed_tile_count,
            snapshot.total_tiles,
            snapshot.error_tile_count,
            snapshot.created_count,
            snapshot.updated_count,
        )

    def stop_sync(self) -> db_models.SyncRunStatus | None:
        """Request cancellation of the active run.

        Workers stop picking up tiles; fetches already in flight finish.

        Returns:
            Snapshot of the run being stopped, or None if nothing runs.
        """
        active = self._slot.current()
        if active is None:
            return None
        active.run.request_cancel()
        active.token.cancel()
        logger.info("Stop requested for sync %s", active.run.id)
        return active.run.snapshot()

    def get_status(self) -> db_models.SyncRunStatus | None:
        active = self._slot.current()
        return active.run.snapshot() if active is not None else None

    def wait(self, timeout: float | None = None) -> db_models.SyncRunStatus | None:
        """Block until the latest run started here has finished.

        Returns:
            Snapshot of that run, or None if this manager never started one.
        """
        last = self._last
        if last is None:
            return None
        if last.thread is not None:
            last.thread.join(timeout)
        return last.run.snapshot()

    def get_logs(
        self, limit: int = 20, offset: int = 0, source: str | None = None
    ) -> tuple[list[db_models.SyncLogEntry], int]:
        """Page through persisted run summaries, newest first."""
        return self.log_repository.page(limit, offset, source)

    def get_statistics(self, source_name: str) -> SourceStatistics:
        source = self.source(source_name)
        tables = {
            table.name: self.feature_store.count_by_layer(table)
            for table in source.tables.values()
        }
        return SourceStatistics(
            source=source.name,
            total=sum(sum(counts.values()) for counts in tables.values()),
            tables=tables,
            last_completed_at=self.log_repository.last_completed_at(source.name),
        )

    def query_features(
        self,
        source_name: str,
        kind: db_models.LayerKind,
        *,
        bbox: db_models.BoundingBox | None = None,
        source_layer: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[db_models.FeatureRecord], int]:
        table = self.source(source_name).table_for(kind)
        return self.feature_store.query(
            table, bbox=bbox, source_layer=source_layer, limit=limit, offset=offset
        )

    def get_feature(
        self, source_name: str, kind: db_models.LayerKind, feature_id: str
    ) -> db_models.FeatureRecord | None:
        table = self.source(source_name).table_for(kind)
        return self.feature_store.get(table, feature_id)


@functools.lru_cache
def get_sync_manager() -> SyncManager:
    """Get the process-wide sync manager backed by PostgreSQL."""
    settings = config.get_settings()
    return SyncManager(
        settings,
        sources.build_sources(settings),
        database.get_feature_store(settings),
        database.get_sync_log_repository(settings),
    )
