"""Tests for the sync run lifecycle in tilesync.services.sync_manager.

Runs execute for real on background threads against fake HTTP sessions and
in-memory repositories. Covered behaviour:
    - missing (404) tiles count as completed,
    - per-tile failures are recorded without failing the run,
    - reruns only update, and features straddling tiles are stored once,
    - resuming a stopped or interrupted run fetches exactly the remaining
      tiles,
    - a tile that breaks decoding or storage fails only that tile,
    - cancellation stops new fetches and preserves progress,
    - only one run is active at a time,
    - a checkpoint failure fails the run.
"""

from __future__ import annotations

import datetime
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import psycopg2
import pytest

from tilesync.core import config
from tilesync.db import database
from tilesync.db import models as db_models
from tilesync.services import sources, sync_manager, tile_fetcher, tile_grid

if TYPE_CHECKING:
    from conftest import BlockingSession, FakeSession

LINE_LAYER = "shiteidouro_2gou_pl_web"

SettingsFactory = Callable[..., config.Settings]
Encoder = Callable[[dict[str, Any]], bytes]


class RecordingLogRepository(database.InMemorySyncLogRepository):
    def __init__(self) -> None:
        super().__init__()
        self.updates: list[db_models.SyncLogEntry] = []

    def update(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        self.updates.append(entry)
        return super().update(entry)


class FailingLogRepository(database.InMemorySyncLogRepository):
    def update(self, entry: db_models.SyncLogEntry) -> db_models.SyncLogEntry:
        raise RuntimeError("database unavailable")


class UnreachableStore(database.InMemoryFeatureStore):
    def writer(self) -> Any:
        raise psycopg2.OperationalError("connection refused")


def _seed_log(
    logs: database.InMemorySyncLogRepository,
    run_id: str,
    status: db_models.SyncStatus,
    started_at: datetime.datetime,
    done: set[str],
) -> None:
    logs.create(
        db_models.SyncLogEntry(
            id=run_id,
            source="designated_roads",
            status=status,
            started_at=started_at,
            completed_at=None,
            total_tiles=4,
            completed_tiles=len(done),
            resume_state=db_models.ResumeState(completed_tile_keys=done),
        )
    )


def _manager(
    settings: config.Settings,
    session: FakeSession,
    log_repository: database.SyncLogRepositoryProtocol | None = None,
    store: database.FeatureStoreProtocol | None = None,
) -> sync_manager.SyncManager:
    def fetcher_factory(source: sources.TileSource) -> tile_fetcher.TileFetcher:
        return tile_fetcher.TileFetcher(
            source.base_url,
            concurrency=settings.sync_concurrency,
            delay=settings.sync_delay_seconds,
            session=session,  # type: ignore[arg-type]
        )

    return sync_manager.SyncManager(
        settings,
        sources.build_sources(settings),
        store or database.InMemoryFeatureStore(),
        log_repository or database.InMemorySyncLogRepository(),
        fetcher_factory=fetcher_factory,
    )


def _planned(settings: config.Settings) -> list[db_models.TileCoordinate]:
    return tile_grid.plan(settings.bounding_box, settings.sync_zoom)


def _finish(manager: sync_manager.SyncManager) -> db_models.SyncRunStatus:
    status = manager.wait(10)
    assert status is not None
    assert status.status != db_models.SyncStatus.RUNNING
    return status


def test_run_completes_with_missing_tiles(
    make_settings: SettingsFactory,
    fake_session: FakeSession,
    tile_encoder: Encoder,
) -> None:
    """Test that 404 tiles are completed tiles, not errors."""
    settings = make_settings(2, 2)
    tiles = _planned(settings)
    fake_session.serve_tile(
        settings.roads_tile_url,
        tiles[0],
        tile_encoder(
            {
                LINE_LAYER: [
                    ("LINESTRING (10 10, 200 200)", {"keycode": "K-1"}),
                    ("LINESTRING (300 300, 400 400)", {"keycode": "K-2"}),
                ]
            }
        ),
    )
    logs = database.InMemorySyncLogRepository()
    manager = _manager(settings, fake_session, logs)

    started = manager.start_sync("designated_roads")
    assert started.id.startswith("NSL-")
    assert started.total_tiles == 4

    status = _finish(manager)
    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.completed_tile_count == 4
    assert status.error_tile_count == 0
    assert status.created_count == 2

    entry = logs.get(started.id)
    assert entry is not None
    assert entry.status == db_models.SyncStatus.COMPLETED
    assert entry.completed_tiles == 4
    assert entry.completed_at is not None
    assert entry.resume_state.completed_tile_keys == {tile.key for tile in tiles}


def test_run_tolerates_tile_failures(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that failing tiles are recorded and the run still completes."""
    settings = make_settings(2, 2)
    tiles = _planned(settings)
    fake_session.serve_status(settings.roads_tile_url, tiles[1], 500, "Boom")
    logs = database.InMemorySyncLogRepository()
    manager = _manager(settings, fake_session, logs)

    run_id = manager.start_sync("designated_roads").id
    status = _finish(manager)

    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.completed_tile_count == 3
    assert status.error_tile_count == 1
    assert status.errors == [f"Tile {tiles[1].key}: HTTP 500: Boom"]
    entry = logs.get(run_id)
    assert entry is not None
    assert entry.error_message == f"Tile {tiles[1].key}: HTTP 500: Boom"
    assert entry.resume_state.error_tile_keys == {tiles[1].key}


def test_undecodable_tile_is_a_tile_error(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    settings = make_settings(1, 1)
    (tile,) = _planned(settings)
    fake_session.serve_tile(settings.roads_tile_url, tile, b"not a tile")
    manager = _manager(settings, fake_session)

    manager.start_sync("designated_roads")
    status = _finish(manager)
    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.error_tile_count == 1
    assert status.completed_tile_count == 0


def test_malformed_tile_does_not_fail_run(
    make_settings: SettingsFactory,
    fake_session: FakeSession,
    mistagged_tile: Callable[[str], bytes],
) -> None:
    """Test that a tile breaking the decoder only costs that tile."""
    settings = make_settings(2, 2, sync_concurrency=1)
    tiles = _planned(settings)
    fake_session.serve_tile(
        settings.roads_tile_url, tiles[0], mistagged_tile(LINE_LAYER)
    )
    manager = _manager(settings, fake_session)

    manager.start_sync("designated_roads")
    status = _finish(manager)

    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.error_tile_count == 1
    assert status.completed_tile_count == 3
    assert len(fake_session.requested) == 4
    assert status.errors[0].startswith(f"Tile {tiles[0].key}: ")


def test_store_failure_is_a_tile_error(
    make_settings: SettingsFactory,
    fake_session: FakeSession,
    tile_encoder: Encoder,
) -> None:
    """Test that a store that cannot be reached fails tiles, not the run."""
    settings = make_settings(2, 1, sync_concurrency=1)
    tiles = _planned(settings)
    fake_session.serve_tile(
        settings.roads_tile_url,
        tiles[0],
        tile_encoder(
            {LINE_LAYER: [("LINESTRING (10 10, 200 200)", {"keycode": "K-1"})]}
        ),
    )
    manager = _manager(settings, fake_session, store=UnreachableStore())

    manager.start_sync("designated_roads")
    status = _finish(manager)

    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.completed_tile_count == 1
    assert status.error_tile_count == 1
    assert status.errors == [f"Tile {tiles[0].key}: connection refused"]


def test_rerun_is_idempotent(
    make_settings: SettingsFactory,
    fake_session: FakeSession,
    tile_encoder: Encoder,
) -> None:
    """Test that a second full run only updates and stores nothing new."""
    settings = make_settings(2, 1)
    tiles = _planned(settings)
    shared = tile_encoder(
        {LINE_LAYER: [("LINESTRING (4000 10, 4096 20)", {"keycode": "K-edge"})]}
    )
    fake_session.serve_tile(settings.roads_tile_url, tiles[0], shared)
    fake_session.serve_tile(
        settings.roads_tile_url,
        tiles[1],
        tile_encoder(
            {
                LINE_LAYER: [
                    ("LINESTRING (0 20, 50 30)", {"keycode": "K-edge"}),
                    ("LINESTRING (100 100, 200 200)", {"keycode": "K-2"}),
                ]
            }
        ),
    )
    store = database.InMemoryFeatureStore()
    manager = _manager(settings, fake_session, store=store)

    manager.start_sync("designated_roads")
    first = _finish(manager)
    # K-edge straddles both tiles: created once, then overwritten.
    assert (first.created_count, first.updated_count) == (2, 1)
    _, stored = store.query(sources.DESIGNATED_ROADS_TABLE)
    assert stored == 2

    manager.start_sync("designated_roads")
    second = _finish(manager)
    assert (second.created_count, second.updated_count) == (0, 3)
    _, stored = store.query(sources.DESIGNATED_ROADS_TABLE)
    assert stored == 2


def test_resume_fetches_only_remaining_tiles(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that resuming after 40 of 100 tiles fetches exactly 60."""
    settings = make_settings(10, 10, sync_concurrency=5)
    tiles = _planned(settings)
    assert len(tiles) == 100
    done = {tile.key for tile in tiles[:40]}

    logs = database.InMemorySyncLogRepository()
    logs.create(
        db_models.SyncLogEntry(
            id="NSL-previous",
            source="designated_roads",
            status=db_models.SyncStatus.STOPPED,
            started_at=datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
            completed_at=None,
            total_tiles=100,
            completed_tiles=40,
            resume_state=db_models.ResumeState(completed_tile_keys=done),
        )
    )
    manager = _manager(settings, fake_session, logs)

    manager.start_sync("designated_roads", resume=True)
    status = _finish(manager)

    assert len(fake_session.requested) == 60
    fetched = {
        url.removeprefix(f"{settings.roads_tile_url}/")
        for url in fake_session.requested
    }
    assert not fetched & {f"{key}.pbf" for key in done}
    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.completed_tile_count == 100


def test_resume_ignored_after_completed_run(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that resume only continues stopped runs."""
    settings = make_settings(2, 2)
    manager = _manager(settings, fake_session)
    manager.start_sync("designated_roads")
    _finish(manager)

    manager.start_sync("designated_roads", resume=True)
    _finish(manager)
    assert len(fake_session.requested) == 8


def test_resume_after_interrupted_run(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that a run left running by a dead process is resumable."""
    settings = make_settings(2, 2)
    tiles = _planned(settings)
    logs = database.InMemorySyncLogRepository()
    manager = _manager(settings, fake_session, logs)
    _seed_log(
        logs,
        "NSL-crashed",
        db_models.SyncStatus.RUNNING,
        datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
        {tile.key for tile in tiles[:2]},
    )

    manager.start_sync("designated_roads", resume=True)
    status = _finish(manager)

    assert len(fake_session.requested) == 2
    assert status.status == db_models.SyncStatus.COMPLETED
    assert status.completed_tile_count == 4


def test_interrupted_runs_marked_stopped_on_startup(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that runs left running are stopped when a manager is built."""
    settings = make_settings(2, 2)
    logs = database.InMemorySyncLogRepository()
    started = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    _seed_log(logs, "NSL-crashed", db_models.SyncStatus.RUNNING, started, set())
    _seed_log(logs, "NSL-done", db_models.SyncStatus.COMPLETED, started, set())

    _manager(settings, fake_session, logs)

    crashed = logs.get("NSL-crashed")
    assert crashed is not None
    assert crashed.status == db_models.SyncStatus.STOPPED
    done = logs.get("NSL-done")
    assert done is not None
    assert done.status == db_models.SyncStatus.COMPLETED


def test_resume_skips_failed_runs(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that a failed run does not hide the stopped run before it."""
    settings = make_settings(2, 2)
    tiles = _planned(settings)
    logs = database.InMemorySyncLogRepository()
    base = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    _seed_log(
        logs,
        "NSL-stopped",
        db_models.SyncStatus.STOPPED,
        base,
        {tile.key for tile in tiles[:3]},
    )
    _seed_log(
        logs,
        "NSL-failed",
        db_models.SyncStatus.FAILED,
        base + datetime.timedelta(hours=1),
        set(),
    )
    manager = _manager(settings, fake_session, logs)

    manager.start_sync("designated_roads", resume=True)
    _finish(manager)

    assert fake_session.requested == [
        f"{settings.roads_tile_url}/{tiles[3].z}/{tiles[3].x}/{tiles[3].y}.pbf"
    ]


def test_stop_then_resume(
    make_settings: SettingsFactory, blocking_session: BlockingSession
) -> None:
    """Test that stopping keeps finished tiles and resume fetches the rest."""
    settings = make_settings(2, 2, sync_concurrency=1)
    logs = database.InMemorySyncLogRepository()
    manager = _manager(settings, blocking_session, logs)

    run_id = manager.start_sync("designated_roads").id
    assert blocking_session.started.wait(5)
    stopping = manager.stop_sync()
    assert stopping is not None
    assert stopping.cancel_requested
    blocking_session.release.set()

    stopped = _finish(manager)
    assert stopped.status == db_models.SyncStatus.STOPPED
    assert stopped.completed_tile_count == 1
    assert len(blocking_session.requested) == 1
    entry = logs.get(run_id)
    assert entry is not None
    assert entry.status == db_models.SyncStatus.STOPPED
    assert len(entry.resume_state.completed_tile_keys) == 1

    manager.start_sync("designated_roads", resume=True)
    resumed = _finish(manager)
    assert resumed.status == db_models.SyncStatus.COMPLETED
    assert resumed.completed_tile_count == 4
    assert len(blocking_session.requested) == 4


def test_single_active_run(
    make_settings: SettingsFactory, blocking_session: BlockingSession
) -> None:
    """Test that starting while busy returns the running sync unchanged."""
    settings = make_settings(2, 2, sync_concurrency=1)
    logs = database.InMemorySyncLogRepository()
    manager = _manager(settings, blocking_session, logs)

    first = manager.start_sync("designated_roads")
    assert blocking_session.started.wait(5)
    again = manager.start_sync("designated_roads")
    other = manager.start_sync("building_zones")
    assert again.id == first.id
    assert other.id == first.id

    status = manager.get_status()
    assert status is not None
    assert status.status == db_models.SyncStatus.RUNNING
    _, total = logs.page(limit=10, offset=0)
    assert total == 1

    blocking_session.release.set()
    _finish(manager)
    assert manager.get_status() is None


def test_stop_without_run(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    manager = _manager(make_settings(), fake_session)
    assert manager.stop_sync() is None
    assert manager.get_status() is None
    assert manager.wait() is None


def test_periodic_checkpoints(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that progress is persisted every checkpoint_interval tiles."""
    settings = make_settings(2, 2, checkpoint_interval=2, sync_concurrency=1)
    logs = RecordingLogRepository()
    manager = _manager(settings, fake_session, logs)

    manager.start_sync("designated_roads")
    _finish(manager)

    assert [entry.completed_tiles for entry in logs.updates] == [2, 4, 4]
    assert logs.updates[-1].status == db_models.SyncStatus.COMPLETED


def test_checkpoint_failure_fails_run(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    """Test that a fault in the checkpoint path ends the run as failed."""
    settings = make_settings(2, 2, checkpoint_interval=1, sync_concurrency=1)
    manager = _manager(settings, fake_session, FailingLogRepository())

    manager.start_sync("designated_roads")
    status = _finish(manager)

    assert status.status == db_models.SyncStatus.FAILED
    assert status.errors[-1] == "Sync failed: database unavailable"
    assert manager.get_status() is None


def test_unknown_source(
    make_settings: SettingsFactory, fake_session: FakeSession
) -> None:
    manager = _manager(make_settings(), fake_session)
    with pytest.raises(sources.UnknownSourceError):
        manager.start_sync("rivers")
    assert fake_session.requested == []


def test_building_source_uses_its_table(
    make_settings: SettingsFactory,
    fake_session: FakeSession,
    tile_encoder: Encoder,
) -> None:
    """Test building zones land in their own table with their category."""
    settings = make_settings(1, 1)
    (tile,) = _planned(settings)
    fake_session.serve_tile(
        settings.buildings_tile_url,
        tile,
        tile_encoder(
            {
                "kenchikukyoutei_pg": [
                    (
                        "POLYGON ((0 0, 0 100, 100 100, 100 0, 0 0))",
                        {"gid": 5, "name": "Agreement A"},
                    )
                ]
            }
        ),
    )
    manager = _manager(settings, fake_session)

    run_id = manager.start_sync("building_zones").id
    assert run_id.startswith("NBL-")
    _finish(manager)

    records, total = manager.query_features("building_zones", "polygon")
    assert total == 1
    assert records[0].category == "建築協定"
    assert records[0].columns["name"] == "Agreement A"
    assert manager.get_feature("building_zones", "polygon", records[0].id) == records[0]

    stats = manager.get_statistics("building_zones")
    assert stats.total == 1
    assert stats.tables == {"building_zones": {"kenchikukyoutei_pg": 1}}
    assert stats.last_completed_at is not None

    with pytest.raises(sources.UnknownSourceError):
        manager.query_features("building_zones", "line")
