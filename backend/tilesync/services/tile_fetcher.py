"""Bounded-concurrency tile fetching with pacing and cooperative cancellation.

``TileFetcher`` downloads ``{base_url}/{z}/{x}/{y}.pbf`` for every tile of
a work list using a thread pool of ``concurrency`` workers, so at most that
many requests are in flight. Each worker waits ``delay`` seconds before
every request to respect the upstream host's rate limits.

Every tile resolves to exactly one outcome:

- ``TileFetched``: the tile body.
- ``TileNotFound``: HTTP 404; the data coverage is irregular inside the
  rectangular extent, so a missing tile is not an error.
- ``TileFetchError``: any other status or a network failure.

Outcomes are handed to a callback on the worker thread. A
``CancellationToken`` is checked before each fetch starts; requests already
in flight run to completion or time out.

Example:
    Fetch a work list and print outcomes:
        >>> token = CancellationToken()
        >>> with contextlib.closing(TileFetcher(source.base_url)) as fetcher:
        ...     fetcher.run(tiles, lambda tile, outcome: print(tile, outcome),
        ...                 token)
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent import futures
from typing import TYPE_CHECKING

import requests
import requests.adapters

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from tilesync.db import models as db_models

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "TileSync/1.0"


@dataclasses.dataclass(frozen=True)
class TileFetched:
    content: bytes


@dataclasses.dataclass(frozen=True)
class TileNotFound:
    pass


@dataclasses.dataclass(frozen=True)
class TileFetchError:
    reason: str


FetchOutcome = TileFetched | TileNotFound | TileFetchError


class CancellationToken:
    """Shared stop signal passed explicitly to every worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(seconds)


class TileFetcher:
    """Fetches vector tiles from one tile host.

    Args:
        base_url: Tile host prefix; tiles are at ``{base_url}/{z}/{x}/{y}.pbf``.
        concurrency: Maximum number of tiles in flight.
        delay: Seconds each worker waits before every request.
        timeout: Per-request timeout in seconds.
        user_agent: Identifying User-Agent header.
        session: Optional preconfigured HTTP session.
    """

    def __init__(
        self,
        base_url: str,
        *,
        concurrency: int = 5,
        delay: float = 0.1,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.concurrency = concurrency
        self.delay = delay
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            adapter = requests.adapters.HTTPAdapter(
                pool_connections=1, pool_maxsize=concurrency
            )
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        session.headers["User-Agent"] = user_agent
        self._session = session

    def tile_url(self, tile: db_models.TileCoordinate) -> str:
        return f"{self.base_url}/{tile.z}/{tile.x}/{tile.y}.pbf"

    def fetch(self, tile: db_models.TileCoordinate) -> FetchOutcome:
        """Download one tile and classify the response."""
        url = self.tile_url(tile)
        try:
            response = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            return TileFetchError(f"request failed: {exc}")

        if response.status_code == 404:
            return TileNotFound()
        if not response.ok:
            return TileFetchError(
                f"HTTP {response.status_code}: {response.reason}"
            )
        return TileFetched(response.content)

    def _work(
        self,
        tile: db_models.TileCoordinate,
        handle: Callable[[db_models.TileCoordinate, FetchOutcome], None],
        token: CancellationToken,
    ) -> bool:
        if token.cancelled:
            return False
        if self.delay > 0 and token.wait(self.delay):
            return False
        handle(tile, self.fetch(tile))
        return True

    def run(
        self,
        tiles: Sequence[db_models.TileCoordinate],
        handle: Callable[[db_models.TileCoordinate, FetchOutcome], None],
        token: CancellationToken,
    ) -> int:
        """Fetch every tile and pass its outcome to ``handle``.

        ``handle`` runs on the worker thread. An exception escaping it is
        treated as fatal: the token is cancelled, queued tiles are dropped,
        and the exception is re-raised once running workers finish.

        Args:
            tiles: Work list.
            handle: Callback receiving ``(tile, outcome)``.
            token: Cancellation token checked before every fetch.

        Returns:
            Number of tiles whose outcome was handled. Fewer than
            ``len(tiles)`` means the run was cancelled.
        """
        handled = 0
        with futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="tile-fetch"
        ) as pool:
            pending = [
                pool.submit(self._work, tile, handle, token) for tile in tiles
            ]
            try:
                for future in futures.as_completed(pending):
                    if future.result():
                        handled += 1
            except BaseException:
                token.cancel()
                pool.shutdown(wait=True, cancel_futures=True)
                raise

        logger.debug("Handled %d of %d tiles", handled, len(tiles))
        return handled

    def close(self) -> None:
        self._session.close()
