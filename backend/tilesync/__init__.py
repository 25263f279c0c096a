"""Tile sync backend: municipal vector tiles into a PostGIS feature store.

The service walks every tile covering a configured extent, fetches the
tiles from the publishing map server with bounded concurrency, decodes and
reclassifies their layers into typed features, and upserts them into
PostGIS while tracking created and updated counts.

- Runs are resumable: progress is checkpointed and a stopped run can be
  continued without refetching completed tiles
- Only one run is active at a time; status and cancellation are exposed
  through a FastAPI router
- Features are deduplicated per source layer by a prioritized attribute key
"""
