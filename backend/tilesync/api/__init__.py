"""API router subpackage for the tile sync backend.

Submodules:
    - sync: Endpoints for starting, stopping and inspecting sync runs and
      for querying synced features.
"""
