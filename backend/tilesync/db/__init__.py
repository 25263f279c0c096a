"""Database interface and repository abstractions.

Holds the shared data models and the repositories persisting synced
features and run history, each with an in-memory and a PostgreSQL
implementation.

Example:
    Use in a service or FastAPI dependency:
        >>> from tilesync.db import database
        >>> store = database.get_feature_store(settings)
"""
