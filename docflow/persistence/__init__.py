"""Persistence layer for docflow workflow instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DocflowConfig, load_config
from .inmemory import InMemoryInstanceStore
from .repository import InstanceStore
from .sqlite import SQLiteInstanceStore

_store_instance: InstanceStore | None = None


def get_instance_store(
    database_url: Optional[str] = None, config: Optional[DocflowConfig] = None
) -> InstanceStore:
    """Factory function to obtain an instance store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``DOCFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DOCFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryInstanceStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteInstanceStore(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "InstanceStore",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "get_instance_store",
]
