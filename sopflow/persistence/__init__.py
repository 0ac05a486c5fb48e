"""Persistence layer for sopflow process state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SopflowConfig, load_config
from .inmemory import InMemoryProcessRepository
from .models import (
    AuditEvent,
    AuditEventType,
    InstanceStatus,
    ProcessInstance,
    RoleStatus,
    Watcher,
    WatcherType,
    WorkerRole,
    merge_working_data,
)
from .repository import ProcessRepository
from .sqlite import SQLiteProcessRepository

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")

_repository_instance: ProcessRepository | None = None


def _open(database_url: str) -> ProcessRepository:
    if database_url.startswith("sqlite://"):
        return SQLiteProcessRepository(database_url[len("sqlite://"):])
    if database_url.startswith(_POSTGRES_SCHEMES):
        from .postgres import PostgresProcessRepository

        return PostgresProcessRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[SopflowConfig] = None
) -> ProcessRepository:
    """Return the process repository for the configured database.

    The URL comes from ``database_url``, then ``SOPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``. ``sqlite://<path>`` and
    ``postgres(ql)://`` URLs are supported; without any URL, process state
    lives in memory. A call without arguments reuses the last repository.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("SOPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = _open(url) if url else InMemoryProcessRepository()
    return _repository_instance


__all__ = [
    "AuditEvent",
    "AuditEventType",
    "InstanceStatus",
    "ProcessInstance",
    "ProcessRepository",
    "RoleStatus",
    "Watcher",
    "WatcherType",
    "WorkerRole",
    "InMemoryProcessRepository",
    "SQLiteProcessRepository",
    "get_repository",
    "merge_working_data",
]
