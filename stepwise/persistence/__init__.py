"""Persistence layer for stepwise workflows.

``get_repository`` resolves a database URL to one of the storage backends:

* no URL: :class:`InMemoryWorkflowRepository`, state lives as long as the process
* ``sqlite://<path>``: :class:`SQLiteWorkflowRepository` on a local file
* ``postgres://`` or ``postgresql://``: ``PostgresWorkflowRepository``, which
  needs the ``postgres`` extra (asyncpg)

The URL comes from the argument, then ``STEPWISE_DATABASE_URL`` or
``DATABASE_URL``, then ``database_url`` in the loaded config. The resolved
repository is shared by the engine, the trigger manager and the CLI until a
different URL or config is passed in.
"""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import StepExecution, Trigger, WorkflowExecution
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def _open_sqlite(url: str) -> WorkflowRepository:
    return SQLiteWorkflowRepository(url.split("://", 1)[1])


def _open_postgres(url: str) -> WorkflowRepository:
    try:
        from .postgres import PostgresWorkflowRepository
    except ImportError as e:
        raise RuntimeError(
            "Postgres storage needs asyncpg; install stepwise[postgres]"
        ) from e
    return PostgresWorkflowRepository(url)


BACKENDS: Dict[str, Callable[[str], WorkflowRepository]] = {
    "sqlite": _open_sqlite,
    "postgres": _open_postgres,
    "postgresql": _open_postgres,
}


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> Optional[str]:
    if database_url:
        return database_url
    config = config or load_config()
    return (
        os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Build a fresh repository for ``database_url`` without touching the cache."""
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme = database_url.split("://", 1)[0].lower() if "://" in database_url else ""
    opener = BACKENDS.get(scheme)
    if opener is None:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return opener(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> WorkflowRepository:
    """Return the shared workflow repository, opening it on first use."""
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    _repository_instance = open_repository(resolve_database_url(database_url, config))
    return _repository_instance


__all__ = [
    "BACKENDS",
    "StepExecution",
    "Trigger",
    "WorkflowExecution",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
    "resolve_database_url",
]
