"""Persistence layer for the crossflow outbox and workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrossflowConfig, load_config
from .inmemory import InMemoryRepository, InMemoryTransaction
from .postgres import PostgresRepository, PostgresTransaction
from .repository import Repository, Transaction
from .sqlite import SQLiteRepository, SQLiteTransaction

_repository_instance: Repository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[CrossflowConfig] = None
) -> Repository:
    """Factory function to obtain a repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CROSSFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CROSSFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository so the next call builds a fresh one."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "Repository",
    "Transaction",
    "InMemoryRepository",
    "InMemoryTransaction",
    "SQLiteRepository",
    "SQLiteTransaction",
    "PostgresRepository",
    "PostgresTransaction",
    "get_repository",
    "reset_repository",
]
