"""
Store Factory — picks the session store backend named in configuration.

    database:
      store_backend: memory      # memory | file | sql
      store_file_dir: ./data     # file backend only
      url: sqlite:///./admissions_agent.db    # sql backend only

``create_store`` accepts either that section as a dict or the
``DatabaseConfig`` dataclass. The instance is kept as a process singleton
so the API and background tasks share one store; ``reset_store`` drops it.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, is_dataclass
from typing import Any, Callable, Optional, Union

from config.settings import DatabaseConfig
from database.store_base import BaseSessionStore

logger = structlog.get_logger()

_instance: Optional[BaseSessionStore] = None


def _memory(config: dict[str, Any]) -> BaseSessionStore:
    from database.store_memory import InMemorySessionStore
    return InMemorySessionStore()


def _file(config: dict[str, Any]) -> BaseSessionStore:
    from database.store_file import FileSessionStore
    return FileSessionStore(data_dir=config.get("store_file_dir") or "./data")


def _sql(config: dict[str, Any]) -> BaseSessionStore:
    # tables are created by init_db() at startup, not here
    from database.session import configure
    from database.store import SqlSessionStore
    if config.get("url"):
        configure(config["url"])
    return SqlSessionStore()


BACKENDS: dict[str, Callable[[dict[str, Any]], BaseSessionStore]] = {
    "memory": _memory,
    "file": _file,
    "sql": _sql,
}


def create_store(config: Union[dict, DatabaseConfig, None] = None) -> BaseSessionStore:
    """Build (once) the backend named by ``store_backend``. Raises ValueError if unknown."""
    global _instance
    if _instance is not None:
        return _instance

    if is_dataclass(config):
        config = asdict(config)
    config = config or {}
    backend = config.get("store_backend") or "memory"

    builder = BACKENDS.get(backend)
    if builder is None:
        raise ValueError(f"Unknown store backend: {backend}")

    _instance = builder(config)
    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseSessionStore:
    """The shared store; an in-memory one if nothing was configured."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    global _instance
    _instance = None
