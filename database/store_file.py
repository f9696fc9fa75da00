"""
FileSessionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json        {session_id: session dict}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from database.store_memory import InMemorySessionStore
from models.schemas import Session

logger = structlog.get_logger()

_FILENAME = "sessions.json"


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads every session from disk into memory.
    On every write: rewrites the file via tmp + rename.
    """

    backend_name = "file"

    def __init__(
        self,
        data_dir: str = "./data",
        flush_interval_s: float = 0,
        clock: Callable[[], datetime] = None,
    ):
        super().__init__(clock=clock)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self._load()
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    sessions=len(self._sessions))

    # ── Load / Save ───────────────────────────────────────

    @property
    def path(self) -> Path:
        return self._data_dir / _FILENAME

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return

        for sid, data in (raw or {}).items():
            try:
                self._sessions[sid] = Session.model_validate(data)
            except ValidationError as e:
                logger.warning("file_store_bad_record", session_id=sid, error=str(e))

    def _flush(self):
        data = {sid: s.model_dump(mode="json") for sid, s in self._sessions.items()}
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)  # atomic on POSIX

    def _touched(self) -> None:
        if self._flush_interval <= 0:
            self._flush()
            return
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        if self._dirty:
            self._dirty = False
            self._flush()

    def flush_all(self):
        """Force flush to disk."""
        self._dirty = False
        self._flush()
        logger.info("file_store_flushed_all", sessions=len(self._sessions))

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self.flush_all()
