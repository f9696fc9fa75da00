"""
Session persistence behind one interface (BaseSessionStore).

  memory   InMemorySessionStore  dicts, lost on restart
  file     FileSessionStore      sessions.json, single process
  sql      SqlSessionStore       SQLite / PostgreSQL / MySQL via SQLAlchemy async

    from database import create_store
    store = create_store(settings.database)
"""
from database.models import Base, SessionRow
from database.session import configure, get_engine, get_session, init_db, close_db
from database.store_base import BaseSessionStore
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "SessionRow",
    "configure", "get_engine", "get_session", "init_db", "close_db",
    "BaseSessionStore", "SqlSessionStore", "InMemorySessionStore", "FileSessionStore",
    "create_store", "get_store", "reset_store",
]
