"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.load_session("5511999990000@w.msgcli.net")
"""
from database.models import (
    Base, SessionRow, FlowRow, TicketRow, AgentRow,
    SettingRow, QueueHoursRow, MessageRow,
)
from database.session import get_engine, get_session, session_scope, init_db, close_db
from database.store_base import BaseStore, TicketTransaction
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "SessionRow", "FlowRow", "TicketRow", "AgentRow",
    "SettingRow", "QueueHoursRow", "MessageRow",
    # Session management
    "get_engine", "get_session", "session_scope", "init_db", "close_db",
    # Store interface
    "BaseStore", "TicketTransaction",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
