"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  workflow = await store.get_workflow_by_token("acct-1", "token")
"""
from database.models import (
    Base, WorkflowRow, ConversationStateRow, FirstMessageFlagRow, SentMessageRow,
    WorkflowExecutionRow, SettingRow, ChannelRow, CapturedDataRow,
    DepartmentRow, StaffRow, WeeklySlotRow, BookingRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import (
    BaseWorkflowStore, BaseBookingStore, BaseStore, PersistenceError,
)
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "WorkflowRow", "ConversationStateRow", "FirstMessageFlagRow",
    "SentMessageRow", "WorkflowExecutionRow", "SettingRow", "ChannelRow",
    "CapturedDataRow", "DepartmentRow", "StaffRow", "WeeklySlotRow", "BookingRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interfaces
    "BaseWorkflowStore", "BaseBookingStore", "BaseStore", "PersistenceError",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store",
]
