"""
Database Module
"""
from .connection import init_database, close_database, get_db, get_session_factory
from .models import Base, DocumentRecord
from .store import SERVER_TIMESTAMP, DocumentStore, MemoryDocumentStore, Transaction
from .sql_store import SqlDocumentStore

__all__ = [
    "init_database",
    "close_database",
    "get_db",
    "get_session_factory",
    "Base",
    "DocumentRecord",
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "MemoryDocumentStore",
    "SqlDocumentStore",
    "Transaction",
]
