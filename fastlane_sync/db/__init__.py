from .connection import db_connection, resolve_dsn
from .store import PostgresDataStore
from .upsert import PersistenceError, batch_upsert

__all__ = ["PersistenceError", "PostgresDataStore", "batch_upsert", "db_connection", "resolve_dsn"]
