"""Primary data store adapters for saanify-ops."""

from .base import COLLECTIONS, REFERENCES, SUPER_ADMIN_ROLE, DataStore
from .memory import InMemoryDataStore
from .sql import SQLDataStore, create_datastore

__all__ = [
    "COLLECTIONS",
    "REFERENCES",
    "SUPER_ADMIN_ROLE",
    "DataStore",
    "InMemoryDataStore",
    "SQLDataStore",
    "create_datastore",
]
