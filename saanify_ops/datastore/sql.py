"""SQLAlchemy-backed primary data store."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    event,
    func,
    inspect,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.exc import SQLAlchemyError

from ..utils.errors import DataStoreError, ReferentialIntegrityError
from .base import DataStore, normalize_record
from .memory import InMemoryDataStore

logger = logging.getLogger(__name__)

metadata = MetaData()

society_accounts_table = Table(
    "society_accounts",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", Text),
    Column("admin_name", Text),
    Column("email", Text),
    Column("phone", Text),
    Column("address", Text),
    Column("subscription_plan", String(32)),
    Column("status", String(32)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", String(40)),
    Column("updated_at", String(40)),
)

users_table = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), unique=True),
    Column("name", Text),
    Column("password", Text),
    Column("role", String(32)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("society_account_id", String(64), ForeignKey("society_accounts.id"), nullable=True),
    Column("created_at", String(40)),
    Column("updated_at", String(40)),
)

schema_migrations_table = Table(
    "schema_migrations",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("applied_at", String(40), nullable=False),
)

TABLES = {
    "society_accounts": society_accounts_table,
    "users": users_table,
}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite only enforces foreign keys when asked to, per connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Map SQLAlchemy exceptions onto the data store error taxonomy."""
    try:
        yield
    except SQLIntegrityError as e:
        raise ReferentialIntegrityError(f"{action} violates a database constraint", details=str(e.orig)) from e
    except SQLAlchemyError as e:
        raise DataStoreError(f"{action} failed", details=str(e)) from e


class SQLDataStore(DataStore):
    """Data store over any SQLAlchemy URL (SQLite, PostgreSQL, ...)."""

    supports_transactions = True

    def __init__(self, url: str, echo: bool = False, engine: Optional[Engine] = None):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy database URL
            echo: Log every SQL statement
            engine: Pre-built engine (overrides url)
        """
        self.url = url
        try:
            self.engine = engine or create_engine(url, echo=echo)
        except (SQLAlchemyError, ImportError) as e:
            raise DataStoreError(f"Cannot create database engine for {url}", details=str(e)) from e

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._connection: Optional[Connection] = None

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Reuse the open transaction's connection, or run in a new one."""
        if self._connection is not None:
            yield self._connection
        else:
            with self.engine.begin() as conn:
                yield conn

    @contextmanager
    def transaction(self) -> Iterator["SQLDataStore"]:
        if self._connection is not None:
            # Nested calls join the outer transaction
            yield self
            return

        with _translate_errors("Transaction"):
            with self.engine.begin() as conn:
                self._connection = conn
                try:
                    yield self
                finally:
                    self._connection = None

    def ping(self) -> bool:
        with _translate_errors("Database ping"):
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        return True

    def ensure_schema(self) -> None:
        with _translate_errors("Schema creation"):
            metadata.create_all(self.engine)
        logger.debug("Schema ensured for %s", self.engine.url.render_as_string(hide_password=True))

    def has_collection(self, collection: str) -> bool:
        with _translate_errors("Schema inspection"):
            return inspect(self.engine).has_table(collection)

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        table = self._table(collection)
        with _translate_errors(f"Reading {collection}"):
            with self._connect() as conn:
                rows = conn.execute(select(table).order_by(table.c.id)).mappings().all()
        return [dict(row) for row in rows]

    def delete_all(self, collection: str) -> int:
        table = self._table(collection)
        with _translate_errors(f"Deleting {collection}"):
            with self._connect() as conn:
                result = conn.execute(delete(table))
        return result.rowcount or 0

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(collection)
        normalized = normalize_record(collection, record)
        with _translate_errors(f"Creating {collection} record {normalized['id']}"):
            with self._connect() as conn:
                conn.execute(insert(table).values(**normalized))
        return normalized

    def count(self, collection: str, **filters: Any) -> int:
        table = self._table(collection)
        query = select(func.count()).select_from(table)
        if filters:
            query = query.where(and_(*(table.c[key] == value for key, value in filters.items())))
        with _translate_errors(f"Counting {collection}"):
            with self._connect() as conn:
                return conn.execute(query).scalar_one()

    def applied_migrations(self) -> List[str]:
        if self._connection is None and not self.has_collection("schema_migrations"):
            return []
        with _translate_errors("Reading schema_migrations"):
            with self._connect() as conn:
                rows = conn.execute(
                    select(schema_migrations_table.c.id).order_by(schema_migrations_table.c.id)
                ).all()
        return [row[0] for row in rows]

    def record_migration(self, migration_id: str, applied_at: str) -> None:
        with _translate_errors(f"Recording migration {migration_id}"):
            with self._connect() as conn:
                conn.execute(insert(schema_migrations_table).values(id=migration_id, applied_at=applied_at))

    def close(self) -> None:
        self.engine.dispose()

    def _table(self, collection: str) -> Table:
        """Get the table for a tracked collection."""
        if collection not in TABLES:
            raise DataStoreError(f"Unknown collection: {collection}")
        return TABLES[collection]


def create_datastore(config: Dict[str, Any]) -> DataStore:
    """
    Build the data store named by ``database.url``.

    ``memory://`` gives an in-process store; anything else is a SQLAlchemy URL.
    """
    database = config.get("database", {})
    url = database.get("url", "")

    if not url:
        raise DataStoreError("No database URL configured (database.url or DATABASE_URL)")

    if url.startswith("memory://"):
        return InMemoryDataStore(transactional=url != "memory://nontransactional")

    return SQLDataStore(url, echo=database.get("echo", False))

