"""In-process data store, used for dry runs and tests."""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from ..utils.errors import DataStoreError, ReferentialIntegrityError
from .base import COLLECTIONS, REFERENCES, UNIQUE_FIELDS, DataStore, normalize_record


class InMemoryDataStore(DataStore):
    """Dictionary-backed store enforcing the same constraints as the SQL schema."""

    def __init__(self, transactional: bool = True):
        """
        Initialize the store.

        Args:
            transactional: Whether ``transaction()`` gives all-or-nothing semantics
        """
        self.supports_transactions = transactional
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self._migrations: List[Dict[str, str]] = []
        self._lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def ensure_schema(self) -> None:
        pass

    def has_collection(self, collection: str) -> bool:
        return collection in self._records

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        records = self._collection(collection)
        return [copy.deepcopy(records[key]) for key in sorted(records)]

    def delete_all(self, collection: str) -> int:
        with self._lock:
            records = self._collection(collection)
            if records:
                self._check_no_dependents(collection, set(records))
            removed = len(records)
            records.clear()
            return removed

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            normalized = normalize_record(collection, record)
            records = self._collection(collection)

            if normalized["id"] in records:
                raise DataStoreError(f"Duplicate id in {collection}: {normalized['id']}")

            for field in UNIQUE_FIELDS.get(collection, ()):
                value = normalized.get(field)
                if value is not None and any(existing.get(field) == value for existing in records.values()):
                    raise DataStoreError(f"Duplicate {field} in {collection}: {value}")

            for field, parent in REFERENCES.get(collection, {}).items():
                parent_id = normalized.get(field)
                if parent_id is not None and parent_id not in self._records[parent]:
                    raise ReferentialIntegrityError(
                        f"{collection}.{field} references missing {parent} record {parent_id}"
                    )

            records[normalized["id"]] = normalized
            return copy.deepcopy(normalized)

    def count(self, collection: str, **filters: Any) -> int:
        records = self._collection(collection).values()
        return sum(1 for record in records if all(record.get(key) == value for key, value in filters.items()))

    def applied_migrations(self) -> List[str]:
        return [entry["id"] for entry in self._migrations]

    def record_migration(self, migration_id: str, applied_at: str) -> None:
        with self._lock:
            if migration_id not in self.applied_migrations():
                self._migrations.append({"id": migration_id, "applied_at": applied_at})

    @contextmanager
    def transaction(self) -> Iterator["InMemoryDataStore"]:
        if not self.supports_transactions:
            yield self
            return

        with self._lock:
            saved_records = copy.deepcopy(self._records)
            saved_migrations = copy.deepcopy(self._migrations)
            try:
                yield self
            except BaseException:
                self._records = saved_records
                self._migrations = saved_migrations
                raise

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Get the record map for a collection."""
        if collection not in self._records:
            raise DataStoreError(f"Unknown collection: {collection}")
        return self._records[collection]

    def _check_no_dependents(self, collection: str, ids: set) -> None:
        """Refuse to delete parents that children still reference."""
        for child, references in REFERENCES.items():
            for field, parent in references.items():
                if parent != collection:
                    continue
                for record in self._records[child].values():
                    if record.get(field) in ids:
                        raise ReferentialIntegrityError(
                            f"Cannot delete {collection}: {child} record {record['id']} still references it"
                        )
