"""Primary data store interface shared by the SQL and in-memory adapters."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from ..utils.errors import DataStoreError

# Dependency order: parents before children
COLLECTIONS = ("society_accounts", "users")

# collection -> {field: referenced collection}
REFERENCES = {
    "users": {"society_account_id": "society_accounts"},
}

FIELDS = {
    "society_accounts": (
        "id",
        "name",
        "admin_name",
        "email",
        "phone",
        "address",
        "subscription_plan",
        "status",
        "is_active",
        "created_at",
        "updated_at",
    ),
    "users": (
        "id",
        "email",
        "name",
        "password",
        "role",
        "is_active",
        "society_account_id",
        "created_at",
        "updated_at",
    ),
}

UNIQUE_FIELDS = {
    "society_accounts": (),
    "users": ("email",),
}

SUPER_ADMIN_ROLE = "SUPER_ADMIN"


def normalize_record(collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a record carrying exactly the collection's fields.

    Missing fields become None (``is_active`` defaults to True).

    Raises:
        DataStoreError: For unknown collections, unknown fields or a missing id
    """
    if collection not in FIELDS:
        raise DataStoreError(f"Unknown collection: {collection}")

    fields = FIELDS[collection]
    unknown = sorted(set(record) - set(fields))
    if unknown:
        raise DataStoreError(f"Unknown fields for {collection}: {', '.join(unknown)}")

    if not record.get("id"):
        raise DataStoreError(f"Record for {collection} has no id")

    normalized = {field: record.get(field) for field in fields}
    if normalized["is_active"] is None:
        normalized["is_active"] = True
    return normalized


class DataStore:
    """
    Interface consumed by backup, recovery, migrations and health checks.

    Adapters enforce the foreign keys in ``REFERENCES``: creating a child
    whose parent is missing, or deleting a parent that still has children,
    raises ``ReferentialIntegrityError``.
    """

    supports_transactions = False

    def ping(self) -> bool:
        """Verify the store is reachable; raises DataStoreError otherwise."""
        raise NotImplementedError

    def ensure_schema(self) -> None:
        raise NotImplementedError

    def has_collection(self, collection: str) -> bool:
        raise NotImplementedError

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        """All records of a collection, ordered by id."""
        raise NotImplementedError

    def delete_all(self, collection: str) -> int:
        """Delete every record of a collection; returns the number removed."""
        raise NotImplementedError

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def count(self, collection: str, **filters: Any) -> int:
        raise NotImplementedError

    def applied_migrations(self) -> List[str]:
        raise NotImplementedError

    def record_migration(self, migration_id: str, applied_at: str) -> None:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator["DataStore"]:
        """
        Group writes into one atomic unit where the adapter supports it.

        Adapters without transactions yield immediately; callers check
        ``supports_transactions`` to decide how to compensate on failure.
        """
        yield self

    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        """Full export of every tracked collection."""
        return {collection: self.find_all(collection) for collection in COLLECTIONS}

    def find_super_admin(self) -> Optional[Dict[str, Any]]:
        for user in self.find_all("users"):
            if user.get("role") == SUPER_ADMIN_ROLE:
                return user
        return None

    def close(self) -> None:
        pass
