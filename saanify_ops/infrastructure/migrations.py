"""Ordered schema and data migrations for the primary data store."""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..datastore.accounts import bootstrap_super_admin, utc_now
from ..datastore.base import COLLECTIONS, SUPER_ADMIN_ROLE, DataStore
from ..utils.errors import DataStoreError

logger = logging.getLogger(__name__)

Migration = Tuple[str, Callable[[DataStore, Dict[str, Any]], str]]


def _initial_schema(store: DataStore, config: Dict[str, Any]) -> str:
    store.ensure_schema()
    return f"Ensured collections: {', '.join(COLLECTIONS)}"


def _seed_super_admin(store: DataStore, config: Dict[str, Any]) -> str:
    created = bootstrap_super_admin(store, config["bootstrap"])
    if created is None:
        return "Super admin already present"
    return f"Created super admin {created['email']}"


def _verify_required_data(store: DataStore, config: Dict[str, Any]) -> str:
    admins = store.count("users", role=SUPER_ADMIN_ROLE)
    if admins == 0:
        raise DataStoreError("Verification failed: no super admin account after seeding")
    users = store.count("users")
    societies = store.count("society_accounts")
    return f"Verified {admins} super admin(s), {users} user(s), {societies} society account(s)"


MIGRATIONS: List[Migration] = [
    ("001_initial_schema", _initial_schema),
    ("002_seed_super_admin", _seed_super_admin),
    ("003_verify_required_data", _verify_required_data),
]


class MigrationRunner:
    """Applies registered migrations that have not yet been recorded."""

    def __init__(
        self,
        config: Dict[str, Any],
        store: DataStore,
        verbose: bool = False,
        migrations: Optional[List[Migration]] = None,
    ):
        """
        Initialize migration runner.

        Args:
            config: Resolved saanify-ops configuration
            store: Primary data store
            verbose: Enable verbose output
            migrations: Ordered registry (defaults to MIGRATIONS)
        """
        self.config = config
        self.store = store
        self.verbose = verbose
        self.migrations = MIGRATIONS if migrations is None else migrations

    def pending(self) -> List[str]:
        """Ids of migrations not yet applied, in order."""
        applied = set(self.store.applied_migrations())
        return [migration_id for migration_id, _ in self.migrations if migration_id not in applied]

    def migrate(self) -> Dict[str, Any]:
        """
        Apply pending migrations in registry order, stopping at the first failure.

        Each migration and its record are written in one transaction where
        the store supports it.

        Returns:
            Dict[str, Any]: Applied ids with their messages, and the skipped (already applied) ids

        Raises:
            DataStoreError: If a migration fails; earlier ones stay applied
        """
        # The schema must exist before applied migrations can be read
        self.store.ensure_schema()

        applied_before = set(self.store.applied_migrations())
        result = {"applied": [], "skipped": []}

        for migration_id, operation in self.migrations:
            if migration_id in applied_before:
                result["skipped"].append(migration_id)
                continue

            if self.verbose:
                print(f"Applying migration {migration_id}")

            with self.store.transaction():
                message = operation(self.store, self.config)
                self.store.record_migration(migration_id, utc_now())

            logger.info("Applied migration %s: %s", migration_id, message)
            result["applied"].append({"id": migration_id, "message": message})

        return result
