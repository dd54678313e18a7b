"""Tests for the data store adapters and account helpers."""

import os

import pytest

from saanify_ops.datastore.accounts import (
    bootstrap_super_admin,
    build_super_admin,
    generate_password,
    hash_password,
    tokens_match,
    verify_password,
)
from saanify_ops.datastore.base import SUPER_ADMIN_ROLE, normalize_record
from saanify_ops.datastore.memory import InMemoryDataStore
from saanify_ops.datastore.sql import SQLDataStore, create_datastore
from saanify_ops.utils.errors import DataStoreError, ReferentialIntegrityError


@pytest.fixture(params=["memory", "sqlite"])
def store(request, temp_directory):
    """Each adapter with its schema in place."""
    if request.param == "memory":
        yield InMemoryDataStore()
        return

    sql_store = SQLDataStore(f"sqlite:///{os.path.join(temp_directory, 'store.db')}")
    sql_store.ensure_schema()
    yield sql_store
    sql_store.close()


class TestDataStoreContract:
    """Behavior both adapters share."""

    def test_create_and_find(self, store, sample_records, seeder):
        """Test records come back normalized and ordered by id."""
        seeder(store, sample_records)

        users = store.find_all("users")

        assert [user["id"] for user in users] == ["user-001", "user-002", "user-003"]
        assert users[0]["is_active"] is True
        assert store.count("users") == 3
        assert store.count("users", role=SUPER_ADMIN_ROLE) == 1

    def test_missing_parent_rejected(self, store):
        """Test a user pointing at a missing society is refused."""
        with pytest.raises(ReferentialIntegrityError):
            store.create("users", {"id": "user-9", "email": "x@example.com", "society_account_id": "soc-missing"})

        assert store.count("users") == 0

    def test_parent_with_children_cannot_be_deleted(self, store, sample_records, seeder):
        """Test deleting referenced societies is refused."""
        seeder(store, sample_records)

        with pytest.raises(ReferentialIntegrityError):
            store.delete_all("society_accounts")

        assert store.count("society_accounts") == 2

    def test_delete_children_then_parents(self, store, sample_records, seeder):
        """Test dependency-ordered deletion succeeds."""
        seeder(store, sample_records)

        assert store.delete_all("users") == 3
        assert store.delete_all("society_accounts") == 2

    def test_duplicate_email_rejected(self, store):
        """Test user emails are unique."""
        store.create("users", {"id": "user-1", "email": "same@example.com"})

        with pytest.raises(DataStoreError):
            store.create("users", {"id": "user-2", "email": "same@example.com"})

    def test_transaction_rolls_back(self, store):
        """Test a failed transaction leaves no partial writes."""
        with pytest.raises(DataStoreError):
            with store.transaction():
                store.create("society_accounts", {"id": "soc-1", "name": "Green Valley"})
                store.create("society_accounts", {"id": "soc-1", "name": "Duplicate"})

        assert store.count("society_accounts") == 0

    def test_migrations_recorded(self, store):
        """Test migration bookkeeping."""
        store.record_migration("001_initial_schema", "2024-01-01T00:00:00+00:00")

        assert store.applied_migrations() == ["001_initial_schema"]

    def test_export(self, store, sample_records, seeder):
        """Test export covers every collection."""
        seeder(store, sample_records)

        exported = store.export()

        assert sorted(exported) == ["society_accounts", "users"]
        assert len(exported["society_accounts"]) == 2
        assert store.find_super_admin()["email"] == "superadmin@saanify.com"

    def test_unknown_collection(self, store):
        """Test unknown collections are rejected."""
        with pytest.raises(DataStoreError):
            store.find_all("payments")


class TestSQLDataStore:
    """SQLAlchemy adapter specifics."""

    def test_schema_created_on_demand(self, temp_directory):
        """Test a fresh database has no tables until the schema is ensured."""
        store = SQLDataStore(f"sqlite:///{os.path.join(temp_directory, 'fresh.db')}")

        assert store.has_collection("users") is False
        assert store.applied_migrations() == []

        store.ensure_schema()

        assert store.has_collection("users") is True
        assert store.has_collection("schema_migrations") is True
        store.close()

    def test_missing_table_is_datastore_error(self, temp_directory):
        """Test reading before the schema exists is translated."""
        store = SQLDataStore(f"sqlite:///{os.path.join(temp_directory, 'fresh.db')}")

        with pytest.raises(DataStoreError):
            store.find_all("users")
        store.close()

    def test_unknown_dialect(self):
        """Test an unusable URL fails at construction."""
        with pytest.raises(DataStoreError, match="Cannot create database engine"):
            SQLDataStore("nosuchdialect://localhost/db")

    def test_data_survives_reopen(self, temp_directory, sample_records, seeder):
        """Test committed writes persist across store instances."""
        url = f"sqlite:///{os.path.join(temp_directory, 'persist.db')}"
        first = SQLDataStore(url)
        first.ensure_schema()
        seeder(first, sample_records)
        first.close()

        second = SQLDataStore(url)

        assert second.count("society_accounts") == 2
        second.close()


class TestCreateDatastore:
    """Test store selection from configuration."""

    def test_memory_store(self):
        """Test memory:// gives a transactional in-process store."""
        store = create_datastore({"database": {"url": "memory://"}})

        assert isinstance(store, InMemoryDataStore)
        assert store.supports_transactions is True

    def test_nontransactional_memory_store(self):
        """Test the non-transactional variant."""
        store = create_datastore({"database": {"url": "memory://nontransactional"}})

        assert store.supports_transactions is False

    def test_sql_store(self, temp_directory):
        """Test other URLs go to SQLAlchemy."""
        store = create_datastore({"database": {"url": f"sqlite:///{os.path.join(temp_directory, 'x.db')}"}})

        assert isinstance(store, SQLDataStore)
        store.close()

    def test_missing_url(self):
        """Test an empty URL is a data store error."""
        with pytest.raises(DataStoreError, match="No database URL configured"):
            create_datastore({"database": {"url": ""}})


class TestNormalizeRecord:
    """Test record normalization."""

    def test_fills_missing_fields(self):
        """Test absent fields become None."""
        record = normalize_record("society_accounts", {"id": "soc-1", "name": "Green Valley"})

        assert record["status"] is None
        assert record["is_active"] is True

    def test_rejects_unknown_fields(self):
        """Test unknown fields are refused."""
        with pytest.raises(DataStoreError, match="Unknown fields for users: nickname"):
            normalize_record("users", {"id": "user-1", "nickname": "x"})

    def test_requires_id(self):
        """Test records need an id."""
        with pytest.raises(DataStoreError):
            normalize_record("users", {"email": "x@example.com"})


class TestAccounts:
    """Test password hashing, token comparison and bootstrap."""

    def test_hash_and_verify(self):
        """Test hashes verify only the original password."""
        hashed = hash_password("Admin@123456")

        assert hashed.startswith("scrypt$")
        assert verify_password("Admin@123456", hashed)
        assert not verify_password("admin@123456", hashed)

    def test_hashes_are_salted(self):
        """Test the same password hashes differently each time."""
        assert hash_password("secret") != hash_password("secret")

    @pytest.mark.parametrize("hashed", ["", "plain", "bcrypt$a$b", "scrypt$c2FsdA==$aGFzaA==", None])
    def test_verify_malformed_hash(self, hashed):
        """Test malformed hashes never verify."""
        assert verify_password("secret", hashed) is False

    @pytest.mark.parametrize(
        "provided,expected,match",
        [
            ("token", "token", True),
            ("token", "other", False),
            ("", "", False),
            (None, "token", False),
            ("token", None, False),
        ],
    )
    def test_tokens_match(self, provided, expected, match):
        """Test token comparison, where an unset secret never matches."""
        assert tokens_match(provided, expected) is match

    def test_generate_password(self):
        """Test generated passwords avoid ambiguous characters."""
        password = generate_password(32)

        assert len(password) == 32
        assert not set(password) & set("0O1lI")

    def test_build_super_admin(self):
        """Test the bootstrap record shape."""
        record = build_super_admin({"admin_email": "root@saanify.com", "admin_password": "pw"})

        assert record["role"] == SUPER_ADMIN_ROLE
        assert record["name"] == "Super Admin"
        assert record["society_account_id"] is None
        assert verify_password("pw", record["password"])

    def test_bootstrap_creates_admin_once(self):
        """Test bootstrap is a no-op when a super admin exists."""
        store = InMemoryDataStore()
        bootstrap = {"admin_email": "superadmin@saanify.com", "admin_name": "Super Admin", "admin_password": "pw"}

        created = bootstrap_super_admin(store, bootstrap)
        again = bootstrap_super_admin(store, bootstrap)

        assert created["email"] == "superadmin@saanify.com"
        assert again is None
        assert store.count("users", role=SUPER_ADMIN_ROLE) == 1

    def test_bootstrap_without_password(self):
        """Test a random password is used when none is configured."""
        store = InMemoryDataStore()

        created = bootstrap_super_admin(store, {"admin_email": "superadmin@saanify.com", "admin_password": ""})

        assert created["password"].startswith("scrypt$")
        assert not verify_password("", created["password"])
