"""Pytest configuration and shared fixtures."""

import os
import shutil
import tempfile
from unittest.mock import MagicMock

import pytest

from saanify_ops.config import ConfigManager
from saanify_ops.datastore.memory import InMemoryDataStore

TEST_TOKEN = "test-ops-token"


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Cleanup
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def project_directory(temp_directory):
    """Minimal Saanify project layout."""
    file_structure = {
        "package.json": '{"name": "saanify", "version": "0.1.0"}\n',
        "tsconfig.json": "{}\n",
        "prisma/schema.prisma": "model User {\n  id String @id\n}\n",
        "src/app/page.tsx": "export default function Page() { return null }\n",
        ".env": 'DATABASE_URL="file:./dev.db"\nNEXTAUTH_SECRET=dev-secret\nNODE_ENV=development\n',
    }

    for rel_path, content in file_structure.items():
        path = os.path.join(temp_directory, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)

    return temp_directory


@pytest.fixture
def ops_environ():
    """Environment handed to ConfigManager.load_config."""
    return {
        "DATABASE_URL": "memory://",
        "NEXTAUTH_SECRET": "nextauth-secret",
        "SAANIFY_OPS_TOKEN": TEST_TOKEN,
        "SAANIFY_ADMIN_PASSWORD": "Admin@123456",
    }


@pytest.fixture
def ops_config(project_directory, ops_environ):
    """Resolved configuration rooted at the test project, with fast retries."""
    config = ConfigManager(path=project_directory).load_config(environ=ops_environ)
    config["health"]["retry"] = {"max_attempts": 1, "initial_delay": 0.0, "max_delay": 0.0}
    config["deploy"]["retry"] = {"max_attempts": 2, "initial_delay": 0.0, "max_delay": 0.0}
    config["deploy"]["hook_url"] = "https://deploy.example.com/hooks/abc"
    return config


@pytest.fixture
def sample_records():
    """Two society accounts and three user accounts (one super admin)."""
    timestamp = "2024-01-15T10:00:00+00:00"
    return {
        "society_accounts": [
            {
                "id": "soc-001",
                "name": "Green Valley Society",
                "admin_name": "Asha Rao",
                "email": "admin@greenvalley.example",
                "subscription_plan": "BASIC",
                "status": "ACTIVE",
                "created_at": timestamp,
                "updated_at": timestamp,
            },
            {
                "id": "soc-002",
                "name": "Lakeview Residency",
                "admin_name": "Vikram Shah",
                "email": "admin@lakeview.example",
                "subscription_plan": "TRIAL",
                "status": "TRIAL",
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        ],
        "users": [
            {
                "id": "user-001",
                "email": "superadmin@saanify.com",
                "name": "Super Admin",
                "password": "scrypt$c2FsdA==$aGFzaA==",
                "role": "SUPER_ADMIN",
                "created_at": timestamp,
                "updated_at": timestamp,
            },
            {
                "id": "user-002",
                "email": "asha@greenvalley.example",
                "name": "Asha Rao",
                "password": "scrypt$c2FsdA==$aGFzaA==",
                "role": "ADMIN",
                "society_account_id": "soc-001",
                "created_at": timestamp,
                "updated_at": timestamp,
            },
            {
                "id": "user-003",
                "email": "vikram@lakeview.example",
                "name": "Vikram Shah",
                "password": "scrypt$c2FsdA==$aGFzaA==",
                "role": "ADMIN",
                "society_account_id": "soc-002",
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        ],
    }


def seed(store, records):
    """Create records parents first."""
    for collection in ("society_accounts", "users"):
        for record in records[collection]:
            store.create(collection, record)
    return store


@pytest.fixture
def seeder():
    """The record seeding helper, for tests that build their own stores."""
    return seed


@pytest.fixture
def ops_token():
    return TEST_TOKEN


@pytest.fixture
def seeded_store(sample_records):
    """In-memory store holding the sample records."""
    return seed(InMemoryDataStore(), sample_records)


@pytest.fixture
def mock_http_session():
    """HTTP session whose requests all return 200."""
    session = MagicMock()
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"job": {"id": "job-42", "state": "PENDING", "createdAt": 1700000000}}
    session.get.return_value = response
    session.post.return_value = response
    return session


@pytest.fixture(autouse=True)
def isolate_filesystem(temp_directory, monkeypatch):
    """Isolate filesystem operations to temporary directory."""
    for key in (
        "SAANIFY_OPS_TOKEN",
        "DATABASE_URL",
        "SAANIFY_DEPLOY_HOOK_URL",
        "SAANIFY_BASE_URL",
        "NEXTAUTH_SECRET",
        "SAANIFY_BACKUP_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(temp_directory)
    return temp_directory
