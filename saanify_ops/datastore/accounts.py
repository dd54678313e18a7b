"""Account helpers: password hashing and super-admin bootstrap."""

import base64
import hmac
import logging
import os
import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .base import SUPER_ADMIN_ROLE, DataStore

logger = logging.getLogger(__name__)

# Interactive-login cost parameters
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_LENGTH = 32


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def new_record_id() -> str:
    return uuid.uuid4().hex


def _scrypt(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=SCRYPT_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)


def hash_password(password: str) -> str:
    """
    Hash a password with scrypt.

    Args:
        password: Plain-text password

    Returns:
        str: ``scrypt$<salt>$<hash>`` with base64 components
    """
    salt = os.urandom(16)
    digest = _scrypt(salt).derive(password.encode("utf-8"))
    return "scrypt${}${}".format(
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


def verify_password(password: str, hashed: str) -> bool:
    """Check a password against a ``hash_password`` result."""
    try:
        scheme, salt_b64, digest_b64 = hashed.split("$")
    except (AttributeError, ValueError):
        return False

    if scheme != "scrypt":
        return False

    try:
        _scrypt(base64.b64decode(salt_b64)).verify(password.encode("utf-8"), base64.b64decode(digest_b64))
    except (InvalidKey, ValueError):
        return False
    return True


def tokens_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time shared-secret comparison; an unset secret never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def generate_password(length: int = 20) -> str:
    alphabet = "".join(c for c in string.ascii_letters + string.digits if c not in "0O1lI")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def build_super_admin(bootstrap: Dict[str, Any], password: Optional[str] = None) -> Dict[str, Any]:
    """
    Build a super-admin user record from bootstrap configuration.

    Args:
        bootstrap: The ``bootstrap`` configuration section
        password: Plain-text password (defaults to the configured one)

    Returns:
        Dict[str, Any]: User record with a hashed password
    """
    now = utc_now()
    return {
        "id": new_record_id(),
        "email": bootstrap["admin_email"],
        "name": bootstrap.get("admin_name") or "Super Admin",
        "password": hash_password(password or bootstrap["admin_password"]),
        "role": SUPER_ADMIN_ROLE,
        "is_active": True,
        "society_account_id": None,
        "created_at": now,
        "updated_at": now,
    }


def bootstrap_super_admin(store: DataStore, bootstrap: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Create the configured super-admin account if no super admin exists.

    When no password is configured a random one is generated; it is never
    logged and must be reset through the application.

    Args:
        store: Primary data store
        bootstrap: The ``bootstrap`` configuration section

    Returns:
        Optional[Dict[str, Any]]: The created record, or None if one already existed
    """
    if store.count("users", role=SUPER_ADMIN_ROLE) > 0:
        return None

    password = bootstrap.get("admin_password") or None
    if password is None:
        logger.warning(
            "No bootstrap admin password configured; %s was created with a random password",
            bootstrap["admin_email"],
        )
        password = generate_password()

    record = build_super_admin(bootstrap, password=password)
    created = store.create("users", record)
    logger.info("Bootstrapped super admin %s", created["email"])
    return created
