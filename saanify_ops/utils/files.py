"""File operations utilities for saanify-ops."""

import hashlib
import json
import os
import stat
from typing import Any, Dict, Iterable

SECRET_MARKERS = ("SECRET", "PASSWORD", "TOKEN", "KEY", "DATABASE_URL")
MASK = "********"


def canonical_json_bytes(data: Any) -> bytes:
    """Deterministic serialization: sorted keys, compact separators, UTF-8."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """SHA-256 digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def payload_digest(payload: Any) -> str:
    """Digest of a payload in its canonical serialized form."""
    return sha256_hex(canonical_json_bytes(payload))


def is_secret_key(key: str) -> bool:
    upper = key.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def mask_secrets(values: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``values`` with secret-looking entries masked."""
    return {key: (MASK if is_secret_key(key) and value else value) for key, value in values.items()}


class FileManager:
    """Manages file operations for saanify-ops."""

    def __init__(self, verbose: bool = False):
        """Initialize file manager."""
        self.verbose = verbose

    def ensure_directories(self, paths: Iterable[str]) -> None:
        """Create each directory if it does not exist."""
        for path in paths:
            os.makedirs(path, exist_ok=True)

    def write_bytes(self, path: str, data: bytes, private: bool = False) -> str:
        """
        Write bytes durably: write to a sibling temp file, fsync, rename.

        Args:
            path: Destination file path
            data: Content to write
            private: Restrict permissions to the owner (600)

        Returns:
            str: Path written
        """
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        if private:
            os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)  # 600

        os.replace(tmp_path, path)

        if self.verbose:
            print(f"Wrote {len(data)} bytes: {path}")

        return path

    def write_json(self, path: str, data: Any, private: bool = False) -> str:
        """Write a human-readable JSON document."""
        content = json.dumps(data, indent=2, default=str, ensure_ascii=False) + "\n"
        return self.write_bytes(path, content.encode("utf-8"), private=private)

    def read_json(self, path: str) -> Any:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def read_env_file(self, path: str) -> Dict[str, str]:
        """
        Parse a ``KEY=VALUE`` env file, ignoring blank lines and comments.

        Args:
            path: Path to env file

        Returns:
            Dict[str, str]: Parsed variables (empty if the file does not exist)
        """
        variables: Dict[str, str] = {}

        if not os.path.exists(path):
            return variables

        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                if key.startswith("export "):
                    key = key[len("export "):].strip()

                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                    value = value[1:-1]

                if key:
                    variables[key] = value

        return variables

    def read_text_files(self, paths: Iterable[str], base_dir: str = ".") -> Dict[str, Any]:
        """
        Read a list of project files into a ``{path: content}`` snapshot.

        Missing files map to None so the snapshot records their absence.
        """
        snapshot: Dict[str, Any] = {}
        for rel_path in paths:
            full_path = os.path.join(base_dir, rel_path)
            if os.path.isfile(full_path):
                with open(full_path, encoding="utf-8", errors="replace") as f:
                    snapshot[rel_path] = f.read()
            else:
                snapshot[rel_path] = None

        if self.verbose:
            present = sum(1 for content in snapshot.values() if content is not None)
            print(f"Captured {present}/{len(snapshot)} critical files")

        return snapshot
