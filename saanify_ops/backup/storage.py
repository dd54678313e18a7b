"""On-disk layout of backup units."""

import json
import os
import re
import shutil
from typing import Any, Dict, List, Optional

from ..utils.errors import BackupCreationError, IntegrityError, NotFoundError, create_error_suggestions
from ..utils.files import FileManager, sha256_hex

MANIFEST_NAME = "manifest.json"
BACKUP_ID_PATTERN = re.compile(r"^backup-\d{8}-\d{6}-\d{6}$")


class BackupStorage:
    """
    Stores backup units as ``<backups_dir>/<backup-id>/``.

    A unit is valid only once its manifest exists; the manifest is always
    the last file written.
    """

    def __init__(self, backups_dir: str, verbose: bool = False, file_manager: Optional[FileManager] = None):
        """
        Initialize backup storage.

        Args:
            backups_dir: Root directory holding backup units
            verbose: Enable verbose output
            file_manager: File manager used for durable writes
        """
        self.backups_dir = backups_dir
        self.verbose = verbose
        self.file_manager = file_manager or FileManager(verbose=verbose)

    def unit_path(self, backup_id: str) -> str:
        """Get the directory of a backup unit, rejecting malformed ids."""
        if not BACKUP_ID_PATTERN.match(backup_id or ""):
            raise NotFoundError(
                f"Backup not found: {backup_id}",
                details="Backup ids look like backup-YYYYMMDD-HHMMSS-ffffff",
                suggestions=create_error_suggestions("backup_missing"),
            )
        return os.path.join(self.backups_dir, backup_id)

    def exists(self, backup_id: str) -> bool:
        """Whether a unit directory exists, valid or not."""
        try:
            return os.path.isdir(self.unit_path(backup_id))
        except NotFoundError:
            return False

    def write_unit(self, backup_id: str, artifacts: Dict[str, bytes], manifest: Dict[str, Any]) -> str:
        """
        Write payload artifacts, then the manifest.

        Args:
            backup_id: New unit id
            artifacts: Artifact file name -> serialized bytes
            manifest: Manifest document, written last

        Returns:
            str: Path of the unit directory

        Raises:
            BackupCreationError: If any write fails; the partial unit is removed
        """
        unit_dir = self.unit_path(backup_id)

        try:
            os.makedirs(self.backups_dir, exist_ok=True)
            os.makedirs(unit_dir)

            for name, data in artifacts.items():
                self.file_manager.write_bytes(os.path.join(unit_dir, name), data, private=True)

            self.file_manager.write_json(os.path.join(unit_dir, MANIFEST_NAME), manifest, private=True)
        except OSError as e:
            shutil.rmtree(unit_dir, ignore_errors=True)
            raise BackupCreationError(
                f"Failed to write backup {backup_id}: {e}",
                details=f"Partial unit removed from {unit_dir}",
                suggestions=[f"Check free space and permissions on {self.backups_dir}"],
            ) from e

        if self.verbose:
            print(f"Backup unit written: {unit_dir}")

        return unit_dir

    def read_manifest(self, backup_id: str) -> Dict[str, Any]:
        """
        Read a unit's manifest.

        Raises:
            NotFoundError: If the unit or its manifest is absent
            IntegrityError: If the manifest cannot be parsed
        """
        manifest_path = os.path.join(self.unit_path(backup_id), MANIFEST_NAME)
        if not os.path.isfile(manifest_path):
            raise NotFoundError(
                f"Backup not found: {backup_id}",
                details="No valid backup unit (with manifest) has this id",
                suggestions=create_error_suggestions("backup_missing"),
            )

        try:
            manifest = self.file_manager.read_json(manifest_path)
        except (OSError, ValueError) as e:
            raise IntegrityError(
                f"Manifest of backup {backup_id} is unreadable",
                details=str(e),
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
            ) from e

        missing = [key for key in ("id", "timestamp", "checksum", "files") if key not in manifest]
        if missing or manifest.get("id") != backup_id:
            raise IntegrityError(
                f"Manifest of backup {backup_id} is malformed",
                details=f"Missing fields: {', '.join(missing)}" if missing else "Manifest id does not match unit",
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
            )

        return manifest

    def read_verified_artifacts(self, backup_id: str, manifest: Dict[str, Any]) -> Dict[str, bytes]:
        """
        Read every manifest-listed artifact and check its SHA-256.

        Raises:
            IntegrityError: If an artifact is missing or its digest differs
        """
        unit_dir = self.unit_path(backup_id)
        artifacts: Dict[str, bytes] = {}

        for name, expected in sorted(manifest["files"].items()):
            artifact_path = os.path.join(unit_dir, name)
            try:
                with open(artifact_path, "rb") as f:
                    data = f.read()
            except OSError as e:
                raise IntegrityError(
                    f"Backup {backup_id} is missing artifact {name}",
                    details=str(e),
                    suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
                ) from e

            actual = sha256_hex(data)
            if actual != expected:
                raise IntegrityError(
                    f"Checksum mismatch for {name} in backup {backup_id}",
                    details=f"expected {expected}, got {actual}",
                    suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
                )

            artifacts[name] = data

        return artifacts

    def list_manifests(self) -> List[Dict[str, Any]]:
        """Manifests of all valid units, most recent first."""
        if not os.path.isdir(self.backups_dir):
            return []

        manifests = []
        for entry in os.listdir(self.backups_dir):
            if not BACKUP_ID_PATTERN.match(entry):
                continue
            try:
                manifests.append(self.read_manifest(entry))
            except (NotFoundError, IntegrityError):
                # Interrupted or damaged units are not backup points
                continue

        manifests.sort(key=lambda m: (m["timestamp"], m["id"]), reverse=True)
        return manifests

    def unit_size(self, backup_id: str) -> int:
        """Total size in bytes of a unit's files."""
        unit_dir = self.unit_path(backup_id)
        total = 0
        for name in os.listdir(unit_dir):
            path = os.path.join(unit_dir, name)
            if os.path.isfile(path):
                total += os.path.getsize(path)
        return total

    def parse_artifact(self, backup_id: str, name: str, data: bytes) -> Any:
        """Decode a JSON artifact."""
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise IntegrityError(
                f"Artifact {name} in backup {backup_id} is not valid JSON",
                details=str(e),
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
            ) from e
