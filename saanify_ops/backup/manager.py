"""Backup management for the primary data store and project configuration."""

import os
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..datastore.base import COLLECTIONS, DataStore
from ..utils.errors import (
    BackupCreationError,
    ConfigurationError,
    DataStoreError,
    IntegrityError,
    create_error_suggestions,
)
from ..utils.files import FileManager, canonical_json_bytes, mask_secrets, payload_digest, sha256_hex
from .encryption import ALGORITHM, ENCRYPTED_SUFFIX, BackupCipher
from .models import BACKUP_KINDS, BackupPoint, timestamp_slug, utc_now
from .storage import BackupStorage

MANIFEST_VERSION = 1
ENVIRONMENT_ARTIFACT = "environment.json"
DATABASE_ARTIFACT = "database.json"
FILES_ARTIFACT = "files.json"


class BackupManager:
    """Creates, lists and loads checksummed backup units."""

    def __init__(
        self,
        config: Dict[str, Any],
        store: DataStore,
        verbose: bool = False,
        storage: Optional[BackupStorage] = None,
        clock: Callable = utc_now,
    ):
        """
        Initialize backup manager.

        Args:
            config: Resolved saanify-ops configuration
            store: Primary data store to snapshot
            verbose: Enable verbose output
            storage: Backup storage (defaults to paths.backups_dir)
            clock: Returns the current UTC datetime
        """
        self.config = config
        self.store = store
        self.verbose = verbose
        self.clock = clock
        self.file_manager = FileManager(verbose=verbose)
        self.storage = storage or BackupStorage(config["paths"]["backups_dir"], verbose=verbose, file_manager=self.file_manager)

    def create(self, kind: str = "full", description: str = "") -> BackupPoint:
        """
        Snapshot configuration, data and critical files into a new unit.

        Every kind carries the complete payload so that any unit can be
        restored on its own.

        Args:
            kind: "full" or "incremental"
            description: Free-text description

        Returns:
            BackupPoint: Descriptor of the new unit

        Raises:
            BackupCreationError: If the snapshot or any write fails
        """
        if kind not in BACKUP_KINDS:
            raise BackupCreationError(f"Unknown backup kind: {kind}", details=f"Expected one of {', '.join(BACKUP_KINDS)}")

        moment = self.clock()
        backup_id = f"backup-{timestamp_slug(moment)}"
        while self.storage.exists(backup_id):
            moment += timedelta(microseconds=1)
            backup_id = f"backup-{timestamp_slug(moment)}"

        if self.verbose:
            print(f"Creating {kind} backup {backup_id}")

        try:
            cipher = BackupCipher.from_config(self.config, create=True)
        except (ConfigurationError, OSError) as e:
            raise BackupCreationError(
                f"Cannot set up encryption for backup {backup_id}",
                details=getattr(e, "message", str(e)),
                suggestions=getattr(e, "suggestions", None),
            ) from e

        try:
            payload = {
                "collections": self.store.export(),
                "migrations": self.store.applied_migrations(),
            }
        except DataStoreError as e:
            raise BackupCreationError(f"Failed to export data for backup {backup_id}", details=e.message) from e

        try:
            environment = self._snapshot_environment(include_secrets=cipher is not None)
            files = self.file_manager.read_text_files(
                self.config["backup"]["critical_files"], base_dir=self.config["project"]["root"]
            )
        except OSError as e:
            raise BackupCreationError(f"Failed to read project state for backup {backup_id}: {e}") from e

        database_bytes = canonical_json_bytes(payload)
        artifacts = {
            ENVIRONMENT_ARTIFACT: canonical_json_bytes(environment),
            DATABASE_ARTIFACT: database_bytes,
            FILES_ARTIFACT: canonical_json_bytes({"files": files}),
        }
        if cipher is not None:
            artifacts = {
                f"{name}{ENCRYPTED_SUFFIX}": cipher.encrypt(backup_id, name, data) for name, data in artifacts.items()
            }

        manifest = {
            "version": MANIFEST_VERSION,
            "id": backup_id,
            "timestamp": moment.isoformat(),
            "kind": kind,
            "description": description,
            "files": {name: sha256_hex(data) for name, data in artifacts.items()},
            "checksum": sha256_hex(database_bytes),
            "counts": {name: len(payload["collections"][name]) for name in COLLECTIONS},
            "migrations": list(payload["migrations"]),
            "encryption": {"algorithm": ALGORITHM, "key_id": cipher.key_id} if cipher is not None else None,
        }

        unit_dir = self.storage.write_unit(backup_id, artifacts, manifest)

        point = BackupPoint.from_manifest(manifest, unit_dir, size_bytes=self.storage.unit_size(backup_id))

        if self.verbose:
            counts = ", ".join(f"{name}={count}" for name, count in point.counts.items())
            print(f"Backup {backup_id} created ({counts})")

        return point

    def list(self) -> List[Dict[str, Any]]:
        """
        List valid backups, most recent first.

        Returns:
            List[Dict[str, Any]]: Descriptors with id, timestamp, kind, size and checksum
        """
        return [self._point_from_manifest(manifest).to_dict() for manifest in self.storage.list_manifests()]

    def get(self, backup_id: str) -> BackupPoint:
        """Get a backup descriptor; NotFoundError if there is no valid unit."""
        return self._point_from_manifest(self.storage.read_manifest(backup_id))

    def latest(self) -> Optional[BackupPoint]:
        """Most recent valid backup, if any."""
        manifests = self.storage.list_manifests()
        if not manifests:
            return None
        return self._point_from_manifest(manifests[0])

    def load_verified_payload(self, backup_id: str) -> Dict[str, Any]:
        """
        Load a unit's data payload after verifying every digest.

        Artifact digests are checked on the stored bytes before anything is
        decrypted or parsed; the payload checksum is then recomputed over
        the canonical serialization of the parsed payload.

        Args:
            backup_id: Unit to load

        Returns:
            Dict[str, Any]: ``{"collections": {...}, "migrations": [...]}``

        Raises:
            NotFoundError: If the unit does not exist
            IntegrityError: If any digest differs or the payload is malformed
        """
        manifest, artifacts = self._read_artifacts(backup_id)

        if DATABASE_ARTIFACT not in artifacts:
            raise IntegrityError(
                f"Backup {backup_id} has no {DATABASE_ARTIFACT}",
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.storage.backups_dir),
            )

        payload = self.storage.parse_artifact(backup_id, DATABASE_ARTIFACT, artifacts[DATABASE_ARTIFACT])

        actual = payload_digest(payload)
        if actual != manifest["checksum"]:
            raise IntegrityError(
                f"Payload checksum mismatch in backup {backup_id}",
                details=f"expected {manifest['checksum']}, got {actual}",
                suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.storage.backups_dir),
            )

        if not isinstance(payload, dict) or not isinstance(payload.get("collections"), dict):
            raise IntegrityError(f"Payload of backup {backup_id} has no collections")

        return payload

    def verify(self, backup_id: str) -> Dict[str, Any]:
        """
        Check a unit without restoring it.

        Returns:
            Dict[str, Any]: ``{"valid": bool, "backup_id": ..., "error": ...}``
        """
        try:
            self.load_verified_payload(backup_id)
        except IntegrityError as e:
            return {"valid": False, "backup_id": backup_id, "error": e.to_dict()}
        return {"valid": True, "backup_id": backup_id, "error": None}

    def load_project_state(self, backup_id: str) -> Dict[str, Any]:
        """
        Load the critical files and env file captured in a unit.

        Returns:
            Dict[str, Any]: ``{"files": {path: content or None}, "env_file_content": str or None}``.
            The env file content is only captured in encrypted units.

        Raises:
            NotFoundError: If the unit does not exist
            IntegrityError: If any artifact fails verification
        """
        _, artifacts = self._read_artifacts(backup_id)

        files_doc = self._parse_optional(backup_id, FILES_ARTIFACT, artifacts)
        files = files_doc.get("files") or {}
        if not isinstance(files, dict):
            raise IntegrityError(f"Artifact {FILES_ARTIFACT} in backup {backup_id} has no file map")

        environment = self._parse_optional(backup_id, ENVIRONMENT_ARTIFACT, artifacts)

        return {"files": files, "env_file_content": environment.get("content")}

    def _parse_optional(self, backup_id: str, name: str, artifacts: Dict[str, bytes]) -> Dict[str, Any]:
        """Parsed JSON object artifact, or an empty dict when the unit lacks it."""
        if name not in artifacts:
            return {}
        document = self.storage.parse_artifact(backup_id, name, artifacts[name])
        if not isinstance(document, dict):
            raise IntegrityError(f"Artifact {name} in backup {backup_id} is not a JSON object")
        return document

    def _read_artifacts(self, backup_id: str) -> Tuple[Dict[str, Any], Dict[str, bytes]]:
        """Manifest and plaintext artifacts keyed by their unencrypted names."""
        manifest = self.storage.read_manifest(backup_id)
        stored = self.storage.read_verified_artifacts(backup_id, manifest)

        encryption = manifest.get("encryption")
        if not encryption:
            return manifest, stored

        cipher = BackupCipher.from_config(self.config, require=True)
        if cipher.key_id != encryption.get("key_id"):
            raise ConfigurationError(
                f"Backup {backup_id} was encrypted with a different key",
                details=f"backup key {encryption.get('key_id')}, configured key {cipher.key_id}",
                suggestions=["Set SAANIFY_BACKUP_KEY to the key that was in use when the backup was taken"],
            )

        artifacts: Dict[str, bytes] = {}
        for name, blob in stored.items():
            if name.endswith(ENCRYPTED_SUFFIX):
                plain_name = name[: -len(ENCRYPTED_SUFFIX)]
                artifacts[plain_name] = cipher.decrypt(backup_id, plain_name, blob, backups_dir=self.storage.backups_dir)
            else:
                artifacts[name] = blob
        return manifest, artifacts

    def _point_from_manifest(self, manifest: Dict[str, Any]) -> BackupPoint:
        """Build a descriptor including the unit's current size."""
        backup_id = manifest["id"]
        return BackupPoint.from_manifest(
            manifest, self.storage.unit_path(backup_id), size_bytes=self.storage.unit_size(backup_id)
        )

    def _snapshot_environment(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Env file values merged with tracked environment values.

        Secrets are masked unless the unit is encrypted, in which case the
        raw env file is kept too so that it can be restored.
        """
        env_file = self.config["paths"].get("env_file")
        values: Dict[str, Any] = {}
        if env_file:
            values.update(self.file_manager.read_env_file(env_file))
        values.update(self.config["environment"].get("values", {}))

        content = None
        if include_secrets and env_file and os.path.isfile(env_file):
            with open(env_file, encoding="utf-8") as f:
                content = f.read()

        return {
            "env_file": os.path.basename(env_file) if env_file else None,
            "keys": sorted(values),
            "values": values if include_secrets else mask_secrets(values),
            "content": content,
        }
