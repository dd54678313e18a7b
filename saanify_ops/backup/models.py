"""Records produced by the backup manager and the recovery engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

BACKUP_KINDS = ("full", "incremental")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_slug(moment: datetime) -> str:
    """Sortable identifier fragment: ``YYYYMMDD-HHMMSS-ffffff``."""
    return moment.strftime("%Y%m%d-%H%M%S-%f")


class ActionStatus(Enum):
    """Lifecycle of a recovery action; completed and failed are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    ActionStatus.PENDING: {ActionStatus.RUNNING, ActionStatus.FAILED},
    ActionStatus.RUNNING: {ActionStatus.COMPLETED, ActionStatus.FAILED},
    ActionStatus.COMPLETED: set(),
    ActionStatus.FAILED: set(),
}


@dataclass(frozen=True)
class BackupPoint:
    """Descriptor of a valid backup unit, read from its manifest."""

    id: str
    timestamp: str
    kind: str
    description: str
    checksum: str
    files: Dict[str, str]
    path: str
    size_bytes: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    migrations: List[str] = field(default_factory=list)
    encrypted: bool = False

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any], path: str, size_bytes: int = 0) -> "BackupPoint":
        return cls(
            id=manifest["id"],
            timestamp=manifest["timestamp"],
            kind=manifest.get("kind", "full"),
            description=manifest.get("description", ""),
            checksum=manifest["checksum"],
            files=dict(manifest["files"]),
            path=path,
            size_bytes=size_bytes,
            counts=dict(manifest.get("counts", {})),
            migrations=list(manifest.get("migrations", [])),
            encrypted=bool(manifest.get("encryption")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "kind": self.kind,
            "description": self.description,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "path": self.path,
            "counts": dict(self.counts),
            "encrypted": self.encrypted,
        }


@dataclass
class RecoveryAction:
    """An audited restore, rollback or repair operation."""

    id: str
    kind: str
    target: str
    status: ActionStatus = ActionStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: ActionStatus) -> None:
        """
        Move to ``status``.

        Raises:
            ValueError: If the move would reopen or skip a lifecycle state
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Recovery action {self.id} cannot move from {self.status.value} to {status.value}")

        self.status = status
        if status is ActionStatus.RUNNING:
            self.started_at = utc_now().isoformat()
        elif self.terminal:
            self.finished_at = utc_now().isoformat()

    def complete(self, result: Dict[str, Any]) -> None:
        self.result = result
        self.transition(ActionStatus.COMPLETED)

    def fail(self, error: Dict[str, Any]) -> None:
        self.error = error
        self.transition(ActionStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "target": self.target,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "result": self.result,
        }
