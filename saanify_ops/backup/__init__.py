"""Backup and recovery for saanify-ops."""

from .manager import BackupManager
from .models import ActionStatus, BackupPoint, RecoveryAction
from .recovery import RecoveryEngine
from .storage import BackupStorage

__all__ = ["ActionStatus", "BackupManager", "BackupPoint", "BackupStorage", "RecoveryAction", "RecoveryEngine"]
