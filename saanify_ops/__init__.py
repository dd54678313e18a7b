"""Saanify operations tooling: backups, recovery and release orchestration."""

__version__ = "0.3.0"
__author__ = "Saanify Team"
