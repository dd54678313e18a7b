"""Utilities for saanify-ops."""

from .files import FileManager
from .logging import setup_logging

__all__ = ["FileManager", "setup_logging"]
