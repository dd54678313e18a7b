"""Configuration management for saanify-ops."""

from .manager import ConfigManager
from .schemas import DEFAULT_CONFIG, OPS_CONFIG_SCHEMA

__all__ = ["ConfigManager", "DEFAULT_CONFIG", "OPS_CONFIG_SCHEMA"]
