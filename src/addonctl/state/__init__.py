"""State management helpers for addonctl."""
from __future__ import annotations

from .models import BackupEntry, Instance, UpdateHistoryEntry, service_name_for, slugify
from .registry import IntegrityIssue, Registry, RegistryDocument

__all__ = [
    "BackupEntry",
    "Instance",
    "IntegrityIssue",
    "Registry",
    "RegistryDocument",
    "UpdateHistoryEntry",
    "service_name_for",
    "slugify",
]
