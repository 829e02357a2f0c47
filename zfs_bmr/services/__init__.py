"""Backup, restore and integrity-check orchestration."""

from .backup import BackupOrchestrator
from .integrity import IntegrityReport, IntegrityService
from .restore import RestoreOrchestrator

__all__ = [
    "BackupOrchestrator",
    "IntegrityReport",
    "IntegrityService",
    "RestoreOrchestrator",
]
