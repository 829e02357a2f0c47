"""Domain models for backup and restore runs."""

from __future__ import annotations

from .models import (
    Artifact,
    ArtifactKind,
    BackupResult,
    BackupSet,
    BackupState,
    LocalDeviceTarget,
    LocalDirectoryTarget,
    LocalPartitionTarget,
    NetworkTarget,
    ProvisionOutcome,
    ProvisionState,
    RestoreLayout,
    RestoreResult,
    RestoreState,
    SnapshotRef,
    StateTracker,
    Target,
    TargetKind,
    VerificationReport,
)


__all__ = [
    "Artifact",
    "ArtifactKind",
    "BackupResult",
    "BackupSet",
    "BackupState",
    "LocalDeviceTarget",
    "LocalDirectoryTarget",
    "LocalPartitionTarget",
    "NetworkTarget",
    "ProvisionOutcome",
    "ProvisionState",
    "RestoreLayout",
    "RestoreResult",
    "RestoreState",
    "SnapshotRef",
    "StateTracker",
    "Target",
    "TargetKind",
    "VerificationReport",
]
