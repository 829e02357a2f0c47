"""Domain model for backup and restore runs.

Targets are a closed set of tagged variants, each carrying its own typed
parameters. Run progress is recorded through explicit state enums instead of
string flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Generic, Optional, TypeVar, Union

LABEL_FORMAT = "%Y%m%d-%H%M"
SNAPSHOT_PREFIX = "backup-"
CIPHER_EXT = "gpg"


# ==============================================================================
# Target Domain
# ==============================================================================


class TargetKind(Enum):
    """Where artifacts are written to or read from."""

    NETWORK = "nas"
    DEVICE = "device"
    PARTITION = "partition"
    DIRECTORY = "directory"  # Already mounted; restore/verify only


@dataclass(frozen=True)
class NetworkTarget:
    """An SMB/CIFS share, addressed as //host/share with an optional subpath."""

    host: str
    share: str
    path: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    kind = TargetKind.NETWORK

    @property
    def source(self) -> str:
        return f"//{self.host}/{self.share}"

    def describe(self) -> str:
        suffix = f"/{self.path}" if self.path else ""
        return f"NAS {self.source}{suffix}"


@dataclass(frozen=True)
class LocalDeviceTarget:
    """A whole block device; its last partition holds the backup filesystem."""

    device: str  # e.g., "/dev/sdb"

    kind = TargetKind.DEVICE

    def describe(self) -> str:
        return f"device {self.device}"


@dataclass(frozen=True)
class LocalPartitionTarget:
    partition: str  # e.g., "/dev/sdb1"

    kind = TargetKind.PARTITION

    def describe(self) -> str:
        return f"partition {self.partition}"


@dataclass(frozen=True)
class LocalDirectoryTarget:
    path: Path

    kind = TargetKind.DIRECTORY

    def describe(self) -> str:
        return f"directory {self.path}"


Target = Union[NetworkTarget, LocalDeviceTarget, LocalPartitionTarget, LocalDirectoryTarget]


# ==============================================================================
# Snapshot and Artifact Domain
# ==============================================================================


@dataclass(frozen=True)
class SnapshotRef:
    """A recursive point-in-time snapshot created for one backup run."""

    pool: str
    label: str
    recursive: bool = True

    @property
    def name(self) -> str:
        """Full snapshot name (e.g., rpool@backup-20240115-0930)."""
        return f"{self.pool}@{SNAPSHOT_PREFIX}{self.label}"


class ArtifactKind(Enum):
    """Kind of backup artifact, with its file naming parts."""

    BOOT = "boot"
    POOL = "pool"

    @property
    def prefix(self) -> str:
        return "boot-partition" if self is ArtifactKind.BOOT else "zfs-backup"

    @property
    def compression_ext(self) -> str:
        return "tar.gz" if self is ArtifactKind.BOOT else "lz4"


@dataclass(frozen=True)
class Artifact:
    """A written backup file. Never modified after the run that wrote it."""

    kind: ArtifactKind
    label: str
    path: Path
    size_bytes: int = 0

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.label, LABEL_FORMAT)


@dataclass(frozen=True)
class BackupSet:
    """Boot and pool artifacts sharing one timestamp label."""

    label: str
    boot: Optional[Artifact] = None
    pool: Optional[Artifact] = None

    @property
    def is_complete(self) -> bool:
        return self.boot is not None and self.pool is not None

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.label, LABEL_FORMAT)


# ==============================================================================
# Run State Domain
# ==============================================================================


class BackupState(Enum):
    TARGET_SELECTED = "target_selected"
    MOUNTED = "mounted"
    SNAPSHOT_CREATED = "snapshot_created"
    STREAMED = "streamed"
    VERIFIED = "verified"
    SNAPSHOT_DESTROYED = "snapshot_destroyed"
    MANIFEST_WRITTEN = "manifest_written"
    UNMOUNTED = "unmounted"
    ABORTED = "aborted"


class RestoreState(Enum):
    """Restore steps before the destination disk is provisioned."""

    SOURCE_SELECTED = "source_selected"
    SET_LOCATED = "set_located"
    PASSWORD_VERIFIED = "password_verified"
    DESTINATION_CONFIRMED = "destination_confirmed"
    PROVISIONED = "provisioned"
    ABORTED = "aborted"


class ProvisionState(Enum):
    SELECTED = "selected"
    WIPED = "wiped"
    PARTITIONED = "partitioned"
    POOL_CREATED = "pool_created"
    DATA_RESTORED = "data_restored"
    BOOT_RESTORED = "boot_restored"
    BOOTLOADER_INSTALLED = "bootloader_installed"
    DONE = "done"
    ABORTED = "aborted"


StateT = TypeVar("StateT", BackupState, RestoreState, ProvisionState)


class StateTracker(Generic[StateT]):
    """Records a linear state machine run.

    Each ``advance`` must name the immediate successor of the current state.
    ``abort`` is legal from any state that is not already terminal.
    """

    def __init__(self, states: type[StateT], log=None):
        self._order = [state for state in states if state.name != "ABORTED"]
        self._aborted = states["ABORTED"]
        self.history: list[StateT] = [self._order[0]]
        self.log = log
        if log is not None:
            log.info(f"State: {self._order[0].name}")

    @property
    def current(self) -> StateT:
        return self.history[-1]

    @property
    def is_terminal(self) -> bool:
        return self.current is self._aborted or self.current is self._order[-1]

    def advance(self, state: StateT) -> StateT:
        if self.current is self._aborted:
            raise ValueError(f"Cannot move to {state.name} after abort")
        index = self._order.index(self.current)
        if index + 1 >= len(self._order) or self._order[index + 1] is not state:
            raise ValueError(f"Illegal transition {self.current.name} -> {state.name}")
        self.history.append(state)
        if self.log is not None:
            self.log.info(f"State: {state.name}")
        return state

    def abort(self) -> StateT:
        if self.is_terminal:
            return self.current
        failed_at = self.current
        self.history.append(self._aborted)
        if self.log is not None:
            self.log.warning(f"State: ABORTED (after {failed_at.name})")
        return self._aborted


# ==============================================================================
# Run Results
# ==============================================================================


@dataclass(frozen=True)
class BackupResult:
    label: str
    backup_dir: Path
    boot_artifact: Artifact
    pool_artifact: Artifact
    manifest_path: Path
    states: tuple[BackupState, ...] = ()


@dataclass(frozen=True)
class RestoreLayout:
    """Partitions created on a destination disk during restore."""

    disk: str
    efi_partition: str
    pool_partition: str


@dataclass(frozen=True)
class ProvisionOutcome:
    layout: RestoreLayout
    root_dataset: Optional[str]
    bootloader: Optional[str]
    warnings: tuple[str, ...] = ()
    states: tuple[ProvisionState, ...] = ()


@dataclass(frozen=True)
class RestoreResult:
    label: str
    target_disk: str
    bootloader: Optional[str]
    warnings: tuple[str, ...] = ()
    states: tuple[Enum, ...] = ()


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of a successful artifact verification."""

    artifact: Artifact
    detail: str
    entries: Optional[int] = None  # Boot archives: member count
    prefix_bytes: Optional[int] = None  # Pool streams: decoded bytes inspected
