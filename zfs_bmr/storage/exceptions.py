"""Custom exceptions for backup and restore operations.

Exception Hierarchy:
    BackupError (base)
        ├── ConfigurationMissingError
        ├── PreconditionFailedError
        │   ├── InvalidDevicePathError
        │   ├── ToolMissingError
        │   ├── PoolNotFoundError
        │   ├── InsufficientSpaceError
        │   └── NotRootError
        ├── ConnectivityFailedError
        ├── MountError
        │   ├── MountNotFoundError
        │   ├── MountPermissionError
        │   ├── AlreadyMountedError
        │   └── MountBackendError
        ├── SnapshotError
        │   ├── SnapshotExistsError
        │   └── SnapshotBackendError
        ├── PipelineStageFailedError
        │   └── ShortWriteError
        ├── VerificationFailedError
        ├── ProvisioningFailedError
        └── OperationInterrupted

    ResourceLeakGuardTriggered is raised nowhere: cleanup code builds one to
    log it, so a failing cleanup never hides the error that caused it.

Usage:
    from zfs_bmr.storage.exceptions import SnapshotExistsError

    if "dataset already exists" in stderr:
        raise SnapshotExistsError(snapshot_name)
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class BackupError(Exception):
    """Base exception for all backup/restore operations."""

    exit_code = 1


class ConfigurationMissingError(BackupError):
    """No usable passphrase or target configuration."""

    exit_code = 2

    def __init__(self, what: str, hint: str = ""):
        self.what = what
        self.hint = hint
        msg = f"Configuration missing: {what}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class PreconditionFailedError(BackupError):
    """Base exception for an environment that cannot run the operation."""

    exit_code = 3


class InvalidDevicePathError(PreconditionFailedError):
    """A device argument is not a plain /dev/ node path."""

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid device path {path!r}: {reason}")


class ToolMissingError(PreconditionFailedError):
    """One or more required external commands are not installed."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(f"Missing required commands: {' '.join(self.tools)}")


class PoolNotFoundError(PreconditionFailedError):
    """The ZFS pool to back up does not exist."""

    def __init__(self, pool: str):
        self.pool = pool
        super().__init__(f"ZFS pool '{pool}' not found")


class InsufficientSpaceError(PreconditionFailedError):
    """The target filesystem has less free space than required."""

    def __init__(self, path: str, available_bytes: int, required_bytes: int):
        self.path = path
        self.available_bytes = available_bytes
        self.required_bytes = required_bytes
        super().__init__(
            f"Insufficient space on {path}: "
            f"{available_bytes // 1024**3}GB available, "
            f"need at least {required_bytes // 1024**3}GB"
        )


class NotRootError(PreconditionFailedError):
    """Operation requires root privileges."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} must run as root")


class ConnectivityFailedError(BackupError):
    """Remote target is unreachable."""

    exit_code = 4

    def __init__(self, host: str, reason: str = ""):
        self.host = host
        self.reason = reason
        msg = f"Network target {host} is not reachable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(BackupError):
    """Base exception for mount-related errors."""

    exit_code = 5

    def __init__(self, source: str, mount_point: str, message: str):
        self.source = source
        self.mount_point = mount_point
        super().__init__(f"Failed to mount {source} at {mount_point}: {message}")


class MountNotFoundError(MountError):
    """Backing device or share does not exist."""


class MountPermissionError(MountError):
    """Mount refused due to credentials or privileges."""


class AlreadyMountedError(MountError):
    """Mount point is already in use."""

    def __init__(self, source: str, mount_point: str):
        super().__init__(source, mount_point, "mount point already in use")


class MountBackendError(MountError):
    """Mount command failed for any other reason."""


class SnapshotError(BackupError):
    """Base exception for snapshot lifecycle errors."""

    exit_code = 6


class SnapshotExistsError(SnapshotError):
    """Snapshot with the same label already exists (same-minute collision)."""

    def __init__(self, snapshot: str):
        self.snapshot = snapshot
        super().__init__(f"Snapshot already exists: {snapshot}")


class SnapshotBackendError(SnapshotError):
    """zfs refused to create or destroy the snapshot."""

    def __init__(self, snapshot: str, message: str):
        self.snapshot = snapshot
        super().__init__(f"Snapshot operation failed for {snapshot}: {message}")


class PipelineStageFailedError(BackupError):
    """A stage of a streaming transform pipeline exited unsuccessfully."""

    exit_code = 7

    def __init__(
        self,
        stage: str,
        index: int,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.stage = stage
        self.index = index
        self.returncode = returncode
        self.stderr = stderr
        msg = f"Pipeline stage {index} ({stage}) failed"
        if returncode is not None:
            msg += f" with exit code {returncode}"
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ShortWriteError(PipelineStageFailedError):
    """Pipeline completed but produced less output than required."""

    def __init__(self, stage: str, index: int, bytes_written: int):
        self.stage = stage
        self.index = index
        self.returncode = None
        self.stderr = ""
        self.bytes_written = bytes_written
        BackupError.__init__(
            self,
            f"Pipeline stage {index} ({stage}) wrote {bytes_written} bytes; output required",
        )


class VerificationReason(str, Enum):
    DECRYPT_FAILED = "DecryptFailed"
    DECOMPRESS_FAILED = "DecompressFailed"
    STRUCTURE_INVALID = "StructureInvalid"


class VerificationFailedError(BackupError):
    """An artifact failed integrity verification."""

    exit_code = 8

    def __init__(self, artifact: str, reason: VerificationReason, detail: str = ""):
        self.artifact = artifact
        self.reason = reason
        self.detail = detail
        msg = f"Verification failed for {artifact}: {reason.value}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class ProvisioningFailedError(BackupError):
    """A restore provisioning transition failed."""

    exit_code = 9

    def __init__(self, transition: str, message: str):
        self.transition = transition
        super().__init__(f"Provisioning failed at {transition}: {message}")


class OperationInterrupted(BackupError):
    """Operator signal received; raised so normal unwinding runs cleanup."""

    exit_code = 130

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")


class ResourceLeakGuardTriggered(Exception):
    """A cleanup action failed. Logged, never raised past the cleanup path."""

    def __init__(self, resource: str, cause: BaseException):
        self.resource = resource
        self.cause = cause
        super().__init__(f"Cleanup of {resource} failed: {cause}")
