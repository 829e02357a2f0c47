"""Scoped mounts for backup targets, restore sources and chroot bootstrap.

Every successful ``acquire`` registers an unmount finalizer with the
session's ``CleanupRegistry`` before returning, so a signal or crash at any
later point still unmounts. ``release`` discharges that finalizer and is
safe to call any number of times.

Network shares are mounted with a CIFS credentials file that exists only
for the duration of the ``mount`` call:

    with ephemeral_credentials(session, "backup", secret) as path:
        runner.run(["mount", "-t", "cifs", ..., "-o", f"credentials={path}"])
    # file is gone here, whether mount succeeded or not
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import (
    LocalDeviceTarget,
    LocalDirectoryTarget,
    LocalPartitionTarget,
    NetworkTarget,
    Target,
)
from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.command_runners import CommandError, CommandRunner
from zfs_bmr.storage.exceptions import (
    AlreadyMountedError,
    ConfigurationMissingError,
    MountBackendError,
    MountError,
    MountNotFoundError,
    MountPermissionError,
)
from zfs_bmr.storage.validation import validate_device_path

log = LoggerFactory.for_mount()

PROC_MOUNTS = Path("/proc/mounts")

_NOT_FOUND_HINTS = ("does not exist", "no such file", "can't find", "no such device")
_PERMISSION_HINTS = (
    "permission denied",
    "must be superuser",
    "operation not permitted",
    "access denied",
    "error(13)",
)
_ALREADY_MOUNTED_HINTS = ("already mounted", "busy")


@dataclass
class MountHandle:
    """A live mount. ``released`` flips once the finalizer has run."""

    source: str
    mount_point: Path
    fstype: Optional[str] = None
    bind: bool = False
    token: Optional[int] = None
    released: bool = False


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as octal
    for escaped, plain in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, plain)
    return value


def is_mountpoint(path: Path, proc_mounts: Path = PROC_MOUNTS) -> bool:
    """Check whether something is mounted at ``path``."""
    target = os.path.realpath(str(path))
    try:
        lines = proc_mounts.read_text(encoding="utf-8").splitlines()
    except OSError:
        return os.path.ismount(target)
    for line in lines:
        fields = line.split()
        if len(fields) >= 2 and _unescape_mount_field(fields[1]) == target:
            return True
    return False


def classify_mount_failure(source: str, mount_point: str, stderr: str) -> MountError:
    message = stderr.strip() or "mount failed"
    lowered = message.lower()
    if any(hint in lowered for hint in _ALREADY_MOUNTED_HINTS):
        return AlreadyMountedError(source, mount_point)
    if any(hint in lowered for hint in _PERMISSION_HINTS):
        return MountPermissionError(source, mount_point, message)
    if any(hint in lowered for hint in _NOT_FOUND_HINTS):
        return MountNotFoundError(source, mount_point, message)
    return MountBackendError(source, mount_point, message)


@contextmanager
def ephemeral_credentials(session: Session, username: str, password: str) -> Iterator[Path]:
    """Write a CIFS credentials file readable only by its creator.

    The file is removed when the block exits. It is also registered with the
    cleanup registry in case the process is interrupted inside the block.
    """
    path = Path(session.settings.runtime_dir) / f"backup-creds-{os.getpid()}"
    path.unlink(missing_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    token = session.cleanup.register(f"remove credentials file {path}", lambda: path.unlink(missing_ok=True))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"username={username}\npassword={password}\n")
        yield path
    finally:
        session.cleanup.discharge(token)


class MountManager:
    def __init__(self, session: Session, runner: Optional[CommandRunner] = None):
        self.session = session
        self.runner = runner or CommandRunner()

    def acquire(
        self,
        source: str,
        mount_point: Path,
        credentials: Optional[tuple[str, str]] = None,
        fstype: Optional[str] = None,
        options: Sequence[str] = (),
        bind: bool = False,
    ) -> MountHandle:
        """Mount ``source`` at ``mount_point`` and track it for release.

        Args:
            source: Device node, share (//host/share) or directory for bind mounts
            mount_point: Directory to mount on; created if missing
            credentials: (username, password) for CIFS shares
            fstype: Filesystem type passed as ``-t``
            options: Extra ``-o`` options
            bind: Perform a bind mount

        Raises:
            AlreadyMountedError: Something is already mounted at mount_point
            MountNotFoundError: Source does not exist
            MountPermissionError: Credentials or privileges rejected
            MountBackendError: Any other mount failure
        """
        mount_point = Path(mount_point)
        if is_mountpoint(mount_point):
            raise AlreadyMountedError(source, str(mount_point))
        mount_point.mkdir(parents=True, exist_ok=True)

        command = ["mount"]
        if bind:
            command.append("--bind")
        if fstype:
            command.extend(["-t", fstype])
        command.extend([source, str(mount_point)])

        try:
            if credentials is not None:
                username, password = credentials
                with ephemeral_credentials(self.session, username, password) as creds_file:
                    opts = [f"credentials={creds_file}", *options]
                    self.runner.run(
                        command + ["-o", ",".join(opts)], secrets=self.session.secrets()
                    )
            else:
                if options:
                    command.extend(["-o", ",".join(options)])
                self.runner.run(command, secrets=self.session.secrets())
        except CommandError as error:
            raise classify_mount_failure(source, str(mount_point), error.stderr) from error
        except OSError as error:
            raise MountBackendError(source, str(mount_point), str(error)) from error

        handle = MountHandle(source=source, mount_point=mount_point, fstype=fstype, bind=bind)
        handle.token = self.session.cleanup.register(
            f"unmount {mount_point}", lambda: self._unmount(handle)
        )
        log.info(f"Mounted {source} at {mount_point}")
        return handle

    def bind(self, source: Path, mount_point: Path) -> MountHandle:
        return self.acquire(str(source), mount_point, bind=True)

    def release(self, handle: Optional[MountHandle]) -> bool:
        """Unmount a handle. Never raises; returns False if unmount failed.

        A failed unmount leaves the handle unreleased and its finalizer
        registered again, so a later ``release`` or the exit sweep retries it.
        """
        if handle is None or handle.released:
            return True
        if handle.token is not None and not self.session.cleanup.discharge(handle.token):
            handle.token = self.session.cleanup.register(
                f"unmount {handle.mount_point}", lambda: self._unmount(handle)
            )
            return False
        handle.released = True
        return True

    def _unmount(self, handle: MountHandle) -> None:
        self.runner.run(["umount", str(handle.mount_point)])
        log.info(f"Unmounted {handle.mount_point}")

    def last_partition(self, device: str) -> str:
        """Return the last partition node of a whole-disk device."""
        validate_device_path(device)
        try:
            output = self.runner.run_checked(["lsblk", "-n", "-r", "-p", "-o", "NAME,TYPE", device])
        except CommandError as error:
            raise MountNotFoundError(device, "-", error.stderr.strip() or "lsblk failed") from error
        partitions = [
            fields[0]
            for fields in (line.split() for line in output.splitlines())
            if len(fields) >= 2 and fields[1] == "part"
        ]
        if not partitions:
            raise MountNotFoundError(device, "-", "no partition found on device")
        return partitions[-1]

    def acquire_target(self, target: Target, mount_point: Path) -> Optional[MountHandle]:
        """Mount whatever backs ``target``; directories need no mount."""
        if isinstance(target, LocalDirectoryTarget):
            return None
        if isinstance(target, NetworkTarget):
            if not target.username or target.password is None:
                raise ConfigurationMissingError(
                    "network share credentials", "set nas_username and nas_password"
                )
            return self.acquire(
                target.source,
                mount_point,
                credentials=(target.username, target.password),
                fstype="cifs",
                options=("uid=0", "gid=0"),
            )
        if isinstance(target, LocalDeviceTarget):
            return self.acquire(self.last_partition(target.device), mount_point)
        if isinstance(target, LocalPartitionTarget):
            return self.acquire(validate_device_path(target.partition), mount_point)
        raise TypeError(f"Unsupported target: {target!r}")

    @staticmethod
    def target_directory(target: Target, mount_point: Path) -> Path:
        """Directory holding artifacts once ``target`` is mounted."""
        if isinstance(target, LocalDirectoryTarget):
            return Path(target.path)
        if isinstance(target, NetworkTarget) and target.path:
            return Path(mount_point) / target.path.strip("/")
        return Path(mount_point)
