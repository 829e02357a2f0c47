"""Precondition checks run before anything destructive happens.

Every check raises a ``PreconditionFailedError`` subclass (or
``ConnectivityFailedError``) carrying enough detail for a one-line
diagnostic. Nothing here changes system state.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional

from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.command_runners import CommandRunner, which
from zfs_bmr.storage.exceptions import (
    ConnectivityFailedError,
    InsufficientSpaceError,
    InvalidDevicePathError,
    NotRootError,
    PoolNotFoundError,
    ToolMissingError,
)

log = LoggerFactory.for_system()

INVALID_PATH_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")

BACKUP_TOOLS = ("zfs", "zpool", "gpg", "tar", "lz4", "gzip")
RESTORE_TOOLS = BACKUP_TOOLS + ("sgdisk", "wipefs", "mkfs.fat", "udevadm")
NETWORK_TOOLS = ("ping", "mount.cifs")


def validate_device_path(path: str) -> str:
    """Reject anything that is not a plain /dev/ node path.

    Raises:
        InvalidDevicePathError: If the path is outside /dev/ or contains shell metacharacters
    """
    if not isinstance(path, str) or not path.startswith("/dev/"):
        raise InvalidDevicePathError(path, "must be a /dev/ node")
    if any(char in path for char in INVALID_PATH_CHARS):
        raise InvalidDevicePathError(path, "contains invalid characters")
    return path


def missing_tools(
    names: Iterable[str], find: Callable[[str], Optional[str]] = which
) -> list[str]:
    return [name for name in names if not find(name)]


def require_tools(
    names: Iterable[str], find: Callable[[str], Optional[str]] = which
) -> None:
    missing = missing_tools(names, find)
    if missing:
        raise ToolMissingError(missing)


def require_pool(pool: str, runner: CommandRunner) -> None:
    if not runner.succeeds(["zpool", "list", "-H", "-o", "name", pool]):
        raise PoolNotFoundError(pool)


def require_free_space(path: Path, min_bytes: int) -> int:
    """Check free space on the filesystem holding ``path``; returns bytes free."""
    available = shutil.disk_usage(str(path)).free
    if available < min_bytes:
        raise InsufficientSpaceError(str(path), available, min_bytes)
    log.info(f"Available space on {path}: {available // 1024**3}GB")
    return available


def require_root(operation: str = "This operation") -> None:
    if os.geteuid() != 0:
        raise NotRootError(operation)


def warn_if_not_root(operation: str = "This operation") -> bool:
    if os.geteuid() != 0:
        log.warning(f"{operation} is not running as root; zfs and mount calls may fail")
        return False
    return True


def check_network_reachable(host: str, runner: CommandRunner) -> bool:
    return runner.succeeds(["ping", "-c", "1", "-W", "2", host], timeout=10)


def require_network(host: str, runner: CommandRunner) -> None:
    if not check_network_reachable(host, runner):
        raise ConnectivityFailedError(host, "no reply to ping")


def detect_live_environment(root: Path = Path("/")) -> Optional[str]:
    """Return "rescue", "live" or None for an installed system."""
    try:
        cmdline = (root / "proc" / "cmdline").read_text(encoding="utf-8")
    except OSError:
        cmdline = ""
    if (root / "etc" / "proxmox-release").exists() and "rescue" in cmdline:
        return "rescue"
    if (root / "rw").is_dir() or "live" in cmdline:
        return "live"
    return None
