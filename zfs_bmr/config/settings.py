"""Settings storage for backup/restore configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from zfs_bmr.logging import LoggerFactory

log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "ZFS_BMR_SETTINGS_PATH",
        Path.home() / ".config" / "zfs-bmr" / "settings.json",
    )
)

GIB = 1024**3
MIB = 1024**2

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_POOL = "rpool"
DEFAULT_MIN_FREE_BYTES = 10 * GIB
DEFAULT_VERIFY_PREFIX_BYTES = 1 * MIB
DEFAULT_BOOTLOADER_TOOLS = ("proxmox-boot-tool", "grub-install")

DEFAULT_SETTINGS: dict[str, Any] = {
    "pool": DEFAULT_POOL,
    "boot_dir": "/boot/efi",
    "pool_compression": "lz4",
    "boot_compression": "gzip",
    "cipher_algo": "AES256",
    "backup_mount_point": "/mnt/backup-target",
    "restore_mount_point": "/mnt/backup-source",
    "efi_mount_point": "/mnt/efi",
    "restore_root": "/mnt/restore-root",
    "min_free_bytes": DEFAULT_MIN_FREE_BYTES,
    "verify_prefix_bytes": DEFAULT_VERIFY_PREFIX_BYTES,
    "password_probe_bytes": 100,
    "poll_interval_seconds": 5.0,
    "network_flush_wait_seconds": 5.0,
    "credentials_path": str(Path(os.environ.get("HOME", "/root")) / ".zfs-backup-credentials"),
    "runtime_dir": "/run",
    "efi_partition_size": "+512M",
    "bootloader_tools": list(DEFAULT_BOOTLOADER_TOOLS),
}


@dataclass(frozen=True)
class Settings:
    """Immutable run configuration, handed to every component explicitly."""

    pool: str = DEFAULT_POOL
    boot_dir: str = "/boot/efi"
    pool_compression: str = "lz4"
    boot_compression: str = "gzip"
    cipher_algo: str = "AES256"
    backup_mount_point: str = "/mnt/backup-target"
    restore_mount_point: str = "/mnt/backup-source"
    efi_mount_point: str = "/mnt/efi"
    restore_root: str = "/mnt/restore-root"
    min_free_bytes: int = DEFAULT_MIN_FREE_BYTES
    verify_prefix_bytes: int = DEFAULT_VERIFY_PREFIX_BYTES
    password_probe_bytes: int = 100
    poll_interval_seconds: float = 5.0
    network_flush_wait_seconds: float = 5.0
    credentials_path: str = DEFAULT_SETTINGS["credentials_path"]
    runtime_dir: str = "/run"
    efi_partition_size: str = "+512M"
    bootloader_tools: tuple[str, ...] = field(default=DEFAULT_BOOTLOADER_TOOLS)

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> Settings:
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            log.warning(f"Ignoring unknown settings: {', '.join(unknown)}")
        data = {key: value for key, value in values.items() if key in known}
        if "bootloader_tools" in data:
            data["bootloader_tools"] = tuple(data["bootloader_tools"])
        return cls(**data)


def load_settings(path: Optional[Path] = None) -> Settings:
    """Build Settings from defaults, the JSON settings file and the environment.

    A missing or unreadable settings file is not an error; defaults apply.
    ``ZFS_POOL`` in the environment overrides the configured pool.
    """
    settings_path = Path(path) if path else SETTINGS_PATH
    values = dict(DEFAULT_SETTINGS)
    if settings_path.exists():
        try:
            data = json.loads(settings_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            log.warning(f"Could not read settings from {settings_path}: {error}")
            data = None
        if isinstance(data, dict):
            values.update(data)
    env_pool = os.environ.get("ZFS_POOL")
    if env_pool:
        values["pool"] = env_pool
    return Settings.from_mapping(values)
