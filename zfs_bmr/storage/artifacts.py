"""Artifact file naming, backup set discovery and the restore manifest.

File names are the only link between the two halves of a backup set:

    boot-partition-20240115-0930.tar.gz.gpg
    zfs-backup-20240115-0930.lz4.gpg
    RESTORE-20240115-0930.txt
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from zfs_bmr.domain.models import CIPHER_EXT, Artifact, ArtifactKind, BackupSet
from zfs_bmr.logging import LoggerFactory

log = LoggerFactory.for_system()

LABEL_PATTERN = r"\d{8}-\d{4}"

_NAME_PATTERNS = {
    kind: re.compile(
        rf"^{re.escape(kind.prefix)}-(?P<label>{LABEL_PATTERN})"
        rf"\.{re.escape(kind.compression_ext)}\.{CIPHER_EXT}$"
    )
    for kind in ArtifactKind
}


def artifact_name(kind: ArtifactKind, label: str) -> str:
    if not re.fullmatch(LABEL_PATTERN, label):
        raise ValueError(f"Invalid backup label: {label}")
    return f"{kind.prefix}-{label}.{kind.compression_ext}.{CIPHER_EXT}"


def manifest_name(label: str) -> str:
    return f"RESTORE-{label}.txt"


def parse_artifact_name(name: str) -> Optional[tuple[ArtifactKind, str]]:
    for kind, pattern in _NAME_PATTERNS.items():
        match = pattern.match(name)
        if match:
            return kind, match.group("label")
    return None


def artifact_from_path(path: Path) -> Optional[Artifact]:
    parsed = parse_artifact_name(path.name)
    if parsed is None:
        return None
    kind, label = parsed
    try:
        size = path.stat().st_size
    except OSError:
        size = 0
    return Artifact(kind=kind, label=label, path=path, size_bytes=size)


def scan_artifacts(directory: Path) -> list[Artifact]:
    """Find artifact files directly inside ``directory``, sorted by name."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    artifacts = []
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        artifact = artifact_from_path(path)
        if artifact is not None:
            artifacts.append(artifact)
    return artifacts


def discover_backup_sets(directory: Path, complete_only: bool = True) -> list[BackupSet]:
    """Group artifacts by label, newest first.

    A set missing either half is skipped unless ``complete_only`` is False.
    """
    grouped: dict[str, dict[ArtifactKind, Artifact]] = {}
    for artifact in scan_artifacts(directory):
        grouped.setdefault(artifact.label, {})[artifact.kind] = artifact

    sets = []
    for label, by_kind in grouped.items():
        backup_set = BackupSet(
            label=label,
            boot=by_kind.get(ArtifactKind.BOOT),
            pool=by_kind.get(ArtifactKind.POOL),
        )
        if complete_only and not backup_set.is_complete:
            log.debug(f"Skipping incomplete backup set {label} in {directory}")
            continue
        sets.append(backup_set)
    sets.sort(key=lambda item: item.label, reverse=True)
    return sets


def find_backup_set(directory: Path, label: Optional[str] = None) -> Optional[BackupSet]:
    """Return the complete set with ``label``, or the newest complete set."""
    sets = discover_backup_sets(directory)
    if label is None:
        return sets[0] if sets else None
    for backup_set in sets:
        if backup_set.label == label:
            return backup_set
    return None


def render_manifest(label: str, boot: Artifact, pool: Artifact, when: datetime) -> str:
    return f"""RESTORE INSTRUCTIONS
====================
Date: {when:%Y-%m-%d %H:%M:%S}
Label: {label}
Files: {boot.name} + {pool.name}

Boot partition archive: {boot.name} ({boot.size_bytes} bytes)
ZFS pool stream:        {pool.name} ({pool.size_bytes} bytes)

1. Boot the Proxmox VE installer USB and select 'Advanced > Rescue Boot'
   (or any live system with ZFS support).
2. Install tools: apt update && apt install -y gnupg liblz4-tool gdisk
3. Mount this backup location and run:
       zfs-bmr restore --from-dir <this directory> --label {label} --disk /dev/<target>
4. The target disk is wiped. Confirm it by typing DESTROY when asked.
"""


def write_manifest(
    backup_dir: Path,
    label: str,
    boot: Artifact,
    pool: Artifact,
    when: Optional[datetime] = None,
) -> Path:
    path = Path(backup_dir) / manifest_name(label)
    path.write_text(render_manifest(label, boot, pool, when or datetime.now()), encoding="utf-8")
    log.info(f"Restore instructions written to {path}")
    return path
