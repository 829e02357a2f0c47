"""Stream stage definitions and the backup/restore stage orderings.

Backup:   serialize -> compress -> encrypt
Restore:  decrypt -> decompress -> apply

Restore orderings are built by reversing the backup ordering and swapping
each stage for its inverse, so the two can never drift apart.

The gpg passphrase is never placed on the command line. Stages that need it
carry the secret separately and reference ``PASSPHRASE_FD`` in their
arguments; the runner substitutes the number of an inherited pipe that holds
the passphrase.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from zfs_bmr.config.settings import Settings
from zfs_bmr.domain.models import ArtifactKind, SnapshotRef
from zfs_bmr.storage.command_runners import which
from zfs_bmr.storage.exceptions import ToolMissingError

PASSPHRASE_FD = "{passphrase_fd}"

GPG_BASE_ARGS = (
    "gpg",
    "--batch",
    "--yes",
    "--quiet",
    "--no-symkey-cache",
    "--pinentry-mode",
    "loopback",
    "--passphrase-fd",
    PASSPHRASE_FD,
)


class StageRole(Enum):
    SERIALIZE = "serialize"
    COMPRESS = "compress"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    DECOMPRESS = "decompress"
    APPLY = "apply"
    INSPECT = "inspect"


@dataclass(frozen=True)
class StreamStage:
    """One external process in a pipe chain (stdin -> stdout)."""

    name: str
    role: StageRole
    command: tuple[str, ...]
    secret: Optional[str] = field(default=None, repr=False)

    def describe(self) -> str:
        return f"{self.name} ({self.role.value})"


def _find_tool(*candidates: str) -> str:
    for candidate in candidates:
        found = which(candidate)
        if found:
            return found
    raise ToolMissingError([candidates[-1]])


def _compressor(algo: str) -> tuple[str, str]:
    """Return (stage name, executable) for a compression algorithm."""
    if algo == "lz4":
        return "lz4", _find_tool("lz4")
    if algo == "gzip":
        return "gzip", _find_tool("pigz", "gzip")
    raise ValueError(f"Unknown compression type: {algo}")


def serialize_pool(snapshot: SnapshotRef) -> StreamStage:
    command = ["zfs", "send"]
    if snapshot.recursive:
        command.append("-R")
    command.append(snapshot.name)
    return StreamStage("zfs send", StageRole.SERIALIZE, tuple(command))


def serialize_tree(path: Union[str, Path]) -> StreamStage:
    return StreamStage("tar", StageRole.SERIALIZE, ("tar", "-cf", "-", "-C", str(path), "."))


def compress(algo: str) -> StreamStage:
    name, tool = _compressor(algo)
    return StreamStage(name, StageRole.COMPRESS, (tool, "-c"))


def decompress(algo: str) -> StreamStage:
    name, tool = _compressor(algo)
    return StreamStage(name, StageRole.DECOMPRESS, (tool, "-d", "-c"))


def encrypt(passphrase: str, cipher_algo: str = "AES256") -> StreamStage:
    command = GPG_BASE_ARGS + ("--cipher-algo", cipher_algo, "--symmetric")
    return StreamStage("gpg", StageRole.ENCRYPT, command, secret=passphrase)


def decrypt(passphrase: str, source: Optional[Path] = None) -> StreamStage:
    command = GPG_BASE_ARGS + ("--decrypt",)
    if source is not None:
        command += (str(source),)
    return StreamStage("gpg", StageRole.DECRYPT, command, secret=passphrase)


def apply_pool(pool: str) -> StreamStage:
    # -u: received datasets must not mount over the running system
    return StreamStage("zfs receive", StageRole.APPLY, ("zfs", "receive", "-F", "-u", pool))


def extract_tree(destination: Union[str, Path]) -> StreamStage:
    return StreamStage("tar", StageRole.APPLY, ("tar", "-xf", "-", "-C", str(destination)))


def list_tree() -> StreamStage:
    return StreamStage("tar", StageRole.INSPECT, ("tar", "-tf", "-"))


def compression_for(kind: ArtifactKind, settings: Settings) -> str:
    return settings.boot_compression if kind is ArtifactKind.BOOT else settings.pool_compression


def backup_stages(
    kind: ArtifactKind,
    settings: Settings,
    passphrase: str,
    *,
    snapshot: Optional[SnapshotRef] = None,
    source_dir: Optional[Path] = None,
) -> list[StreamStage]:
    """Ordered serialize -> compress -> encrypt stages for one artifact kind."""
    if kind is ArtifactKind.POOL:
        if snapshot is None:
            raise ValueError("Pool backups need a snapshot")
        serializer = serialize_pool(snapshot)
    else:
        serializer = serialize_tree(source_dir or settings.boot_dir)
    return [
        serializer,
        compress(compression_for(kind, settings)),
        encrypt(passphrase, settings.cipher_algo),
    ]


def restore_stages(
    kind: ArtifactKind,
    settings: Settings,
    passphrase: str,
    *,
    pool: Optional[str] = None,
    destination: Optional[Path] = None,
) -> list[StreamStage]:
    """Exact inverse of ``backup_stages``: decrypt -> decompress -> apply."""
    if kind is ArtifactKind.POOL:
        applier = apply_pool(pool or settings.pool)
    else:
        if destination is None:
            raise ValueError("Boot restores need a destination directory")
        applier = extract_tree(destination)
    inverse = {
        StageRole.ENCRYPT: decrypt(passphrase),
        StageRole.COMPRESS: decompress(compression_for(kind, settings)),
        StageRole.SERIALIZE: applier,
    }
    forward = [StageRole.SERIALIZE, StageRole.COMPRESS, StageRole.ENCRYPT]
    return [inverse[role] for role in reversed(forward)]


def inspect_stages(kind: ArtifactKind, settings: Settings, passphrase: str) -> list[StreamStage]:
    """Decode stages used by verification; nothing is applied.

    Boot archives end in ``tar -tf -``; pool streams end after decompression
    so the caller can read a bounded prefix of the raw send stream.
    """
    stages = [decrypt(passphrase), decompress(compression_for(kind, settings))]
    if kind is ArtifactKind.BOOT:
        stages.append(list_tree())
    return stages
