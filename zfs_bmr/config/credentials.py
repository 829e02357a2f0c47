"""Read-only access to the backup credentials file.

The file is a plain ``key=value`` list written by the operator (mode 0600):

    # ZFS Backup Credentials
    encryption_password=...
    nas_ip=192.168.1.100
    nas_share=backups
    nas_backup_path=proxmox
    nas_username=...
    nas_password=...

Only ``encryption_password`` is required. This module never writes the file
and never logs secret values.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.exceptions import ConfigurationMissingError

log = LoggerFactory.for_system()

PASSWORD_ENV_VAR = "BACKUP_ENCRYPTION_PASSWORD"


@dataclass(frozen=True)
class Credentials:
    passphrase: str
    remote_host: Optional[str] = None
    remote_share: Optional[str] = None
    remote_path: Optional[str] = None
    remote_user: Optional[str] = None
    remote_secret: Optional[str] = None

    @property
    def has_network(self) -> bool:
        return bool(self.remote_host and self.remote_share and self.remote_user)

    def secrets(self) -> tuple[str, ...]:
        return tuple(value for value in (self.passphrase, self.remote_secret) if value)

    def __repr__(self) -> str:
        return (
            f"Credentials(passphrase=***, remote_host={self.remote_host!r}, "
            f"remote_share={self.remote_share!r}, remote_path={self.remote_path!r}, "
            f"remote_user={self.remote_user!r}, remote_secret=***)"
        )


def parse_credentials_text(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value
    return values


class CredentialStore:
    """Resolves the passphrase and optional network share credentials."""

    def __init__(self, path: Path, environ: Optional[dict[str, str]] = None):
        self.path = Path(path)
        self.environ = os.environ if environ is None else environ

    def load(self) -> Credentials:
        values: dict[str, str] = {}
        if self.path.is_file():
            try:
                values = parse_credentials_text(self.path.read_text(encoding="utf-8"))
            except OSError as error:
                log.warning(f"Could not read credentials file {self.path}: {error}")
            else:
                mode = self.path.stat().st_mode & 0o077
                if mode:
                    log.warning(
                        f"Credentials file {self.path} is readable by others; chmod 600 it"
                    )

        passphrase = values.get("encryption_password") or self.environ.get(PASSWORD_ENV_VAR, "")
        if not passphrase:
            raise ConfigurationMissingError(
                "encryption passphrase",
                f"set encryption_password in {self.path} or {PASSWORD_ENV_VAR}",
            )

        return Credentials(
            passphrase=passphrase,
            remote_host=values.get("nas_ip") or None,
            remote_share=values.get("nas_share") or None,
            remote_path=values.get("nas_backup_path") or None,
            remote_user=values.get("nas_username") or None,
            remote_secret=values.get("nas_password") or None,
        )
