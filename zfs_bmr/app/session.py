"""Explicit per-invocation context handed to every component."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from zfs_bmr.config.credentials import CredentialStore, Credentials
from zfs_bmr.config.settings import Settings, load_settings
from zfs_bmr.storage.cleanup import CleanupRegistry


@dataclass
class Session:
    """Configuration, resolved secrets and the cleanup registry for one run."""

    settings: Settings
    credentials: Optional[Credentials] = None
    cleanup: CleanupRegistry = field(default_factory=CleanupRegistry)

    @property
    def passphrase(self) -> str:
        if self.credentials is None:
            return ""
        return self.credentials.passphrase

    def secrets(self) -> tuple[str, ...]:
        if self.credentials is None:
            return ()
        return self.credentials.secrets()

    @classmethod
    def create(cls, settings_path=None, *, load_credentials: bool = True) -> Session:
        """Load settings and credentials from their usual locations."""
        settings = load_settings(settings_path)
        credentials = None
        if load_credentials:
            credentials = CredentialStore(settings.credentials_path).load()
        return cls(settings=settings, credentials=credentials)
