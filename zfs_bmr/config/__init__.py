"""Configuration: settings file and credential store."""

from .credentials import CredentialStore, Credentials
from .settings import DEFAULT_SETTINGS, Settings, load_settings

__all__ = [
    "CredentialStore",
    "Credentials",
    "DEFAULT_SETTINGS",
    "Settings",
    "load_settings",
]
