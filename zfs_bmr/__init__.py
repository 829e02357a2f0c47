"""Encrypted, verifiable bare-metal backup and restore for ZFS-rooted hosts."""

from .__version__ import __version__

__all__ = ["__version__"]
