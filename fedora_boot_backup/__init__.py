"""Backup and restore of USB-hosted Fedora boot partitions."""

from .__version__ import __version__


__all__ = ["__version__"]
