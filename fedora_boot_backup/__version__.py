"""Version information for fedora-boot-backup."""

__version__ = "1.1.0"
