"""Custom exceptions for boot backup and restore operations.

This module defines a hierarchy of exceptions so each workflow stage fails with
a specific, catchable error and the CLI can map it to a distinct exit code.

Exception Hierarchy:
    StorageError (base)
        ├── PreconditionError
        │   ├── NotRootError
        │   ├── SourceNotMountedError
        │   ├── InvalidDeviceError
        │   ├── DeviceIsExcludedError
        │   ├── MissingToolsError
        │   └── InsufficientSpaceError
        ├── DeviceResolutionError
        ├── LayoutDetectionError
        ├── CopyError
        ├── FormatError
        │   └── FormatOperationError
        ├── PartitioningError
        ├── MountError
        │   ├── MountOperationError
        │   └── UnmountFailedError
        ├── EncryptedVolumeError
        │   └── NoEncryptedVolumeError
        ├── ConfigRewriteError
        ├── BackupNotFoundError
        │   ├── MetadataError
        │   └── ChecksumMismatchError
        └── OperationCancelledError

Usage:
    from fedora_boot_backup.storage.exceptions import DeviceIsExcludedError

    if target_name == excluded_name:
        raise DeviceIsExcludedError(target_name, "live USB")
"""

from __future__ import annotations

from typing import Iterable, Optional


class StorageError(Exception):
    """Base exception for all backup/restore operations."""



class PreconditionError(StorageError):
    """Environment is not ready; the user must fix it and re-run."""



class NotRootError(PreconditionError):
    """The workflow needs root privileges."""

    def __init__(self) -> None:
        super().__init__("Must run as root (use sudo)")


class SourceNotMountedError(PreconditionError):
    """A required source path is not a mounted filesystem."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} is not a mounted partition. Is the USB connected?")


class InvalidDeviceError(PreconditionError):
    """Device does not resolve to a block device."""

    def __init__(self, device_name: str, reason: str = "not a valid block device"):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"{device_name} is {reason}")


class DeviceIsExcludedError(PreconditionError):
    """Device is flagged as unsafe to touch (live medium or running /boot)."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Cannot select /dev/{device_name}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg + "! Choose a different device.")


class MissingToolsError(PreconditionError):
    """Required command line tools are not installed."""

    def __init__(self, tools: Iterable[str]):
        self.tools = list(tools)
        super().__init__(f"Required tools not available: {', '.join(self.tools)}")


class InsufficientSpaceError(PreconditionError):
    """Backup destination does not have enough free space."""

    def __init__(self, destination: str, required_bytes: int, available_bytes: int):
        self.destination = destination
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Insufficient disk space on {destination}. "
            f"Need {required_bytes // (1024 * 1024)}MB, "
            f"have {available_bytes // (1024 * 1024)}MB available"
        )


class DeviceResolutionError(StorageError):
    """A mount point or partition could not be traced back to a block device."""



class LayoutDetectionError(StorageError):
    """Target device looks like a multi-boot medium but its layout is unreadable."""



class CopyError(StorageError):
    """File tree copy failed."""

    def __init__(self, message: str, source: Optional[str] = None, destination: Optional[str] = None):
        self.source = source
        self.destination = destination
        super().__init__(message)


class FormatError(StorageError):
    """Base exception for format operations."""



class FormatOperationError(FormatError):
    """mkfs (or post-format UUID lookup) failed."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class PartitioningError(StorageError):
    """Partition creation failed or the kernel never exposed the new nodes."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class MountError(StorageError):
    """Base exception for mount-related errors."""



class MountOperationError(MountError):
    """Failed to mount a device."""

    def __init__(self, device: str, mountpoint: str, reason: str = ""):
        self.device = device
        self.mountpoint = mountpoint
        msg = f"Failed to mount {device} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount a mountpoint."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class EncryptedVolumeError(StorageError):
    """Unlocking or closing the encrypted root volume failed."""



class NoEncryptedVolumeError(EncryptedVolumeError):
    """No LUKS partition was found on any attached disk."""

    def __init__(self) -> None:
        super().__init__(
            "No LUKS encrypted partitions found. Is the internal drive connected?"
        )


class ConfigRewriteError(StorageError):
    """A mandatory config file could not be updated with the new UUIDs."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class BackupNotFoundError(StorageError):
    """No usable backup exists at the expected location."""

    def __init__(self, location: str, message: Optional[str] = None):
        self.location = location
        super().__init__(
            message
            or f"Backup not found at {location}. You need to run backup-boot first!"
        )


class MetadataError(BackupNotFoundError):
    """Metadata file is missing or lacks the original UUIDs."""

    def __init__(self, location: str, reason: str):
        self.reason = reason
        super().__init__(location, f"Invalid backup metadata at {location}: {reason}")


class ChecksumMismatchError(BackupNotFoundError):
    """Snapshot files do not match the checksum manifest."""

    def __init__(self, location: str, mismatched: Iterable[str]):
        self.mismatched = list(mismatched)
        preview = ", ".join(self.mismatched[:5])
        if len(self.mismatched) > 5:
            preview += f" (+{len(self.mismatched) - 5} more)"
        super().__init__(
            location,
            f"Backup at {location} failed checksum verification: {preview}",
        )


class OperationCancelledError(StorageError):
    """User declined a confirmation prompt."""

    def __init__(self, message: str = "Cancelled."):
        super().__init__(message)
