"""Safety validation for backup sources and restore targets.

This module provides validation functions that run before anything is
written:
- Root privileges and mounted /boot, /boot/efi before a backup
- Free space on the backup destination
- Restore target is a block device and not the excluded disk
- Required command line tools are installed

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from fedora_boot_backup.storage.validation import validate_restore_target

    try:
        validate_restore_target("sdb", excluded_device_name="sda")
        # Safe to repartition /dev/sdb
    except DeviceIsExcludedError:
        # Ask for another device
        pass
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional

import psutil

from fedora_boot_backup.logging import LoggerFactory

from . import devices
from .exceptions import (
    DeviceIsExcludedError,
    InsufficientSpaceError,
    InvalidDeviceError,
    MissingToolsError,
    NotRootError,
    SourceNotMountedError,
)


log = LoggerFactory.for_system()


def validate_root() -> None:
    """Validate that the process runs with root privileges.

    Raises:
        NotRootError: If the effective user is not root
    """
    if os.geteuid() != 0:
        raise NotRootError()


def validate_backup_preconditions(boot_mount: str = "/boot", efi_mount: str = "/boot/efi") -> None:
    """Validate that a backup can start.

    Raises:
        NotRootError: If not running as root
        SourceNotMountedError: If boot_mount or efi_mount is not mounted
    """
    validate_root()
    for path in (boot_mount, efi_mount):
        if not devices.is_mountpoint_active(path):
            raise SourceNotMountedError(path)


def validate_restore_target(
    device_name: str,
    excluded_device_name: Optional[str] = None,
    excluded_reason: str = "boot medium in use",
) -> None:
    """Validate that a device may be repartitioned.

    Names are compared without the /dev/ prefix, so "/dev/sdb" and "sdb"
    are the same device. The exclusion check runs first so the live medium
    is rejected even if it were somehow not a block device.

    Args:
        device_name: Candidate target ("sdb" or "/dev/sdb")
        excluded_device_name: Disk that must never be touched, if known
        excluded_reason: Why the excluded disk is off limits (for the message)

    Raises:
        DeviceIsExcludedError: If the target is the excluded disk
        InvalidDeviceError: If /dev/<name> is not a block device
    """
    name = devices.normalize_device_name(device_name)
    if not name:
        raise InvalidDeviceError("(empty name)", "not a device name")

    excluded = devices.normalize_device_name(excluded_device_name or "")
    if excluded and name == excluded:
        raise DeviceIsExcludedError(name, excluded_reason)

    if not devices.is_block_device(devices.device_path(name)):
        raise InvalidDeviceError(devices.device_path(name))


def required_backup_bytes(source_sizes: Iterable[int], margin_percent: int = 110) -> int:
    return sum(source_sizes) * margin_percent // 100


def validate_free_space(
    source_sizes: Iterable[int],
    destination: str,
    margin_percent: int = 110,
) -> int:
    """Validate that the backup destination has room for the snapshot.

    The destination need not exist yet; the nearest existing parent is
    checked.

    Returns:
        Number of bytes required

    Raises:
        InsufficientSpaceError: If free space is below the required amount
    """
    required = required_backup_bytes(source_sizes, margin_percent)
    existing = Path(destination)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    available = psutil.disk_usage(str(existing)).free
    log.debug(f"Space check on {existing}: need {required} bytes, have {available}")
    if available < required:
        raise InsufficientSpaceError(destination, required, available)
    return required


def check_required_tools(tools: Iterable[str]) -> list[str]:
    """Return the tools from the list that are not on PATH."""
    return devices.missing_tools(tools)


def _package_install_command(tools: list[str]) -> Optional[list[str]]:
    if shutil.which("dnf"):
        return ["dnf", "install", "-y", *tools]
    if shutil.which("apt-get"):
        return ["apt-get", "install", "-y", *tools]
    return None


def ensure_required_tools(tools: Iterable[str], install: bool = True) -> None:
    """Make sure required tools exist, installing them when possible.

    Raises:
        MissingToolsError: If tools are still missing afterwards
    """
    tools = list(tools)
    missing = check_required_tools(tools)
    if not missing:
        return

    log.warning(f"Missing required tools: {', '.join(missing)}")
    command = _package_install_command(missing) if install else None
    if command is None:
        raise MissingToolsError(missing)

    log.info(f"Installing missing tools with {command[0]}")
    try:
        devices.run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        log.error(f"Package installation failed: {error}")
        raise MissingToolsError(missing) from error

    still_missing = check_required_tools(tools)
    if still_missing:
        raise MissingToolsError(still_missing)
