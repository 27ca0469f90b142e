"""Boot partition backup workflow.

Steps:
    1. Validate: root, /boot and /boot/efi mounted
    2. Check free space on the backup destination
    3. Identify source partitions and capture metadata
    4. Replace the previous backup with a fresh snapshot of both trees
    5. Copy Ventoy config from partition 1 of the boot USB (best-effort)
    6. Write metadata.txt and checksums.sha256

A failure after the backup directory was touched removes the partial
backup, so a half-written snapshot is never mistaken for a good one.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional, Sequence

import psutil

from fedora_boot_backup.config import settings
from fedora_boot_backup.domain import LoaderSignature
from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage import devices
from fedora_boot_backup.storage.exceptions import CopyError, StorageError
from fedora_boot_backup.storage.layout import signature_from_settings
from fedora_boot_backup.storage.validation import (
    validate_backup_preconditions,
    validate_free_space,
)

from .checksums import compute_checksums, write_checksums
from .metadata import write_metadata
from .models import CHECKSUM_FILE, METADATA_FILE, BackupResult
from .snapshot import (
    auxiliary_destination,
    capture_auxiliary_config,
    capture_metadata,
    default_sources,
    snapshot_trees,
    tree_size_bytes,
)


log = LoggerFactory.for_backup()
dry_log = log.bind(dry_run=True)


def cleanup_partial_backup(backup_dir: Path) -> None:
    """Remove a partial/failed backup directory.

    Args:
        backup_dir: Backup directory to remove
    """
    if backup_dir.exists() and backup_dir.is_dir():
        try:
            shutil.rmtree(backup_dir)
            log.info(f"Cleaned up partial backup: {backup_dir}")
        except OSError as e:
            log.error(f"Failed to clean up partial backup {backup_dir}: {e}")


def source_used_bytes(*mountpoints: str) -> int:
    return sum(psutil.disk_usage(mountpoint).used for mountpoint in mountpoints)


def prepare_backup_dir(backup_dir: Path, *, dry_run: bool = False) -> None:
    """Remove the previous backup (only one is kept) and recreate the directory."""
    if backup_dir.exists():
        old_size = devices.human_size(tree_size_bytes(backup_dir))
        if dry_run:
            dry_log.info(f"rm -rf {backup_dir} (removing previous backup: {old_size})")
        else:
            log.warning(f"Removing previous backup ({old_size})")
            try:
                shutil.rmtree(backup_dir)
            except OSError as error:
                raise CopyError(f"Could not remove previous backup: {error}", str(backup_dir)) from error
    if dry_run:
        dry_log.info(f"mkdir -p {backup_dir}")
        return
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise CopyError(f"Could not create {backup_dir}: {error}", destination=str(backup_dir)) from error


def create_boot_backup(
    backup_dir: Optional[Path] = None,
    *,
    boot_mount: Optional[str] = None,
    efi_mount: Optional[str] = None,
    auxiliary_files: Optional[Sequence[str]] = None,
    signature: Optional[LoaderSignature] = None,
    dry_run: bool = False,
) -> BackupResult:
    """Snapshot /boot and /boot/efi into backup_dir.

    Raises:
        NotRootError, SourceNotMountedError: Preconditions not met
        InsufficientSpaceError: Destination too small
        DeviceResolutionError: Source partitions could not be identified
        CopyError: Copying, checksumming or writing metadata failed
    """
    backup_dir = Path(backup_dir or settings.get_setting("backup_dir"))
    boot_mount = boot_mount or settings.get_setting("boot_mount")
    efi_mount = efi_mount or settings.get_setting("efi_mount")
    if auxiliary_files is None:
        auxiliary_files = settings.get_list("ventoy_files")
    signature = signature or signature_from_settings()

    validate_backup_preconditions(boot_mount, efi_mount)
    log.info("Environment validated - USB boot drive is connected")

    log.info("Checking available disk space...")
    required = validate_free_space(
        [source_used_bytes(boot_mount, efi_mount)],
        str(backup_dir),
        settings.get_int("space_margin_percent"),
    )
    log.info(f"Disk space OK: need {required // (1024 * 1024)}MB")

    log.info("Identifying boot partitions...")
    metadata = capture_metadata(boot_mount, efi_mount)
    result = BackupResult(backup_dir=backup_dir, metadata=metadata, dry_run=dry_run)

    try:
        prepare_backup_dir(backup_dir, dry_run=dry_run)
        result.file_counts = snapshot_trees(
            default_sources(boot_mount, efi_mount), backup_dir, dry_run=dry_run
        )

        log.info("Checking for Ventoy configuration...")
        result.auxiliary_files = capture_auxiliary_config(
            metadata.usb_disk_name,
            auxiliary_files,
            auxiliary_destination(backup_dir),
            signature,
            config_dir=settings.get_setting("ventoy_config_dir"),
            dry_run=dry_run,
        )

        log.info("Saving metadata (UUIDs and partition info)...")
        if dry_run:
            dry_log.info(f"Write {METADATA_FILE} to {backup_dir}/")
            dry_log.info(f"Generate SHA256 checksums for {sum(result.file_counts.values())} files")
            result.checksum_count = sum(result.file_counts.values())
            return result

        write_metadata(metadata, backup_dir / METADATA_FILE)
        log.info("Generating SHA256 checksums for backup verification...")
        result.checksum_count = write_checksums(
            compute_checksums(backup_dir), backup_dir / CHECKSUM_FILE
        )
        result.total_bytes = tree_size_bytes(backup_dir)
    except StorageError:
        if not dry_run:
            cleanup_partial_backup(backup_dir)
        raise
    except OSError as error:
        if not dry_run:
            cleanup_partial_backup(backup_dir)
        raise CopyError(f"Backup failed: {error}", destination=str(backup_dir)) from error
    except BaseException:
        # Ctrl-C during rsync
        if not dry_run:
            cleanup_partial_backup(backup_dir)
        raise

    log.success(f"Backup written to {backup_dir}")
    return result
