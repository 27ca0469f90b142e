"""Capture the boot partitions: metadata, file trees and loader config.

Backup Layout:
    <backup_dir>/
        boot/              mirror of /boot (without the nested efi/ mount)
        efi/               mirror of /boot/efi
        ventoy/            ventoy.json, ventoy_grub.cfg (Ventoy USBs only)
        metadata.txt       original UUIDs and device info
        checksums.sha256   sha256 of every file in boot/ and efi/

Implementation Details:
    - Trees are copied with rsync -a so ownership, modes, timestamps and
      symlinks survive
    - The previous snapshot is deleted before copying; only one is kept
    - Loader config capture is best-effort: a missing partition or file is a
      warning, but a mount or read failure on a present partition aborts
"""

from __future__ import annotations

import datetime
import os
import platform
import shutil
import socket
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, Sequence

from fedora_boot_backup.__version__ import __version__
from fedora_boot_backup.domain import BackupMetadata, LoaderSignature
from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage import devices
from fedora_boot_backup.storage.exceptions import CopyError, DeviceResolutionError, MountError
from fedora_boot_backup.storage.mount import ResourceStack, mount_scoped

from .models import AUX_TREE, BOOT_TREE, EFI_TREE, SnapshotSource


log = LoggerFactory.for_backup()
dry_log = log.bind(dry_run=True)

SAMPLE_SIZE = 10


def _resolve_source(mountpoint: str) -> tuple[str, str, int]:
    """Return (device, uuid, size_bytes) for a mount point."""
    device = devices.find_mount_source(mountpoint)
    if not device:
        raise DeviceResolutionError(f"Could not find the device mounted at {mountpoint}")
    uuid_value = devices.get_filesystem_uuid(device)
    if not uuid_value:
        raise DeviceResolutionError(f"Could not read UUID of {device} ({mountpoint})")
    return device, uuid_value, devices.get_size_bytes(device)


def capture_metadata(boot_mount: str = "/boot", efi_mount: str = "/boot/efi") -> BackupMetadata:
    """Identify the boot partitions and build the metadata record.

    Raises:
        DeviceResolutionError: If a mount point has no device, a UUID is
            empty, or the parent disk cannot be determined
    """
    boot_device, boot_uuid, boot_size = _resolve_source(boot_mount)
    efi_device, efi_uuid, efi_size = _resolve_source(efi_mount)

    usb_disk = devices.get_parent_disk(boot_device)
    if not usb_disk:
        raise DeviceResolutionError(f"Could not determine parent disk for {boot_device}")

    log.info(f"Boot partition: {boot_device} (UUID: {boot_uuid})")
    log.info(f"EFI partition:  {efi_device} (UUID: {efi_uuid})")
    log.info(f"USB disk:       /dev/{usb_disk}")

    return BackupMetadata(
        boot_uuid=boot_uuid,
        efi_uuid=efi_uuid,
        source_boot_device=boot_device,
        source_efi_device=efi_device,
        usb_disk_name=devices.device_path(usb_disk),
        boot_size_bytes=boot_size,
        efi_size_bytes=efi_size,
        luks_uuid=devices.get_luks_uuid(),
        created_at=datetime.datetime.now().strftime("%Y-%m-%d_%H:%M:%S"),
        kernel_version=platform.release(),
        hostname=socket.gethostname(),
        script_version=__version__,
    )


def default_sources(boot_mount: str, efi_mount: str) -> list[SnapshotSource]:
    """Boot tree (minus the nested EFI mount) and EFI tree."""
    boot = Path(boot_mount)
    efi = Path(efi_mount)
    excludes: tuple[str, ...] = ()
    try:
        nested = efi.relative_to(boot)
    except ValueError:
        nested = None
    if nested is not None:
        # Anchored so only the top-level efi/ of the transfer is skipped
        excludes = (f"/{nested.as_posix()}",)
    return [
        SnapshotSource(BOOT_TREE, boot, excludes),
        SnapshotSource(EFI_TREE, efi),
    ]


def rsync_command(source: SnapshotSource, destination: Path) -> list[str]:
    command = ["rsync", "-a"]
    for pattern in source.excludes:
        command.append(f"--exclude={pattern}")
    command.extend([f"{source.path}/", f"{destination}/"])
    return command


def iter_tree_files(root: Path, excludes: Iterable[str] = ()) -> Iterable[Path]:
    """Yield regular files under root, skipping anchored excludes."""
    skipped = {root / pattern.lstrip("/") for pattern in excludes}
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if current / d not in skipped)
        for name in sorted(filenames):
            path = current / name
            if path in skipped:
                continue
            if path.is_file() and not path.is_symlink():
                yield path


def count_files(root: Path, excludes: Iterable[str] = ()) -> int:
    return sum(1 for _ in iter_tree_files(root, excludes))


def tree_size_bytes(root: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def snapshot_trees(
    sources: Sequence[SnapshotSource],
    destination_root: Path,
    *,
    dry_run: bool = False,
) -> dict[str, int]:
    """Mirror each source tree into destination_root/<name>.

    Any existing snapshot tree is deleted first. Returns file counts per tree.

    Raises:
        CopyError: If a tree cannot be removed, created or copied
    """
    destination_root = Path(destination_root)
    counts: dict[str, int] = {}
    for source in sources:
        destination = destination_root / source.name
        if dry_run:
            counts[source.name] = _preview_tree(source, destination)
            continue

        log.info(f"Copying {source.path} files...")
        try:
            remove_tree(destination)
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise CopyError(
                f"Could not prepare {destination}: {error}", str(source.path), str(destination)
            ) from error

        try:
            devices.run_command(rsync_command(source, destination), log_output=False)
        except subprocess.CalledProcessError as error:
            stderr_msg = (error.stderr or "").strip()
            raise CopyError(
                f"Failed to copy {source.path}: {stderr_msg or f'rsync exit code {error.returncode}'}",
                str(source.path),
                str(destination),
            ) from error
        except OSError as error:
            raise CopyError(
                f"Failed to copy {source.path}: {error}", str(source.path), str(destination)
            ) from error
        counts[source.name] = count_files(destination)
    return counts


def _preview_tree(source: SnapshotSource, destination: Path) -> int:
    dry_log.info(" ".join(rsync_command(source, destination)))
    files = list(iter_tree_files(source.path, source.excludes))
    log.info(f"  Files that would be copied from {source.path}:")
    for path in files[:SAMPLE_SIZE]:
        log.info(f"    {path}")
    if len(files) > SAMPLE_SIZE:
        log.info(f"  ... and {len(files) - SAMPLE_SIZE} more files")
    else:
        log.info(f"  Total: {len(files)} files")
    return len(files)


def capture_auxiliary_config(
    parent_disk: str,
    file_names: Sequence[str],
    destination: Path,
    signature: LoaderSignature,
    *,
    config_dir: str = "ventoy",
    dry_run: bool = False,
) -> list[str]:
    """Copy Ventoy config files from partition 1 of the boot USB.

    Returns the names of the files copied (or that would be copied).

    Raises:
        CopyError: If the partition is present but cannot be mounted, or a
            present file cannot be read
    """
    destination = Path(destination)
    partition = devices.partition_path(parent_disk, 1)
    if not devices.is_block_device(partition):
        log.warning(f"Could not find Ventoy partition at {partition}")
        return []

    info = devices.probe_partition(partition)
    second = devices.partition_path(parent_disk, 2)
    second_info = devices.probe_partition(second) if devices.is_block_device(second) else {}
    if not signature.matches(info.get("TYPE"), info.get("LABEL"), second_info.get("LABEL")):
        log.info("Partition 1 is not a Ventoy partition - skipping Ventoy config")
        return []

    log.info(f"Found Ventoy partition at {partition} - backing up config...")
    if dry_run:
        dry_log.info(f"mount {partition} (temporarily)")
        for name in file_names:
            dry_log.info(f"cp {config_dir}/{name} -> {destination}/")
        dry_log.info(f"umount {partition}")
        return list(file_names)

    copied: list[str] = []
    mount_dir = Path(tempfile.mkdtemp(prefix="ventoy-"))
    try:
        with ResourceStack() as resources:
            try:
                resources.push(mount_scoped(partition, str(mount_dir), read_only=True))
            except MountError as error:
                raise CopyError(
                    f"Could not mount Ventoy partition {partition}: {error}", partition
                ) from error
            copied = _copy_config_files(mount_dir / config_dir, file_names, destination)
    finally:
        try:
            mount_dir.rmdir()
        except OSError as error:
            log.debug(f"Could not remove {mount_dir}: {error}")
    return copied


def _copy_config_files(
    source_dir: Path,
    file_names: Sequence[str],
    destination: Path,
) -> list[str]:
    if not source_dir.is_dir():
        log.warning(f"No /{source_dir.name} directory found on Ventoy partition")
        return []
    copied = []
    for name in file_names:
        source = source_dir / name
        if not source.is_file():
            log.warning(f"  Not found: {name}")
            continue
        try:
            destination.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination / name)
        except OSError as error:
            raise CopyError(f"Could not copy {name}: {error}", str(source), str(destination)) from error
        log.info(f"  Copied: {name}")
        copied.append(name)
    return copied


def auxiliary_destination(backup_dir: Path) -> Path:
    return Path(backup_dir) / AUX_TREE


def existing_auxiliary_files(backup_dir: Path, file_names: Sequence[str]) -> list[Path]:
    aux_dir = auxiliary_destination(backup_dir)
    return [aux_dir / name for name in file_names if (aux_dir / name).is_file()]
