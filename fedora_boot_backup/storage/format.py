"""Partition provisioning and formatting for the restore target.

Partitioning:
    Ventoy mode:  partitions 1 and 2 are kept; partitions 4 and 3 are removed
                  if present, then a FAT32 EFI partition is created at the
                  reserved offset and an ext4 boot partition fills the rest.
    Minimal mode: a new GPT label is written, then FAT32 1MiB-513MiB and ext4
                  513MiB-100%.

    The EFI partition always gets the esp and boot flags.

Formatting:
    mkfs.vfat -F 32 for EFI, mkfs.ext4 -F -L FEDORA_BOOT for boot.

Operations:
    - build_partition_commands(): parted invocations for a layout
    - provision_partitions(): runs them and waits for the new nodes
    - format_partitions(): creates both filesystems
    - read_new_uuids(): blkid lookup after formatting

Implementation Details:
    - parted runs non-interactively (-s)
    - After partitioning: sync, partprobe, udevadm settle, then poll for the
      partition nodes
    - In dry-run mode commands are logged, not executed

Security Notes:
    - The target must be validated (not excluded, block device) right before
      provision_partitions() is called
    - Minimal mode erases the whole device; the caller asks for an extra
      confirmation first
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fedora_boot_backup.config.settings import DEFAULT_EFI_SIZE_MIB, DEFAULT_PARTITION_WAIT_SECONDS
from fedora_boot_backup.domain import TargetLayout
from fedora_boot_backup.logging import LoggerFactory

from . import devices
from .exceptions import FormatOperationError, PartitioningError


log = LoggerFactory.for_storage()
dry_log = log.bind(dry_run=True)


@dataclass(frozen=True)
class PartedStep:
    """One parted invocation; removals of absent partitions may fail."""

    args: tuple[str, ...]
    description: str
    may_fail: bool = False

    @property
    def command(self) -> list[str]:
        return list(self.args)


def _parted(disk_node: str, *args: str) -> tuple[str, ...]:
    return ("parted", "-s", disk_node, *args)


def build_partition_commands(
    disk: str,
    layout: TargetLayout,
    efi_size_mib: int = DEFAULT_EFI_SIZE_MIB,
) -> list[PartedStep]:
    """List the parted invocations that create the layout's partitions."""
    disk_node = devices.device_path(disk)
    efi_number = layout.efi_partition_number
    boot_number = layout.boot_partition_number
    efi_start = layout.start_mib
    efi_end = efi_start + efi_size_mib

    steps: list[PartedStep] = []
    if layout.requires_new_table:
        steps.append(
            PartedStep(
                _parted(disk_node, "mklabel", "gpt"),
                "Creating new GPT partition table (erases existing partitions)",
            )
        )
    else:
        # Left over from an earlier attempt
        for number in (boot_number, efi_number):
            steps.append(
                PartedStep(
                    _parted(disk_node, "rm", str(number)),
                    f"Removing partition {number} if present",
                    may_fail=True,
                )
            )

    steps.extend(
        [
            PartedStep(
                _parted(
                    disk_node, "mkpart", "primary", "fat32", f"{efi_start}MiB", f"{efi_end}MiB"
                ),
                f"Creating EFI partition (partition {efi_number}): "
                f"{efi_start}MiB - {efi_end}MiB ({efi_size_mib}MB)",
            ),
            PartedStep(
                _parted(disk_node, "mkpart", "primary", "ext4", f"{efi_end}MiB", "100%"),
                f"Creating boot partition (partition {boot_number}): {efi_end}MiB - end of disk",
            ),
            PartedStep(
                _parted(disk_node, "set", str(efi_number), "esp", "on"),
                f"Setting esp flag on partition {efi_number}",
            ),
            PartedStep(
                _parted(disk_node, "set", str(efi_number), "boot", "on"),
                f"Setting boot flag on partition {efi_number}",
            ),
        ]
    )
    return steps


def provision_partitions(
    disk: str,
    layout: TargetLayout,
    efi_size_mib: int = DEFAULT_EFI_SIZE_MIB,
    wait_seconds: float = DEFAULT_PARTITION_WAIT_SECONDS,
    *,
    dry_run: bool = False,
) -> tuple[str, str]:
    """Create the EFI and boot partitions for a layout.

    Returns:
        (efi_node, boot_node) partition device paths

    Raises:
        PartitioningError: If parted fails or the nodes never appear
    """
    disk_node = devices.device_path(disk)
    efi_node = devices.partition_path(disk, layout.efi_partition_number)
    boot_node = devices.partition_path(disk, layout.boot_partition_number)

    for step in build_partition_commands(disk, layout, efi_size_mib):
        if dry_run:
            dry_log.info(" ".join(step.args))
            continue
        log.info(step.description)
        try:
            result = devices.run_command(step.command, check=False)
        except OSError as error:
            raise PartitioningError(f"Could not run parted: {error}", disk_node) from error
        if result.returncode != 0:
            stderr_msg = (result.stderr or "").strip() or "no error message"
            if step.may_fail:
                log.debug(f"Ignoring parted failure: {stderr_msg}")
                continue
            raise PartitioningError(
                f"parted failed on {disk_node} (rc={result.returncode}): {stderr_msg}",
                disk_node,
            )

    if dry_run:
        return efi_node, boot_node

    devices.settle_device(disk)
    missing = devices.wait_for_block_devices(
        [efi_node, boot_node], timeout_seconds=wait_seconds
    )
    if missing:
        raise PartitioningError(
            f"Partition node(s) {', '.join(missing)} did not appear after "
            f"{wait_seconds}s",
            disk_node,
        )
    log.debug(f"Partition nodes ready: {efi_node}, {boot_node}")
    return efi_node, boot_node


def build_format_commands(efi_node: str, boot_node: str, boot_label: str) -> list[list[str]]:
    return [
        ["mkfs.vfat", "-F", "32", efi_node],
        ["mkfs.ext4", "-F", "-L", boot_label, boot_node],
    ]


def format_partitions(
    efi_node: str,
    boot_node: str,
    boot_label: str = "FEDORA_BOOT",
    *,
    dry_run: bool = False,
) -> None:
    """Create FAT32 on the EFI partition and ext4 on the boot partition.

    Raises:
        FormatOperationError: If either mkfs exits non-zero
    """
    for command in build_format_commands(efi_node, boot_node, boot_label):
        device = command[-1]
        if dry_run:
            dry_log.info(" ".join(command))
            continue
        log.info(f"Formatting {device} ({command[0]})")
        try:
            result = devices.run_command(command, check=False)
        except OSError as error:
            raise FormatOperationError(f"Could not run {command[0]}: {error}", device) from error
        if result.returncode != 0:
            stderr_msg = (result.stderr or "").strip() or "no error message"
            log.error(f"Format command failed with code {result.returncode}")
            raise FormatOperationError(
                f"{command[0]} failed on {device}: {stderr_msg}", device
            )


def read_new_uuids(efi_node: str, boot_node: str) -> tuple[str, str]:
    """Return (efi_uuid, boot_uuid) of freshly formatted partitions.

    Raises:
        FormatOperationError: If blkid reports no UUID for either partition
    """
    uuids: list[Optional[str]] = []
    for node in (efi_node, boot_node):
        value = devices.get_filesystem_uuid(node)
        if not value:
            raise FormatOperationError(f"Could not read UUID of {node} after formatting", node)
        uuids.append(value)
    return uuids[0], uuids[1]
