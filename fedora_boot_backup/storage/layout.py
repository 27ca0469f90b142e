"""Restore target layout detection.

A target that already carries a Ventoy-style multi-boot loader keeps its
first two partitions; the Fedora EFI and boot partitions are created in the
reserved space after partition 2. Anything else is repartitioned from
scratch.

The detector only reads the device. Its result is advisory until the user
confirms the mode.
"""

from __future__ import annotations

from typing import Optional

from fedora_boot_backup.config import settings
from fedora_boot_backup.domain import LoaderSignature, MinimalLayout, TargetLayout, VentoyLayout
from fedora_boot_backup.logging import LoggerFactory

from . import devices
from .exceptions import LayoutDetectionError


log = LoggerFactory.for_storage()

MIB = 1024 * 1024


def signature_from_settings() -> LoaderSignature:
    return LoaderSignature(
        fstype=str(settings.get_setting("ventoy_fstype")),
        label_pattern=str(settings.get_setting("ventoy_label_pattern")),
        efi_label=str(settings.get_setting("ventoy_efi_label")),
    )


def parse_partition_end_bytes(parted_output: str, number: int) -> Optional[int]:
    """Return the end byte of a partition from `parted -m unit B print` output.

    Machine-readable lines look like "2:31982075392B:31985221119B:3145728B:...".
    """
    prefix = f"{number}:"
    for line in parted_output.splitlines():
        line = line.strip()
        if not line.startswith(prefix):
            continue
        fields = line.split(":")
        if len(fields) < 3:
            return None
        end = fields[2].strip().rstrip("B")
        try:
            return int(end)
        except ValueError:
            return None
    return None


def bytes_to_next_mib(end_byte: int) -> int:
    """First whole MiB at or after the byte following end_byte."""
    return -(-(end_byte + 1) // MIB)


def read_partition_end_mib(disk: str, number: int) -> Optional[int]:
    output = devices.command_output(
        ["parted", "-s", "-m", devices.device_path(disk), "unit", "B", "print"]
    )
    end_byte = parse_partition_end_bytes(output, number)
    if end_byte is None:
        return None
    return bytes_to_next_mib(end_byte)


def detect_layout(disk: str, signature: Optional[LoaderSignature] = None) -> TargetLayout:
    """Decide between Ventoy and Minimal mode for a target disk.

    Raises:
        LayoutDetectionError: If partition 1 carries the loader signature but
            the end of partition 2 cannot be read
    """
    signature = signature or signature_from_settings()
    first = devices.partition_path(disk, 1)
    if not devices.is_block_device(first):
        log.info(f"{devices.device_path(disk)} appears empty or unpartitioned")
        return MinimalLayout()

    first_info = devices.probe_partition(first)
    second = devices.partition_path(disk, 2)
    second_info = devices.probe_partition(second) if devices.is_block_device(second) else {}

    if not signature.matches(
        first_info.get("TYPE"), first_info.get("LABEL"), second_info.get("LABEL")
    ):
        log.info(f"Partition 1 of {devices.device_path(disk)} is not a Ventoy partition")
        return MinimalLayout()

    log.info(f"Detected existing Ventoy installation on {devices.device_path(disk)}")
    start_mib = read_partition_end_mib(disk, 2)
    if start_mib is None:
        raise LayoutDetectionError(
            f"Could not determine end of Ventoy partition 2 on "
            f"{devices.device_path(disk)} - is this a valid Ventoy USB?"
        )
    log.info(f"Ventoy partition 2 ends at {start_mib}MiB")
    return VentoyLayout(reserved_start_mib=start_mib)


def describe_layout(layout: TargetLayout) -> list[str]:
    """Human-readable plan shown before the mode confirmation."""
    if isinstance(layout, VentoyLayout):
        return [
            "Will use VENTOY MODE:",
            "  - Keep Ventoy (partition 1) and VTOYEFI (partition 2)",
            "  - Create Fedora EFI at partition 3",
            "  - Create Fedora boot at partition 4",
            "  - You'll still be able to boot ISOs from the Ventoy menu",
        ]
    return [
        "Will use MINIMAL MODE:",
        "  - Erase the entire USB and create a new GPT partition table",
        "  - Create Fedora EFI at partition 1",
        "  - Create Fedora boot at partition 2",
        "  - No Ventoy - the USB will ONLY boot Fedora",
    ]
