"""Read and write the backup metadata file.

The file is a small INI-like text file: ``[Section]`` headers, ``KEY=VALUE``
lines, ``#`` comments and blank lines. Only BOOT_UUID and EFI_UUID are
needed to restore; everything else is kept for the user's reference.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from fedora_boot_backup.domain import BackupMetadata
from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage.exceptions import MetadataError


log = LoggerFactory.for_backup()

# (section, [(KEY, attribute), ...]) in file order
SECTIONS = [
    ("Original UUIDs", [("BOOT_UUID", "boot_uuid"), ("EFI_UUID", "efi_uuid")]),
    (
        "Source Devices",
        [
            ("BOOT_DEV", "source_boot_device"),
            ("EFI_DEV", "source_efi_device"),
            ("USB_DISK", "usb_disk_name"),
        ],
    ),
    ("Partition Sizes", [("BOOT_SIZE", "boot_size_bytes"), ("EFI_SIZE", "efi_size_bytes")]),
    ("LUKS Info", [("LUKS_UUID", "luks_uuid")]),
    (
        "Backup Info",
        [
            ("BACKUP_DATE", "created_at"),
            ("KERNEL_VERSION", "kernel_version"),
            ("HOSTNAME", "hostname"),
            ("BACKUP_SCRIPT_VERSION", "script_version"),
        ],
    ),
]

KEY_TO_FIELD = {key: attr for _, keys in SECTIONS for key, attr in keys}
INT_FIELDS = {"boot_size_bytes", "efi_size_bytes"}

_SECTION_COMMENTS = {
    "Original UUIDs": [
        "# UUIDs of the boot partitions at backup time",
        "# restore-boot replaces these with the UUIDs of the new partitions",
    ],
    "Source Devices": ["# Device paths at backup time (may differ on restore)"],
    "Partition Sizes": ["# Size in bytes"],
    "LUKS Info": [
        "# Encrypted root partition (internal drive, not the USB)",
        "# This UUID does NOT change during restore",
    ],
}

HEADER = """\
#===============================================================================
# Boot Backup Metadata
#===============================================================================
#
# Original UUIDs of the boot USB. During restore they are replaced with the
# new UUIDs in /etc/fstab, grub.cfg, BLS entries and ventoy_grub.cfg.
#
# DO NOT EDIT THIS FILE - it is generated automatically by backup-boot
#===============================================================================
"""


def format_metadata(metadata: BackupMetadata) -> str:
    lines = [HEADER]
    for section, keys in SECTIONS:
        lines.append(f"[{section}]")
        lines.extend(_SECTION_COMMENTS.get(section, []))
        for key, attr in keys:
            lines.append(f"{key}={getattr(metadata, attr)}")
        lines.append("")
    return "\n".join(lines)


def write_metadata(metadata: BackupMetadata, path: Union[str, Path]) -> Path:
    """Write the metadata file, replacing any previous one."""
    path = Path(path)
    path.write_text(format_metadata(metadata), encoding="utf-8")
    log.info(f"Metadata saved to {path}")
    return path


def parse_metadata(text: str, location: str = "metadata") -> BackupMetadata:
    """Parse metadata text.

    Unknown keys are ignored. Keys may appear in any section.

    Raises:
        MetadataError: If BOOT_UUID or EFI_UUID is missing or empty
    """
    values: dict[str, object] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or line.startswith("["):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        attr = KEY_TO_FIELD.get(key.strip())
        if attr is None:
            continue
        value = value.strip().strip('"')
        if attr in INT_FIELDS:
            try:
                values[attr] = int(value)
            except ValueError:
                values[attr] = 0
        else:
            values[attr] = value

    missing = [key for key in ("BOOT_UUID", "EFI_UUID") if not values.get(KEY_TO_FIELD[key])]
    if missing:
        raise MetadataError(location, f"missing {', '.join(missing)}")
    return BackupMetadata(**values)


def read_metadata(path: Union[str, Path]) -> BackupMetadata:
    """Read and parse a metadata file.

    Raises:
        MetadataError: If the file is missing, unreadable or lacks the UUIDs
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as error:
        raise MetadataError(str(path), "file not found") from error
    except (OSError, UnicodeDecodeError) as error:
        raise MetadataError(str(path), str(error)) from error
    return parse_metadata(text, str(path))
