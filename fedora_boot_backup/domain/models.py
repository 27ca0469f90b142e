"""Domain model for boot partition backup and restore.

Type-safe objects for the backup metadata record, the restore target layout
and the UUID mapping applied to config files after formatting.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# UUIDs
# ==============================================================================

# ext4 (and most Linux filesystems): 8-4-4-4-12 hex
# FAT32 volume serial as reported by blkid: XXXX-XXXX
_UUID_PATTERN = re.compile(
    r"^(?:[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}"
    r"|[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4})$"
)


def is_valid_uuid(value: Optional[str]) -> bool:
    """Check that a value looks like a filesystem UUID blkid would report."""
    if not value:
        return False
    return bool(_UUID_PATTERN.match(value))


# ==============================================================================
# Backup Metadata
# ==============================================================================


@dataclass(frozen=True)
class BackupMetadata:
    """The persisted record written next to each snapshot.

    Only boot_uuid and efi_uuid are load-bearing for a restore; every other
    field is diagnostic.
    """

    boot_uuid: str
    efi_uuid: str
    source_boot_device: str = ""
    source_efi_device: str = ""
    usb_disk_name: str = ""
    boot_size_bytes: int = 0
    efi_size_bytes: int = 0
    luks_uuid: str = ""  # never rewritten
    created_at: str = ""
    kernel_version: str = ""
    hostname: str = ""
    script_version: str = ""

    @property
    def is_restorable(self) -> bool:
        return is_valid_uuid(self.boot_uuid) and is_valid_uuid(self.efi_uuid)


# ==============================================================================
# Target Layout
# ==============================================================================


class LayoutMode(Enum):
    """Partition scheme used on the restore target."""

    VENTOY = "ventoy"
    MINIMAL = "minimal"


@dataclass(frozen=True)
class TargetLayout:
    """Base for the two layout variants; selected once per restore run."""

    @property
    def mode(self) -> LayoutMode:
        raise NotImplementedError

    @property
    def start_mib(self) -> int:
        raise NotImplementedError

    @property
    def efi_partition_number(self) -> int:
        raise NotImplementedError

    @property
    def boot_partition_number(self) -> int:
        raise NotImplementedError

    @property
    def requires_new_table(self) -> bool:
        return False


@dataclass(frozen=True)
class VentoyLayout(TargetLayout):
    """Target already hosts Ventoy; our partitions go in its reserved space."""

    reserved_start_mib: int

    @property
    def mode(self) -> LayoutMode:
        return LayoutMode.VENTOY

    @property
    def start_mib(self) -> int:
        return self.reserved_start_mib

    @property
    def efi_partition_number(self) -> int:
        return 3

    @property
    def boot_partition_number(self) -> int:
        return 4


@dataclass(frozen=True)
class MinimalLayout(TargetLayout):
    """Target is empty or unrecognized; the whole device is repartitioned."""

    # 1MiB keeps the first partition aligned
    first_usable_mib: int = 1

    @property
    def mode(self) -> LayoutMode:
        return LayoutMode.MINIMAL

    @property
    def start_mib(self) -> int:
        return self.first_usable_mib

    @property
    def efi_partition_number(self) -> int:
        return 1

    @property
    def boot_partition_number(self) -> int:
        return 2

    @property
    def requires_new_table(self) -> bool:
        return True


@dataclass(frozen=True)
class LoaderSignature:
    """How a Ventoy-style multi-boot loader is recognized on partition 1.

    Matches when partition 1 has the given filesystem type and either its
    label contains label_pattern (case-insensitive) or partition 2 carries
    efi_label.
    """

    fstype: str = "exfat"
    label_pattern: str = "ventoy"
    efi_label: str = "VTOYEFI"

    def matches(
        self,
        fstype: Optional[str],
        label: Optional[str],
        second_label: Optional[str] = None,
    ) -> bool:
        if not fstype or fstype.lower() != self.fstype.lower():
            return False
        if self.label_pattern and label and self.label_pattern.lower() in label.lower():
            return True
        if self.efi_label and second_label and second_label.upper() == self.efi_label.upper():
            return True
        return False


# ==============================================================================
# UUID Rewriting
# ==============================================================================


@dataclass(frozen=True)
class UUIDRewriteSet:
    """Old -> new UUID mapping computed once new partitions are formatted."""

    old_boot_uuid: str
    new_boot_uuid: str
    old_efi_uuid: str
    new_efi_uuid: str

    def pairs(self) -> list[tuple[str, str]]:
        """Return (old, new) pairs that actually change something."""
        pairs = [
            (self.old_boot_uuid, self.new_boot_uuid),
            (self.old_efi_uuid, self.new_efi_uuid),
        ]
        return [(old, new) for old, new in pairs if old and old != new]

    def mapping(self) -> dict[str, str]:
        return dict(self.pairs())

    def invalid_values(self) -> list[str]:
        """Names of fields that are empty or not UUID-shaped."""
        invalid = []
        for name in ("old_boot_uuid", "new_boot_uuid", "old_efi_uuid", "new_efi_uuid"):
            if not is_valid_uuid(getattr(self, name)):
                invalid.append(name)
        return invalid

    @property
    def is_resolved(self) -> bool:
        return not self.invalid_values()


@dataclass(frozen=True)
class RewriteTarget:
    """A config file that may reference the old UUIDs."""

    path: Path
    required: bool = False
    description: str = field(default="", compare=False)

    @property
    def label(self) -> str:
        return self.description or str(self.path)
