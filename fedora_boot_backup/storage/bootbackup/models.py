"""Data models for boot partition backup and restore runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from fedora_boot_backup.domain import BackupMetadata, TargetLayout, UUIDRewriteSet


BOOT_TREE = "boot"
EFI_TREE = "efi"
AUX_TREE = "ventoy"
METADATA_FILE = "metadata.txt"
CHECKSUM_FILE = "checksums.sha256"


@dataclass(frozen=True)
class SnapshotSource:
    """A source tree and the subdirectory it is mirrored into."""

    name: str
    path: Path
    excludes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChecksumEntry:
    relative_path: str
    sha256: str


@dataclass
class BackupResult:
    """Outcome of a backup run."""

    backup_dir: Path
    metadata: BackupMetadata
    file_counts: dict[str, int] = field(default_factory=dict)
    checksum_count: int = 0
    total_bytes: int = 0
    auxiliary_files: list[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(frozen=True)
class ProvisionedPartitions:
    efi_node: str
    boot_node: str
    efi_uuid: str
    boot_uuid: str


@dataclass(frozen=True)
class RewriteResult:
    """What happened to one rewrite target."""

    path: Path
    status: str
    replacements: int = 0
    message: str = ""

    REWRITTEN = "rewritten"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    PREVIEW = "preview"

    @property
    def changed(self) -> bool:
        return self.status in (self.REWRITTEN, self.PREVIEW) and self.replacements > 0


class RestoreState(Enum):
    IDLE = "idle"
    TARGET_SELECTED = "target_selected"
    BACKUP_LOCATED = "backup_located"
    LAYOUT_DETERMINED = "layout_determined"
    PARTITIONS_PROVISIONED = "partitions_provisioned"
    FILES_RESTORED = "files_restored"
    UUIDS_REWRITTEN = "uuids_rewritten"
    FINALIZED = "finalized"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RestoreState.FINALIZED, RestoreState.ABORTED)


@dataclass
class StepResult:
    """Typed result of one state transition."""

    state: RestoreState
    ok: bool
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return not self.ok


@dataclass
class RestoreOutcome:
    """Final report of a restore run."""

    state: RestoreState
    target: Optional[str] = None
    layout: Optional[TargetLayout] = None
    rewrite_set: Optional[UUIDRewriteSet] = None
    rewrites: list[RewriteResult] = field(default_factory=list)
    history: list[RestoreState] = field(default_factory=list)
    error: Optional[BaseException] = None
    release_failures: list[tuple[str, Exception]] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is RestoreState.FINALIZED
