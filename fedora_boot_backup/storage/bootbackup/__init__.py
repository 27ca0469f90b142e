"""Boot partition backup and restore.

This package snapshots /boot and /boot/efi of a Fedora system that boots from
a USB drive, and recreates those partitions on a new drive with every UUID
reference updated.

Main Functions:
    - create_boot_backup(): Snapshot both trees, metadata and checksums
    - RestoreWorkflow: Restore state machine (target -> backup -> layout ->
      partitions -> files -> UUID rewrite)
    - rewrite_uuids(): Replace old UUIDs in config files
    - verify_checksums(): Check a snapshot against its manifest

Data Models:
    - BackupResult: Outcome of a backup
    - RestoreOutcome: Outcome of a restore, with its state history
    - RewriteResult: What happened to one config file
"""
from .backup import cleanup_partial_backup, create_boot_backup
from .checksums import compute_checksums, read_checksums, verify_checksums, write_checksums
from .metadata import parse_metadata, read_metadata, write_metadata
from .models import (
    BackupResult,
    ChecksumEntry,
    ProvisionedPartitions,
    RestoreOutcome,
    RestoreState,
    RewriteResult,
    SnapshotSource,
)
from .restore import RestoreWorkflow
from .rewrite import build_rewrite_targets, preview_rewrites, rewrite_uuids
from .snapshot import capture_auxiliary_config, capture_metadata, snapshot_trees

__all__ = [
    # Main functions
    "create_boot_backup",
    "cleanup_partial_backup",
    "RestoreWorkflow",
    "build_rewrite_targets",
    "preview_rewrites",
    "rewrite_uuids",
    # Capture
    "capture_auxiliary_config",
    "capture_metadata",
    "snapshot_trees",
    # Metadata and checksums
    "parse_metadata",
    "read_metadata",
    "write_metadata",
    "compute_checksums",
    "read_checksums",
    "verify_checksums",
    "write_checksums",
    # Data models
    "BackupResult",
    "ChecksumEntry",
    "ProvisionedPartitions",
    "RestoreOutcome",
    "RestoreState",
    "RewriteResult",
    "SnapshotSource",
]
