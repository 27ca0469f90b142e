"""Domain models for boot partition backup and restore.

This package contains type-safe domain objects shared by the backup and
restore workflows.
"""

from __future__ import annotations

from .models import (
    BackupMetadata,
    LayoutMode,
    LoaderSignature,
    MinimalLayout,
    RewriteTarget,
    TargetLayout,
    UUIDRewriteSet,
    VentoyLayout,
    is_valid_uuid,
)


__all__ = [
    "BackupMetadata",
    "LayoutMode",
    "LoaderSignature",
    "MinimalLayout",
    "RewriteTarget",
    "TargetLayout",
    "UUIDRewriteSet",
    "VentoyLayout",
    "is_valid_uuid",
]
