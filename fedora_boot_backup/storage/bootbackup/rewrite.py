"""Replace old partition UUIDs with new ones in boot config files.

Files touched:
    - /etc/fstab (required): mounts /boot and /boot/efi by UUID
    - grub2/grub.cfg: search --fs-uuid and root= lines
    - loader/entries/*.conf: BLS entries, each handled independently
    - ventoy/ventoy_grub.cfg (Ventoy mode): chainloads the Fedora EFI partition

All old UUIDs are replaced in one pass over the file's bytes, so a new UUID
is never rescanned and running the rewrite twice changes nothing.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Mapping, Optional

from fedora_boot_backup.domain import RewriteTarget, UUIDRewriteSet
from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage.exceptions import ConfigRewriteError

from .models import RewriteResult


log = LoggerFactory.for_restore()
dry_log = log.bind(dry_run=True)


def build_rewrite_targets(
    fstab_path: Path,
    boot_root: Path,
    aux_config: Optional[Path] = None,
) -> list[RewriteTarget]:
    """List the files that may reference the old UUIDs."""
    boot_root = Path(boot_root)
    targets = [
        RewriteTarget(Path(fstab_path), required=True, description="fstab"),
        RewriteTarget(boot_root / "grub2" / "grub.cfg", description="grub.cfg"),
    ]
    entries_dir = boot_root / "loader" / "entries"
    if entries_dir.is_dir():
        for entry in sorted(entries_dir.glob("*.conf")):
            targets.append(RewriteTarget(entry, description=f"BLS entry {entry.name}"))
    if aux_config is not None:
        targets.append(RewriteTarget(Path(aux_config), description=Path(aux_config).name))
    return targets


def _compile(mapping: Mapping[str, str]) -> tuple[Optional[re.Pattern], dict[bytes, bytes]]:
    byte_map = {old.encode(): new.encode() for old, new in mapping.items()}
    if not byte_map:
        return None, byte_map
    # Longest first so a shorter UUID never shadows a longer one
    alternatives = sorted(byte_map, key=len, reverse=True)
    return re.compile(b"|".join(re.escape(old) for old in alternatives)), byte_map


def substitute(content: bytes, mapping: Mapping[str, str]) -> tuple[bytes, int]:
    """Replace every old UUID in content. Returns (new content, replacements)."""
    pattern, byte_map = _compile(mapping)
    if pattern is None:
        return content, 0
    return pattern.subn(lambda match: byte_map[match.group(0)], content)


def _read_target(target: RewriteTarget) -> Optional[bytes]:
    """Return file bytes, or None when an optional target is absent."""
    if not target.path.exists():
        if target.required:
            raise ConfigRewriteError(f"{target.label} not found at {target.path}", str(target.path))
        return None
    try:
        return target.path.read_bytes()
    except OSError as error:
        raise ConfigRewriteError(
            f"Could not read {target.label} ({target.path}): {error}", str(target.path)
        ) from error


def rewrite_uuids(targets: Iterable[RewriteTarget], rewrite_set: UUIDRewriteSet) -> list[RewriteResult]:
    """Rewrite old UUIDs to new ones in every target.

    Raises:
        ConfigRewriteError: If the UUIDs are not all valid, a required file
            is missing, or a present file cannot be read or written
    """
    if not rewrite_set.is_resolved:
        invalid = ", ".join(rewrite_set.invalid_values())
        raise ConfigRewriteError(f"Refusing to rewrite with invalid UUIDs: {invalid}")

    mapping = rewrite_set.mapping()
    results = []
    for target in targets:
        content = _read_target(target)
        if content is None:
            log.debug(f"Skipping {target.label}: {target.path} not present")
            results.append(RewriteResult(target.path, RewriteResult.SKIPPED, message="not present"))
            continue

        new_content, count = substitute(content, mapping)
        if count == 0:
            log.info(f"{target.label} does not reference the old UUIDs - left unchanged")
            results.append(RewriteResult(target.path, RewriteResult.UNCHANGED))
            continue

        try:
            target.path.write_bytes(new_content)
            leftover = remaining_old_uuids(target.path, rewrite_set)
        except OSError as error:
            raise ConfigRewriteError(
                f"Could not write {target.label} ({target.path}): {error}", str(target.path)
            ) from error
        if leftover:
            raise ConfigRewriteError(
                f"{target.label} still references {', '.join(leftover)} after rewrite",
                str(target.path),
            )
        log.info(f"Updated {target.label} ({count} replacement{'s' if count != 1 else ''})")
        results.append(RewriteResult(target.path, RewriteResult.REWRITTEN, count))
    return results


def preview_rewrites(targets: Iterable[RewriteTarget], rewrite_set: UUIDRewriteSet) -> list[RewriteResult]:
    """Report what rewrite_uuids() would change without writing anything.

    New UUIDs may be placeholders; only the old UUIDs must be real.
    """
    mapping = rewrite_set.mapping()
    results = []
    for target in targets:
        try:
            content = _read_target(target)
        except ConfigRewriteError as error:
            log.warning(str(error))
            results.append(RewriteResult(target.path, RewriteResult.SKIPPED, message=str(error)))
            continue
        if content is None:
            results.append(RewriteResult(target.path, RewriteResult.SKIPPED, message="not present"))
            continue
        _, count = substitute(content, mapping)
        if count:
            for old, new in mapping.items():
                occurrences = content.count(old.encode())
                if occurrences:
                    dry_log.info(f"Would replace {old} -> {new} in {target.label} ({occurrences}x)")
        else:
            log.info(f"{target.label} does not reference the old UUIDs")
        results.append(RewriteResult(target.path, RewriteResult.PREVIEW, count))
    return results


def remaining_old_uuids(path: Path, rewrite_set: UUIDRewriteSet) -> list[str]:
    """Old UUIDs still present in a file (empty after a successful rewrite)."""
    content = Path(path).read_bytes()
    return [old for old, _ in rewrite_set.pairs() if old.encode() in content]
