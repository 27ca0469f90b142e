"""SHA256 manifest for snapshot files.

The manifest uses the ``sha256sum`` output format, so it can be checked by
hand with ``cd <backup> && sha256sum -c checksums.sha256``.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Sequence, Union

from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage.exceptions import ChecksumMismatchError, CopyError

from .models import BOOT_TREE, EFI_TREE, ChecksumEntry


log = LoggerFactory.for_backup()

CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_checksums(
    snapshot_root: Union[str, Path],
    trees: Sequence[str] = (BOOT_TREE, EFI_TREE),
) -> list[ChecksumEntry]:
    """Hash every regular file under the given trees.

    Paths are relative to snapshot_root and sorted, so the output is
    deterministic. Symlinks are not followed.

    Raises:
        CopyError: If a file cannot be read
    """
    root = Path(snapshot_root)
    entries = []
    for tree in trees:
        base = root / tree
        if not base.is_dir():
            continue
        for path in base.rglob("*"):
            if path.is_symlink() or not path.is_file():
                continue
            relative = path.relative_to(root).as_posix()
            try:
                entries.append(ChecksumEntry(relative, sha256_file(path)))
            except OSError as error:
                raise CopyError(f"Could not checksum {relative}: {error}", str(path)) from error
    entries.sort(key=lambda entry: entry.relative_path)
    return entries


def format_checksums(entries: Iterable[ChecksumEntry]) -> str:
    return "".join(f"{entry.sha256}  {entry.relative_path}\n" for entry in entries)


def write_checksums(entries: Iterable[ChecksumEntry], path: Union[str, Path]) -> int:
    """Write the manifest, replacing any previous one. Returns the entry count."""
    entries = list(entries)
    Path(path).write_text(format_checksums(entries), encoding="utf-8")
    log.info(f"Generated {len(entries)} checksums")
    return len(entries)


def parse_checksums(text: str) -> list[ChecksumEntry]:
    entries = []
    for line in text.splitlines():
        line = line.rstrip("\n")
        if not line.strip():
            continue
        digest, sep, relative = line.partition("  ")
        if not sep:
            # sha256sum binary mode marker
            digest, sep, relative = line.partition(" *")
        if sep and digest:
            entries.append(ChecksumEntry(relative, digest.lower()))
    return entries


def read_checksums(path: Union[str, Path]) -> list[ChecksumEntry]:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        log.error(f"Could not read checksum manifest {path}: {error}")
        raise ChecksumMismatchError(str(path.parent), [path.name]) from error
    return parse_checksums(text)


def verify_checksums(snapshot_root: Union[str, Path], manifest: Union[str, Path]) -> int:
    """Check every manifest entry against the files on disk.

    Returns:
        Number of verified files

    Raises:
        ChecksumMismatchError: If the manifest is missing, or a file is
            missing or differs
    """
    root = Path(snapshot_root)
    manifest = Path(manifest)
    if not manifest.is_file():
        raise ChecksumMismatchError(str(root), [manifest.name])

    mismatched = []
    entries = read_checksums(manifest)
    for entry in entries:
        path = root / entry.relative_path
        try:
            actual = sha256_file(path)
        except OSError:
            mismatched.append(entry.relative_path)
            continue
        if actual != entry.sha256:
            mismatched.append(entry.relative_path)

    if mismatched:
        raise ChecksumMismatchError(str(root), mismatched)
    log.info(f"Verified {len(entries)} checksums")
    return len(entries)
