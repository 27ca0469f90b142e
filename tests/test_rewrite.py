"""Tests for storage/bootbackup/rewrite.py - UUID rewriting in config files.

This test suite covers:
- Target discovery (fstab, grub.cfg, every BLS entry, Ventoy config)
- Single-pass substitution (no chained replacement, idempotence)
- Required vs optional targets
- Refusal to write with unresolved UUIDs
- Preview mode with placeholder UUIDs
"""

from pathlib import Path

import pytest

from fedora_boot_backup.domain import RewriteTarget, UUIDRewriteSet
from fedora_boot_backup.storage.bootbackup import rewrite
from fedora_boot_backup.storage.bootbackup.models import RewriteResult
from fedora_boot_backup.storage.exceptions import ConfigRewriteError

from conftest import BOOT_UUID, EFI_UUID, NEW_BOOT_UUID, NEW_EFI_UUID


@pytest.fixture
def rewrite_set():
    return UUIDRewriteSet(
        old_boot_uuid=BOOT_UUID,
        new_boot_uuid=NEW_BOOT_UUID,
        old_efi_uuid=EFI_UUID,
        new_efi_uuid=NEW_EFI_UUID,
    )


@pytest.fixture
def restored_tree(tmp_path, backup_dir, sample_fstab_text):
    """fstab plus a boot tree laid out as after the file copy."""
    fstab = tmp_path / "etc" / "fstab"
    fstab.parent.mkdir()
    fstab.write_text(sample_fstab_text)
    return fstab, backup_dir / "boot"


class TestBuildRewriteTargets:
    """Tests for build_rewrite_targets()."""

    def test_lists_fstab_grub_and_every_bls_entry(self, tmp_path):
        """Test that each BLS entry becomes its own target."""
        entries = tmp_path / "boot" / "loader" / "entries"
        entries.mkdir(parents=True)
        (entries / "b.conf").write_text("")
        (entries / "a.conf").write_text("")
        (entries / "notes.txt").write_text("")

        targets = rewrite.build_rewrite_targets(tmp_path / "fstab", tmp_path / "boot")

        assert [t.path for t in targets] == [
            tmp_path / "fstab",
            tmp_path / "boot" / "grub2" / "grub.cfg",
            entries / "a.conf",
            entries / "b.conf",
        ]

    def test_only_fstab_is_required(self, tmp_path):
        """Test that fstab is the single mandatory target."""
        targets = rewrite.build_rewrite_targets(tmp_path / "fstab", tmp_path / "boot")

        assert [t.required for t in targets] == [True, False]

    def test_aux_config_appended(self, tmp_path):
        """Test that the Ventoy chainloader config is added last."""
        aux = tmp_path / "ventoy" / "ventoy_grub.cfg"

        targets = rewrite.build_rewrite_targets(tmp_path / "fstab", tmp_path / "boot", aux)

        assert targets[-1] == RewriteTarget(aux)


class TestSubstitute:
    """Tests for substitute()."""

    def test_replaces_all_occurrences(self):
        """Test that every occurrence of every old UUID is replaced."""
        content = f"{BOOT_UUID} {EFI_UUID} {BOOT_UUID}".encode()

        result, count = rewrite.substitute(
            content, {BOOT_UUID: NEW_BOOT_UUID, EFI_UUID: NEW_EFI_UUID}
        )

        assert result == f"{NEW_BOOT_UUID} {NEW_EFI_UUID} {NEW_BOOT_UUID}".encode()
        assert count == 3

    def test_no_chained_replacement(self):
        """Test that a new UUID equal to another old UUID is not rewritten again."""
        content = b"AAAA-AAAA BBBB-BBBB"

        result, count = rewrite.substitute(
            content, {"AAAA-AAAA": "BBBB-BBBB", "BBBB-BBBB": "CCCC-CCCC"}
        )

        assert result == b"BBBB-BBBB CCCC-CCCC"
        assert count == 2

    def test_longer_uuid_wins_over_prefix(self):
        """Test that an old UUID containing another is matched whole."""
        content = b"1234-5678-9abc"

        result, _ = rewrite.substitute(
            content, {"1234-5678": "short", "1234-5678-9abc": "long"}
        )

        assert result == b"long"

    def test_empty_mapping_is_noop(self):
        """Test that nothing changes without a mapping."""
        assert rewrite.substitute(b"data", {}) == (b"data", 0)

    def test_preserves_non_utf8_bytes(self):
        """Test that arbitrary bytes around the UUID survive."""
        content = b"\xff\xfe" + BOOT_UUID.encode() + b"\x00"

        result, _ = rewrite.substitute(content, {BOOT_UUID: NEW_BOOT_UUID})

        assert result == b"\xff\xfe" + NEW_BOOT_UUID.encode() + b"\x00"


class TestRewriteUUIDs:
    """Tests for rewrite_uuids()."""

    def test_rewrites_fstab_grub_and_bls(self, restored_tree, rewrite_set):
        """Test a full rewrite over a restored boot tree."""
        fstab, boot_root = restored_tree
        targets = rewrite.build_rewrite_targets(fstab, boot_root)

        results = rewrite.rewrite_uuids(targets, rewrite_set)

        assert [r.status for r in results] == [RewriteResult.REWRITTEN] * 3
        for target in targets:
            assert rewrite.remaining_old_uuids(target.path, rewrite_set) == []
        fstab_text = fstab.read_text()
        assert f"UUID={NEW_BOOT_UUID} /boot ext4" in fstab_text
        assert f"UUID={NEW_EFI_UUID} /boot/efi vfat" in fstab_text
        assert "UUID=0a0b0c0d-1111-4222-8333-444455556666 / btrfs" in fstab_text

    def test_second_run_changes_nothing(self, restored_tree, rewrite_set):
        """Test that rewriting is idempotent."""
        fstab, boot_root = restored_tree
        targets = rewrite.build_rewrite_targets(fstab, boot_root)
        rewrite.rewrite_uuids(targets, rewrite_set)
        before = fstab.read_bytes()

        results = rewrite.rewrite_uuids(targets, rewrite_set)

        assert all(r.status == RewriteResult.UNCHANGED for r in results)
        assert fstab.read_bytes() == before

    def test_missing_optional_target_is_skipped(self, tmp_path, rewrite_set, sample_fstab_text):
        """Test that an absent grub.cfg is reported as skipped."""
        fstab = tmp_path / "fstab"
        fstab.write_text(sample_fstab_text)
        targets = rewrite.build_rewrite_targets(fstab, tmp_path / "boot")

        results = rewrite.rewrite_uuids(targets, rewrite_set)

        assert results[0].status == RewriteResult.REWRITTEN
        assert results[1].status == RewriteResult.SKIPPED

    def test_missing_fstab_raises(self, tmp_path, rewrite_set):
        """Test that a missing fstab aborts the rewrite."""
        targets = rewrite.build_rewrite_targets(tmp_path / "fstab", tmp_path / "boot")

        with pytest.raises(ConfigRewriteError) as exc_info:
            rewrite.rewrite_uuids(targets, rewrite_set)

        assert exc_info.value.path == str(tmp_path / "fstab")

    def test_file_without_old_uuids_left_unchanged(self, tmp_path, rewrite_set):
        """Test that files not referencing the old UUIDs are not written."""
        fstab = tmp_path / "fstab"
        fstab.write_text("UUID=other / ext4 defaults 0 0\n")
        mtime = fstab.stat().st_mtime_ns

        results = rewrite.rewrite_uuids([RewriteTarget(fstab, required=True)], rewrite_set)

        assert results[0].status == RewriteResult.UNCHANGED
        assert fstab.stat().st_mtime_ns == mtime

    def test_rejects_placeholder_uuids(self, restored_tree):
        """Test that nothing is written while UUIDs are unresolved."""
        fstab, boot_root = restored_tree
        before = fstab.read_bytes()
        unresolved = UUIDRewriteSet(BOOT_UUID, "<new-boot-uuid>", EFI_UUID, "<new-efi-uuid>")

        with pytest.raises(ConfigRewriteError, match="new_boot_uuid, new_efi_uuid"):
            rewrite.rewrite_uuids(rewrite.build_rewrite_targets(fstab, boot_root), unresolved)

        assert fstab.read_bytes() == before

    def test_rejects_empty_old_uuid(self, restored_tree):
        """Test that an empty old UUID is refused."""
        fstab, boot_root = restored_tree
        invalid = UUIDRewriteSet("", NEW_BOOT_UUID, EFI_UUID, NEW_EFI_UUID)

        with pytest.raises(ConfigRewriteError, match="old_boot_uuid"):
            rewrite.rewrite_uuids([RewriteTarget(fstab, required=True)], invalid)

    def test_leftover_old_uuid_after_write_raises(self, restored_tree, rewrite_set, mocker):
        """Test that the written file is checked for surviving old UUIDs."""
        fstab, _ = restored_tree
        check = mocker.patch.object(rewrite, "remaining_old_uuids", return_value=[BOOT_UUID])

        with pytest.raises(ConfigRewriteError, match="still references"):
            rewrite.rewrite_uuids([RewriteTarget(fstab, required=True)], rewrite_set)

        check.assert_called_once_with(fstab, rewrite_set)

    def test_efi_uuid_replaced_in_ventoy_config(self, backup_dir, rewrite_set):
        """Test that the chainloader config points at the new EFI UUID."""
        aux = backup_dir / "ventoy" / "ventoy_grub.cfg"

        results = rewrite.rewrite_uuids([RewriteTarget(aux)], rewrite_set)

        assert results[0].replacements == 1
        assert NEW_EFI_UUID in aux.read_text()
        assert EFI_UUID not in aux.read_text()


class TestPreviewRewrites:
    """Tests for preview_rewrites()."""

    def test_preview_does_not_write(self, restored_tree, rewrite_set):
        """Test that preview leaves every file untouched."""
        fstab, boot_root = restored_tree
        targets = rewrite.build_rewrite_targets(fstab, boot_root)
        before = {t.path: t.path.read_bytes() for t in targets}

        results = rewrite.preview_rewrites(targets, rewrite_set)

        assert all(r.status == RewriteResult.PREVIEW for r in results)
        assert {t.path: t.path.read_bytes() for t in targets} == before
        assert results[0].replacements == 2

    def test_preview_accepts_placeholders(self, restored_tree):
        """Test that preview works before the new UUIDs exist."""
        fstab, boot_root = restored_tree
        placeholders = UUIDRewriteSet(BOOT_UUID, "<new-boot-uuid>", EFI_UUID, "<new-efi-uuid>")

        results = rewrite.preview_rewrites([RewriteTarget(fstab, required=True)], placeholders)

        assert results[0].changed

    def test_preview_reports_missing_fstab_without_raising(self, tmp_path, rewrite_set):
        """Test that a missing required file is skipped in preview."""
        results = rewrite.preview_rewrites(
            [RewriteTarget(tmp_path / "fstab", required=True)], rewrite_set
        )

        assert results[0].status == RewriteResult.SKIPPED
        assert "not found" in results[0].message


class TestRemainingOldUUIDs:
    """Tests for remaining_old_uuids()."""

    def test_lists_uuids_still_present(self, tmp_path, rewrite_set):
        path = Path(tmp_path / "grub.cfg")
        path.write_text(f"search --fs-uuid {EFI_UUID}\n")

        assert rewrite.remaining_old_uuids(path, rewrite_set) == [EFI_UUID]
