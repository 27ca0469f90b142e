"""
Pytest configuration and shared fixtures for fedora-boot-backup tests.

This module provides common fixtures and utilities used across all test modules.
"""

import copy
import shutil
from pathlib import Path
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from fedora_boot_backup.config import settings
from fedora_boot_backup.domain import BackupMetadata
from fedora_boot_backup.storage import devices
from fedora_boot_backup.storage.bootbackup.checksums import compute_checksums, write_checksums
from fedora_boot_backup.storage.bootbackup.metadata import write_metadata


BOOT_UUID = "3f2a9c1e-5b7d-4e8f-9a0b-1c2d3e4f5a6b"
EFI_UUID = "A1B2-C3D4"
NEW_BOOT_UUID = "8d7c6b5a-4f3e-4d2c-8b1a-0f9e8d7c6b5a"
NEW_EFI_UUID = "E5F6-0718"
LUKS_UUID = "11111111-2222-4333-8444-555555555555"


# ==============================================================================
# Settings Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Every test starts from default settings and never touches ~/.config."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings" / "settings.json")
    settings.settings_store.values = copy.deepcopy(settings.DEFAULT_SETTINGS)
    yield settings.settings_store.values


@pytest.fixture
def work_dir(tmp_path) -> Path:
    """Temporary replacement for /mnt, wired into settings."""
    path = tmp_path / "mnt"
    path.mkdir()
    settings.settings_store.values["work_dir"] = str(path)
    return path


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    """Mock CompletedProcess as returned by run_command."""
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_completed():
    return completed


class FakeRsync:
    """Stands in for `rsync -a [--exclude=/x] src/ dst/` using shutil."""

    def __init__(self):
        self.commands = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        if command[0] != "rsync":
            return completed()
        source = Path(command[-2].rstrip("/"))
        destination = Path(command[-1].rstrip("/"))
        anchored = {
            arg.split("=", 1)[1].lstrip("/")
            for arg in command
            if arg.startswith("--exclude=")
        }

        def ignore(directory, names):
            if Path(directory) == source:
                return [name for name in names if name in anchored]
            return []

        shutil.copytree(source, destination, symlinks=True, ignore=ignore, dirs_exist_ok=True)
        return completed()


@pytest.fixture
def fake_rsync(monkeypatch):
    """Route devices.run_command through FakeRsync."""
    fake = FakeRsync()
    monkeypatch.setattr(devices, "run_command", fake)
    return fake


@pytest.fixture
def boot_source(tmp_path) -> Path:
    """A /boot tree with /boot/efi nested inside it, as on Fedora."""
    boot = tmp_path / "src-boot"
    _write(boot / "vmlinuz-6.12.4-200.fc41.x86_64", "kernel")
    _write(boot / "grub2" / "grub.cfg", f"search --fs-uuid --set=root {BOOT_UUID}\n")
    _write(boot / "grub2" / "efi" / "README", "not the efi mount")
    _write(boot / "loader" / "entries" / "abc.conf", f"options boot={BOOT_UUID}\n")
    _write(boot / "efi" / "EFI" / "fedora" / "grubx64.efi", "grub efi")
    _write(boot / "efi" / "EFI" / "BOOT" / "BOOTX64.EFI", "shim")
    return boot


# ==============================================================================
# Backup Fixtures
# ==============================================================================


@pytest.fixture
def sample_metadata() -> BackupMetadata:
    return BackupMetadata(
        boot_uuid=BOOT_UUID,
        efi_uuid=EFI_UUID,
        source_boot_device="/dev/sdb4",
        source_efi_device="/dev/sdb3",
        usb_disk_name="/dev/sdb",
        boot_size_bytes=1610612736,
        efi_size_bytes=536870912,
        luks_uuid=LUKS_UUID,
        created_at="2026-03-01_10:15:00",
        kernel_version="6.12.4-200.fc41.x86_64",
        hostname="workstation",
        script_version="1.1.0",
    )


@pytest.fixture
def sample_fstab_text() -> str:
    return (
        "# /etc/fstab\n"
        "UUID=0a0b0c0d-1111-4222-8333-444455556666 / btrfs subvol=root,compress=zstd:1 0 0\n"
        f"UUID={BOOT_UUID} /boot ext4 defaults 1 2\n"
        f"UUID={EFI_UUID} /boot/efi vfat umask=0077,shortname=winnt 0 2\n"
        "UUID=0a0b0c0d-1111-4222-8333-444455556666 /home btrfs subvol=home,compress=zstd:1 0 0\n"
    )


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def backup_dir(tmp_path, sample_metadata) -> Path:
    """A complete backup directory as written by backup-boot."""
    root = tmp_path / "boot-backup"
    _write(root / "boot" / "vmlinuz-6.12.4-200.fc41.x86_64", "kernel")
    _write(root / "boot" / "initramfs-6.12.4-200.fc41.x86_64.img", "initramfs")
    _write(
        root / "boot" / "grub2" / "grub.cfg",
        f"search --no-floppy --fs-uuid --set=root {BOOT_UUID}\n",
    )
    _write(
        root / "boot" / "loader" / "entries" / "abc-6.12.4-200.fc41.x86_64.conf",
        "title Fedora Linux (6.12.4-200.fc41.x86_64)\n"
        f"options root=UUID=0a0b0c0d-1111-4222-8333-444455556666 boot={BOOT_UUID}\n",
    )
    _write(root / "efi" / "EFI" / "fedora" / "grubx64.efi", "grub efi")
    _write(
        root / "efi" / "EFI" / "fedora" / "grub.cfg",
        f"search --no-floppy --fs-uuid --set=dev {BOOT_UUID}\n",
    )
    _write(root / "ventoy" / "ventoy.json", '{"control": [{"VTOY_MENU_TIMEOUT": "5"}]}\n')
    _write(
        root / "ventoy" / "ventoy_grub.cfg",
        'menuentry "Fedora encrypted" {\n'
        f"    search --no-floppy --fs-uuid --set=root {EFI_UUID}\n"
        "    chainloader /EFI/fedora/shimx64.efi\n"
        "}\n",
    )
    write_metadata(sample_metadata, root / "metadata.txt")
    write_checksums(compute_checksums(root), root / "checksums.sha256")
    return root


@pytest.fixture
def lsblk_disks_json() -> str:
    return (
        '{"blockdevices": ['
        '{"name": "nvme0n1", "size": 512110190592, "model": "Samsung SSD 980", '
        '"tran": "nvme", "type": "disk"},'
        '{"name": "sda", "size": 32015679488, "model": "Fedora Live", '
        '"tran": "usb", "type": "disk"},'
        '{"name": "sdb", "size": 32015679488, "model": "SanDisk Ultra", '
        '"tran": "usb", "type": "disk"},'
        '{"name": "loop0", "size": 2147483648, "model": null, "tran": null, "type": "loop"}'
        "]}"
    )


@pytest.fixture
def parted_ventoy_output() -> str:
    """`parted -s -m /dev/sdb unit B print` for a Ventoy USB."""
    return (
        "BYT;\n"
        "/dev/sdb:32015679488B:scsi:512:512:gpt:SanDisk Ultra:;\n"
        "1:1048576B:31977373695B:31976325120B:exfat:Ventoy:;\n"
        "2:31977373696B:32010928127B:33554432B:fat16:VTOYEFI:msftdata;\n"
    )


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    return {
        "backup_dir": "/srv/boot-backup",
        "efi_size_mib": 600,
        "ventoy_efi_label": "MYEFI",
        "verify_checksums": True,
    }
