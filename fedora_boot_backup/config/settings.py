"""Settings storage for backup/restore configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "FEDORA_BOOT_BACKUP_SETTINGS_PATH",
        Path.home() / ".config" / "fedora-boot-backup" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BACKUP_DIR = "/root/boot-backup"
DEFAULT_EFI_SIZE_MIB = 512
DEFAULT_BOOT_LABEL = "FEDORA_BOOT"
DEFAULT_PARTITION_WAIT_SECONDS = 10

DEFAULT_SETTINGS: dict[str, Any] = {
    "backup_dir": DEFAULT_BACKUP_DIR,
    "boot_mount": "/boot",
    "efi_mount": "/boot/efi",
    "fstab_path": "/etc/fstab",
    "work_dir": "/mnt",
    "luks_mapper_name": "cryptroot",
    "luks_mount_options": "subvol=root",
    "luks_backup_subdir": "root/boot-backup",
    "efi_size_mib": DEFAULT_EFI_SIZE_MIB,
    "boot_label": DEFAULT_BOOT_LABEL,
    "ventoy_fstype": "exfat",
    "ventoy_label_pattern": "ventoy",
    "ventoy_efi_label": "VTOYEFI",
    "ventoy_config_dir": "ventoy",
    "ventoy_files": ["ventoy.json", "ventoy_grub.cfg"],
    "ventoy_chainloader_file": "ventoy_grub.cfg",
    "partition_wait_seconds": DEFAULT_PARTITION_WAIT_SECONDS,
    "space_margin_percent": 110,
    "required_tools": ["cryptsetup", "parted", "rsync", "blkid", "findmnt"],
    "install_missing_tools": True,
    "verify_checksums": False,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    if default is None:
        default = DEFAULT_SETTINGS.get(key)
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int | None = None) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(DEFAULT_SETTINGS.get(key, default or 0))


def get_list(key: str) -> list[str]:
    value = get_setting(key)
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return list(DEFAULT_SETTINGS.get(key, []))


load_settings()
