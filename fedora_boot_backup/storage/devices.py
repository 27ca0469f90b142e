"""Block device queries using lsblk, blkid and findmnt.

This module wraps the read-only device utilities the backup and restore
workflows rely on. Every command goes through run_command() so it is logged
and can be mocked in one place.

Device Queries:
    - find_mount_source(): Device mounted at a path (findmnt)
    - get_filesystem_uuid(): Filesystem UUID of a partition (blkid)
    - probe_partition(): TYPE/LABEL/UUID of a partition (blkid -o export)
    - get_parent_disk(): Parent disk name of a partition (lsblk PKNAME)
    - get_size_bytes(): Size of a block device (lsblk SIZE)
    - list_disks(): Whole disks for the target selection list (lsblk -J)
    - list_luks_partitions(): LUKS containers on any attached disk

Excluded Device Detection:
    The restore workflow must never touch the medium it was started from:

    1. Live mode: the live USB is found via /run/initramfs/live, then a
       Fedora-* label in /dev/disk/by-label, then the first squashfs mount.
    2. From-installed mode: the disk backing the running system's /boot.

Partition Naming:
    NVMe and MMC disks use a "p" separator (nvme0n1p1, mmcblk0p1); others
    append the number directly (sda1).
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import stat
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional

from fedora_boot_backup.logging import LoggerFactory


log = LoggerFactory.for_storage()
output_log = log.bind(tags=["storage", "command-output"])

LIVE_MOUNTPOINT = "/run/initramfs/live"
LIVE_LABEL_GLOB = "Fedora-*"
DISK_BY_LABEL = Path("/dev/disk/by-label")


def run_command(
    command,
    check=True,
    log_output=True,
    log_command=True,
    interactive=False,
):
    """Run an external command, logging it and its output.

    Interactive commands (cryptsetup prompting for a passphrase) inherit the
    terminal instead of having their output captured.
    """
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        if interactive:
            result = subprocess.run(command, check=check, text=True)
        else:
            result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            output_log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            output_log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_output(command) -> str:
    """Return stripped stdout of a command, or "" if it fails or is missing."""
    try:
        result = run_command(command, check=False, log_command=False)
    except (OSError, subprocess.SubprocessError) as error:
        log.debug(f"{command[0]} unavailable: {error}")
        return ""
    if result.returncode != 0:
        return ""
    return (result.stdout or "").strip()


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def normalize_device_name(device: str) -> str:
    """Strip a /dev/ prefix: "/dev/sdb" -> "sdb"."""
    device = (device or "").strip()
    if device.startswith("/dev/"):
        return device[len("/dev/"):]
    return device


def device_path(device: str) -> str:
    return f"/dev/{normalize_device_name(device)}"


def partition_path(disk: str, number: int) -> str:
    """Partition node for a disk: ("/dev/sdb", 3) -> "/dev/sdb3"."""
    disk_node = device_path(disk)
    name = normalize_device_name(disk)
    if "nvme" in name or "mmcblk" in name or name[-1:].isdigit():
        return f"{disk_node}p{number}"
    return f"{disk_node}{number}"


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def is_mountpoint_active(mountpoint: str) -> bool:
    """Check if a mountpoint is currently active."""
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def find_mount_source(mountpoint: str) -> Optional[str]:
    source = command_output(["findmnt", "-n", "-o", "SOURCE", mountpoint])
    if not source:
        return None
    # btrfs subvolume sources look like /dev/mapper/x[/root]
    return source.splitlines()[0].split("[", 1)[0].strip() or None


def get_filesystem_uuid(partition: str) -> Optional[str]:
    uuid_value = command_output(["blkid", "-s", "UUID", "-o", "value", partition])
    return uuid_value or None


def probe_partition(partition: str) -> dict[str, str]:
    """Return blkid's key/value export for a partition (TYPE, LABEL, UUID...)."""
    output = command_output(["blkid", "-o", "export", partition])
    info: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            info[key.strip()] = value.strip()
    return info


def get_parent_disk(partition: str) -> Optional[str]:
    output = command_output(["lsblk", "-no", "PKNAME", partition])
    for line in output.splitlines():
        if line.strip():
            return line.strip()
    return None


def get_size_bytes(device: str) -> int:
    output = command_output(["lsblk", "-bdno", "SIZE", device])
    try:
        return int(output.splitlines()[0])
    except (IndexError, ValueError):
        return 0


def list_disks() -> list[dict]:
    """Return whole disks (no loop devices) from lsblk JSON output."""
    output = command_output(
        ["lsblk", "-J", "-b", "-d", "-o", "NAME,SIZE,MODEL,TRAN,TYPE"]
    )
    if not output:
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as error:
        log.debug(f"lsblk returned invalid JSON: {error}")
        return []
    return [
        device
        for device in data.get("blockdevices", [])
        if device.get("type") == "disk" and not str(device.get("name", "")).startswith("loop")
    ]


def format_disk_line(device: dict) -> str:
    parts = [
        str(device.get("name") or ""),
        human_size(device.get("size")),
        str(device.get("model") or "").strip(),
        str(device.get("tran") or ""),
    ]
    return "  ".join(part for part in parts if part)


def describe_device(device: str) -> str:
    """lsblk tree of a device, shown before asking for confirmation."""
    return command_output(
        ["lsblk", device_path(device), "-o", "NAME,SIZE,FSTYPE,LABEL,MOUNTPOINT"]
    )


def list_luks_partitions() -> list[str]:
    output = command_output(["blkid", "-t", "TYPE=crypto_LUKS", "-o", "device"])
    return [line.strip() for line in output.splitlines() if line.strip()]


def get_luks_uuid() -> str:
    output = command_output(["blkid", "-t", "TYPE=crypto_LUKS", "-o", "value", "-s", "UUID"])
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[0] if lines else "not found"


def detect_live_boot_disk() -> Optional[str]:
    """Find the disk the live environment was booted from."""
    # Method 1: Fedora live media is mounted at /run/initramfs/live
    if is_mountpoint_active(LIVE_MOUNTPOINT):
        source = find_mount_source(LIVE_MOUNTPOINT)
        if source:
            disk = get_parent_disk(source)
            if disk:
                log.debug(f"Live disk {disk} found via {LIVE_MOUNTPOINT}")
                return disk

    # Method 2: Fedora live USBs are labeled Fedora-*
    if DISK_BY_LABEL.is_dir():
        for label_link in sorted(DISK_BY_LABEL.glob(LIVE_LABEL_GLOB)):
            if label_link.is_symlink():
                disk = get_parent_disk(str(label_link.resolve()))
                if disk:
                    log.debug(f"Live disk {disk} found via label {label_link.name}")
                    return disk

    # Method 3: live root filesystems are squashfs
    squash_output = command_output(["findmnt", "-t", "squashfs", "-n", "-o", "SOURCE"])
    for source in squash_output.splitlines():
        source = source.strip()
        if source and is_block_device(source):
            disk = get_parent_disk(source)
            if disk:
                log.debug(f"Live disk {disk} found via squashfs mount {source}")
                return disk
    return None


def detect_current_boot_disk(boot_mount: str = "/boot") -> Optional[str]:
    """Find the disk backing the running system's /boot."""
    if not is_mountpoint_active(boot_mount):
        return None
    source = find_mount_source(boot_mount)
    if not source:
        return None
    return get_parent_disk(source)


def missing_tools(tools: Iterable[str]) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def settle_device(disk: str) -> None:
    """Ask the kernel to re-read the partition table and wait for udev."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path(disk)],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(subprocess.CalledProcessError, OSError):
                run_command(cmd, log_command=False)


def wait_for_block_devices(
    nodes: Iterable[str],
    *,
    timeout_seconds: float,
    poll_interval: float = 0.5,
) -> list[str]:
    """Poll until every node is a block device; return the ones still missing."""
    nodes = list(nodes)
    deadline = time.monotonic() + timeout_seconds
    missing = [node for node in nodes if not is_block_device(node)]
    while missing and time.monotonic() < deadline:
        time.sleep(poll_interval)
        missing = [node for node in nodes if not is_block_device(node)]
    return missing
