"""Scoped mounts and LUKS mappings.

Every acquire operation returns a ScopedResource whose release undoes exactly
what the acquire did. Mounts and mappings that already existed before the
workflow started are wrapped as non-owned resources and are never torn down.

Workflows push resources onto a ResourceStack and release them in reverse
order on every exit path, so a LUKS mapping is never closed while a
filesystem inside it is still mounted.

Example:
    with ResourceStack() as resources:
        mapper = resources.push(unlock_luks_scoped("/dev/sda3", "cryptroot"))
        resources.push(mount_scoped(mapper.device, "/mnt/fedora", "subvol=root"))
        ...
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, Optional

from fedora_boot_backup.logging import LoggerFactory

from . import devices
from .exceptions import EncryptedVolumeError, MountOperationError, UnmountFailedError


log = LoggerFactory.for_storage()

MAPPER_DIR = Path("/dev/mapper")


class ScopedResource:
    """A mount or mapping acquired by a workflow.

    release() runs the release function at most once and only when the
    resource is owned.
    """

    def __init__(
        self,
        name: str,
        release_fn: Optional[Callable[[], None]],
        owned: bool = True,
        device: Optional[str] = None,
    ):
        self.name = name
        self.owned = owned
        self.device = device
        self._release_fn = release_fn
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if not self.owned or self._release_fn is None:
            log.debug(f"Leaving {self.name} in place (not acquired by this run)")
            return
        self._release_fn()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"ScopedResource({self.name!r}, owned={self.owned}, {state})"


class ResourceStack:
    """LIFO collection of scoped resources."""

    def __init__(self) -> None:
        self._resources: list[ScopedResource] = []
        self.failures: list[tuple[str, Exception]] = []

    def push(self, resource: ScopedResource) -> ScopedResource:
        self._resources.append(resource)
        return resource

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self):
        return iter(list(self._resources))

    def release_all(self) -> list[tuple[str, Exception]]:
        """Release everything in reverse acquisition order.

        A failing release is logged and does not stop the remaining ones.
        Returns the (name, error) pairs for releases that failed.
        """
        failures = []
        while self._resources:
            resource = self._resources.pop()
            try:
                resource.release()
            except Exception as error:
                log.warning(f"Failed to release {resource.name}: {error}")
                failures.append((resource.name, error))
        self.failures.extend(failures)
        return failures

    def __enter__(self) -> "ResourceStack":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()


def unmount(mountpoint: str, *, lazy: bool = False) -> None:
    command = ["umount", mountpoint]
    if lazy:
        command.insert(1, "-l")
    try:
        devices.run_command(command)
    except subprocess.CalledProcessError as error:
        raise UnmountFailedError(mountpoint, (error.stderr or "").strip()) from error
    except OSError as error:
        raise UnmountFailedError(mountpoint, str(error)) from error


def mount_scoped(
    device: str,
    mountpoint: str,
    options: Optional[str] = None,
    *,
    read_only: bool = False,
) -> ScopedResource:
    """Mount a device and return a resource that unmounts it.

    The mount point directory is created if needed and removed again on
    release when this call created it. A device already mounted at the
    mount point yields a non-owned resource.
    """
    name = f"mount {mountpoint}"
    if devices.is_mountpoint_active(mountpoint):
        log.info(f"{mountpoint} is already mounted, reusing it")
        return ScopedResource(name, None, owned=False, device=device)

    mount_dir = Path(mountpoint)
    created_dir = not mount_dir.exists()
    try:
        mount_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise MountOperationError(device, mountpoint, str(error)) from error

    option_list = []
    if read_only:
        option_list.append("ro")
    if options:
        option_list.append(options)
    command = ["mount"]
    if option_list:
        command.extend(["-o", ",".join(option_list)])
    command.extend([device, mountpoint])

    try:
        devices.run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        reason = getattr(error, "stderr", None) or str(error)
        if created_dir:
            _remove_mount_dir(mount_dir)
        raise MountOperationError(device, mountpoint, reason.strip()) from error

    log.debug(f"Mounted {device} at {mountpoint}")

    def _release() -> None:
        try:
            unmount(mountpoint)
        except UnmountFailedError as error:
            log.warning(f"{error}; detaching {mountpoint} lazily")
            unmount(mountpoint, lazy=True)
        log.debug(f"Unmounted {mountpoint}")
        if created_dir:
            _remove_mount_dir(mount_dir)

    return ScopedResource(name, _release, owned=True, device=device)


def _remove_mount_dir(mount_dir: Path) -> None:
    try:
        mount_dir.rmdir()
    except OSError as error:
        log.debug(f"Could not remove mount directory {mount_dir}: {error}")


def mapper_path(mapper_name: str) -> str:
    return str(MAPPER_DIR / mapper_name)


def unlock_luks_scoped(partition: str, mapper_name: str) -> ScopedResource:
    """Unlock a LUKS partition and return a resource that closes it.

    cryptsetup prompts for the passphrase on the terminal. An existing
    /dev/mapper/<mapper_name> is reused and left open on release.
    """
    mapped = mapper_path(mapper_name)
    name = f"luks {mapper_name}"
    if os.path.exists(mapped):
        log.info(f"LUKS already unlocked at {mapped}")
        return ScopedResource(name, None, owned=False, device=mapped)

    log.info(f"Unlocking {partition} (enter your LUKS passphrase)")
    try:
        devices.run_command(
            ["cryptsetup", "luksOpen", partition, mapper_name], interactive=True
        )
    except subprocess.CalledProcessError as error:
        raise EncryptedVolumeError(
            f"Failed to unlock {partition} (exit code {error.returncode})"
        ) from error
    except OSError as error:
        raise EncryptedVolumeError(f"Failed to unlock {partition}: {error}") from error

    def _release() -> None:
        try:
            devices.run_command(["cryptsetup", "luksClose", mapper_name])
        except (subprocess.CalledProcessError, OSError) as error:
            raise EncryptedVolumeError(f"Failed to close {mapped}: {error}") from error
        log.debug(f"Closed {mapped}")

    return ScopedResource(name, _release, owned=True, device=mapped)
