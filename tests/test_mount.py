"""Tests for storage/mount.py - scoped mounts, LUKS mappings and release order.

This test suite covers:
- ScopedResource releases at most once, and only when owned
- ResourceStack releases LIFO and keeps going after a failure
- mount_scoped() command construction, reuse of existing mounts, cleanup
- unlock_luks_scoped() open/close and reuse of an existing mapping
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from fedora_boot_backup.storage import mount
from fedora_boot_backup.storage.exceptions import (
    EncryptedVolumeError,
    MountOperationError,
    UnmountFailedError,
)


class TestScopedResource:
    """Tests for ScopedResource."""

    def test_release_runs_once(self):
        """Test that a second release is a no-op."""
        release_fn = Mock()
        resource = mount.ScopedResource("mount /mnt/x", release_fn)

        resource.release()
        resource.release()

        release_fn.assert_called_once()
        assert resource.released

    def test_non_owned_resource_is_left_alone(self):
        """Test that pre-existing mounts are not torn down."""
        release_fn = Mock()
        resource = mount.ScopedResource("mount /mnt/x", release_fn, owned=False)

        resource.release()

        release_fn.assert_not_called()
        assert resource.released

    def test_failed_release_is_not_retried(self):
        """Test that release is attempted only once even when it raises."""
        release_fn = Mock(side_effect=UnmountFailedError("/mnt/x", "busy"))
        resource = mount.ScopedResource("mount /mnt/x", release_fn)

        with pytest.raises(UnmountFailedError):
            resource.release()
        resource.release()

        release_fn.assert_called_once()


class TestResourceStack:
    """Tests for ResourceStack."""

    def test_releases_in_reverse_order(self):
        """Test that the mount is released before the mapping it lives on."""
        order = []
        stack = mount.ResourceStack()
        stack.push(mount.ScopedResource("luks", lambda: order.append("luks")))
        stack.push(mount.ScopedResource("mount", lambda: order.append("mount")))

        stack.release_all()

        assert order == ["mount", "luks"]
        assert len(stack) == 0

    def test_failure_does_not_stop_remaining_releases(self):
        """Test that every resource is attempted even if one fails."""
        order = []

        def failing():
            order.append("mount")
            raise UnmountFailedError("/mnt/fedora", "target is busy")

        stack = mount.ResourceStack()
        stack.push(mount.ScopedResource("luks", lambda: order.append("luks")))
        stack.push(mount.ScopedResource("mount /mnt/fedora", failing))

        failures = stack.release_all()

        assert order == ["mount", "luks"]
        assert [name for name, _ in failures] == ["mount /mnt/fedora"]
        assert stack.failures == failures

    def test_release_all_twice_is_harmless(self):
        release_fn = Mock()
        stack = mount.ResourceStack()
        stack.push(mount.ScopedResource("mount", release_fn))

        stack.release_all()
        stack.release_all()

        release_fn.assert_called_once()

    def test_context_manager_releases_on_error(self):
        """Test that leaving the with block through an exception releases."""
        release_fn = Mock()

        with pytest.raises(RuntimeError):
            with mount.ResourceStack() as stack:
                stack.push(mount.ScopedResource("mount", release_fn))
                raise RuntimeError("boom")

        release_fn.assert_called_once()

    def test_push_returns_resource(self):
        resource = mount.ScopedResource("mount", None, device="/dev/sdb1")

        assert mount.ResourceStack().push(resource) is resource


class TestMountScoped:
    """Tests for mount_scoped()."""

    @pytest.fixture(autouse=True)
    def not_mounted(self, monkeypatch):
        monkeypatch.setattr(mount.devices, "is_mountpoint_active", lambda path: False)

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_mount_with_options(self, mock_run, tmp_path):
        """Test the mount command and that the directory is created."""
        mountpoint = tmp_path / "fedora"

        resource = mount.mount_scoped("/dev/mapper/cryptroot", str(mountpoint), "subvol=root")

        mock_run.assert_called_once_with(
            ["mount", "-o", "subvol=root", "/dev/mapper/cryptroot", str(mountpoint)]
        )
        assert mountpoint.is_dir()
        assert resource.owned
        assert resource.device == "/dev/mapper/cryptroot"

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_read_only_mount(self, mock_run, tmp_path):
        mount.mount_scoped("/dev/sdb1", str(tmp_path), read_only=True)

        assert mock_run.call_args.args[0] == ["mount", "-o", "ro", "/dev/sdb1", str(tmp_path)]

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_release_unmounts_and_removes_created_dir(self, mock_run, tmp_path):
        """Test that release undoes both the mount and the mkdir."""
        mountpoint = tmp_path / "new-boot"
        resource = mount.mount_scoped("/dev/sdb2", str(mountpoint))

        resource.release()

        assert mock_run.call_args.args[0] == ["umount", str(mountpoint)]
        assert not mountpoint.exists()

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_release_keeps_existing_dir(self, mock_run, tmp_path):
        """Test that a directory that existed before is kept."""
        resource = mount.mount_scoped("/dev/sdb2", str(tmp_path))

        resource.release()

        assert tmp_path.is_dir()

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_mount_failure_raises_and_cleans_up(self, mock_run, tmp_path):
        """Test that a failed mount raises MountOperationError and removes the dir."""
        mock_run.side_effect = subprocess.CalledProcessError(
            32, ["mount"], stderr="mount: wrong fs type"
        )
        mountpoint = tmp_path / "new-efi"

        with pytest.raises(MountOperationError, match="wrong fs type"):
            mount.mount_scoped("/dev/sdb1", str(mountpoint))

        assert not mountpoint.exists()

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_unmount_failure_raises(self, mock_run, tmp_path):
        resource = mount.mount_scoped("/dev/sdb2", str(tmp_path / "m"))
        mock_run.side_effect = subprocess.CalledProcessError(32, ["umount"], stderr="target is busy")

        with pytest.raises(UnmountFailedError, match="target is busy"):
            resource.release()

    def test_busy_mount_falls_back_to_lazy_unmount(self, mocker, tmp_path):
        """Test that a busy mount point is detached lazily on release."""
        mountpoint = str(tmp_path / "new-boot")
        mock_run = mocker.patch("fedora_boot_backup.storage.mount.devices.run_command")
        resource = mount.mount_scoped("/dev/sdb2", mountpoint)
        mock_run.side_effect = [
            subprocess.CalledProcessError(32, ["umount"], stderr="target is busy"),
            Mock(returncode=0),
        ]

        resource.release()

        commands = [call.args[0] for call in mock_run.call_args_list]
        assert commands[-2:] == [["umount", mountpoint], ["umount", "-l", mountpoint]]
        assert resource.released


@patch("fedora_boot_backup.storage.mount.devices.run_command")
def test_already_mounted_is_not_owned(mock_run, monkeypatch, tmp_path):
    """Test that an existing mount is reused and survives release."""
    monkeypatch.setattr(mount.devices, "is_mountpoint_active", lambda path: True)

    resource = mount.mount_scoped("/dev/sdb2", str(tmp_path))
    resource.release()

    assert not resource.owned
    mock_run.assert_not_called()


@patch("fedora_boot_backup.storage.mount.devices.run_command")
def test_lazy_unmount(mock_run):
    mount.unmount("/mnt/fedora", lazy=True)

    mock_run.assert_called_once_with(["umount", "-l", "/mnt/fedora"])


class TestUnlockLuksScoped:
    """Tests for unlock_luks_scoped()."""

    @pytest.fixture
    def mapper_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(mount, "MAPPER_DIR", tmp_path)
        return tmp_path

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_unlock_and_close(self, mock_run, mapper_dir):
        """Test that luksOpen runs interactively and release runs luksClose."""
        resource = mount.unlock_luks_scoped("/dev/nvme0n1p3", "cryptroot")

        mock_run.assert_called_once_with(
            ["cryptsetup", "luksOpen", "/dev/nvme0n1p3", "cryptroot"], interactive=True
        )
        assert resource.device == str(mapper_dir / "cryptroot")

        resource.release()

        assert mock_run.call_args.args[0] == ["cryptsetup", "luksClose", "cryptroot"]

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_wrong_passphrase_raises(self, mock_run, mapper_dir):
        mock_run.side_effect = subprocess.CalledProcessError(2, ["cryptsetup"])

        with pytest.raises(EncryptedVolumeError, match="exit code 2"):
            mount.unlock_luks_scoped("/dev/nvme0n1p3", "cryptroot")

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_existing_mapping_is_reused(self, mock_run, mapper_dir):
        """Test that an already open mapping is neither opened nor closed."""
        (mapper_dir / "cryptroot").touch()

        resource = mount.unlock_luks_scoped("/dev/nvme0n1p3", "cryptroot")
        resource.release()

        assert not resource.owned
        mock_run.assert_not_called()

    @patch("fedora_boot_backup.storage.mount.devices.run_command")
    def test_close_failure_raises(self, mock_run, mapper_dir):
        resource = mount.unlock_luks_scoped("/dev/nvme0n1p3", "cryptroot")
        mock_run.side_effect = subprocess.CalledProcessError(5, ["cryptsetup"])

        with pytest.raises(EncryptedVolumeError, match="Failed to close"):
            resource.release()
