"""Restore a boot backup onto a new USB drive.

The restore is a linear state machine:

    IDLE -> TARGET_SELECTED -> BACKUP_LOCATED -> LAYOUT_DETERMINED
         -> PARTITIONS_PROVISIONED -> FILES_RESTORED -> UUIDS_REWRITTEN
         -> FINALIZED

Any step may fail, which moves the run to ABORTED. Each step's exception is
captured in a StepResult; the run then stops and every acquired resource
(LUKS mapping, mounts) is released in reverse order, exactly once, no matter
where it stopped.

Two ways to reach the backup:
    live mode (default):  the internal LUKS volume is unlocked and its root
                          subvolume mounted to read <root>/root/boot-backup;
                          <root>/etc/fstab is rewritten
    from-installed mode:  the backup and /etc/fstab of the running system
                          are used directly

In preview (dry-run) mode, everything from partitioning onward is logged
instead of executed, with placeholder UUIDs. Unlocking and mounting the
backup still happen for real so its metadata can be read, and are released
afterwards.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from fedora_boot_backup.config import settings
from fedora_boot_backup.domain import (
    BackupMetadata,
    LoaderSignature,
    RewriteTarget,
    TargetLayout,
    UUIDRewriteSet,
    VentoyLayout,
    is_valid_uuid,
)
from fedora_boot_backup.logging import LoggerFactory
from fedora_boot_backup.storage import devices
from fedora_boot_backup.storage.exceptions import (
    BackupNotFoundError,
    CopyError,
    MetadataError,
    MountError,
    NoEncryptedVolumeError,
    OperationCancelledError,
    StorageError,
)
from fedora_boot_backup.storage.format import (
    format_partitions,
    provision_partitions,
    read_new_uuids,
)
from fedora_boot_backup.storage.layout import describe_layout, detect_layout, signature_from_settings
from fedora_boot_backup.storage.mount import ResourceStack, mount_scoped, unlock_luks_scoped
from fedora_boot_backup.storage.validation import (
    ensure_required_tools,
    validate_restore_target,
    validate_root,
)

from .checksums import verify_checksums
from .metadata import read_metadata
from .models import (
    BOOT_TREE,
    CHECKSUM_FILE,
    EFI_TREE,
    METADATA_FILE,
    ProvisionedPartitions,
    RestoreOutcome,
    RestoreState,
    RewriteResult,
    SnapshotSource,
    StepResult,
)
from .rewrite import build_rewrite_targets, preview_rewrites, rewrite_uuids
from .snapshot import auxiliary_destination, existing_auxiliary_files, rsync_command


PLACEHOLDER_EFI_UUID = "<new-efi-uuid>"
PLACEHOLDER_BOOT_UUID = "<new-boot-uuid>"


def _ask_yes_no(question: str) -> bool:
    answer = input(f"{question} [y/N]: ")
    return answer.strip().lower() in ("y", "yes")


class RestoreWorkflow:
    """One restore run.

    confirm/prompt/echo are injectable so the workflow can be driven without
    a terminal.
    """

    def __init__(
        self,
        *,
        from_installed: bool = False,
        target: Optional[str] = None,
        dry_run: bool = False,
        verify: Optional[bool] = None,
        signature: Optional[LoaderSignature] = None,
        confirm: Callable[[str], bool] = _ask_yes_no,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] = print,
        resources: Optional[ResourceStack] = None,
        job_id: Optional[str] = None,
    ):
        self.from_installed = from_installed
        self.requested_target = target
        self.dry_run = dry_run
        self.verify = settings.get_bool("verify_checksums") if verify is None else verify
        self.signature = signature or signature_from_settings()
        self.confirm = confirm
        self.prompt = prompt
        self.echo = echo
        self.resources = resources if resources is not None else ResourceStack()
        self.log = LoggerFactory.for_restore(job_id)
        self.dry_log = self.log.bind(dry_run=True)

        self.work_dir = Path(settings.get_setting("work_dir"))
        self.state = RestoreState.IDLE
        self.history: list[RestoreState] = [RestoreState.IDLE]

        self.excluded_disk: Optional[str] = None
        self.excluded_reason = "CURRENT BOOT USB" if from_installed else "LIVE USB"
        self.target: Optional[str] = None
        self.backup_dir: Optional[Path] = None
        self.fstab_path: Optional[Path] = None
        self.metadata: Optional[BackupMetadata] = None
        self.layout: Optional[TargetLayout] = None
        self.partitions: Optional[ProvisionedPartitions] = None
        self.rewrite_set: Optional[UUIDRewriteSet] = None
        self.rewrites: list[RewriteResult] = []
        self.release_failures: list[tuple[str, Exception]] = []

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def transitions(self) -> list[tuple[Callable[[], None], RestoreState]]:
        return [
            (self.select_target, RestoreState.TARGET_SELECTED),
            (self.locate_backup, RestoreState.BACKUP_LOCATED),
            (self.determine_layout, RestoreState.LAYOUT_DETERMINED),
            (self.provision, RestoreState.PARTITIONS_PROVISIONED),
            (self.restore_files, RestoreState.FILES_RESTORED),
            (self.rewrite_configs, RestoreState.UUIDS_REWRITTEN),
            (self.finalize, RestoreState.FINALIZED),
        ]

    def attempt(
        self, step: Callable[[], None], next_state: Optional[RestoreState] = None
    ) -> StepResult:
        """Run one step, converting storage failures into a result.

        The state only changes when the step succeeds and names a next state.
        """
        try:
            step()
        except StorageError as error:
            return StepResult(self.state, ok=False, error=error)
        if next_state is not None:
            self._enter(next_state)
        return StepResult(self.state, ok=True)

    def _enter(self, state: RestoreState) -> None:
        self.log.debug(f"{self.state.name} -> {state.name}")
        self.state = state
        self.history.append(state)

    def run(self) -> RestoreOutcome:
        """Execute the whole restore and report how it ended.

        Resources are released on every path, including exceptions that are
        not storage errors (those still propagate afterwards).
        """
        error: Optional[BaseException] = None
        try:
            result = self.attempt(self.preflight)
            if result.ok:
                for step, next_state in self.transitions():
                    result = self.attempt(step, next_state)
                    if result.failed:
                        break
            if result.failed:
                error = result.error
                self._abort(error)
        finally:
            self.release_failures.extend(self.resources.release_all())

        return RestoreOutcome(
            state=self.state,
            target=self.target,
            layout=self.layout,
            rewrite_set=self.rewrite_set,
            rewrites=list(self.rewrites),
            history=list(self.history),
            error=error,
            release_failures=list(self.release_failures),
            dry_run=self.dry_run,
        )

    def _abort(self, error: Optional[BaseException]) -> None:
        if isinstance(error, OperationCancelledError):
            self.log.warning(str(error))
        else:
            self.log.error(f"Restore failed in state {self.state.name}: {error}")
        self._enter(RestoreState.ABORTED)

    def _cancel_unless(self, question: str) -> None:
        if not self.confirm(question):
            raise OperationCancelledError()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def preflight(self) -> None:
        """Root check, required tools and the initial confirmation."""
        validate_root()
        self.log.info("Checking required tools")
        ensure_required_tools(
            settings.get_list("required_tools"),
            install=settings.get_bool("install_missing_tools"),
        )
        self.log.info("All required tools available")
        self._cancel_unless("Continue?")

    def detect_excluded_disk(self) -> Optional[str]:
        if self.from_installed:
            disk = devices.detect_current_boot_disk(settings.get_setting("boot_mount"))
            if disk:
                self.log.info(f"Detected current boot USB: /dev/{disk} (will be EXCLUDED)")
            else:
                self.log.warning("Could not detect current boot USB - /boot may not be on USB")
        else:
            disk = devices.detect_live_boot_disk()
            if disk:
                self.log.info(f"Detected live USB: /dev/{disk} (will be EXCLUDED from selection)")
            else:
                self.log.warning("Could not detect live USB device")
        if not disk:
            self.log.warning("Please be VERY careful with device selection!")
        return disk

    def show_disks(self) -> None:
        self.echo("")
        self.echo("Available disks:")
        self.echo("----------------")
        for disk in devices.list_disks():
            line = f"  {devices.format_disk_line(disk)}"
            if self.excluded_disk and disk.get("name") == self.excluded_disk:
                line += f"  <-- {self.excluded_reason} (cannot select)"
            self.echo(line)
        self.echo("")
        if self.excluded_disk:
            self.echo(
                f"Note: /dev/{self.excluded_disk} is your {self.excluded_reason} "
                "and cannot be selected."
            )
            self.echo("")

    def select_target(self) -> None:
        self.excluded_disk = self.detect_excluded_disk()
        if self.requested_target:
            name = self.requested_target
        else:
            self.show_disks()
            name = self.prompt("Enter target USB device name (e.g., sdb): ")
        name = devices.normalize_device_name(name)
        validate_restore_target(name, self.excluded_disk, self.excluded_reason)

        self.echo("")
        self.echo(f"Selected device: {devices.device_path(name)}")
        description = devices.describe_device(name)
        if description:
            self.echo("")
            self.echo(description)
        self.echo("")
        self._cancel_unless("Is this the correct device?")
        self.target = name

    def _open_luks_root(self) -> Path:
        """Unlock and mount the encrypted root; return its mount point."""
        partitions = devices.list_luks_partitions()
        if not partitions:
            raise NoEncryptedVolumeError()
        if len(partitions) > 1:
            self.echo("Found multiple encrypted partitions:")
            for partition in partitions:
                self.echo(f"  {partition}")
            self.echo("")
            partition = self.prompt("Enter partition to unlock: ").strip()
        else:
            partition = partitions[0]
            self.log.info(f"Found encrypted partition: {partition}")

        mapper = self.resources.push(
            unlock_luks_scoped(partition, settings.get_setting("luks_mapper_name"))
        )
        mount_point = self.work_dir / "fedora"
        self.resources.push(
            mount_scoped(
                mapper.device,
                str(mount_point),
                settings.get_setting("luks_mount_options") or None,
            )
        )
        return mount_point

    def locate_backup(self) -> None:
        if self.from_installed:
            backup_dir = Path(settings.get_setting("backup_dir"))
            fstab_path = Path(settings.get_setting("fstab_path"))
        else:
            root = self._open_luks_root()
            backup_dir = root / settings.get_setting("luks_backup_subdir")
            fstab_path = root / str(settings.get_setting("fstab_path")).lstrip("/")

        if not backup_dir.is_dir():
            raise BackupNotFoundError(str(backup_dir))
        self.log.info(f"Found backup at {backup_dir}")

        metadata = read_metadata(backup_dir / METADATA_FILE)
        if not metadata.is_restorable:
            # Checked before anything touches the target disk
            bad = [
                key
                for key, value in (("BOOT_UUID", metadata.boot_uuid), ("EFI_UUID", metadata.efi_uuid))
                if not is_valid_uuid(value)
            ]
            raise MetadataError(
                str(backup_dir / METADATA_FILE), f"not a filesystem UUID: {', '.join(bad)}"
            )
        self.echo("")
        self.echo("Backup metadata:")
        self.echo("----------------")
        self.echo(f"  BOOT_UUID={metadata.boot_uuid}")
        self.echo(f"  EFI_UUID={metadata.efi_uuid}")
        if metadata.created_at:
            self.echo(f"  BACKUP_DATE={metadata.created_at}")
        if metadata.kernel_version:
            self.echo(f"  KERNEL_VERSION={metadata.kernel_version}")
        self.echo("")

        if self.verify:
            self.log.info("Verifying backup checksums...")
            verify_checksums(backup_dir, backup_dir / CHECKSUM_FILE)

        self.backup_dir = backup_dir
        self.fstab_path = fstab_path
        self.metadata = metadata

    def determine_layout(self) -> None:
        self.log.info("Detecting target USB layout")
        layout = detect_layout(self.target, self.signature)
        self.echo("")
        for line in describe_layout(layout):
            self.echo(line)
        self.echo("")
        self._cancel_unless(f"Proceed with {layout.mode.value} mode?")
        self.layout = layout

    def provision(self) -> None:
        # The device list may have changed while prompts were open
        validate_restore_target(self.target, self.excluded_disk, self.excluded_reason)

        disk_node = devices.device_path(self.target)
        if self.layout.requires_new_table:
            self.log.warning(f"This will ERASE ALL DATA on {disk_node}!")
            if not self.dry_run:
                self._cancel_unless(f"Final confirmation - erase {disk_node}?")

        self.log.info(f"Creating partitions on {disk_node}")
        efi_node, boot_node = provision_partitions(
            self.target,
            self.layout,
            settings.get_int("efi_size_mib"),
            settings.get_int("partition_wait_seconds"),
            dry_run=self.dry_run,
        )
        self.log.info(f"Partitions created: EFI={efi_node}, Boot={boot_node}")

        format_partitions(
            efi_node, boot_node, settings.get_setting("boot_label"), dry_run=self.dry_run
        )

        if self.dry_run:
            efi_uuid, boot_uuid = PLACEHOLDER_EFI_UUID, PLACEHOLDER_BOOT_UUID
        else:
            efi_uuid, boot_uuid = read_new_uuids(efi_node, boot_node)

        self.partitions = ProvisionedPartitions(efi_node, boot_node, efi_uuid, boot_uuid)
        self.rewrite_set = UUIDRewriteSet(
            old_boot_uuid=self.metadata.boot_uuid,
            new_boot_uuid=boot_uuid,
            old_efi_uuid=self.metadata.efi_uuid,
            new_efi_uuid=efi_uuid,
        )
        self.echo("")
        self.echo("UUID Mapping (old -> new):")
        self.echo(f"  EFI:  {self.metadata.efi_uuid}  ->  {efi_uuid}")
        self.echo(f"  Boot: {self.metadata.boot_uuid}  ->  {boot_uuid}")
        self.echo("")

    def _copy_tree(self, name: str, destination: Path) -> None:
        source = SnapshotSource(name, self.backup_dir / name)
        command = rsync_command(source, destination)
        if self.dry_run:
            self.dry_log.info(" ".join(command))
            return
        try:
            devices.run_command(command, log_output=False)
        except subprocess.CalledProcessError as error:
            raise CopyError(
                f"Failed to restore {name} files: {(error.stderr or '').strip()}",
                str(source.path),
                str(destination),
            ) from error
        except OSError as error:
            raise CopyError(f"Failed to restore {name} files: {error}", str(source.path)) from error

    def restore_files(self) -> None:
        efi_mount = self.work_dir / "new-efi"
        boot_mount = self.work_dir / "new-boot"
        if self.dry_run:
            self.dry_log.info(f"mount {self.partitions.efi_node} {efi_mount}")
            self.dry_log.info(f"mount {self.partitions.boot_node} {boot_mount}")
        else:
            self.resources.push(mount_scoped(self.partitions.efi_node, str(efi_mount)))
            self.resources.push(mount_scoped(self.partitions.boot_node, str(boot_mount)))

        self.log.info("Restoring /boot/efi files (EFI bootloader)...")
        self._copy_tree(EFI_TREE, efi_mount)
        self.log.info("Restoring /boot files (kernels, initramfs, GRUB config)...")
        self._copy_tree(BOOT_TREE, boot_mount)
        self.log.info("Boot files restored successfully")

    def rewrite_configs(self) -> None:
        self.log.info("Updating UUIDs in configuration files")
        if self.dry_run:
            # Preview against the backup copy of the boot tree
            boot_root = self.backup_dir / BOOT_TREE
            targets = build_rewrite_targets(self.fstab_path, boot_root)
            self.rewrites = preview_rewrites(targets, self.rewrite_set)
        else:
            boot_root = self.work_dir / "new-boot"
            targets = build_rewrite_targets(self.fstab_path, boot_root)
            self.rewrites = rewrite_uuids(targets, self.rewrite_set)

        if isinstance(self.layout, VentoyLayout):
            self.rewrites.extend(self.restore_loader_config())
        self.log.info("UUID updates complete")

    def restore_loader_config(self) -> list[RewriteResult]:
        """Put the Ventoy config back on partition 1, pointing at the new EFI."""
        aux_dir = auxiliary_destination(self.backup_dir)
        chainloader = settings.get_setting("ventoy_chainloader_file")
        config_dir = settings.get_setting("ventoy_config_dir")
        present = [
            path.name
            for path in existing_auxiliary_files(self.backup_dir, settings.get_list("ventoy_files"))
        ]
        if not present:
            self.log.info("No Ventoy configuration in backup - skipping")
            return []

        self.log.info("Restoring Ventoy configuration")
        partition = devices.partition_path(self.target, 1)
        mount_point = self.work_dir / "ventoy"
        if self.dry_run:
            self.dry_log.info(f"mount {partition} {mount_point}")
            for name in present:
                self.dry_log.info(f"cp {aux_dir / name} {mount_point / config_dir}/")
            self.dry_log.info(f"umount {mount_point}")
            if chainloader in present:
                return preview_rewrites(
                    [RewriteTarget(aux_dir / chainloader, description=chainloader)],
                    self.rewrite_set,
                )
            return []

        with ResourceStack() as ventoy_resources:
            try:
                ventoy_resources.push(mount_scoped(partition, str(mount_point)))
            except MountError as error:
                raise CopyError(
                    f"Could not mount Ventoy partition {partition}: {error}", partition
                ) from error
            destination = mount_point / config_dir
            try:
                destination.mkdir(parents=True, exist_ok=True)
                for name in present:
                    shutil.copy2(aux_dir / name, destination / name)
                    self.log.info(f"  Copied: {name}")
            except OSError as error:
                raise CopyError(f"Could not copy Ventoy config: {error}", str(aux_dir)) from error
            if chainloader not in present:
                return []
            return rewrite_uuids(
                [RewriteTarget(destination / chainloader, description=chainloader)],
                self.rewrite_set,
            )

    def finalize(self) -> None:
        self.log.info("Finalizing")
        self.release_failures.extend(self.resources.release_all())
        self.print_summary()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def print_summary(self) -> None:
        rule = "=" * 75
        disk_node = devices.device_path(self.target)
        mode = self.layout.mode.value
        self.echo("")
        self.echo(rule)
        if self.dry_run:
            self.echo("  DRY RUN COMPLETE - No changes were made")
        else:
            self.echo("  RESTORE COMPLETE - SUCCESS!")
        self.echo(rule)
        self.echo("")
        self.echo(f"  Target device: {disk_node}")
        self.echo(f"  Mode:          {mode}")
        self.echo("")
        if self.dry_run:
            self.echo("  What WOULD happen:")
            self.echo(f"    - Create EFI partition ({self.partitions.efi_node}) formatted as FAT32")
            self.echo(f"    - Create boot partition ({self.partitions.boot_node}) formatted as ext4")
            self.echo(f"    - Copy EFI files from {self.backup_dir / EFI_TREE}/")
            self.echo(f"    - Copy boot files from {self.backup_dir / BOOT_TREE}/")
            self.echo("    - Update UUIDs in /etc/fstab, grub.cfg, BLS entries")
            if isinstance(self.layout, VentoyLayout):
                self.echo("    - Copy Ventoy config files with updated EFI UUID")
            self.echo("")
            command = "sudo restore-boot --from-installed" if self.from_installed else "sudo restore-boot"
            self.echo("  To perform the actual restore, run without --dry-run:")
            self.echo(f"    {command}")
            self.echo("")
            return

        self.echo("  New partition UUIDs:")
        self.echo(f"    EFI partition ({self.partitions.efi_node}):   {self.partitions.efi_uuid}")
        self.echo(f"    Boot partition ({self.partitions.boot_node}):  {self.partitions.boot_uuid}")
        self.echo("")
        self.echo("  Files updated:")
        for result in self.rewrites:
            if result.status == RewriteResult.REWRITTEN:
                self.echo(f"    - {result.path}")
        self.echo("")
        self.echo("  NEXT STEPS:")
        if self.from_installed:
            self.echo("    Your spare boot USB is ready. To test it:")
            self.echo("    1. Shut down your system")
            self.echo("    2. Remove the current boot USB, insert the new one")
            self.echo("    3. Power on and boot from the new USB")
        else:
            self.echo("    1. Shut down and remove the live USB")
            self.echo("    2. Boot from the restored USB")
            self.echo("    3. Run backup-boot again once the system is up")
        self.echo("")
