"""Command line entry points: backup-boot and restore-boot."""

import argparse
import sys
from enum import IntEnum
from pathlib import Path

from fedora_boot_backup.__version__ import __version__
from fedora_boot_backup.config import settings
from fedora_boot_backup.logging import LoggerFactory, operation_context, setup_logging
from fedora_boot_backup.storage import devices
from fedora_boot_backup.storage.bootbackup import BackupResult, RestoreState, RestoreWorkflow, create_boot_backup
from fedora_boot_backup.storage.exceptions import (
    BackupNotFoundError,
    ConfigRewriteError,
    CopyError,
    DeviceIsExcludedError,
    EncryptedVolumeError,
    FormatError,
    InvalidDeviceError,
    LayoutDetectionError,
    MissingToolsError,
    MountError,
    NotRootError,
    OperationCancelledError,
    PartitioningError,
    SourceNotMountedError,
    StorageError,
)


USAGE_EXIT = 64


class BackupExit(IntEnum):
    SUCCESS = 0
    NOT_ROOT = 1
    BOOT_NOT_MOUNTED = 2
    EFI_NOT_MOUNTED = 3
    FAILURE = 4
    USAGE = USAGE_EXIT


class RestoreExit(IntEnum):
    SUCCESS = 0
    NOT_ROOT = 1
    MISSING_TOOLS = 2
    INVALID_TARGET = 3
    NO_ENCRYPTED_VOLUME = 4
    BACKUP_NOT_FOUND = 5
    PARTITION_FAILURE = 6
    RESTORE_FAILURE = 7
    CANCELLED = 8
    USAGE = USAGE_EXIT


# Checked in order; subclasses before their bases
RESTORE_EXIT_CODES = [
    (NotRootError, RestoreExit.NOT_ROOT),
    (MissingToolsError, RestoreExit.MISSING_TOOLS),
    (DeviceIsExcludedError, RestoreExit.INVALID_TARGET),
    (InvalidDeviceError, RestoreExit.INVALID_TARGET),
    (EncryptedVolumeError, RestoreExit.NO_ENCRYPTED_VOLUME),
    (BackupNotFoundError, RestoreExit.BACKUP_NOT_FOUND),
    (LayoutDetectionError, RestoreExit.PARTITION_FAILURE),
    (PartitioningError, RestoreExit.PARTITION_FAILURE),
    (FormatError, RestoreExit.PARTITION_FAILURE),
    (CopyError, RestoreExit.RESTORE_FAILURE),
    (ConfigRewriteError, RestoreExit.RESTORE_FAILURE),
    (OperationCancelledError, RestoreExit.CANCELLED),
]


class CliArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with the usage code on bad arguments."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(USAGE_EXIT, f"{self.prog}: error: {message}\n")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", help="Show what would be done without making changes"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable very verbose trace output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")


def build_backup_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(
        prog="backup-boot",
        description="Back up /boot and /boot/efi to the encrypted root partition.",
    )
    _add_common_arguments(parser)
    parser.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help=f"Backup location (default: {settings.get_setting('backup_dir')})",
    )
    return parser


def build_restore_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(
        prog="restore-boot",
        description="Recreate the boot partitions on a new USB drive from a backup.",
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "--from-installed",
        action="store_true",
        help="Run from the installed Fedora system instead of a live USB",
    )
    parser.add_argument("--target", metavar="DEVICE", help="Target USB device (e.g. sdb)")
    parser.add_argument(
        "--verify-checksums",
        action="store_true",
        default=None,
        help="Verify the backup against checksums.sha256 before restoring",
    )
    return parser


def backup_exit_code(error: StorageError, boot_mount: str) -> BackupExit:
    if isinstance(error, NotRootError):
        return BackupExit.NOT_ROOT
    if isinstance(error, SourceNotMountedError):
        if error.path == boot_mount:
            return BackupExit.BOOT_NOT_MOUNTED
        return BackupExit.EFI_NOT_MOUNTED
    return BackupExit.FAILURE


def restore_exit_code(error: BaseException, state: RestoreState) -> RestoreExit:
    for error_type, code in RESTORE_EXIT_CODES:
        if isinstance(error, error_type):
            return code
    if isinstance(error, MountError) and state is RestoreState.TARGET_SELECTED:
        # Mounting the encrypted root to reach the backup
        return RestoreExit.BACKUP_NOT_FOUND
    return RestoreExit.RESTORE_FAILURE


def print_backup_summary(result: BackupResult) -> None:
    rule = "=" * 75
    metadata = result.metadata
    print("")
    print(rule)
    print("  DRY RUN COMPLETE - No changes were made" if result.dry_run else "  BACKUP COMPLETE")
    print(rule)
    print("")
    print(f"  Location:     {result.backup_dir}")
    if not result.dry_run:
        print(f"  Total size:   {devices.human_size(result.total_bytes)}")
    print("")
    print("  Contents:")
    print(f"    Boot files: {result.file_counts.get('boot', 0)} files - kernels, initramfs, GRUB")
    print(f"    EFI files:  {result.file_counts.get('efi', 0)} files - EFI bootloader")
    if result.auxiliary_files:
        print(f"    Ventoy:     {', '.join(result.auxiliary_files)}")
    print(f"    Checksums:  {result.checksum_count} files")
    print("")
    print("  Original UUIDs (stored in metadata.txt):")
    print(f"    /boot/efi: {metadata.efi_uuid}")
    print(f"    /boot:     {metadata.boot_uuid}")
    print("")
    print("  IMPORTANT:")
    print("    - Run this command again after kernel updates (dnf upgrade)")
    print("    - Keep your LUKS passphrase safe - without it, data is unrecoverable")
    print("")


def backup_main(argv=None) -> int:
    parser = build_backup_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, quiet=args.quiet, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    boot_mount = settings.get_setting("boot_mount")
    if args.dry_run:
        log.warning("DRY RUN MODE - No changes will be made")
    try:
        with operation_context("backup", preview=args.dry_run):
            result = create_boot_backup(args.backup_dir, dry_run=args.dry_run)
    except StorageError as error:
        log.error(str(error))
        return int(backup_exit_code(error, boot_mount))
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return int(BackupExit.FAILURE)

    if not args.quiet:
        print_backup_summary(result)
    return int(BackupExit.SUCCESS)


def restore_main(argv=None) -> int:
    parser = build_restore_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    if args.dry_run:
        log.warning("DRY RUN MODE - No changes will be made to the target USB")
    mode = "from-installed" if args.from_installed else "live"
    try:
        with operation_context("restore", mode=mode, preview=args.dry_run):
            workflow = RestoreWorkflow(
                from_installed=args.from_installed,
                target=args.target,
                dry_run=args.dry_run,
                verify=args.verify_checksums,
            )
            outcome = workflow.run()
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return int(RestoreExit.CANCELLED)

    if outcome.succeeded:
        return int(RestoreExit.SUCCESS)

    previous = outcome.history[-2] if len(outcome.history) > 1 else RestoreState.IDLE
    code = restore_exit_code(outcome.error, previous)
    if code is not RestoreExit.CANCELLED:
        log.error(str(outcome.error))
    return int(code)


def run_backup() -> None:
    sys.exit(backup_main())


def run_restore() -> None:
    sys.exit(restore_main())


if __name__ == "__main__":
    sys.exit(backup_main())
