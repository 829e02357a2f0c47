import argparse
import sys
from pathlib import Path

from zfs_bmr.__version__ import __version__
from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import (
    LocalDeviceTarget,
    LocalDirectoryTarget,
    LocalPartitionTarget,
    NetworkTarget,
)
from zfs_bmr.logging import LoggerFactory, setup_logging
from zfs_bmr.services import BackupOrchestrator, IntegrityService, RestoreOrchestrator
from zfs_bmr.storage.command_runners import CommandRunner
from zfs_bmr.storage.exceptions import (
    BackupError,
    ConfigurationMissingError,
    ConnectivityFailedError,
    VerificationFailedError,
)
from zfs_bmr.storage.mount import MountManager
from zfs_bmr.storage.pipeline.runner import TransformPipeline
from zfs_bmr.storage.provisioning import DiskTools, ProvisioningSequencer
from zfs_bmr.storage.snapshot import SnapshotManager
from zfs_bmr.storage.validation import check_network_reachable
from zfs_bmr.storage.verification import IntegrityVerifier

log = LoggerFactory.for_system()

CONFIRM_WORD = "DESTROY"
UNEXPECTED_ERROR_EXIT_CODE = 1


def build_parser():
    parser = argparse.ArgumentParser(
        prog="zfs-bmr", description="Encrypted bare-metal backup and restore for ZFS hosts"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every pipeline and progress event")
    parser.add_argument("--settings", type=Path, help="Settings JSON file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Snapshot the pool and write an encrypted backup set")
    target = backup.add_mutually_exclusive_group(required=True)
    target.add_argument("--nas", action="store_true", help="Write to the configured network share")
    target.add_argument("--device", help="Write to the last partition of this disk")
    target.add_argument("--partition", help="Write to this partition")

    restore = commands.add_parser("restore", help="Rebuild a bootable system on a new disk")
    source = restore.add_mutually_exclusive_group(required=True)
    source.add_argument("--from-dir", type=Path, help="Directory holding the backup set")
    source.add_argument("--nas", action="store_true", help="Read from the configured network share")
    source.add_argument("--device", help="Read from the last partition of this disk")
    source.add_argument("--partition", help="Read from this partition")
    restore.add_argument("--disk", required=True, help="Destination disk; ALL DATA IS ERASED")
    restore.add_argument("--label", help="Backup set label (default: newest complete set)")
    restore.add_argument(
        "--yes-destroy",
        metavar="DISK",
        help="Confirm erasing DISK without prompting (must repeat --disk)",
    )

    verify = commands.add_parser("verify", help="Check backup files without restoring them")
    what = verify.add_mutually_exclusive_group(required=True)
    what.add_argument("--file", type=Path, help="A single backup file")
    what.add_argument("--dir", type=Path, help="A directory of backup files")
    what.add_argument("--nas", action="store_true", help="The configured network share")
    what.add_argument("--device", help="The last partition of this disk")
    what.add_argument("--partition", help="This partition")
    verify.add_argument("--label", help="Only check the set with this label")

    commands.add_parser("test-nas", help="Check that the configured network share is reachable")
    return parser


def network_target(session):
    credentials = session.credentials
    if credentials is None or not credentials.has_network:
        raise ConfigurationMissingError(
            "network share settings",
            f"set nas_ip, nas_share and nas_username in {session.settings.credentials_path}",
        )
    return NetworkTarget(
        host=credentials.remote_host,
        share=credentials.remote_share,
        path=credentials.remote_path,
        username=credentials.remote_user,
        password=credentials.remote_secret or "",
    )


def target_from_args(args, session):
    if getattr(args, "nas", False):
        return network_target(session)
    if getattr(args, "device", None):
        return LocalDeviceTarget(args.device)
    if getattr(args, "partition", None):
        return LocalPartitionTarget(args.partition)
    directory = getattr(args, "from_dir", None) or getattr(args, "dir", None)
    if directory:
        return LocalDirectoryTarget(Path(directory))
    raise ConfigurationMissingError("target", "choose one of the target options")


def make_confirmation(args, prompt=input):
    """Destination check called right before the disk is wiped."""

    def confirm(disk):
        if args.yes_destroy is not None:
            return args.yes_destroy == disk
        log.warning(f"ALL DATA ON {disk} WILL BE LOST!")
        try:
            answer = prompt(f"Type '{CONFIRM_WORD}' to erase {disk}: ")
        except EOFError:
            return False
        return answer.strip() == CONFIRM_WORD

    return confirm


def run_backup(args, session, runner):
    mounts = MountManager(session, runner)
    pipeline = TransformPipeline(session)
    orchestrator = BackupOrchestrator(
        session,
        mounts,
        SnapshotManager(session, runner),
        pipeline,
        IntegrityVerifier(session, pipeline),
        runner,
    )
    result = orchestrator.run(target_from_args(args, session))
    log.success(f"Backup completed: {result.boot_artifact.name} + {result.pool_artifact.name}")
    log.info(f"Location: {result.backup_dir}")
    log.info(f"Restore instructions: {result.manifest_path}")
    return 0


def run_restore(args, session, runner):
    mounts = MountManager(session, runner)
    pipeline = TransformPipeline(session)
    verifier = IntegrityVerifier(session, pipeline)
    provisioner = ProvisioningSequencer(session, DiskTools(runner), mounts, pipeline)
    orchestrator = RestoreOrchestrator(session, mounts, verifier, provisioner, runner)
    result = orchestrator.run(
        target_from_args(args, session),
        args.disk,
        make_confirmation(args),
        label=args.label,
    )
    for warning in result.warnings:
        log.warning(warning)
    log.success(f"Restore completed: {result.label} on {result.target_disk}; remove the rescue media and reboot")
    return 0


def run_verify(args, session, runner):
    verifier = IntegrityVerifier(session, TransformPipeline(session))
    service = IntegrityService(session, MountManager(session, runner), verifier)
    if args.file:
        report = service.check_file(args.file)
        log.success(f"{report.artifact.name}: {report.detail}")
        return 0
    target = target_from_args(args, session)
    if isinstance(target, LocalDirectoryTarget):
        result = service.check_set(target.path, args.label)
    else:
        result = service.check_target(target, args.label)
    if not result.ok:
        first = result.failed[0]
        raise VerificationFailedError(first.artifact, first.reason, result.summary())
    log.success(f"All backup files verified ({result.summary()})")
    return 0


def run_test_nas(args, session, runner):
    target = network_target(session)
    if not check_network_reachable(target.host, runner):
        raise ConnectivityFailedError(target.host, "no reply to ping")
    log.success(f"NAS connectivity test passed: {target.describe()}")
    return 0


COMMANDS = {
    "backup": run_backup,
    "restore": run_restore,
    "verify": run_verify,
    "test-nas": run_test_nas,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    session = None
    try:
        session = Session.create(args.settings)
        session.cleanup.install()
        return COMMANDS[args.command](args, session, CommandRunner())
    except BackupError as error:
        log.error(f"FAILED: {error}")
        return error.exit_code
    except Exception as error:
        log.opt(exception=error).debug("Unexpected error")
        log.error(f"FAILED: {type(error).__name__}: {error}")
        return UNEXPECTED_ERROR_EXIT_CODE
    finally:
        if session is not None:
            session.cleanup.run_all()
            session.cleanup.uninstall()


if __name__ == "__main__":
    sys.exit(main())
