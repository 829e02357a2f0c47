"""Backup orchestration.

TARGET_SELECTED -> MOUNTED -> SNAPSHOT_CREATED -> STREAMED -> VERIFIED
    -> SNAPSHOT_DESTROYED -> MANIFEST_WRITTEN -> UNMOUNTED

The snapshot is destroyed exactly once on every path out of the run, and
the target is unmounted on every path. Partially written artifacts are left
where they are for inspection; they are never reported as verified.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import (
    Artifact,
    ArtifactKind,
    BackupResult,
    BackupState,
    LocalDirectoryTarget,
    NetworkTarget,
    StateTracker,
    Target,
)
from zfs_bmr.logging import LoggerFactory, operation_context
from zfs_bmr.storage.artifacts import artifact_name, write_manifest
from zfs_bmr.storage.command_runners import CommandRunner
from zfs_bmr.storage.exceptions import ConfigurationMissingError, ShortWriteError
from zfs_bmr.storage.mount import MountManager
from zfs_bmr.storage.pipeline.progress import ProgressPoller
from zfs_bmr.storage.pipeline.runner import TransformPipeline
from zfs_bmr.storage.pipeline.stages import backup_stages
from zfs_bmr.storage.snapshot import SnapshotManager, make_label
from zfs_bmr.storage.validation import (
    BACKUP_TOOLS,
    NETWORK_TOOLS,
    require_free_space,
    require_network,
    require_pool,
    require_tools,
    warn_if_not_root,
)
from zfs_bmr.storage.verification import IntegrityVerifier, wait_for_flush


class BackupOrchestrator:
    def __init__(
        self,
        session: Session,
        mounts: MountManager,
        snapshots: SnapshotManager,
        pipeline: TransformPipeline,
        verifier: IntegrityVerifier,
        runner: Optional[CommandRunner] = None,
    ):
        self.session = session
        self.settings = session.settings
        self.mounts = mounts
        self.snapshots = snapshots
        self.pipeline = pipeline
        self.verifier = verifier
        self.runner = runner or CommandRunner()

    def check_preconditions(self, target: Target) -> None:
        """Checks that need no mount: tools, pool, connectivity."""
        warn_if_not_root("Backup")
        require_tools(BACKUP_TOOLS)
        require_pool(self.settings.pool, self.runner)
        if isinstance(target, NetworkTarget):
            require_tools(NETWORK_TOOLS)
            require_network(target.host, self.runner)

    def run(self, target: Target, label: Optional[str] = None) -> BackupResult:
        if isinstance(target, LocalDirectoryTarget):
            raise ConfigurationMissingError(
                "backup target", "use --nas, --device or --partition"
            )

        with operation_context("backup", LoggerFactory.for_backup, target=target.describe()) as log:
            tracker = StateTracker(BackupState, log)
            mount_point = Path(self.settings.backup_mount_point)
            handle = None
            try:
                self.check_preconditions(target)
                handle = self.mounts.acquire_target(target, mount_point)
                tracker.advance(BackupState.MOUNTED)

                backup_dir = MountManager.target_directory(target, mount_point)
                backup_dir.mkdir(parents=True, exist_ok=True)
                require_free_space(backup_dir, self.settings.min_free_bytes)

                label = label or make_label()
                boot, pool = self._stream_and_verify(target, backup_dir, label, tracker, log)
                tracker.advance(BackupState.SNAPSHOT_DESTROYED)

                manifest = write_manifest(backup_dir, label, boot, pool)
                tracker.advance(BackupState.MANIFEST_WRITTEN)
            except BaseException:
                tracker.abort()
                self.mounts.release(handle)
                raise

            self.mounts.release(handle)
            tracker.advance(BackupState.UNMOUNTED)
            log.success(f"Backup {label} written to {backup_dir}")
            return BackupResult(
                label=label,
                backup_dir=backup_dir,
                boot_artifact=boot,
                pool_artifact=pool,
                manifest_path=manifest,
                states=tuple(tracker.history),
            )

    def _stream_and_verify(self, target, backup_dir: Path, label: str, tracker, log):
        passphrase = self.session.passphrase
        boot_path = backup_dir / artifact_name(ArtifactKind.BOOT, label)
        pool_path = backup_dir / artifact_name(ArtifactKind.POOL, label)

        with self.snapshots.scoped(self.settings.pool, label) as snapshot:
            tracker.advance(BackupState.SNAPSHOT_CREATED)

            log.info("Backing up boot partition")
            boot_stages = backup_stages(ArtifactKind.BOOT, self.settings, passphrase)
            boot_bytes = self.pipeline.run(boot_stages, output_path=boot_path)
            log.info(f"Boot partition backed up: {boot_bytes} bytes")

            log.info("Backing up ZFS pool (this may take several minutes)")
            pool_stages = backup_stages(
                ArtifactKind.POOL, self.settings, passphrase, snapshot=snapshot
            )
            pool_bytes = self.pipeline.run(
                pool_stages,
                output_path=pool_path,
                progress=lambda run: ProgressPoller(
                    run,
                    self.settings.poll_interval_seconds,
                    output_path=pool_path,
                    title="Pool stream",
                ).start(),
            )
            if pool_bytes <= 0:
                raise ShortWriteError(pool_stages[-1].name, len(pool_stages) - 1, pool_bytes)
            log.info(f"ZFS pool backed up: {pool_bytes} bytes")
            tracker.advance(BackupState.STREAMED)

            boot = Artifact(ArtifactKind.BOOT, label, boot_path, boot_bytes)
            pool = Artifact(ArtifactKind.POOL, label, pool_path, pool_bytes)
            wait_for_flush(target, self.settings, self.runner)
            self.verifier.verify(boot, ArtifactKind.BOOT)
            self.verifier.verify(pool, ArtifactKind.POOL)
            tracker.advance(BackupState.VERIFIED)
        return boot, pool
