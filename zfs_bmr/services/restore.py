"""Restore orchestration.

SOURCE_SELECTED -> SET_LOCATED -> PASSWORD_VERIFIED -> DESTINATION_CONFIRMED
    -> (provisioning states) -> PROVISIONED

The passphrase is proven against the boot artifact before the operator is
asked to confirm the destination.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import (
    NetworkTarget,
    RestoreResult,
    RestoreState,
    StateTracker,
    Target,
)
from zfs_bmr.logging import LoggerFactory, operation_context
from zfs_bmr.storage.artifacts import find_backup_set
from zfs_bmr.storage.command_runners import CommandRunner
from zfs_bmr.storage.exceptions import ConfigurationMissingError
from zfs_bmr.storage.mount import MountManager
from zfs_bmr.storage.provisioning import ProvisioningSequencer
from zfs_bmr.storage.validation import (
    NETWORK_TOOLS,
    RESTORE_TOOLS,
    detect_live_environment,
    require_network,
    require_root,
    require_tools,
    validate_device_path,
)
from zfs_bmr.storage.verification import IntegrityVerifier


class RestoreOrchestrator:
    def __init__(
        self,
        session: Session,
        mounts: MountManager,
        verifier: IntegrityVerifier,
        provisioner: ProvisioningSequencer,
        runner: Optional[CommandRunner] = None,
    ):
        self.session = session
        self.settings = session.settings
        self.mounts = mounts
        self.verifier = verifier
        self.provisioner = provisioner
        self.runner = runner or CommandRunner()

    def check_preconditions(self, source: Target, disk: str, log) -> None:
        require_root("Restore")
        require_tools(RESTORE_TOOLS)
        validate_device_path(disk)
        environment = detect_live_environment()
        if environment is None:
            log.warning(
                "Not running from a live or rescue system; make sure the "
                "destination disk is not the running system disk"
            )
        else:
            log.info(f"Running from {environment} environment")
        if isinstance(source, NetworkTarget):
            require_tools(NETWORK_TOOLS)
            require_network(source.host, self.runner)

    def run(
        self,
        source: Target,
        disk: str,
        confirmation: Callable[[str], bool],
        label: Optional[str] = None,
    ) -> RestoreResult:
        """Restore the newest (or ``label``) complete backup set from ``source`` onto ``disk``."""
        with operation_context(
            "restore", LoggerFactory.for_restore, source=source.describe(), disk=disk
        ) as log:
            tracker = StateTracker(RestoreState, log)
            mount_point = Path(self.settings.restore_mount_point)
            handle = None
            try:
                self.check_preconditions(source, disk, log)
                handle = self.mounts.acquire_target(source, mount_point)
                directory = MountManager.target_directory(source, mount_point)
                backup_set = find_backup_set(directory, label)
                if backup_set is None:
                    wanted = f"backup set {label}" if label else "complete backup set"
                    raise ConfigurationMissingError(
                        wanted,
                        f"need both boot-partition-*.tar.gz.gpg and "
                        f"zfs-backup-*.lz4.gpg in {directory}",
                    )
                tracker.advance(RestoreState.SET_LOCATED)
                log.info(
                    f"Selected backup set {backup_set.label}: "
                    f"{backup_set.boot.name} + {backup_set.pool.name}"
                )

                self.verifier.probe_passphrase(backup_set.boot)
                tracker.advance(RestoreState.PASSWORD_VERIFIED)

                def confirm(target_disk: str) -> bool:
                    confirmed = confirmation(target_disk)
                    if confirmed:
                        tracker.advance(RestoreState.DESTINATION_CONFIRMED)
                    return confirmed

                outcome = self.provisioner.run(disk, backup_set.boot, backup_set.pool, confirm)
                tracker.advance(RestoreState.PROVISIONED)
            except BaseException:
                tracker.abort()
                self.mounts.release(handle)
                raise

            self.mounts.release(handle)
            if outcome.bootloader:
                log.success(f"Restore of {backup_set.label} to {disk} complete, bootloader: {outcome.bootloader}")
            else:
                log.warning(f"Restore of {backup_set.label} to {disk} complete; install the bootloader manually")
            return RestoreResult(
                label=backup_set.label,
                target_disk=disk,
                bootloader=outcome.bootloader,
                warnings=outcome.warnings,
                states=tuple(tracker.history) + outcome.states,
            )
