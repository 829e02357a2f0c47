"""Destination disk provisioning for bare-metal restore.

The sequencer walks a strictly linear state machine:

    SELECTED -> WIPED -> PARTITIONED -> POOL_CREATED -> DATA_RESTORED
             -> BOOT_RESTORED -> BOOTLOADER_INSTALLED -> DONE

Nothing is touched until the operator confirms the destination disk. After
that every failure is fatal; partitions and the new pool are left as they
are, but every mount acquired so far is released in reverse order before
the error is raised, so the disk can be provisioned again straight away.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import (
    Artifact,
    ArtifactKind,
    ProvisionOutcome,
    ProvisionState,
    RestoreLayout,
    StateTracker,
)
from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.command_runners import CommandError, CommandRunner, which
from zfs_bmr.storage.exceptions import (
    BackupError,
    OperationInterrupted,
    ProvisioningFailedError,
)
from zfs_bmr.storage.mount import MountHandle, MountManager
from zfs_bmr.storage.pipeline.progress import ProgressPoller
from zfs_bmr.storage.pipeline.runner import TransformPipeline
from zfs_bmr.storage.pipeline.stages import restore_stages
from zfs_bmr.storage.validation import validate_device_path

log = LoggerFactory.for_provision()

EFI_TYPE_CODE = "ef00"
ZFS_TYPE_CODE = "bf00"
CHROOT_BIND_MOUNTS = ("dev", "proc", "sys")

# Probed inside the restored root, in the order given by settings.bootloader_tools
BOOTLOADER_COMMANDS = {
    "proxmox-boot-tool": (
        ("/usr/sbin/proxmox-boot-tool", "init", "{disk}"),
        ("/usr/sbin/proxmox-boot-tool", "refresh"),
    ),
    "grub-install": (
        ("/usr/sbin/grub-install", "{disk}"),
        ("/usr/sbin/update-grub",),
    ),
}


def partition_node(disk: str, number: int) -> str:
    """Partition device path, e.g. /dev/sda1 or /dev/nvme0n1p1."""
    name = Path(disk).name
    if name.startswith(("nvme", "mmcblk", "loop")) or re.search(r"\d$", name):
        return f"{disk}p{number}"
    return f"{disk}{number}"


class DiskTools:
    """Thin wrappers over the disk, pool and chroot commands used by restore."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def wipe(self, disk: str) -> None:
        # Both fail harmlessly on a blank disk
        for command in (["sgdisk", "--zap-all", disk], ["wipefs", "-a", disk]):
            result = self.runner.run(command, check=False)
            if result.returncode != 0:
                log.debug(f"{command[0]} returned {result.returncode} on {disk}")

    def partition(self, disk: str, efi_size: str) -> None:
        self.runner.run(["sgdisk", "-n", f"1:0:{efi_size}", "-t", f"1:{EFI_TYPE_CODE}", disk])
        self.runner.run(["sgdisk", "-n", "2:0:0", "-t", f"2:{ZFS_TYPE_CODE}", disk])

    def reread(self, disk: str) -> None:
        """Force the kernel to re-read the partition table and wait for udev."""
        partprobe = which("partprobe")
        if partprobe:
            self.runner.run([partprobe, disk], check=False)
        else:
            blockdev = which("blockdev")
            if blockdev:
                self.runner.run([blockdev, "--rereadpt", disk], check=False)
        udevadm = which("udevadm")
        if udevadm:
            self.runner.run([udevadm, "settle"], check=False)

    def format_efi(self, partition: str) -> None:
        self.runner.run(["mkfs.fat", "-F32", partition])

    def create_pool(self, pool: str, partition: str) -> None:
        self.runner.run(["zpool", "create", "-f", pool, partition])

    def list_datasets(self, pool: str) -> list[str]:
        output = self.runner.run_checked(["zfs", "list", "-H", "-o", "name", "-r", pool])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def find_root_dataset(self, pool: str) -> Optional[str]:
        """Pick the boot root, e.g. rpool/ROOT/pve-1 over the rpool/ROOT container."""
        datasets = self.list_datasets(pool)
        for dataset in datasets:
            if "/ROOT/" in dataset:
                return dataset
        for dataset in datasets:
            if "ROOT" in dataset:
                return dataset
        return None

    def set_bootfs(self, pool: str, dataset: str) -> None:
        self.runner.run(["zpool", "set", f"bootfs={dataset}", pool])

    def set_mountpoint(self, dataset: str, mountpoint) -> None:
        self.runner.run(["zfs", "set", f"mountpoint={mountpoint}", dataset])

    def mount_dataset(self, dataset: str) -> None:
        self.runner.run(["zfs", "mount", dataset])

    def mount_child_datasets(self, pool: str, root_dataset: str) -> None:
        for dataset in self.list_datasets(pool):
            if dataset.startswith(f"{root_dataset}/"):
                result = self.runner.run(["zfs", "mount", dataset], check=False)
                if result.returncode != 0:
                    log.debug(f"Could not mount {dataset}: {result.stderr.strip()}")

    def unmount_all(self) -> bool:
        result = self.runner.run(["zfs", "unmount", "-a"], check=False)
        if result.returncode != 0:
            log.warning(f"zfs unmount -a failed: {result.stderr.strip()}")
            return False
        return True

    def chroot_run(self, root: Path, command) -> str:
        return self.runner.run_checked(["chroot", str(root), *command])


class ProvisioningSequencer:
    def __init__(
        self,
        session: Session,
        tools: DiskTools,
        mounts: MountManager,
        pipeline: TransformPipeline,
    ):
        self.session = session
        self.settings = session.settings
        self.tools = tools
        self.mounts = mounts
        self.pipeline = pipeline

    def run(
        self,
        disk: str,
        boot_artifact: Artifact,
        pool_artifact: Artifact,
        confirmation: Callable[[str], bool],
    ) -> ProvisionOutcome:
        """Provision ``disk`` from a backup set.

        Args:
            disk: Whole-disk device to erase (e.g. /dev/sda)
            boot_artifact: boot-partition archive to extract onto the EFI partition
            pool_artifact: pool stream to receive into the new pool
            confirmation: Called with ``disk``; must return True before wiping

        Raises:
            ProvisioningFailedError: Naming the transition that failed
            OperationInterrupted: Operator signal; mounts are released first
        """
        validate_device_path(disk)
        tracker = StateTracker(ProvisionState, log)
        if not confirmation(disk):
            tracker.abort()
            raise ProvisioningFailedError(
                ProvisionState.SELECTED.name, f"destination {disk} was not confirmed"
            )

        pool = self.settings.pool
        layout = RestoreLayout(disk, partition_node(disk, 1), partition_node(disk, 2))
        acquired: list[MountHandle] = []
        warnings: list[str] = []
        transition = ProvisionState.WIPED
        try:
            log.warning(f"Wiping {disk}")
            self.tools.wipe(disk)
            tracker.advance(transition)

            transition = ProvisionState.PARTITIONED
            self.tools.partition(disk, self.settings.efi_partition_size)
            self.tools.reread(disk)
            self.tools.format_efi(layout.efi_partition)
            tracker.advance(transition)

            transition = ProvisionState.POOL_CREATED
            self.tools.create_pool(pool, layout.pool_partition)
            tracker.advance(transition)

            transition = ProvisionState.DATA_RESTORED
            self._restore_pool(pool_artifact, pool)
            tracker.advance(transition)

            transition = ProvisionState.BOOT_RESTORED
            self._restore_boot(boot_artifact, layout, acquired)
            root_dataset = self.tools.find_root_dataset(pool)
            if root_dataset:
                self.tools.set_bootfs(pool, root_dataset)
            else:
                warnings.append(f"No ROOT dataset found in {pool}; bootfs not set")
            tracker.advance(transition)

            transition = ProvisionState.BOOTLOADER_INSTALLED
            bootloader = self._install_bootloader(disk, pool, layout, root_dataset, acquired, warnings)
            tracker.advance(transition)
        except BaseException as error:
            self._release_all(acquired)
            tracker.abort()
            if isinstance(error, (OperationInterrupted, ProvisioningFailedError)):
                raise
            if isinstance(error, (BackupError, CommandError, OSError)):
                raise ProvisioningFailedError(transition.name, str(error)) from error
            raise

        tracker.advance(ProvisionState.DONE)
        for warning in warnings:
            log.warning(warning)
        return ProvisionOutcome(
            layout=layout,
            root_dataset=root_dataset,
            bootloader=bootloader,
            warnings=tuple(warnings),
            states=tuple(tracker.history),
        )

    def _restore_pool(self, artifact: Artifact, pool: str) -> None:
        log.info(f"Receiving {artifact.name} into {pool} (this may take a while)")
        stages = restore_stages(
            ArtifactKind.POOL, self.settings, self.session.passphrase, pool=pool
        )
        self.pipeline.run(
            stages,
            input_path=artifact.path,
            progress=lambda run: ProgressPoller(
                run, self.settings.poll_interval_seconds, title="Restoring pool"
            ).start(),
        )

    def _restore_boot(self, artifact: Artifact, layout: RestoreLayout, acquired: list) -> None:
        efi_dir = Path(self.settings.efi_mount_point)
        handle = self.mounts.acquire(layout.efi_partition, efi_dir)
        acquired.append(handle)
        stages = restore_stages(
            ArtifactKind.BOOT, self.settings, self.session.passphrase, destination=efi_dir
        )
        self.pipeline.run(stages, input_path=artifact.path)
        acquired.remove(handle)
        if not self.mounts.release(handle):
            raise ProvisioningFailedError(
                ProvisionState.BOOT_RESTORED.name, f"could not unmount {efi_dir}"
            )
        log.info(f"Boot partition restored to {layout.efi_partition}")

    def _install_bootloader(
        self,
        disk: str,
        pool: str,
        layout: RestoreLayout,
        root_dataset: Optional[str],
        acquired: list,
        warnings: list,
    ) -> Optional[str]:
        if root_dataset is None:
            warnings.append("No root dataset; install the bootloader manually")
            return None

        root = Path(self.settings.restore_root)
        root.mkdir(parents=True, exist_ok=True)
        try:
            self.tools.set_mountpoint(root_dataset, root)
            self.tools.mount_dataset(root_dataset)
            self.tools.mount_child_datasets(pool, root_dataset)
            for name in CHROOT_BIND_MOUNTS:
                acquired.append(self.mounts.bind(Path("/") / name, root / name))
            acquired.append(self.mounts.acquire(layout.efi_partition, root / "boot" / "efi"))

            chosen = self._probe_bootloader(root)
            if chosen is None:
                warnings.append(
                    "No bootloader tool found in restored system - manual installation required"
                )
                return None
            log.info(f"Installing bootloader with {chosen}")
            for command in BOOTLOADER_COMMANDS[chosen]:
                self.tools.chroot_run(root, [arg.format(disk=disk) for arg in command])
            return chosen
        finally:
            self._release_all(acquired)
            self.tools.unmount_all()
            try:
                self.tools.set_mountpoint(root_dataset, "/")
            except CommandError as error:
                log.warning(f"Could not reset mountpoint of {root_dataset}: {error}")

    def _probe_bootloader(self, root: Path) -> Optional[str]:
        for tool in self.settings.bootloader_tools:
            commands = BOOTLOADER_COMMANDS.get(tool)
            if commands is None:
                log.warning(f"Unknown bootloader tool in settings: {tool}")
                continue
            if (root / commands[0][0].lstrip("/")).exists():
                return tool
        return None

    def _release_all(self, acquired: list) -> None:
        while acquired:
            self.mounts.release(acquired.pop())
