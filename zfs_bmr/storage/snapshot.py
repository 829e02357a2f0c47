"""Recursive pool snapshots that live exactly as long as one backup run."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import LABEL_FORMAT, SnapshotRef
from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.command_runners import CommandError, CommandRunner
from zfs_bmr.storage.exceptions import SnapshotBackendError, SnapshotExistsError

log = LoggerFactory.for_snapshot()


def make_label(now: Optional[datetime] = None) -> str:
    """Timestamp label at minute granularity, e.g. 20240115-0930."""
    return (now or datetime.now()).strftime(LABEL_FORMAT)


class SnapshotManager:
    def __init__(self, session: Session, runner: Optional[CommandRunner] = None):
        self.session = session
        self.runner = runner or CommandRunner()

    def pool_exists(self, pool: str) -> bool:
        return self.runner.succeeds(["zpool", "list", "-H", "-o", "name", pool])

    def list_snapshots(self, pool: str) -> list[str]:
        output = self.runner.run_checked(
            ["zfs", "list", "-H", "-t", "snapshot", "-o", "name", "-r", pool]
        )
        return [line.strip() for line in output.splitlines() if line.strip()]

    def exists(self, ref: SnapshotRef) -> bool:
        return self.runner.succeeds(["zfs", "list", "-H", "-t", "snapshot", "-o", "name", ref.name])

    def create(self, pool: str, label: str) -> SnapshotRef:
        """Create ``pool@backup-<label>`` recursively.

        A same-minute collision raises SnapshotExistsError; it is not retried.
        """
        ref = SnapshotRef(pool=pool, label=label)
        command = ["zfs", "snapshot"]
        if ref.recursive:
            command.append("-r")
        command.append(ref.name)
        try:
            self.runner.run(command)
        except CommandError as error:
            if "dataset already exists" in error.stderr:
                raise SnapshotExistsError(ref.name) from error
            raise SnapshotBackendError(ref.name, error.stderr.strip() or str(error)) from error
        log.info(f"Created snapshot {ref.name}")
        return ref

    def destroy(self, ref: SnapshotRef) -> bool:
        """Destroy the snapshot. Failures are logged and reported as False."""
        command = ["zfs", "destroy"]
        if ref.recursive:
            command.append("-r")
        command.append(ref.name)
        try:
            self.runner.run(command)
        except (CommandError, OSError) as error:
            log.warning(
                f"Could not destroy snapshot {ref.name}; remove it manually "
                f"with 'zfs destroy -r {ref.name}': {error}"
            )
            return False
        log.info(f"Destroyed snapshot {ref.name}")
        return True

    @contextmanager
    def scoped(self, pool: str, label: str) -> Iterator[SnapshotRef]:
        """Create a snapshot and destroy it exactly once when the block exits.

        The destroy is registered with the cleanup registry, so an interrupted
        process that never reaches the ``finally`` still removes it, and a
        registry sweep that already ran it is not repeated.
        """
        ref = self.create(pool, label)
        token = self.session.cleanup.register(
            f"destroy snapshot {ref.name}", lambda: self._destroy_or_raise(ref)
        )
        try:
            yield ref
        finally:
            self.session.cleanup.discharge(token)

    def _destroy_or_raise(self, ref: SnapshotRef) -> None:
        if not self.destroy(ref):
            raise SnapshotBackendError(ref.name, "destroy failed")
