"""Stand-alone integrity checks of existing backup files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import Artifact, NetworkTarget, Target, VerificationReport
from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.artifacts import artifact_from_path, scan_artifacts
from zfs_bmr.storage.exceptions import (
    ConfigurationMissingError,
    VerificationFailedError,
    VerificationReason,
)
from zfs_bmr.storage.mount import MountManager
from zfs_bmr.storage.validation import NETWORK_TOOLS, require_tools
from zfs_bmr.storage.verification import IntegrityVerifier

log = LoggerFactory.for_verify()


@dataclass
class IntegrityReport:
    passed: list[VerificationReport] = field(default_factory=list)
    failed: list[VerificationFailedError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.passed) and not self.failed

    def summary(self) -> str:
        return f"{len(self.passed)} passed, {len(self.failed)} failed"


class IntegrityService:
    def __init__(self, session: Session, mounts: MountManager, verifier: IntegrityVerifier):
        self.session = session
        self.mounts = mounts
        self.verifier = verifier

    def check_file(self, path: Path) -> VerificationReport:
        path = Path(path)
        artifact = artifact_from_path(path)
        if artifact is None:
            raise VerificationFailedError(
                path.name,
                VerificationReason.STRUCTURE_INVALID,
                "file name does not match a backup artifact",
            )
        return self.verifier.verify(artifact, artifact.kind)

    def check_artifacts(self, artifacts: list[Artifact]) -> IntegrityReport:
        report = IntegrityReport()
        for artifact in artifacts:
            try:
                report.passed.append(self.verifier.verify(artifact, artifact.kind))
            except VerificationFailedError as error:
                log.error(str(error))
                report.failed.append(error)
        return report

    def check_set(self, directory: Path, label: Optional[str] = None) -> IntegrityReport:
        """Verify every artifact in ``directory`` (or only those labelled ``label``)."""
        artifacts = scan_artifacts(directory)
        if label is not None:
            artifacts = [artifact for artifact in artifacts if artifact.label == label]
        if not artifacts:
            raise ConfigurationMissingError(
                "backup files", f"no artifacts{' for ' + label if label else ''} in {directory}"
            )
        report = self.check_artifacts(artifacts)
        log.info(f"Integrity check of {directory}: {report.summary()}")
        return report

    def check_target(self, target: Target, label: Optional[str] = None) -> IntegrityReport:
        """Mount ``target`` read-side, check its artifacts and unmount again."""
        if isinstance(target, NetworkTarget):
            require_tools(NETWORK_TOOLS)
        mount_point = Path(self.session.settings.restore_mount_point)
        handle = self.mounts.acquire_target(target, mount_point)
        try:
            return self.check_set(MountManager.target_directory(target, mount_point), label)
        finally:
            self.mounts.release(handle)
