"""Bounded-read verification of written artifacts.

Verification re-runs the inverse stages against the artifact file and looks
at only as much decoded output as it needs:

* boot archives: decrypt | gunzip | tar -tf -   (the full member list)
* pool streams:  decrypt | lz4 -d, then the first ``verify_prefix_bytes``
  of the raw send stream, which must start with a ZFS BEGIN record

This catches a wrong passphrase, a damaged cipher or compression envelope,
and gross structural damage. Corruption in the pool stream beyond the
inspected prefix is not detected.

Nothing here writes to the artifact or touches a pool.
"""

from __future__ import annotations

import struct
import time
from pathlib import Path
from typing import Callable, Optional

from zfs_bmr.app.session import Session
from zfs_bmr.domain.models import Artifact, ArtifactKind, NetworkTarget, Target, VerificationReport
from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.command_runners import CommandRunner
from zfs_bmr.storage.exceptions import (
    PipelineStageFailedError,
    VerificationFailedError,
    VerificationReason,
)
from zfs_bmr.storage.pipeline.runner import PipelineRun, TransformPipeline
from zfs_bmr.storage.pipeline.stages import StageRole, decrypt, inspect_stages

log = LoggerFactory.for_verify()

DMU_BACKUP_MAGIC = 0x2F5BACBAC
DRR_BEGIN = 0
_BEGIN_HEADER = {"<": struct.Struct("<IIQ"), ">": struct.Struct(">IIQ")}

_REASON_BY_ROLE = {
    StageRole.DECRYPT: VerificationReason.DECRYPT_FAILED,
    StageRole.DECOMPRESS: VerificationReason.DECOMPRESS_FAILED,
}


def is_send_stream_header(prefix: bytes) -> bool:
    """Check for a DRR_BEGIN record carrying DMU_BACKUP_MAGIC, in either byte order."""
    for layout in _BEGIN_HEADER.values():
        if len(prefix) < layout.size:
            return False
        drr_type, _payload_len, magic = layout.unpack_from(prefix)
        if drr_type == DRR_BEGIN and magic == DMU_BACKUP_MAGIC:
            return True
    return False


def wait_for_flush(
    target: Target,
    settings,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Flush written data before reading it back for verification.

    Network shares get an extra settle delay since verification reads through
    the same mount the write just used.
    """
    (runner or CommandRunner()).run(["sync"], check=False)
    if isinstance(target, NetworkTarget) and settings.network_flush_wait_seconds > 0:
        log.debug(f"Waiting {settings.network_flush_wait_seconds}s for network share to settle")
        sleep(settings.network_flush_wait_seconds)


class IntegrityVerifier:
    def __init__(self, session: Session, pipeline: Optional[TransformPipeline] = None):
        self.session = session
        self.pipeline = pipeline or TransformPipeline(session)

    def verify(self, artifact: Artifact, expected_kind: ArtifactKind) -> VerificationReport:
        """Verify one artifact.

        Raises:
            VerificationFailedError: with reason DECRYPT_FAILED,
                DECOMPRESS_FAILED or STRUCTURE_INVALID
        """
        if artifact.kind is not expected_kind:
            raise VerificationFailedError(
                artifact.name,
                VerificationReason.STRUCTURE_INVALID,
                f"expected a {expected_kind.value} artifact, file is {artifact.kind.value}",
            )
        if not Path(artifact.path).is_file():
            raise VerificationFailedError(
                artifact.name, VerificationReason.STRUCTURE_INVALID, "file not found"
            )

        log.info(f"Verifying {artifact.name}")
        if expected_kind is ArtifactKind.BOOT:
            report = self._verify_boot(artifact)
        else:
            report = self._verify_pool(artifact)
        log.success(f"{artifact.name}: {report.detail}")
        return report

    def _start(self, artifact: Artifact, stages) -> PipelineRun:
        try:
            return self.pipeline.start(stages, input_path=artifact.path, capture=True)
        except PipelineStageFailedError as error:
            raise self._failure(artifact, stages, error) from error

    def _failure(self, artifact, stages, error: PipelineStageFailedError) -> VerificationFailedError:
        role = stages[error.index].role
        reason = _REASON_BY_ROLE.get(role, VerificationReason.STRUCTURE_INVALID)
        return VerificationFailedError(artifact.name, reason, str(error))

    def _verify_boot(self, artifact: Artifact) -> VerificationReport:
        stages = inspect_stages(ArtifactKind.BOOT, self.session.settings, self.session.passphrase)
        run = self._start(artifact, stages)
        entries = 0
        try:
            for line in run.stdout:
                if line.strip():
                    entries += 1
            run.wait()
        except PipelineStageFailedError as error:
            raise self._failure(artifact, stages, error) from error
        except BaseException:
            run.terminate()
            raise
        if entries == 0:
            raise VerificationFailedError(
                artifact.name, VerificationReason.STRUCTURE_INVALID, "archive has no members"
            )
        return VerificationReport(
            artifact=artifact, detail=f"valid tar archive, {entries} entries", entries=entries
        )

    def _verify_pool(self, artifact: Artifact) -> VerificationReport:
        stages = inspect_stages(ArtifactKind.POOL, self.session.settings, self.session.passphrase)
        run = self._start(artifact, stages)
        try:
            prefix = run.read_prefix(self.session.settings.verify_prefix_bytes)
            run.wait()
        except PipelineStageFailedError as error:
            raise self._failure(artifact, stages, error) from error
        except BaseException:
            run.terminate()
            raise
        if not prefix:
            raise VerificationFailedError(
                artifact.name, VerificationReason.STRUCTURE_INVALID, "decoded stream is empty"
            )
        if not is_send_stream_header(prefix):
            raise VerificationFailedError(
                artifact.name,
                VerificationReason.STRUCTURE_INVALID,
                "decoded stream does not start with a ZFS send record",
            )
        return VerificationReport(
            artifact=artifact,
            detail=f"readable ZFS stream, {len(prefix)} bytes inspected",
            prefix_bytes=len(prefix),
        )

    def probe_passphrase(self, artifact: Artifact, probe_bytes: Optional[int] = None) -> None:
        """Decrypt only the first few bytes to confirm the passphrase.

        Raises:
            VerificationFailedError: DECRYPT_FAILED if nothing decrypts
        """
        limit = probe_bytes or self.session.settings.password_probe_bytes
        stages = [decrypt(self.session.passphrase)]
        run = self._start(artifact, stages)
        try:
            prefix = run.read_prefix(limit)
            run.wait()
        except PipelineStageFailedError as error:
            raise self._failure(artifact, stages, error) from error
        except BaseException:
            run.terminate()
            raise
        if not prefix:
            raise VerificationFailedError(
                artifact.name, VerificationReason.DECRYPT_FAILED, "no plaintext produced"
            )
        log.info(f"Passphrase accepted for {artifact.name}")
