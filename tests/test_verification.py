"""Tests for artifact integrity verification.

Most tests swap the gpg stage for a plain process so they run anywhere;
``TestWithGpg`` exercises the real encrypt/decrypt path when gpg exists.
"""

import dataclasses
import gzip
import os
import shutil
import struct
import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from zfs_bmr.app.session import Session
from zfs_bmr.config.credentials import Credentials
from zfs_bmr.domain.models import ArtifactKind, LocalPartitionTarget, NetworkTarget, SnapshotRef
from zfs_bmr.storage.exceptions import VerificationFailedError, VerificationReason
from zfs_bmr.storage.pipeline.runner import TransformPipeline
from zfs_bmr.storage.pipeline.stages import (
    StageRole,
    StreamStage,
    backup_stages,
    encrypt,
    restore_stages,
)
from zfs_bmr.storage.verification import (
    DMU_BACKUP_MAGIC,
    IntegrityVerifier,
    is_send_stream_header,
    wait_for_flush,
)

BEGIN_RECORD = struct.pack("<IIQ", 0, 312, DMU_BACKUP_MAGIC)

PLAIN_DECRYPT = StreamStage("gpg", StageRole.DECRYPT, ("cat",))
BAD_DECRYPT = StreamStage(
    "gpg", StageRole.DECRYPT, ("sh", "-c", "cat >/dev/null; echo 'gpg: decryption failed: Bad session key' >&2; exit 2")
)
GUNZIP = StreamStage("gzip", StageRole.DECOMPRESS, ("gzip", "-d", "-c"))
TAR_LIST = StreamStage("tar", StageRole.INSPECT, ("tar", "-tf", "-"))


def fake_inspect(decrypt_stage=PLAIN_DECRYPT):
    def build(kind, settings, passphrase):
        stages = [decrypt_stage, GUNZIP]
        if kind is ArtifactKind.BOOT:
            stages.append(TAR_LIST)
        return stages

    return build


def tar_gz(source: Path) -> bytes:
    archive = subprocess.run(["tar", "-cf", "-", "-C", str(source), "."], capture_output=True, check=True)
    return gzip.compress(archive.stdout)


@pytest.fixture
def verifier(session):
    return IntegrityVerifier(session, TransformPipeline(session))


@pytest.fixture
def boot_tree(tmp_path):
    root = tmp_path / "efi-tree"
    (root / "EFI" / "proxmox").mkdir(parents=True)
    (root / "EFI" / "proxmox" / "grubx64.efi").write_bytes(b"\x00efi")
    (root / "loader.conf").write_text("timeout 3\n")
    return root


class TestSendStreamHeader:
    def test_little_endian_begin(self):
        assert is_send_stream_header(BEGIN_RECORD + b"rest")

    def test_big_endian_begin(self):
        assert is_send_stream_header(struct.pack(">IIQ", 0, 312, DMU_BACKUP_MAGIC))

    @pytest.mark.parametrize(
        "prefix",
        [b"", b"\x00" * 8, struct.pack("<IIQ", 1, 0, DMU_BACKUP_MAGIC), struct.pack("<IIQ", 0, 0, 1234), b"PK\x03\x04" * 8],
    )
    def test_rejects_other_data(self, prefix):
        assert not is_send_stream_header(prefix)


class TestVerifyBoot:
    def test_counts_members(self, verifier, make_artifact, boot_tree):
        artifact = make_artifact(ArtifactKind.BOOT, data=tar_gz(boot_tree))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            report = verifier.verify(artifact, ArtifactKind.BOOT)

        assert report.entries == 5  # ., EFI, EFI/proxmox, grubx64.efi, loader.conf
        assert "valid tar archive" in report.detail

    def test_wrong_passphrase(self, verifier, make_artifact, boot_tree):
        artifact = make_artifact(ArtifactKind.BOOT, data=tar_gz(boot_tree))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect(BAD_DECRYPT)):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.verify(artifact, ArtifactKind.BOOT)

        assert excinfo.value.reason is VerificationReason.DECRYPT_FAILED
        assert "Bad session key" in str(excinfo.value)

    def test_corrupt_compression(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT, data=b"this is not gzip data" * 10)

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.verify(artifact, ArtifactKind.BOOT)

        assert excinfo.value.reason is VerificationReason.DECOMPRESS_FAILED

    def test_not_a_tar_archive(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT, data=gzip.compress(b"plain text, not tar\n" * 100))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.verify(artifact, ArtifactKind.BOOT)

        assert excinfo.value.reason is VerificationReason.STRUCTURE_INVALID

    def test_kind_mismatch(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL)

        with pytest.raises(VerificationFailedError) as excinfo:
            verifier.verify(artifact, ArtifactKind.BOOT)

        assert excinfo.value.reason is VerificationReason.STRUCTURE_INVALID

    def test_missing_file(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT)
        artifact.path.unlink()

        with pytest.raises(VerificationFailedError, match="file not found"):
            verifier.verify(artifact, ArtifactKind.BOOT)


class TestVerifyPool:
    def test_reads_bounded_prefix(self, verifier, make_artifact, session):
        stream = BEGIN_RECORD + bytes(range(256)) * 4096  # ~1 MiB, far beyond the prefix
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(stream))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            report = verifier.verify(artifact, ArtifactKind.POOL)

        assert report.prefix_bytes == session.settings.verify_prefix_bytes

    def test_short_stream(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(BEGIN_RECORD + b"end"))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            report = verifier.verify(artifact, ArtifactKind.POOL)

        assert report.prefix_bytes == len(BEGIN_RECORD) + 3

    def test_empty_stream(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(b""))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            with pytest.raises(VerificationFailedError, match="empty"):
                verifier.verify(artifact, ArtifactKind.POOL)

    def test_not_a_send_stream(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(b"\x00" * 10000))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.verify(artifact, ArtifactKind.POOL)

        assert excinfo.value.reason is VerificationReason.STRUCTURE_INVALID

    def test_wrong_passphrase_before_decompression(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(BEGIN_RECORD * 100))

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect(BAD_DECRYPT)):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.verify(artifact, ArtifactKind.POOL)

        assert excinfo.value.reason is VerificationReason.DECRYPT_FAILED

    def test_verification_is_repeatable_and_read_only(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.POOL, data=gzip.compress(BEGIN_RECORD + b"x" * 50000))
        before = artifact.path.read_bytes()

        with patch("zfs_bmr.storage.verification.inspect_stages", side_effect=fake_inspect()):
            first = verifier.verify(artifact, ArtifactKind.POOL)
            second = verifier.verify(artifact, ArtifactKind.POOL)

        assert first == second
        assert artifact.path.read_bytes() == before


class TestProbePassphrase:
    def test_accepts(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT, data=b"x" * 1000)

        with patch("zfs_bmr.storage.verification.decrypt", return_value=PLAIN_DECRYPT):
            verifier.probe_passphrase(artifact)

    def test_rejects(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT, data=b"x" * 1000)

        with patch("zfs_bmr.storage.verification.decrypt", return_value=BAD_DECRYPT):
            with pytest.raises(VerificationFailedError) as excinfo:
                verifier.probe_passphrase(artifact)

        assert excinfo.value.reason is VerificationReason.DECRYPT_FAILED

    def test_no_plaintext(self, verifier, make_artifact):
        artifact = make_artifact(ArtifactKind.BOOT, data=b"")

        with patch("zfs_bmr.storage.verification.decrypt", return_value=PLAIN_DECRYPT):
            with pytest.raises(VerificationFailedError, match="no plaintext"):
                verifier.probe_passphrase(artifact)


class TestWaitForFlush:
    def test_network_target_waits(self, runner, settings):
        settings = dataclasses.replace(settings, network_flush_wait_seconds=5)
        sleep = Mock()

        wait_for_flush(NetworkTarget("nas", "share"), settings, runner, sleep=sleep)

        assert runner.calls == [["sync"]]
        sleep.assert_called_once_with(5)

    def test_local_target_only_syncs(self, runner, settings):
        sleep = Mock()
        wait_for_flush(LocalPartitionTarget("/dev/sdb1"), settings, runner, sleep=sleep)
        assert runner.calls == [["sync"]]
        sleep.assert_not_called()


@pytest.mark.skipif(shutil.which("gpg") is None, reason="gpg not installed")
class TestWithGpg:
    """Real encrypt -> decrypt round trips."""

    @pytest.fixture
    def gz_session(self, settings, credentials, gnupg_home):
        settings = dataclasses.replace(settings, pool_compression="gzip")
        return Session(settings=settings, credentials=credentials)

    def _write_boot(self, session, boot_tree, directory):
        path = directory / "boot-partition-20240115-0930.tar.gz.gpg"
        stages = backup_stages(ArtifactKind.BOOT, session.settings, session.passphrase, source_dir=boot_tree)
        TransformPipeline(session).run(stages, output_path=path)
        return path

    def test_boot_round_trip(self, gz_session, boot_tree, tmp_path):
        from zfs_bmr.storage.artifacts import artifact_from_path

        path = self._write_boot(gz_session, boot_tree, tmp_path)
        artifact = artifact_from_path(path)

        report = IntegrityVerifier(gz_session).verify(artifact, ArtifactKind.BOOT)
        assert report.entries == 5

        restored = tmp_path / "restored"
        restored.mkdir()
        stages = restore_stages(ArtifactKind.BOOT, gz_session.settings, gz_session.passphrase, destination=restored)
        TransformPipeline(gz_session).run(stages, input_path=path)

        assert (restored / "loader.conf").read_text() == "timeout 3\n"
        assert (restored / "EFI" / "proxmox" / "grubx64.efi").read_bytes() == b"\x00efi"

    def test_pool_stream_round_trip(self, gz_session, tmp_path):
        from zfs_bmr.storage.artifacts import artifact_from_path

        stream = tmp_path / "send-stream"
        stream.write_bytes(BEGIN_RECORD + b"payload" * 10000)
        path = tmp_path / "zfs-backup-20240115-0930.lz4.gpg"
        stages = backup_stages(
            ArtifactKind.POOL, gz_session.settings, gz_session.passphrase, snapshot=SnapshotRef("tank", "20240115-0930")
        )
        # Replace zfs send with a file source
        TransformPipeline(gz_session).run(stages[1:], input_path=stream, output_path=path)

        report = IntegrityVerifier(gz_session).verify(artifact_from_path(path), ArtifactKind.POOL)

        assert report.prefix_bytes == gz_session.settings.verify_prefix_bytes
        assert b"payload" not in path.read_bytes()

    def test_wrong_passphrase(self, gz_session, boot_tree, tmp_path):
        from zfs_bmr.storage.artifacts import artifact_from_path

        artifact = artifact_from_path(self._write_boot(gz_session, boot_tree, tmp_path))
        wrong = Session(settings=gz_session.settings, credentials=Credentials(passphrase="wrong"))

        with pytest.raises(VerificationFailedError) as excinfo:
            IntegrityVerifier(wrong).verify(artifact, ArtifactKind.BOOT)
        assert excinfo.value.reason is VerificationReason.DECRYPT_FAILED

        with pytest.raises(VerificationFailedError) as excinfo:
            IntegrityVerifier(wrong).probe_passphrase(artifact)
        assert excinfo.value.reason is VerificationReason.DECRYPT_FAILED

    def test_corrupt_compression_under_real_gpg(self, gz_session, tmp_path):
        from zfs_bmr.storage.artifacts import artifact_from_path

        noise = tmp_path / "noise"
        noise.write_bytes(os.urandom(8 * 1024 * 1024))
        path = tmp_path / "zfs-backup-20240115-0930.lz4.gpg"
        TransformPipeline(gz_session).run([encrypt(gz_session.passphrase)], input_path=noise, output_path=path)

        with pytest.raises(VerificationFailedError) as excinfo:
            IntegrityVerifier(gz_session).verify(artifact_from_path(path), ArtifactKind.POOL)

        assert excinfo.value.reason is VerificationReason.DECOMPRESS_FAILED
