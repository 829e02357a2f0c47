"""
Pytest configuration and shared fixtures for zfs-bmr tests.

External commands are never run for real except in the pipeline tests,
which only use ubiquitous tools (cat, sh, gzip, tar, head, yes). Everything
that would touch zfs, mount or a disk goes through ``FakeRunner``.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from loguru import logger

from zfs_bmr.app.session import Session
from zfs_bmr.config.credentials import Credentials
from zfs_bmr.config.settings import Settings
from zfs_bmr.domain.models import Artifact, ArtifactKind
from zfs_bmr.storage.artifacts import artifact_name
from zfs_bmr.storage.command_runners import CommandError, CommandRunner


# ==============================================================================
# Command Runner Fakes
# ==============================================================================


Response = Tuple[int, str, str]


class FakeRunner(CommandRunner):
    """CommandRunner that records commands and answers from canned responses.

    Responses are matched by command prefix; the most recently added match
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self._responses: List[Tuple[Tuple[str, ...], Callable[[List[str]], Response]]] = []

    def on(self, *prefix, returncode=0, stdout="", stderr="", handler=None):
        if handler is None:
            response = (returncode, stdout, stderr)
            handler = lambda command: response  # noqa: E731
        self._responses.append((tuple(prefix), handler))
        return self

    def run(self, command, *, check=True, input_text=None, secrets=(), timeout=None):
        command = [str(arg) for arg in command]
        self.calls.append(command)
        returncode, stdout, stderr = 0, "", ""
        for prefix, handler in reversed(self._responses):
            if tuple(command[: len(prefix)]) == prefix:
                returncode, stdout, stderr = handler(command)
                break
        if returncode != 0 and check:
            raise CommandError(" ".join(command), returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def ran(self, *prefix) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


class FakeZfs:
    """Keeps a snapshot list so create/destroy/list behave like zfs does."""

    def __init__(self, runner: FakeRunner, pools=("tank",)):
        self.pools = set(pools)
        self.snapshots: set = set()
        runner.on("zpool", "list", handler=self._zpool_list)
        runner.on("zfs", "snapshot", handler=self._snapshot)
        runner.on("zfs", "destroy", handler=self._destroy)
        runner.on("zfs", "list", "-H", "-t", "snapshot", handler=self._list_snapshots)

    def _zpool_list(self, command):
        if command[-1] in self.pools:
            return 0, command[-1] + "\n", ""
        return 1, "", f"cannot open '{command[-1]}': no such pool"

    def _snapshot(self, command):
        name = command[-1]
        if name in self.snapshots:
            return 1, "", f"cannot create snapshot '{name}': dataset already exists"
        self.snapshots.add(name)
        return 0, "", ""

    def _destroy(self, command):
        name = command[-1]
        if name not in self.snapshots:
            return 1, "", "could not find any snapshots to destroy; check snapshot names."
        self.snapshots.discard(name)
        return 0, "", ""

    def _list_snapshots(self, command):
        target = command[-1]
        names = sorted(name for name in self.snapshots if name.split("@")[0] == target or name == target)
        if "@" in target and target not in self.snapshots:
            return 1, "", f"cannot open '{target}': dataset does not exist"
        return 0, "".join(f"{name}\n" for name in names), ""


class FakePipeline:
    """Stands in for TransformPipeline.run; writes a fixed payload per run."""

    def __init__(self, payload: bytes = b"encrypted-bytes"):
        self.payload = payload
        self.runs: List[dict] = []
        self.fail_on: Optional[Callable[[list], Optional[BaseException]]] = None

    def run(self, stages, input_path=None, output_path=None, progress=None):
        self.runs.append(
            {"stages": list(stages), "input_path": input_path, "output_path": output_path}
        )
        if self.fail_on is not None:
            error = self.fail_on(list(stages))
            if error is not None:
                raise error
        if output_path is not None:
            Path(output_path).write_bytes(self.payload)
            return len(self.payload)
        return 0


# ==============================================================================
# Session Fixtures
# ==============================================================================


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_zfs(runner) -> FakeZfs:
    return FakeZfs(runner)


@pytest.fixture
def fake_pipeline() -> FakePipeline:
    return FakePipeline()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with every path under tmp_path and no waiting."""
    (tmp_path / "run").mkdir()
    efi_source = tmp_path / "efi-source"
    efi_source.mkdir()
    return Settings(
        pool="tank",
        boot_dir=str(efi_source),
        backup_mount_point=str(tmp_path / "target"),
        restore_mount_point=str(tmp_path / "source"),
        efi_mount_point=str(tmp_path / "efi"),
        restore_root=str(tmp_path / "restore-root"),
        min_free_bytes=1,
        verify_prefix_bytes=4096,
        poll_interval_seconds=0.05,
        network_flush_wait_seconds=0,
        credentials_path=str(tmp_path / "credentials"),
        runtime_dir=str(tmp_path / "run"),
    )


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        passphrase="correct horse battery",
        remote_host="192.168.1.100",
        remote_share="backups",
        remote_path="proxmox",
        remote_user="backup",
        remote_secret="nas-secret",
    )


@pytest.fixture
def session(settings, credentials) -> Session:
    return Session(settings=settings, credentials=credentials)


@pytest.fixture
def make_artifact(tmp_path) -> Callable[..., Artifact]:
    """Create an artifact file and return its Artifact."""

    def factory(kind: ArtifactKind, label: str = "20240115-0930", data: bytes = b"data", directory=None):
        directory = Path(directory or tmp_path / "artifacts")
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / artifact_name(kind, label)
        path.write_bytes(data)
        return Artifact(kind=kind, label=label, path=path, size_bytes=len(data))

    return factory


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_records() -> List[Dict]:
    """Collect every loguru record emitted during the test."""
    records: List[Dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)



# ==============================================================================
# GnuPG Fixtures
# ==============================================================================


@pytest.fixture
def gnupg_home(monkeypatch):
    # Short path: gpg-agent sockets must fit in sun_path.
    home = tempfile.mkdtemp(prefix="gpg-", dir="/tmp")
    Path(home).chmod(0o700)
    monkeypatch.setenv("GNUPGHOME", home)
    yield home
    if shutil.which("gpgconf"):
        subprocess.run(["gpgconf", "--kill", "gpg-agent"], check=False, capture_output=True)
    shutil.rmtree(home, ignore_errors=True)
