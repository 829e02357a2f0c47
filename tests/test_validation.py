"""Tests for precondition checks."""

from collections import namedtuple
from unittest.mock import patch

import pytest

from zfs_bmr.storage.exceptions import (
    ConnectivityFailedError,
    InsufficientSpaceError,
    InvalidDevicePathError,
    NotRootError,
    PoolNotFoundError,
    ToolMissingError,
)
from zfs_bmr.storage.validation import (
    BACKUP_TOOLS,
    RESTORE_TOOLS,
    check_network_reachable,
    detect_live_environment,
    missing_tools,
    require_free_space,
    require_network,
    require_pool,
    require_root,
    require_tools,
    validate_device_path,
    warn_if_not_root,
)

DiskUsage = namedtuple("DiskUsage", "total used free")
GIB = 1024**3


class TestValidateDevicePath:
    @pytest.mark.parametrize("path", ["/dev/sda", "/dev/nvme0n1", "/dev/disk/by-id/ata-X"])
    def test_accepts_device_nodes(self, path):
        assert validate_device_path(path) == path

    @pytest.mark.parametrize(
        "path", ["sda", "/tmp/sda", "/dev/sda; rm -rf /", "/dev/sda$(x)", "/dev/sd a", None]
    )
    def test_rejects_everything_else(self, path):
        with pytest.raises(InvalidDevicePathError):
            validate_device_path(path)


class TestTools:
    def test_restore_tools_extend_backup_tools(self):
        assert set(BACKUP_TOOLS) < set(RESTORE_TOOLS)
        assert "sgdisk" in RESTORE_TOOLS

    def test_missing_tools_lists_all_absent(self):
        present = {"zfs", "zpool", "tar"}
        assert missing_tools(BACKUP_TOOLS, find=lambda name: name if name in present else None) == [
            "gpg",
            "lz4",
            "gzip",
        ]

    def test_require_tools_raises_with_names(self):
        with pytest.raises(ToolMissingError) as excinfo:
            require_tools(["lz4", "gpg"], find=lambda name: None)
        assert excinfo.value.tools == ["lz4", "gpg"]

    def test_require_tools_passes(self):
        require_tools(["lz4"], find=lambda name: f"/usr/bin/{name}")


class TestRequirePool:
    def test_pool_found(self, runner):
        runner.on("zpool", "list", stdout="tank\n")
        require_pool("tank", runner)
        assert runner.calls == [["zpool", "list", "-H", "-o", "name", "tank"]]

    def test_pool_missing(self, runner):
        runner.on("zpool", "list", returncode=1, stderr="no such pool")
        with pytest.raises(PoolNotFoundError, match="tank"):
            require_pool("tank", runner)


class TestRequireFreeSpace:
    @patch("zfs_bmr.storage.validation.shutil.disk_usage")
    def test_five_of_ten_gigabytes_fails(self, mock_usage, tmp_path):
        mock_usage.return_value = DiskUsage(100 * GIB, 95 * GIB, 5 * GIB)

        with pytest.raises(InsufficientSpaceError) as excinfo:
            require_free_space(tmp_path, 10 * GIB)

        assert excinfo.value.available_bytes == 5 * GIB
        assert excinfo.value.required_bytes == 10 * GIB

    @patch("zfs_bmr.storage.validation.shutil.disk_usage")
    def test_enough_space(self, mock_usage, tmp_path):
        mock_usage.return_value = DiskUsage(100 * GIB, 50 * GIB, 50 * GIB)
        assert require_free_space(tmp_path, 10 * GIB) == 50 * GIB


class TestRoot:
    @patch("zfs_bmr.storage.validation.os.geteuid", return_value=1000)
    def test_require_root_fails_for_user(self, _mock):
        with pytest.raises(NotRootError, match="Restore must run as root"):
            require_root("Restore")

    @patch("zfs_bmr.storage.validation.os.geteuid", return_value=0)
    def test_require_root_passes(self, _mock):
        require_root("Restore")

    @patch("zfs_bmr.storage.validation.os.geteuid", return_value=1000)
    def test_warn_only(self, _mock, log_records):
        assert warn_if_not_root("Backup") is False
        assert any("not running as root" in record["message"] for record in log_records)


class TestNetwork:
    def test_ping_command(self, runner):
        assert check_network_reachable("192.168.1.100", runner) is True
        assert runner.calls == [["ping", "-c", "1", "-W", "2", "192.168.1.100"]]

    def test_unreachable(self, runner):
        runner.on("ping", returncode=1)
        with pytest.raises(ConnectivityFailedError, match="192.168.1.100"):
            require_network("192.168.1.100", runner)


class TestDetectLiveEnvironment:
    def _root(self, tmp_path, cmdline="BOOT_IMAGE=/vmlinuz root=ZFS=rpool/ROOT/pve-1"):
        (tmp_path / "proc").mkdir()
        (tmp_path / "proc" / "cmdline").write_text(cmdline)
        (tmp_path / "etc").mkdir()
        return tmp_path

    def test_installed_system(self, tmp_path):
        assert detect_live_environment(self._root(tmp_path)) is None

    def test_proxmox_rescue(self, tmp_path):
        root = self._root(tmp_path, "BOOT_IMAGE=/boot/linux26 rescue")
        (root / "etc" / "proxmox-release").write_text("8.1")
        assert detect_live_environment(root) == "rescue"

    def test_live_system(self, tmp_path):
        root = self._root(tmp_path, "boot=live components")
        assert detect_live_environment(root) == "live"

    def test_missing_proc(self, tmp_path):
        assert detect_live_environment(tmp_path) is None
