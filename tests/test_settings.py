"""Tests for settings loading."""

import json

import pytest

from zfs_bmr.config import settings as settings_module
from zfs_bmr.config.settings import DEFAULT_SETTINGS, Settings, load_settings


@pytest.fixture(autouse=True)
def clear_pool_env(monkeypatch):
    monkeypatch.delenv("ZFS_POOL", raising=False)


class TestLoadSettings:
    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json")

        assert settings.pool == "rpool"
        assert settings.pool_compression == "lz4"
        assert settings.boot_compression == "gzip"
        assert settings.min_free_bytes == 10 * 1024**3
        assert settings.bootloader_tools == ("proxmox-boot-tool", "grub-install")

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"pool": "tank", "verify_prefix_bytes": 4096}))

        settings = load_settings(path)

        assert settings.pool == "tank"
        assert settings.verify_prefix_bytes == 4096
        assert settings.cipher_algo == DEFAULT_SETTINGS["cipher_algo"]

    def test_env_pool_wins(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"pool": "tank"}))
        monkeypatch.setenv("ZFS_POOL", "backup-pool")

        assert load_settings(path).pool == "backup-pool"

    def test_invalid_json_falls_back(self, tmp_path, log_records):
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        settings = load_settings(path)

        assert settings.pool == "rpool"
        assert any("Could not read settings" in record["message"] for record in log_records)

    def test_non_object_json_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps(["tank"]))

        assert load_settings(path).pool == "rpool"

    def test_default_path_from_module(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"cipher_algo": "AES128"}))
        monkeypatch.setattr(settings_module, "SETTINGS_PATH", path)

        assert load_settings().cipher_algo == "AES128"


class TestSettingsFromMapping:
    def test_unknown_keys_warned_and_dropped(self, log_records):
        settings = Settings.from_mapping({"pool": "tank", "colour": "blue"})

        assert settings.pool == "tank"
        assert not hasattr(settings, "colour")
        assert any("colour" in record["message"] for record in log_records)

    def test_bootloader_list_becomes_tuple(self):
        settings = Settings.from_mapping({"bootloader_tools": ["grub-install"]})
        assert settings.bootloader_tools == ("grub-install",)

    def test_frozen(self):
        settings = Settings()
        with pytest.raises(AttributeError):
            settings.pool = "other"
