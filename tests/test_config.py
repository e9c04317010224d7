"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from medi.config import DEFAULT_BULK_DELTA_THRESHOLD, MediConfig, _USER_ENV


class TestEnvironment:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in ("MEDI_BULK_DELTA_THRESHOLD", "MEDI_LOG_LEVEL", "MEDI_EXPORT_DIR"):
            monkeypatch.delenv(name, raising=False)
        cfg = MediConfig()
        assert cfg.bulk_delta_threshold == DEFAULT_BULK_DELTA_THRESHOLD
        assert cfg.log_level == "WARNING"
        assert cfg.export_dir is None

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEDI_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("MEDI_DB_PATH", "data/store.sqlite")
        monkeypatch.setenv("MEDI_BULK_DELTA_THRESHOLD", "7")
        monkeypatch.setenv("MEDI_BUSY_TIMEOUT", "2.5")
        monkeypatch.setenv("MEDI_LOG_LEVEL", "debug")

        cfg = MediConfig()
        assert cfg.base_dir == tmp_path
        assert cfg.bulk_delta_threshold == 7
        assert cfg.busy_timeout == 2.5
        assert cfg.log_level == "DEBUG"
        assert cfg.get_store_path() == tmp_path / "data" / "store.sqlite"
        assert (tmp_path / "data").is_dir()

    def test_user_env_path(self):
        assert _USER_ENV == Path.home() / ".medi" / ".env"

    def test_user_env_file_picked_up(self, monkeypatch, tmp_path):
        """Values from a dotenv file reach a freshly built config."""
        from dotenv import load_dotenv

        env_file = tmp_path / ".env"
        env_file.write_text("MEDI_BULK_DELTA_THRESHOLD=3\n")
        # Record the variable so monkeypatch restores it after load_dotenv
        monkeypatch.setenv("MEDI_BULK_DELTA_THRESHOLD", "0")
        monkeypatch.delenv("MEDI_BULK_DELTA_THRESHOLD")
        load_dotenv(env_file)

        assert MediConfig().bulk_delta_threshold == 3


class TestValidation:
    """Tests for rejected settings."""

    def test_negative_threshold(self):
        with pytest.raises(ValidationError):
            MediConfig(bulk_delta_threshold=-1)

    def test_zero_threshold_allowed(self):
        assert MediConfig(bulk_delta_threshold=0).bulk_delta_threshold == 0

    def test_bad_busy_timeout(self):
        with pytest.raises(ValidationError):
            MediConfig(busy_timeout=0)

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            MediConfig(log_level="LOUD")

    def test_assignment_is_validated(self):
        cfg = MediConfig()
        with pytest.raises(ValidationError):
            cfg.bulk_delta_threshold = -5


class TestPaths:
    """Tests for path resolution."""

    def test_relative_path_uses_base_dir(self, tmp_path):
        cfg = MediConfig(base_dir=tmp_path)
        assert cfg.get_absolute_path(Path("x.db")) == tmp_path / "x.db"

    def test_absolute_path_unchanged(self, tmp_path):
        cfg = MediConfig(base_dir=tmp_path / "base")
        assert cfg.get_absolute_path(tmp_path / "elsewhere.db") == tmp_path / "elsewhere.db"

    def test_urls(self, tmp_path):
        cfg = MediConfig(base_dir=tmp_path, database_path=Path("s.db"), index_path=Path("i.db"))
        assert cfg.get_store_url() == f"sqlite:///{tmp_path / 's.db'}"
        assert cfg.get_index_url() == f"sqlite:///{tmp_path / 'i.db'}"
