"""Tests for data and log path resolution."""

from pathlib import Path

from src.utils.paths import ensure_dirs_exist, get_data_dir, get_default_db_path, get_log_dir


def test_get_data_dir_uses_platformdirs(monkeypatch):
    monkeypatch.delenv("CLAWPANEL_DATA_DIR", raising=False)
    result = get_data_dir()
    assert isinstance(result, Path)
    assert "clawpanel" in str(result).lower()


def test_data_dir_override(monkeypatch, tmp_path):
    monkeypatch.setenv("CLAWPANEL_DATA_DIR", str(tmp_path))
    assert get_data_dir() == tmp_path


def test_blank_override_is_ignored(monkeypatch):
    monkeypatch.setenv("CLAWPANEL_DATA_DIR", "   ")
    assert "clawpanel" in str(get_data_dir()).lower()


def test_get_default_db_path(monkeypatch, tmp_path):
    monkeypatch.setenv("CLAWPANEL_DATA_DIR", str(tmp_path))
    assert get_default_db_path() == tmp_path / "clawpanel.db"


def test_get_log_dir():
    assert isinstance(get_log_dir(), Path)


def test_ensure_dirs_exist(monkeypatch, tmp_path):
    monkeypatch.setenv("CLAWPANEL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr("src.utils.paths.get_log_dir", lambda: tmp_path / "logs")

    ensure_dirs_exist()

    assert (tmp_path / "data").is_dir()
    assert (tmp_path / "logs").is_dir()
