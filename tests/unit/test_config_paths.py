from __future__ import annotations

import os
from pathlib import Path

from doklad.utils import paths
from doklad.utils.config import deep_get, load_config
from doklad.utils.env import load_dotenv, resolve_api_key, sanitize_openai_api_key


def test_load_config_fills_missing_sections(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("llm:\n  model: gpt-4o\nmatching:\n  min_confidence: 80\n", encoding="utf-8")

    cfg = load_config(cfg_path)

    assert cfg["llm"]["model"] == "gpt-4o"
    assert cfg["llm"]["timeout_sec"] == 30
    assert cfg["matching"]["min_confidence"] == 80
    assert cfg["matching"]["tolerance"] == "0.01"
    assert cfg["service"]["port"] == 8765


def test_load_config_missing_file_gives_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "neexistuje.yaml")

    assert deep_get(cfg, ["ares", "enabled"]) is True
    assert deep_get(cfg, ["app", "data_dir"], "fallback") == "fallback"
    assert deep_get(cfg, ["nope", "x"], 5) == 5


def test_default_data_dir_macos(monkeypatch) -> None:
    monkeypatch.setattr(paths.sys, "platform", "darwin")
    assert paths.default_data_dir() == Path.home() / "Library" / "Application Support" / "Doklad"


def test_default_data_dir_env(monkeypatch) -> None:
    monkeypatch.setattr(paths.sys, "platform", "linux")
    monkeypatch.setenv("DOKLAD_DATA_DIR", "/tmp/doklad-data")
    assert paths.default_data_dir() == Path("/tmp/doklad-data") / "Doklad"


def test_resolve_app_paths_creates_directories(tmp_path: Path) -> None:
    p = paths.resolve_app_paths(str(tmp_path / "data"), None, None)

    assert p.db_path == tmp_path / "data" / "doklad.sqlite"
    assert p.log_dir.is_dir()
    assert p.maildrop_dir.is_dir()
    assert p.email_archive_dir.is_dir()


def test_sanitize_api_key() -> None:
    key = "sk-" + "a" * 30
    assert sanitize_openai_api_key(f'  "Bearer {key}"  ') == key
    assert sanitize_openai_api_key("není to klíč") == ""
    assert sanitize_openai_api_key(None) == ""


def test_dotenv_does_not_override_existing(tmp_path: Path, monkeypatch) -> None:
    key = "sk-" + "b" * 30
    monkeypatch.delenv("DOKLAD_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-" + "c" * 30)
    env_file = tmp_path / ".env"
    env_file.write_text(f"# komentář\nDOKLAD_OPENAI_API_KEY={key}\nOPENAI_API_KEY=jiny\n", encoding="utf-8")

    try:
        loaded = load_dotenv(env_file)
        assert loaded == {"DOKLAD_OPENAI_API_KEY": key}
        assert os.environ["OPENAI_API_KEY"] == "sk-" + "c" * 30
        assert resolve_api_key() == key
    finally:
        os.environ.pop("DOKLAD_OPENAI_API_KEY", None)
