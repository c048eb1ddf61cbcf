from __future__ import annotations

from pathlib import Path

import pytest

from dishlog.config import DEFAULT_EXTRACTION_TIMEOUT, load_db_path, load_extraction_settings

KEYS = (
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "DISHLOG_MODEL",
    "DISHLOG_EXTRACTION_TIMEOUT",
    "DISHLOG_DB_PATH",
    "DISHLOG_OPENAI_LOG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in KEYS:
        monkeypatch.delenv(key, raising=False)


def test_settings_read_from_dotenv_in_parent_dir(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "OPENAI_API_KEY=sk-from-file\nDISHLOG_MODEL=gpt-4o\nDISHLOG_EXTRACTION_TIMEOUT=12.5\nDISHLOG_OPENAI_LOG=debug\n",
        encoding="utf-8",
    )
    nested = tmp_path / "src" / "deeper"
    nested.mkdir(parents=True)

    settings = load_extraction_settings(str(nested))

    assert settings.api_key == "sk-from-file"
    assert settings.model == "gpt-4o"
    assert settings.timeout == 12.5
    assert settings.base_url is None
    assert settings.http_debug is True


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-from-file\n", encoding="utf-8")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:11434/v1")
    settings = load_extraction_settings(str(tmp_path))
    assert settings.api_key == "sk-from-env"
    assert settings.base_url == "http://localhost:11434/v1"


def test_defaults_and_bad_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("DISHLOG_EXTRACTION_TIMEOUT=soon\n", encoding="utf-8")
    settings = load_extraction_settings(str(tmp_path))
    assert settings.model == "gpt-4o-mini"
    assert settings.timeout == DEFAULT_EXTRACTION_TIMEOUT
    assert settings.http_debug is False

    monkeypatch.setenv("DISHLOG_EXTRACTION_TIMEOUT", "-3")
    assert load_extraction_settings(str(tmp_path)).timeout == DEFAULT_EXTRACTION_TIMEOUT


def test_db_path_lookup(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("DISHLOG_DB_PATH=/data/dishes.sqlite3\n", encoding="utf-8")
    assert load_db_path(str(tmp_path)) == "/data/dishes.sqlite3"
