from __future__ import annotations

from pathlib import Path

import pytest

from config import JsonConfigStore


@pytest.fixture(autouse=True)
def _no_env_keys(monkeypatch) -> None:  # noqa: ANN001
    for name in ("BAIDU_API_KEY", "BAIDU_SECRET_KEY", "DASHSCOPE_API_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_config_read_write(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = JsonConfigStore(path=path)

    assert store.get_api_key() == ""
    assert store.get_auto_stop_s() == 8.0

    store.set_api_key("abc")
    store.set_secret_key("xyz")
    store.set_auto_stop_s(12.5)

    reloaded = JsonConfigStore(path=path)
    assert reloaded.get_api_key() == "abc"
    assert reloaded.get_secret_key() == "xyz"
    assert reloaded.get_auto_stop_s() == 12.5


def test_config_invalid_json_fallback(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{invalid", encoding="utf-8")

    store = JsonConfigStore(path=path)
    assert store.get_api_key() == ""
    assert store.load_settings().sample_rate == 16000


def test_non_object_json_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")

    assert JsonConfigStore(path=path).get_auto_stop_s() == 8.0


def test_environment_fills_missing_keys(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("BAIDU_API_KEY", "env-ak")
    monkeypatch.setenv("DASHSCOPE_API_KEY", "env-ds")
    store = JsonConfigStore(path=tmp_path / "config.json")

    assert store.get_api_key() == "env-ak"
    assert store.get_dashscope_api_key() == "env-ds"

    store.set_api_key("file-ak")
    assert store.get_api_key() == "file-ak"


@pytest.mark.parametrize("stored", [0, None])
def test_auto_stop_can_be_disabled(tmp_path: Path, stored) -> None:  # noqa: ANN001
    store = JsonConfigStore(path=tmp_path / "config.json")
    store.set_auto_stop_s(stored)

    assert store.get_auto_stop_s() is None


def test_load_settings_defaults_and_bad_values(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"request_timeout_s": "soon", "dev_pid": 1737}', encoding="utf-8")

    settings = JsonConfigStore(path=path).load_settings()

    assert settings.request_timeout_s == 15.0
    assert settings.dev_pid == 1737
    assert settings.token_ttl_margin_s == 300.0
    assert settings.auto_stop_s == 8.0


def test_parent_directory_is_created(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "dir" / "config.json"
    store = JsonConfigStore(path=path)
    store.set_api_key("k")

    assert path.exists()
