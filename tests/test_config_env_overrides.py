"""Tests covering environment variable overrides for the daemon config."""

from __future__ import annotations

from pathlib import Path

from prefsd import config as config_module
from prefsd.preferences import PreferenceService


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)


def test_server_env_overrides(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server:\n  listen_host: 127.0.0.1\n  listen_port: 8080\n")

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    monkeypatch.setenv("PREFSD_PORT", "9443")
    monkeypatch.setenv("PREFSD_LANG_DIR", str(tmp_path / "lang"))
    monkeypatch.setenv("DEV", "1")

    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["server"]["listen_host"] == "127.0.0.1"
    assert cfg["server"]["listen_port"] == 9443
    assert cfg["i18n"]["lang_dir"] == str(tmp_path / "lang")
    assert cfg["logging"]["dev_mode"] is True


def test_invalid_port_override_is_ignored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("server:\n  listen_port: 8181\n")

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    monkeypatch.setenv("PREFSD_PORT", "not-a-port")

    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()
    assert cfg["server"]["listen_port"] == 8181


def test_preference_defaults_fill_missing_keys(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("preferences:\n  dht: false\n")

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    prefs = config_module.get_cfg()["preferences"]
    assert prefs["dht"] is False
    assert prefs["pex"] is True
    assert prefs["global_max_ratio"] == -1
    assert config_module.primary_config_path() == config_path.resolve()


def test_default_locale_override_applies_when_none_is_stored(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("preferences:\n  dht: false\n")
    lang_dir = tmp_path / "lang"
    lang_dir.mkdir()
    (lang_dir / "prefsd_fr.yaml").write_text("Watch folder: Dossier surveillé\n", encoding="utf-8")

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    monkeypatch.setenv("PREFSD_LANG_DIR", str(lang_dir))
    monkeypatch.setenv("PREFSD_DEFAULT_LOCALE", "fr")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()
    assert "locale" not in cfg["preferences"]

    service = PreferenceService.from_config(cfg)
    assert service.store.get("locale") == "fr"
    assert service.locale_state.active.locale_id == "fr"
    assert service.snapshot()["locale"] == "fr"


def test_stored_locale_wins_over_default_locale(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("preferences:\n  locale: de\n")

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    monkeypatch.setenv("PREFSD_LANG_DIR", str(tmp_path))
    monkeypatch.setenv("PREFSD_DEFAULT_LOCALE", "fr")
    _reset_config_state(monkeypatch)

    service = PreferenceService.from_config(config_module.get_cfg())
    assert service.store.get("locale") == "de"
