import pytest
import yaml

from prefsd import config as config_module
from prefsd.store import YamlPreferenceStore


def _reset_config_state(monkeypatch):
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)


def test_apply_config_migrations_upgrades_legacy_layout(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
preferences:
  web_ui_auth_subnet_whitelist: "10.0.0.0/8\\n192.168.0.0/16, 172.16.0.0/12"
  schedule_from_hour: 7
  schedule_from_min: 45
  schedule_to_hour: 22
  schedule_to_min: 0
""".strip()
    )

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    changed = config_module.apply_config_migrations()
    assert changed is True

    data = yaml.safe_load(config_path.read_text())
    prefs = data["preferences"]
    assert prefs["web_ui_auth_subnet_whitelist"] == ["10.0.0.0/8", "192.168.0.0/16", "172.16.0.0/12"]
    assert prefs["scheduler_start_time"] == {"hour": 7, "minute": 45}
    assert prefs["scheduler_end_time"] == {"hour": 22, "minute": 0}
    assert "schedule_from_hour" not in prefs

    cfg = config_module.get_cfg()
    assert cfg["preferences"]["scheduler_start_time"] == {"hour": 7, "minute": 45}


def test_apply_config_migrations_is_idempotent(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
preferences:
  web_ui_auth_subnet_whitelist:
    - 10.0.0.0/8
  scheduler_start_time:
    hour: 8
    minute: 0
""".strip()
    )

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    assert config_module.apply_config_migrations() is False


def test_missing_config_is_not_created_by_migrations(monkeypatch, tmp_path):
    config_path = tmp_path / "absent.yaml"
    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    assert config_module.apply_config_migrations() is False
    assert not config_path.exists()


def test_update_preferences_settings_preserves_comments(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
# prefsd configuration
server:
  listen_port: 8080  # web API port
preferences:
  scan_dirs:
    /old: 1
""".lstrip()
    )

    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    section = config_module.update_preferences_settings({"scan_dirs": {"/new": 0}, "dht": False})

    text = config_path.read_text()
    assert "# prefsd configuration" in text
    assert "# web API port" in text
    data = yaml.safe_load(text)
    assert data["preferences"] == {"scan_dirs": {"/new": 0}, "dht": False}
    assert section["scan_dirs"] == {"/new": 0}


def test_update_preferences_settings_rejects_non_mapping(monkeypatch, tmp_path):
    monkeypatch.setenv("PREFSD_CONFIG", str(tmp_path / "config.yaml"))
    _reset_config_state(monkeypatch)

    with pytest.raises(config_module.ConfigPersistenceError):
        config_module.update_preferences_settings(["not", "a", "mapping"])


def test_yaml_store_only_writes_when_dirty(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("preferences:\n  dht: true\n")
    monkeypatch.setenv("PREFSD_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)

    store = YamlPreferenceStore()
    store.set("dht", True)
    store.commit()
    assert config_path.read_text() == "preferences:\n  dht: true\n"

    store.set("dht", False)
    store.commit()
    assert yaml.safe_load(config_path.read_text())["preferences"]["dht"] is False
    assert store.get("dht") is False


def test_yaml_store_rolls_back_when_persisting_fails():
    def _refuse(values):
        raise config_module.ConfigPersistenceError("disk full")

    store = YamlPreferenceStore(load=lambda: {"preferences": {"dht": True}}, persist=_refuse)
    store.set("dht", False)
    store.set("listen_port", 51413)

    with pytest.raises(config_module.ConfigPersistenceError):
        store.commit()

    assert store.get("dht") is True
    assert store.get("listen_port") == config_module.PREFERENCE_DEFAULTS["listen_port"]
