#!/usr/bin/env python3
"""
Unified configuration loader for prefsd.

Load order (first found wins):
  1) PREFSD_CONFIG (env, absolute or relative to CWD)
  2) /etc/prefsd/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present. The ``preferences``
section holds the application preferences served over the web API; it is
rewritten in place (comments preserved) whenever a patch is committed.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping, Sequence

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

ETC_CONFIG_PATH = Path("/etc/prefsd/config.yaml")

PREFERENCE_DEFAULTS: Dict[str, Any] = {
    # Downloads
    "create_subfolder_enabled": True,
    "start_paused_enabled": False,
    "auto_delete_mode": 0,
    "preallocate_all": False,
    "incomplete_files_ext": False,
    "auto_tmm_disabled_by_default": True,
    "disable_auto_tmm_on_category_change": False,
    "disable_auto_tmm_on_default_save_path_change": True,
    "disable_auto_tmm_on_category_save_path_change": True,
    "save_path": "/downloads",
    "temp_path_enabled": False,
    "temp_path": "/downloads/temp",
    "export_dir": "",
    "export_dir_fin": "",
    "scan_dirs": {},
    "mail_notification_enabled": False,
    "mail_notification_sender": "prefsd_notification@localhost",
    "mail_notification_email": "",
    "mail_notification_smtp": "smtp.changeme.com",
    "mail_notification_ssl_enabled": False,
    "mail_notification_auth_enabled": False,
    "mail_notification_username": "",
    "mail_notification_password": "",
    "autorun_enabled": False,
    "autorun_program": "",
    # Connection
    "listen_port": 8999,
    "upnp": True,
    "random_port": False,
    "max_connec": 500,
    "max_connec_per_torrent": 100,
    "max_uploads": 20,
    "max_uploads_per_torrent": 4,
    "proxy": {
        "type": 0,
        "ip": "0.0.0.0",
        "port": 8080,
        "username": "",
        "password": "",
    },
    "proxy_peer_connections": False,
    "force_proxy": True,
    "proxy_torrents_only": False,
    "ip_filter_enabled": False,
    "ip_filter_path": "",
    "ip_filter_trackers": False,
    "banned_ips": [],
    # Speed
    "dl_limit": 0,
    "up_limit": 0,
    "alt_dl_limit": 10240,
    "alt_up_limit": 10240,
    "bittorrent_protocol": 0,
    "limit_utp_rate": True,
    "limit_tcp_overhead": False,
    "ignore_limits_on_lan": True,
    "scheduler_enabled": False,
    "scheduler_start_time": {"hour": 8, "minute": 0},
    "scheduler_end_time": {"hour": 20, "minute": 0},
    "scheduler_days": 0,
    # BitTorrent
    "dht": True,
    "pex": True,
    "lsd": True,
    "encryption": 0,
    "anonymous_mode": False,
    "queueing_enabled": True,
    "max_active_downloads": 3,
    "max_active_torrents": 5,
    "max_active_uploads": 3,
    "dont_count_slow_torrents": False,
    "slow_torrent_dl_rate_threshold": 2,
    "slow_torrent_ul_rate_threshold": 2,
    "slow_torrent_inactive_timer": 60,
    "global_max_ratio": -1,
    "global_max_seeding_minutes": -1,
    "max_ratio_act": 0,
    "add_trackers_enabled": False,
    "add_trackers": "",
    # Web UI
    "web_ui_domain_list": "*",
    "web_ui_address": "*",
    "web_ui_port": 8080,
    "web_ui_upnp": False,
    "use_https": False,
    "web_ui_https_cert_path": "",
    "web_ui_https_key_path": "",
    "web_ui_username": "admin",
    "web_ui_password_pbkdf2": "",
    "web_ui_local_auth_enabled": True,
    "bypass_auth_subnet_whitelist_enabled": False,
    "web_ui_auth_subnet_whitelist": [],
    "alternative_webui_enabled": False,
    "alternative_webui_path": "",
    "web_ui_clickjacking_protection_enabled": True,
    "web_ui_csrf_protection_enabled": True,
    "web_ui_host_header_validation_enabled": True,
    "dyndns_enabled": False,
    "dyndns_service": 0,
    "dyndns_username": "",
    "dyndns_password": "",
    "dyndns_domain": "changeme.dyndns.org",
    # RSS
    "rss_refresh_interval": 30,
    "rss_max_articles_per_feed": 50,
    "rss_processing_enabled": False,
    "rss_auto_downloading_enabled": False,
}

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
    "i18n": {
        "lang_dir": "",
        "default_locale": "en",
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
    "preferences": PREFERENCE_DEFAULTS,
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except Exception as exc:
        # Ignore parse errors and continue with other locations/defaults
        print(f"[config] WARNING: unable to parse {path}: {exc}", flush=True)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("PREFSD_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except Exception:
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            ETC_CONFIG_PATH,
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except Exception:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _resolve_primary_path(search: list[Path], active: Path | None) -> Path:
    env_cfg = os.getenv("PREFSD_CONFIG")
    if env_cfg:
        try:
            return Path(env_cfg).expanduser().resolve()
        except Exception:
            return Path(env_cfg).expanduser()

    if active is not None:
        return active

    for candidate in search:
        if str(candidate).startswith("/etc/"):
            continue
        return candidate
    return Path.cwd() / "config.yaml"


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "PREFSD_HOST": ("server", "listen_host", str),
        "PREFSD_PORT": ("server", "listen_port", int),
        "PREFSD_LANG_DIR": ("i18n", "lang_dir", str),
        "PREFSD_DEFAULT_LOCALE": ("i18n", "default_locale", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            print(f"[config] WARNING: ignoring invalid {env_key}={raw!r}", flush=True)


def _project_dirs() -> tuple[Path, Path]:
    try:
        project_root = Path(__file__).resolve().parent.parent  # <root>/prefsd -> <root>
    except Exception:
        project_root = Path.cwd()
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except Exception:
        script_dir = Path.cwd()
    return project_root, script_dir


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    project_root, script_dir = _project_dirs()
    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _primary_config_path = _resolve_primary_path(search, active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    global _primary_config_path
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, (CommentedMap, CommentedSeq)):
        return value
    if isinstance(value, Mapping) and not isinstance(value, (str, bytes)):
        converted = CommentedMap()
        for key, sub_value in value.items():
            converted[key] = _convert_to_round_trip(sub_value)
        return converted
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        converted_seq = CommentedSeq()
        for item in value:
            converted_seq.append(_convert_to_round_trip(item))
        return converted_seq
    return copy.deepcopy(value)


def _ensure_mapping(container: MutableMapping[str, Any], key: str) -> MutableMapping[str, Any]:
    existing = container.get(key)
    if isinstance(existing, MutableMapping):
        return existing
    new_map = _convert_to_round_trip(dict(existing) if isinstance(existing, Mapping) else {})
    container[key] = new_map
    return new_map


def _replace_mapping(
    target: MutableMapping[str, Any],
    updates: Mapping[str, Any],
    *,
    prune: bool,
) -> None:
    if prune:
        for existing_key in list(target.keys()):
            if existing_key not in updates:
                del target[existing_key]
    for key, value in updates.items():
        if isinstance(value, Mapping) and not isinstance(value, (str, bytes)):
            existing = target.get(key)
            if isinstance(existing, MutableMapping):
                _replace_mapping(existing, value, prune=prune)
            else:
                target[key] = _convert_to_round_trip(value)
        elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            target[key] = _convert_to_round_trip(value)
        else:
            target[key] = copy.deepcopy(value)


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = _ROUND_TRIP_YAML.load(handle)
        except Exception as exc:
            raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
        if isinstance(data, MutableMapping):
            return data
    return CommentedMap()


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    try:
        with path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
    except Exception as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


_ConfigMigration = Callable[[MutableMapping[str, Any]], bool]


def _migration_info(logger: logging.Logger | None, message: str) -> None:
    if logger is not None:
        logger.info(message)
    else:
        print(f"[config] {message}", flush=True)


def _migration_warning(logger: logging.Logger | None, message: str) -> None:
    if logger is not None:
        logger.warning(message)
    else:
        print(f"[config] WARNING: {message}", flush=True)


def _migrate_subnet_whitelist_text(cfg: MutableMapping[str, Any]) -> bool:
    prefs = cfg.get("preferences")
    if not isinstance(prefs, MutableMapping):
        return False
    value = prefs.get("web_ui_auth_subnet_whitelist")
    if not isinstance(value, str):
        return False
    tokens = [token.strip() for token in value.replace(",", "\n").splitlines()]
    prefs["web_ui_auth_subnet_whitelist"] = _convert_to_round_trip([t for t in tokens if t])
    return True


def _migrate_flat_scheduler_times(cfg: MutableMapping[str, Any]) -> bool:
    prefs = cfg.get("preferences")
    if not isinstance(prefs, MutableMapping):
        return False
    changed = False
    for prefix, target in (("schedule_from", "scheduler_start_time"), ("schedule_to", "scheduler_end_time")):
        hour_key = f"{prefix}_hour"
        minute_key = f"{prefix}_min"
        if hour_key not in prefs and minute_key not in prefs:
            continue
        hour = prefs.pop(hour_key, None)
        minute = prefs.pop(minute_key, None)
        changed = True
        if isinstance(hour, int) and isinstance(minute, int):
            prefs[target] = _convert_to_round_trip({"hour": hour, "minute": minute})
    return changed


_CONFIG_MIGRATIONS: tuple[tuple[str, _ConfigMigration], ...] = (
    ("20250301_subnet_whitelist_as_list", _migrate_subnet_whitelist_text),
    ("20250301_nest_scheduler_times", _migrate_flat_scheduler_times),
)


def apply_config_migrations(*, logger: logging.Logger | None = None) -> bool:
    project_root, script_dir = _project_dirs()
    search = _candidate_search_paths(project_root, script_dir)
    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    primary = _resolve_primary_path(search, active)
    if not primary.exists():
        return False

    try:
        document = _load_yaml_for_update(primary)
    except ConfigPersistenceError as exc:
        _migration_warning(logger, f"Unable to read configuration for migrations: {exc}")
        return False

    if not document:
        # Empty configuration means nothing to migrate; avoid creating files with defaults.
        return False

    changed = False
    for name, migration in _CONFIG_MIGRATIONS:
        try:
            if migration(document):
                changed = True
                _migration_info(logger, f"Applied config migration {name}")
        except Exception as exc:  # pragma: no cover - defensive logging
            _migration_warning(logger, f"Migration {name} failed: {exc}")

    if not changed:
        return False

    try:
        _dump_yaml(primary, document)
    except ConfigPersistenceError as exc:
        _migration_warning(logger, f"Unable to persist configuration after migrations: {exc}")
        return False

    reload_cfg()
    return True


def _persist_settings_section(
    section: str, settings: Dict[str, Any], *, merge: bool = True
) -> Dict[str, Any]:
    if not isinstance(settings, dict):
        raise ConfigPersistenceError(f"{section} settings payload must be a mapping")

    primary_path = primary_config_path()
    updated = _load_yaml_for_update(primary_path)

    target = _ensure_mapping(updated, section)
    _replace_mapping(target, settings, prune=not merge)

    _dump_yaml(primary_path, updated)
    return reload_cfg().get(section, {})


def update_preferences_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _persist_settings_section("preferences", settings, merge=False)
