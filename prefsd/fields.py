"""Declared preference fields and the groups of keys that only make sense together.

Every entry knows which wire keys it owns, how to render them for the full
snapshot and how to turn the keys present in a patch into one pending write.
Resolving never touches the store's state; the returned ``apply`` callable
does.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Collection, Iterable, Protocol

from .credentials import CredentialHasher
from .net_utils import join_lines, parse_subnet_whitelist
from .patch_reader import FieldKind, PatchReader, TypeMismatch, coerce_int, coerce_string
from .sentinel import decode, encode, wire_threshold
from .store import PreferenceStore
from .translations import LocaleSwitcher
from .watched_folders import (
    FolderRegistry,
    PathNormalizer,
    folder_set_from_wire,
    folder_set_to_wire,
    normalize_folder_path,
    reconcile,
    to_native_path,
)

AUTO_DELETE_MODES = frozenset({0, 1, 2})
BITTORRENT_PROTOCOLS = frozenset({0, 1, 2})
ENCRYPTION_MODES = frozenset({0, 1, 2})
MAX_RATIO_ACTIONS = frozenset({0, 1})
SCHEDULER_DAYS = frozenset(range(10))
DYNDNS_SERVICES = frozenset({0, 1})

PROXY_NONE = 0
PROXY_HTTP = 1
PROXY_SOCKS5 = 2
PROXY_HTTP_PW = 3
PROXY_SOCKS5_PW = 4
PROXY_SOCKS4 = 5
PROXY_TYPES = frozenset(range(6))
PROXY_AUTH_TYPES = frozenset({PROXY_HTTP_PW, PROXY_SOCKS5_PW})


@dataclass
class FieldContext:
    store: PreferenceStore
    registry: FolderRegistry | None = None
    switcher: LocaleSwitcher | None = None
    hasher: CredentialHasher | None = None
    normalize: PathNormalizer = normalize_folder_path


@dataclass
class Resolution:
    applied: tuple[str, ...] = ()
    ignored: tuple[str, ...] = ()
    apply: Callable[[FieldContext], Any] | None = None
    report_key: str | None = None


class CatalogEntry(Protocol):
    keys: tuple[str, ...]

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        ...

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        ...


@dataclass(frozen=True)
class ConfigurationField:
    key: str
    kind: FieldKind
    getter: Callable[[PreferenceStore], Any]
    setter: Callable[[PreferenceStore, Any], None] | None = None
    choices: frozenset[int] | None = None
    minimum: float | None = None
    maximum: float | None = None

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.key,)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        return {self.key: self.getter(ctx.store)}

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        if not reader.has(self.key):
            return None
        if self.setter is None:
            return Resolution(ignored=(self.key,))
        value = reader.get(
            self.key,
            self.kind,
            choices=self.choices,
            minimum=self.minimum,
            maximum=self.maximum,
        )
        setter = self.setter
        return Resolution(applied=(self.key,), apply=lambda c: setter(c.store, value))


def _stored(
    key: str,
    kind: FieldKind,
    name: str | None = None,
    *,
    invert: bool = False,
    choices: Collection[int] | None = None,
    minimum: float | None = None,
    maximum: float | None = None,
) -> ConfigurationField:
    target = name or key
    if invert:
        getter = lambda store: not store.get(target)
        setter = lambda store, value: store.set(target, not value)
    else:
        getter = lambda store: store.get(target)
        setter = lambda store, value: store.set(target, value)
    return ConfigurationField(
        key,
        kind,
        getter,
        setter,
        choices=frozenset(choices) if choices is not None else None,
        minimum=minimum,
        maximum=maximum,
    )


def _path(key: str, name: str | None = None) -> ConfigurationField:
    target = name or key
    return ConfigurationField(
        key,
        FieldKind.STRING,
        lambda store: to_native_path(store.get(target) or ""),
        lambda store, value: store.set(target, normalize_folder_path(value) if value.strip() else ""),
    )


def _line_list(key: str, name: str) -> ConfigurationField:
    return ConfigurationField(
        key,
        FieldKind.STRING_LIST,
        lambda store: join_lines(store.get(name) or []),
        lambda store, value: store.set(name, list(value)),
    )


def _subnet_list(key: str, name: str) -> ConfigurationField:
    return ConfigurationField(
        key,
        FieldKind.STRING_LIST,
        lambda store: join_lines(store.get(name) or []),
        lambda store, value: store.set(name, parse_subnet_whitelist(value)),
    )


@dataclass(frozen=True)
class ScheduleBound:
    """Hour and minute of one scheduler bound; a lone half is ignored."""

    hour_key: str
    minute_key: str
    name: str

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.hour_key, self.minute_key)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        bound = ctx.store.get(self.name) or {}
        return {self.hour_key: bound.get("hour", 0), self.minute_key: bound.get("minute", 0)}

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        present = tuple(key for key in self.keys if reader.has(key))
        if not present:
            return None
        if len(present) < 2:
            return Resolution(ignored=present)
        hour = coerce_int(self.hour_key, reader.raw(self.hour_key), minimum=0, maximum=23)
        minute = coerce_int(self.minute_key, reader.raw(self.minute_key), minimum=0, maximum=59)
        name = self.name
        return Resolution(
            applied=self.keys,
            apply=lambda c: c.store.set(name, {"hour": hour, "minute": minute}),
        )


@dataclass(frozen=True)
class SentinelLimit:
    """``<x>_enabled`` + ``<x>`` stored as one signed number."""

    enabled_key: str
    value_key: str
    name: str
    kind: FieldKind
    fallback: float | int

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.enabled_key, self.value_key)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        pair = decode(ctx.store.get(self.name))
        return {self.enabled_key: pair.enabled, self.value_key: wire_threshold(pair)}

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        if not reader.has(self.enabled_key):
            if reader.has(self.value_key):
                return Resolution(ignored=(self.value_key,))
            return None

        enabled = reader.get(self.enabled_key, FieldKind.BOOL)
        if not enabled:
            ignored = (self.value_key,) if reader.has(self.value_key) else ()
            stored = encode(False, None)
            applied: tuple[str, ...] = (self.enabled_key,)
        else:
            if reader.has(self.value_key):
                threshold = reader.get(self.value_key, self.kind, minimum=0)
                applied = self.keys
            else:
                current = decode(ctx.store.get(self.name))
                threshold = current.threshold if current.enabled else self.fallback
                applied = (self.enabled_key,)
            ignored = ()
            stored = encode(True, threshold)
        name = self.name
        return Resolution(applied=applied, ignored=ignored, apply=lambda c: c.store.set(name, stored))


@dataclass(frozen=True)
class ProxySettings:
    """Proxy keys overlay the current proxy configuration and are written back as one value."""

    name: str = "proxy"
    fields: tuple[tuple[str, str, FieldKind, frozenset[int] | None, int | None, int | None], ...] = (
        ("proxy_type", "type", FieldKind.ENUM, PROXY_TYPES, None, None),
        ("proxy_ip", "ip", FieldKind.STRING, None, None, None),
        ("proxy_port", "port", FieldKind.INT, None, 0, 65535),
        ("proxy_username", "username", FieldKind.STRING, None, None, None),
        ("proxy_password", "password", FieldKind.STRING, None, None, None),
    )
    auth_key: str = "proxy_auth_enabled"

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(entry[0] for entry in self.fields) + (self.auth_key,)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        conf = ctx.store.get(self.name) or {}
        payload: dict[str, Any] = {}
        for key, attr, *_ in self.fields:
            payload[key] = conf.get(attr)
        payload[self.auth_key] = conf.get("type") in PROXY_AUTH_TYPES
        return payload

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        overlay: dict[str, Any] = {}
        applied: list[str] = []
        for key, attr, kind, choices, minimum, maximum in self.fields:
            if not reader.has(key):
                continue
            overlay[attr] = reader.get(key, kind, choices=choices, minimum=minimum, maximum=maximum)
            applied.append(key)
        # Derived from proxy_type; kept in the snapshot for older clients.
        ignored = (self.auth_key,) if reader.has(self.auth_key) else ()
        if not overlay:
            return Resolution(ignored=ignored) if ignored else None
        name = self.name

        def _apply(c: FieldContext) -> None:
            conf = dict(c.store.get(name) or {})
            conf.update(overlay)
            c.store.set(name, conf)

        return Resolution(applied=tuple(applied), ignored=ignored, apply=_apply)


@dataclass(frozen=True)
class Credential:
    """Write-only secret: only its digest is stored and it never appears in snapshots."""

    key: str
    name: str

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.key,)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        return {}

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        if not reader.has(self.key):
            return None
        plaintext = reader.get(self.key, FieldKind.STRING)
        name = self.name

        def _apply(c: FieldContext) -> None:
            if c.hasher is None:
                raise RuntimeError("no credential hasher configured")
            c.store.set(name, c.hasher.hash(plaintext))

        return Resolution(applied=(self.key,), apply=_apply)


@dataclass(frozen=True)
class WatchedFolders:
    key: str = "scan_dirs"
    name: str = "scan_dirs"

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.key,)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        stored = ctx.store.get(self.name) or {}
        return {
            self.key: {
                to_native_path(str(path)): to_native_path(value) if isinstance(value, str) else value
                for path, value in stored.items()
            }
        }

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        if not reader.has(self.key):
            return None
        desired = folder_set_from_wire(self.key, reader.raw(self.key), ctx.normalize)
        name = self.name

        def _apply(c: FieldContext):
            if c.registry is None:
                raise RuntimeError("no watched-folder registry configured")
            report = reconcile(c.registry, desired, c.normalize)
            c.store.set(name, folder_set_to_wire(report.accepted))
            return report

        return Resolution(applied=(self.key,), apply=_apply, report_key=self.key)


@dataclass(frozen=True)
class Locale:
    key: str = "locale"
    name: str = "locale"

    @property
    def keys(self) -> tuple[str, ...]:
        return (self.key,)

    def snapshot(self, ctx: FieldContext) -> dict[str, Any]:
        return {self.key: ctx.store.get(self.name)}

    def resolve(self, reader: PatchReader, ctx: FieldContext) -> Resolution | None:
        if not reader.has(self.key):
            return None
        locale_id = coerce_string(self.key, reader.raw(self.key)).strip()
        if not locale_id:
            raise TypeMismatch(self.key, "a non-empty locale identifier", reader.raw(self.key))
        name = self.name

        def _apply(c: FieldContext):
            outcome = c.switcher.switch_to(locale_id) if c.switcher is not None else None
            c.store.set(name, locale_id)
            return outcome

        return Resolution(applied=(self.key,), apply=_apply, report_key=self.key)


DEFAULT_CATALOG: tuple[CatalogEntry, ...] = (
    # Downloads
    _stored("create_subfolder_enabled", FieldKind.BOOL),
    _stored("start_paused_enabled", FieldKind.BOOL),
    _stored("auto_delete_mode", FieldKind.ENUM, choices=AUTO_DELETE_MODES),
    _stored("preallocate_all", FieldKind.BOOL),
    _stored("incomplete_files_ext", FieldKind.BOOL),
    _stored("auto_tmm_enabled", FieldKind.BOOL, "auto_tmm_disabled_by_default", invert=True),
    _stored("torrent_changed_tmm_enabled", FieldKind.BOOL, "disable_auto_tmm_on_category_change", invert=True),
    _stored(
        "save_path_changed_tmm_enabled",
        FieldKind.BOOL,
        "disable_auto_tmm_on_default_save_path_change",
        invert=True,
    ),
    _stored(
        "category_changed_tmm_enabled",
        FieldKind.BOOL,
        "disable_auto_tmm_on_category_save_path_change",
        invert=True,
    ),
    _path("save_path"),
    _stored("temp_path_enabled", FieldKind.BOOL),
    _path("temp_path"),
    _path("export_dir"),
    _path("export_dir_fin"),
    WatchedFolders(),
    _stored("mail_notification_enabled", FieldKind.BOOL),
    _stored("mail_notification_sender", FieldKind.STRING),
    _stored("mail_notification_email", FieldKind.STRING),
    _stored("mail_notification_smtp", FieldKind.STRING),
    _stored("mail_notification_ssl_enabled", FieldKind.BOOL),
    _stored("mail_notification_auth_enabled", FieldKind.BOOL),
    _stored("mail_notification_username", FieldKind.STRING),
    _stored("mail_notification_password", FieldKind.STRING),
    _stored("autorun_enabled", FieldKind.BOOL),
    _path("autorun_program"),
    # Connection
    _stored("listen_port", FieldKind.INT, minimum=0, maximum=65535),
    _stored("upnp", FieldKind.BOOL),
    _stored("random_port", FieldKind.BOOL),
    _stored("max_connec", FieldKind.INT, minimum=-1),
    _stored("max_connec_per_torrent", FieldKind.INT, minimum=-1),
    _stored("max_uploads", FieldKind.INT, minimum=-1),
    _stored("max_uploads_per_torrent", FieldKind.INT, minimum=-1),
    ProxySettings(),
    _stored("proxy_peer_connections", FieldKind.BOOL),
    _stored("force_proxy", FieldKind.BOOL),
    _stored("proxy_torrents_only", FieldKind.BOOL),
    _stored("ip_filter_enabled", FieldKind.BOOL),
    _path("ip_filter_path"),
    _stored("ip_filter_trackers", FieldKind.BOOL),
    _line_list("banned_IPs", "banned_ips"),
    # Speed
    _stored("dl_limit", FieldKind.INT, minimum=0),
    _stored("up_limit", FieldKind.INT, minimum=0),
    _stored("alt_dl_limit", FieldKind.INT, minimum=0),
    _stored("alt_up_limit", FieldKind.INT, minimum=0),
    _stored("bittorrent_protocol", FieldKind.ENUM, choices=BITTORRENT_PROTOCOLS),
    _stored("limit_utp_rate", FieldKind.BOOL),
    _stored("limit_tcp_overhead", FieldKind.BOOL),
    _stored("limit_lan_peers", FieldKind.BOOL, "ignore_limits_on_lan", invert=True),
    _stored("scheduler_enabled", FieldKind.BOOL),
    ScheduleBound("schedule_from_hour", "schedule_from_min", "scheduler_start_time"),
    ScheduleBound("schedule_to_hour", "schedule_to_min", "scheduler_end_time"),
    _stored("scheduler_days", FieldKind.ENUM, choices=SCHEDULER_DAYS),
    # BitTorrent
    _stored("dht", FieldKind.BOOL),
    _stored("pex", FieldKind.BOOL),
    _stored("lsd", FieldKind.BOOL),
    _stored("encryption", FieldKind.ENUM, choices=ENCRYPTION_MODES),
    _stored("anonymous_mode", FieldKind.BOOL),
    _stored("queueing_enabled", FieldKind.BOOL),
    _stored("max_active_downloads", FieldKind.INT, minimum=-1),
    _stored("max_active_torrents", FieldKind.INT, minimum=-1),
    _stored("max_active_uploads", FieldKind.INT, minimum=-1),
    _stored("dont_count_slow_torrents", FieldKind.BOOL),
    _stored("slow_torrent_dl_rate_threshold", FieldKind.INT, minimum=0),
    _stored("slow_torrent_ul_rate_threshold", FieldKind.INT, minimum=0),
    _stored("slow_torrent_inactive_timer", FieldKind.INT, minimum=0),
    SentinelLimit("max_ratio_enabled", "max_ratio", "global_max_ratio", FieldKind.REAL, 1.0),
    SentinelLimit(
        "max_seeding_time_enabled",
        "max_seeding_time",
        "global_max_seeding_minutes",
        FieldKind.INT,
        1440,
    ),
    _stored("max_ratio_act", FieldKind.ENUM, choices=MAX_RATIO_ACTIONS),
    _stored("add_trackers_enabled", FieldKind.BOOL),
    _stored("add_trackers", FieldKind.STRING),
    # Web UI
    Locale(),
    _stored("web_ui_domain_list", FieldKind.STRING),
    _stored("web_ui_address", FieldKind.STRING),
    _stored("web_ui_port", FieldKind.INT, minimum=1, maximum=65535),
    _stored("web_ui_upnp", FieldKind.BOOL),
    _stored("use_https", FieldKind.BOOL),
    _stored("web_ui_https_cert_path", FieldKind.STRING),
    _stored("web_ui_https_key_path", FieldKind.STRING),
    _stored("web_ui_username", FieldKind.STRING),
    Credential("web_ui_password", "web_ui_password_pbkdf2"),
    _stored("bypass_local_auth", FieldKind.BOOL, "web_ui_local_auth_enabled", invert=True),
    _stored("bypass_auth_subnet_whitelist_enabled", FieldKind.BOOL),
    _subnet_list("bypass_auth_subnet_whitelist", "web_ui_auth_subnet_whitelist"),
    _stored("alternative_webui_enabled", FieldKind.BOOL),
    _stored("alternative_webui_path", FieldKind.STRING),
    _stored("web_ui_clickjacking_protection_enabled", FieldKind.BOOL),
    _stored("web_ui_csrf_protection_enabled", FieldKind.BOOL),
    _stored("web_ui_host_header_validation_enabled", FieldKind.BOOL),
    _stored("dyndns_enabled", FieldKind.BOOL),
    _stored("dyndns_service", FieldKind.ENUM, choices=DYNDNS_SERVICES),
    _stored("dyndns_username", FieldKind.STRING),
    _stored("dyndns_password", FieldKind.STRING),
    _stored("dyndns_domain", FieldKind.STRING),
    # RSS
    _stored("rss_refresh_interval", FieldKind.INT, minimum=0),
    _stored("rss_max_articles_per_feed", FieldKind.INT, minimum=0),
    _stored("rss_processing_enabled", FieldKind.BOOL),
    _stored("rss_auto_downloading_enabled", FieldKind.BOOL),
)


def catalog_keys(catalog: Iterable[CatalogEntry]) -> frozenset[str]:
    return frozenset(key for entry in catalog for key in entry.keys)
