"""Partial-update pipeline for the application preferences.

A patch is applied in two passes. The validation pass coerces every present
key and resolves the dependency groups without touching any state, so a type
error rejects the request as a whole. The application pass then runs the
pending writes, the watched-folder reconciliation and the locale switch
inside one exclusive section and finishes with a single ``commit()``.

Watched-folder and locale failures are not fatal: they are logged and
surfaced in the returned ``PatchReport``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from .config import get_cfg
from .credentials import CredentialHasher, Pbkdf2Hasher
from .fields import DEFAULT_CATALOG, CatalogEntry, FieldContext, Resolution, catalog_keys
from .patch_reader import PatchReader, TypeMismatch, parse_patch
from .store import PreferenceStore, YamlPreferenceStore
from .translations import (
    DEFAULT_LOCALE,
    DirectoryTranslationLoader,
    LocaleState,
    LocaleSwitcher,
    LocaleSwitchOutcome,
    TranslationLoader,
)
from .watched_folders import (
    FolderRegistry,
    FolderSpec,
    LocalFolderRegistry,
    PathNormalizer,
    ReconciliationReport,
    folder_set_from_wire,
    normalize_folder_path,
    to_native_path,
)

log = logging.getLogger("prefsd.preferences")

DEFAULT_LANG_DIR = Path(__file__).resolve().parent.parent / "lang"


@dataclass
class PatchReport:
    applied: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)
    outcomes: Dict[str, Any] = field(default_factory=dict)

    @property
    def folders(self) -> ReconciliationReport | None:
        return self.outcomes.get("scan_dirs")

    @property
    def locale(self) -> LocaleSwitchOutcome | None:
        return self.outcomes.get("locale")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "applied": list(self.applied),
            "ignored": list(self.ignored),
            "unknown": list(self.unknown),
            "rejected_folders": {},
        }
        if self.folders is not None:
            folders = self.folders.to_payload()
            payload["scan_dirs"] = folders
            payload["rejected_folders"] = folders["rejected"]
        if self.locale is not None:
            payload["locale"] = self.locale.to_payload()
        return payload


class PreferencePatchApplicator:
    def __init__(
        self,
        ctx: FieldContext,
        *,
        catalog: Iterable[CatalogEntry] = DEFAULT_CATALOG,
        lock: threading.Lock | None = None,
    ) -> None:
        self.ctx = ctx
        self.catalog = tuple(catalog)
        self.known_keys = catalog_keys(self.catalog)
        self._lock = lock if lock is not None else threading.Lock()

    def _resolve(self, reader: PatchReader) -> list[Resolution]:
        resolutions: list[Resolution] = []
        for entry in self.catalog:
            resolution = entry.resolve(reader, self.ctx)
            if resolution is not None:
                resolutions.append(resolution)
        return resolutions

    def apply(self, patch: PatchReader | Mapping[str, Any] | str | bytes) -> PatchReport:
        reader = patch if isinstance(patch, PatchReader) else parse_patch(patch)
        with self._lock:
            # Resolution reads current values; both passes run under the lock.
            resolutions = self._resolve(reader)
            report = PatchReport(unknown=reader.unknown_keys(self.known_keys))
            for resolution in resolutions:
                report.applied.extend(resolution.applied)
                report.ignored.extend(resolution.ignored)
                if resolution.apply is None:
                    continue
                outcome = resolution.apply(self.ctx)
                if resolution.report_key is not None:
                    report.outcomes[resolution.report_key] = outcome
            self.ctx.store.commit()

        if report.ignored:
            log.debug("Ignored preference keys without their companions: %s", ", ".join(report.ignored))
        if report.unknown:
            log.info("Ignored unknown preference keys: %s", ", ".join(report.unknown))
        return report


def build_snapshot(ctx: FieldContext, catalog: Iterable[CatalogEntry] = DEFAULT_CATALOG) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for entry in catalog:
        snapshot.update(entry.snapshot(ctx))
    return snapshot


def _initial_folders(store: PreferenceStore, normalize: PathNormalizer) -> dict[str, FolderSpec]:
    stored = store.get("scan_dirs") or {}
    try:
        return folder_set_from_wire("scan_dirs", stored, normalize)
    except TypeMismatch as exc:
        log.warning("Ignoring unreadable persisted watched folders: %s", exc)
        return {}


class PreferenceService:
    """Store, registry, locale and hasher wired together behind one lock."""

    def __init__(
        self,
        store: PreferenceStore,
        *,
        registry: FolderRegistry | None = None,
        locale_state: LocaleState | None = None,
        loader: TranslationLoader | None = None,
        hasher: CredentialHasher | None = None,
        catalog: Iterable[CatalogEntry] = DEFAULT_CATALOG,
        normalize: PathNormalizer = normalize_folder_path,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else LocalFolderRegistry(_initial_folders(store, normalize))
        self.locale_state = locale_state if locale_state is not None else LocaleState()
        self.switcher = LocaleSwitcher(
            self.locale_state, loader if loader is not None else DirectoryTranslationLoader(DEFAULT_LANG_DIR)
        )
        self.ctx = FieldContext(
            store=store,
            registry=self.registry,
            switcher=self.switcher,
            hasher=hasher if hasher is not None else Pbkdf2Hasher(),
            normalize=normalize,
        )
        self.catalog = tuple(catalog)
        self._lock = threading.Lock()
        self.applicator = PreferencePatchApplicator(self.ctx, catalog=self.catalog, lock=self._lock)

        stored_locale = store.get("locale") or DEFAULT_LOCALE
        outcome = self.switcher.switch_to(stored_locale)
        if not outcome.recognized:
            log.warning("Stored locale %s has no catalog; messages stay untranslated", stored_locale)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None = None) -> "PreferenceService":
        cfg = cfg if cfg is not None else get_cfg()
        i18n = cfg.get("i18n", {}) if isinstance(cfg.get("i18n"), dict) else {}
        lang_dir = str(i18n.get("lang_dir") or "").strip()
        loader = DirectoryTranslationLoader(Path(lang_dir) if lang_dir else DEFAULT_LANG_DIR)

        default_locale = str(i18n.get("default_locale") or "").strip() or DEFAULT_LOCALE
        store = YamlPreferenceStore(load=lambda: cfg, fallbacks={"locale": default_locale})
        return cls(store, loader=loader)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return build_snapshot(self.ctx, self.catalog)

    def apply_patch(self, raw: PatchReader | Mapping[str, Any] | str | bytes) -> PatchReport:
        return self.applicator.apply(raw)

    def default_save_path(self) -> str:
        with self._lock:
            return to_native_path(self.store.get("save_path") or "")
