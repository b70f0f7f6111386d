"""Translation catalogs and the process-wide active locale."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

import yaml

log = logging.getLogger("prefsd.translations")

DEFAULT_LOCALE = "en"
CATALOG_PREFIX = "prefsd_"


class ResourceLoadFailed(Exception):
    """Raised when no translation catalog can be loaded for a locale."""


@dataclass(frozen=True)
class Translation:
    locale_id: str | None = None
    messages: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def identity(cls) -> "Translation":
        return cls(None, {})

    @property
    def is_identity(self) -> bool:
        return not self.messages

    def gettext(self, message: str) -> str:
        return self.messages.get(message, message)


@runtime_checkable
class TranslationLoader(Protocol):
    def load(self, locale_id: str) -> Translation:
        """Return the catalog for ``locale_id`` or raise ResourceLoadFailed."""


class DirectoryTranslationLoader:
    """Loads ``prefsd_<locale>.yaml`` catalogs from a directory."""

    def __init__(self, root: str | Path, *, prefix: str = CATALOG_PREFIX) -> None:
        self.root = Path(root)
        self.prefix = prefix

    def catalog_path(self, locale_id: str) -> Path:
        return self.root / f"{self.prefix}{locale_id}.yaml"

    def load(self, locale_id: str) -> Translation:
        token = locale_id.strip()
        if not token or "/" in token or "\\" in token or token.startswith("."):
            raise ResourceLoadFailed(f"invalid locale identifier {locale_id!r}")
        path = self.catalog_path(token)
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ResourceLoadFailed(f"no catalog for {token} at {path}") from exc
        except (OSError, yaml.YAMLError) as exc:
            raise ResourceLoadFailed(f"unable to read {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ResourceLoadFailed(f"{path} must contain a mapping")
        messages = {str(key): str(value) for key, value in data.items() if value is not None}
        return Translation(token, messages)


@dataclass(frozen=True)
class ActiveLocale:
    locale_id: str
    translation: Translation


class LocaleState:
    """Owner of the active locale; replaced wholesale, never mutated in place."""

    def __init__(self, initial: ActiveLocale | None = None) -> None:
        self._lock = threading.Lock()
        self._active = initial or ActiveLocale(DEFAULT_LOCALE, Translation.identity())

    @property
    def active(self) -> ActiveLocale:
        with self._lock:
            return self._active

    def install(self, active: ActiveLocale) -> None:
        with self._lock:
            self._active = active

    def gettext(self, message: str) -> str:
        return self.active.translation.gettext(message)


@dataclass(frozen=True)
class LocaleSwitchOutcome:
    locale_id: str
    changed: bool
    recognized: bool

    def to_payload(self) -> dict[str, object]:
        return {"locale": self.locale_id, "changed": self.changed, "recognized": self.recognized}


class LocaleSwitcher:
    def __init__(self, state: LocaleState, loader: TranslationLoader) -> None:
        self.state = state
        self.loader = loader

    def switch_to(self, locale_id: str) -> LocaleSwitchOutcome:
        current = self.state.active
        if current.locale_id == locale_id:
            recognized = locale_id == DEFAULT_LOCALE or not current.translation.is_identity
            return LocaleSwitchOutcome(locale_id, False, recognized)

        try:
            translation = self.loader.load(locale_id)
        except ResourceLoadFailed as exc:
            log.debug("%s locale unrecognized, using default (%s): %s", locale_id, DEFAULT_LOCALE, exc)
            self.state.install(ActiveLocale(locale_id, Translation.identity()))
            return LocaleSwitchOutcome(locale_id, True, False)

        log.debug("%s locale recognized, using translation.", locale_id)
        self.state.install(ActiveLocale(locale_id, translation))
        return LocaleSwitchOutcome(locale_id, True, True)
