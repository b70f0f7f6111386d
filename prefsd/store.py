"""Preference storage: the protocol the pipeline writes to and a YAML-backed store."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, Mapping, Protocol, runtime_checkable

from .config import PREFERENCE_DEFAULTS, ConfigPersistenceError, get_cfg, update_preferences_settings
from .translations import DEFAULT_LOCALE

log = logging.getLogger("prefsd.store")


@runtime_checkable
class PreferenceStore(Protocol):
    def get(self, name: str) -> Any:
        """Return the stored value for ``name``."""

    def set(self, name: str, value: Any) -> None:
        """Stage a new value for ``name``."""

    def commit(self) -> None:
        """Persist staged values."""


class YamlPreferenceStore:
    """Keeps the ``preferences`` config section in memory and writes it back on commit."""

    def __init__(
        self,
        *,
        load: Callable[[], Dict[str, Any]] = get_cfg,
        persist: Callable[[Dict[str, Any]], Dict[str, Any]] = update_preferences_settings,
        fallbacks: Mapping[str, Any] | None = None,
    ) -> None:
        self._persist = persist
        section = load().get("preferences")
        values = copy.deepcopy(PREFERENCE_DEFAULTS)
        # Site-level fallbacks sit between built-in defaults and the stored section.
        values.update(copy.deepcopy(dict(fallbacks if fallbacks is not None else {"locale": DEFAULT_LOCALE})))
        if isinstance(section, dict):
            values.update(copy.deepcopy(section))
        self._values: Dict[str, Any] = values
        self._committed: Dict[str, Any] = copy.deepcopy(values)
        self._dirty = False

    def get(self, name: str) -> Any:
        if name in self._values:
            return copy.deepcopy(self._values[name])
        if name in PREFERENCE_DEFAULTS:
            return copy.deepcopy(PREFERENCE_DEFAULTS[name])
        raise KeyError(name)

    def set(self, name: str, value: Any) -> None:
        if self._values.get(name) == value:
            return
        self._values[name] = copy.deepcopy(value)
        self._dirty = True

    def commit(self) -> None:
        if not self._dirty:
            log.debug("No preference changes to persist")
            return
        try:
            persisted = self._persist(copy.deepcopy(self._values))
        except ConfigPersistenceError:
            # Staged values never reached disk; reads go back to the last commit.
            self._values = copy.deepcopy(self._committed)
            self._dirty = False
            raise
        if isinstance(persisted, dict):
            self._values.update(copy.deepcopy(persisted))
        self._committed = copy.deepcopy(self._values)
        self._dirty = False
        log.info("Persisted preferences")
