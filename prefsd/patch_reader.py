"""Read-only view over a sparse preferences patch.

A key that is absent means "leave it alone". A key that is present, even with
``false``, ``0`` or ``""``, is a request to change the field.
"""

from __future__ import annotations

import enum
import json
import math
import re
from typing import Any, Collection, Iterable, Iterator, Mapping

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}
_LIST_DELIMITERS = re.compile(r"[\n,]")


class FieldKind(str, enum.Enum):
    BOOL = "bool"
    INT = "int"
    REAL = "real"
    STRING = "string"
    STRING_LIST = "string-list"
    ENUM = "enum"


class PatchError(Exception):
    """Base class for errors that reject a whole patch request."""


class MalformedPatch(PatchError):
    """Raised when the request body is not a JSON object."""


class TypeMismatch(PatchError):
    """Raised when a present key cannot be coerced to its declared type."""

    def __init__(self, key: str, expected: str, value: Any, detail: str | None = None) -> None:
        self.key = key
        self.expected = expected
        self.value = value
        message = detail or f"{key} must be {expected}"
        super().__init__(message)


def parse_patch(raw: str | bytes | Mapping[str, Any]) -> "PatchReader":
    if isinstance(raw, Mapping):
        return PatchReader(raw)
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPatch(f"Patch is not valid UTF-8: {exc}") from exc
    if not isinstance(raw, str):
        raise MalformedPatch("Patch must be a JSON object")
    try:
        document = json.loads(raw)
    except ValueError as exc:
        raise MalformedPatch(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedPatch("Patch must be a JSON object")
    return PatchReader(document)


def coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise TypeMismatch(key, "a boolean", value)


def coerce_int(
    key: str,
    value: Any,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    choices: Collection[int] | None = None,
) -> int:
    if isinstance(value, bool):
        raise TypeMismatch(key, "an integer", value)
    candidate: int
    if isinstance(value, int):
        candidate = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise TypeMismatch(key, "an integer", value)
        candidate = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            candidate = int(text, 10)
        except ValueError:
            raise TypeMismatch(key, "an integer", value) from None
    else:
        raise TypeMismatch(key, "an integer", value)

    if choices is not None and candidate not in choices:
        allowed = ", ".join(str(item) for item in sorted(choices))
        raise TypeMismatch(key, f"one of: {allowed}", value)
    if minimum is not None and candidate < minimum:
        raise TypeMismatch(key, f"at least {minimum}", value)
    if maximum is not None and candidate > maximum:
        raise TypeMismatch(key, f"at most {maximum}", value)
    return candidate


def coerce_real(
    key: str,
    value: Any,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    if isinstance(value, bool):
        raise TypeMismatch(key, "a number", value)
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        try:
            candidate = float(value.strip())
        except ValueError:
            raise TypeMismatch(key, "a number", value) from None
    else:
        raise TypeMismatch(key, "a number", value)

    if not math.isfinite(candidate):
        raise TypeMismatch(key, "a finite number", value)
    if minimum is not None and candidate < minimum:
        raise TypeMismatch(key, f"at least {minimum}", value)
    if maximum is not None and candidate > maximum:
        raise TypeMismatch(key, f"at most {maximum}", value)
    return candidate


def coerce_string(key: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        raise TypeMismatch(key, "a string", value)
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeMismatch(key, "a string", value)


def coerce_string_list(key: str, value: Any, *, delimiters: re.Pattern[str] = _LIST_DELIMITERS) -> list[str]:
    if isinstance(value, str):
        tokens: Iterable[str] = delimiters.split(value)
    elif isinstance(value, (list, tuple)):
        for entry in value:
            if not isinstance(entry, str):
                raise TypeMismatch(key, "a list of strings", value, f"{key} entries must be strings")
        tokens = value
    else:
        raise TypeMismatch(key, "a list of strings or delimited text", value)
    return [token.strip() for token in tokens if token.strip()]


class PatchReader:
    """Presence test and typed access over one patch document."""

    def __init__(self, document: Mapping[str, Any]) -> None:
        if not isinstance(document, Mapping):
            raise MalformedPatch("Patch must be a JSON object")
        self._document = dict(document)

    def __contains__(self, key: object) -> bool:
        return key in self._document

    def __iter__(self) -> Iterator[str]:
        return iter(self._document)

    def __len__(self) -> int:
        return len(self._document)

    def has(self, key: str) -> bool:
        return key in self._document

    def raw(self, key: str) -> Any:
        return self._document[key]

    def keys(self) -> list[str]:
        return list(self._document)

    def unknown_keys(self, known: Collection[str]) -> list[str]:
        return [key for key in self._document if key not in known]

    def get(
        self,
        key: str,
        kind: FieldKind,
        *,
        choices: Collection[int] | None = None,
        minimum: float | None = None,
        maximum: float | None = None,
    ) -> Any:
        if key not in self._document:
            raise KeyError(key)
        value = self._document[key]
        if kind is FieldKind.BOOL:
            return coerce_bool(key, value)
        if kind is FieldKind.INT:
            return coerce_int(
                key,
                value,
                minimum=None if minimum is None else int(minimum),
                maximum=None if maximum is None else int(maximum),
            )
        if kind is FieldKind.ENUM:
            return coerce_int(key, value, choices=choices)
        if kind is FieldKind.REAL:
            return coerce_real(key, value, minimum=minimum, maximum=maximum)
        if kind is FieldKind.STRING:
            return coerce_string(key, value)
        if kind is FieldKind.STRING_LIST:
            return coerce_string_list(key, value)
        raise ValueError(f"unsupported field kind {kind!r}")
