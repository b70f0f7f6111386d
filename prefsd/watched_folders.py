"""Watched folders: wire normalization, reconciliation and a local registry.

Clients describe the folders to monitor as a mapping of folder path to either
an integer location kind or a custom destination string. The reconciler
diffs that desired mapping against the registry, issues add/update/remove
calls one by one and collects the outcome of each. A failing folder never
stops the others.
"""

from __future__ import annotations

import enum
import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from .patch_reader import TypeMismatch

log = logging.getLogger("prefsd.watched_folders")

DEFAULT_LOCATION_LABEL = "Default folder"
WATCH_FOLDER_LABEL = "Watch folder"


class LocationKind(enum.IntEnum):
    WATCHED = 0
    DEFAULT = 1
    CUSTOM = 2


class FolderStatus(str, enum.Enum):
    OK = "ok"
    DOES_NOT_EXIST = "does_not_exist"
    CANNOT_READ = "cannot_read"
    CANNOT_WRITE = "cannot_write"
    ALREADY_IN_LIST = "already_in_list"
    NOT_IN_LIST = "not_in_list"
    ERROR = "error"


class FolderOperationFailed(Exception):
    """Raised by a registry to reject one folder with a specific status."""

    def __init__(self, path: str, status: FolderStatus, message: str | None = None) -> None:
        self.path = path
        self.status = status
        super().__init__(message or f"{path}: {status.value}")


@dataclass(frozen=True)
class FolderSpec:
    kind: LocationKind
    destination: str | None = None

    @classmethod
    def default(cls) -> "FolderSpec":
        return cls(LocationKind.DEFAULT)

    @classmethod
    def watched(cls) -> "FolderSpec":
        return cls(LocationKind.WATCHED)

    @classmethod
    def custom(cls, destination: str) -> "FolderSpec":
        return cls(LocationKind.CUSTOM, destination)

    @property
    def label(self) -> str:
        if self.kind is LocationKind.DEFAULT:
            return DEFAULT_LOCATION_LABEL
        if self.kind is LocationKind.WATCHED:
            return WATCH_FOLDER_LABEL
        return self.destination or ""

    def to_wire(self, *, native: bool = False) -> int | str:
        if self.kind is LocationKind.CUSTOM:
            destination = self.destination or ""
            return to_native_path(destination) if native else destination
        return int(self.kind)


def normalize_folder_path(path: str) -> str:
    """Canonical form used as the registry key: forward slashes, no trailing slash."""

    text = os.path.expanduser(str(path).strip()).replace("\\", "/")
    if not text:
        return text
    return posixpath.normpath(text)


def to_native_path(path: str) -> str:
    return path.replace("/", os.sep)


PathNormalizer = Callable[[str], str]


def folder_spec_from_wire(
    key: str, value: Any, normalize: PathNormalizer = normalize_folder_path
) -> FolderSpec:
    if isinstance(value, str):
        destination = normalize(value)
        if not destination:
            raise TypeMismatch(key, "a non-empty destination", value)
        return FolderSpec.custom(destination)
    if isinstance(value, bool):
        raise TypeMismatch(key, "a location kind or destination path", value)
    if isinstance(value, int) or (isinstance(value, float) and value.is_integer()):
        kind = int(value)
        if kind == LocationKind.WATCHED:
            return FolderSpec.watched()
        if kind == LocationKind.DEFAULT:
            return FolderSpec.default()
    raise TypeMismatch(key, "0 (watch folder), 1 (default folder) or a destination path", value)


def folder_set_from_wire(
    key: str, raw: Any, normalize: PathNormalizer = normalize_folder_path
) -> dict[str, FolderSpec]:
    if not isinstance(raw, Mapping):
        raise TypeMismatch(key, "an object mapping folders to locations", raw)
    desired: dict[str, FolderSpec] = {}
    for folder, value in raw.items():
        path = normalize(str(folder))
        if not path:
            raise TypeMismatch(key, "non-empty folder paths", raw, f"{key} contains an empty folder path")
        desired[path] = folder_spec_from_wire(f"{key}[{folder}]", value, normalize)
    return desired


def folder_set_to_wire(folders: Mapping[str, FolderSpec], *, native: bool = False) -> dict[str, int | str]:
    return {
        (to_native_path(path) if native else path): spec.to_wire(native=native)
        for path, spec in folders.items()
    }


@runtime_checkable
class FolderRegistry(Protocol):
    """The component that actually watches folders."""

    def list(self) -> Mapping[str, FolderSpec]:
        """Return the currently active folders."""

    def add(self, path: str, spec: FolderSpec) -> FolderStatus:
        """Start watching ``path``."""

    def update(self, path: str, spec: FolderSpec) -> FolderStatus:
        """Change where torrents found in ``path`` are saved."""

    def remove(self, path: str) -> FolderStatus:
        """Stop watching ``path``."""


@dataclass
class ReconciliationPlan:
    adds: list[tuple[str, FolderSpec]] = field(default_factory=list)
    updates: list[tuple[str, FolderSpec]] = field(default_factory=list)
    removes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FolderOperation:
    action: str
    path: str
    spec: FolderSpec | None
    status: FolderStatus
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is FolderStatus.OK


@dataclass
class ReconciliationReport:
    accepted: dict[str, FolderSpec] = field(default_factory=dict)
    operations: list[FolderOperation] = field(default_factory=list)

    @property
    def rejected(self) -> dict[str, FolderStatus]:
        return {op.path: op.status for op in self.operations if not op.ok}

    @property
    def removed(self) -> list[str]:
        return [op.path for op in self.operations if op.action == "remove" and op.ok]

    @property
    def failed_removals(self) -> list[str]:
        return [op.path for op in self.operations if op.action == "remove" and not op.ok]

    def to_payload(self) -> dict[str, Any]:
        return {
            "accepted": folder_set_to_wire(self.accepted, native=True),
            "rejected": {
                to_native_path(op.path): {"action": op.action, "status": op.status.value}
                for op in self.operations
                if not op.ok
            },
            "removed": [to_native_path(path) for path in self.removed],
        }


def plan_reconciliation(
    current: Mapping[str, FolderSpec],
    desired: Mapping[str, FolderSpec],
    normalize: PathNormalizer = normalize_folder_path,
) -> ReconciliationPlan:
    plan = ReconciliationPlan()
    wanted: set[str] = set()
    for raw_path, spec in desired.items():
        path = normalize(raw_path)
        wanted.add(path)
        if path in current:
            # Always issued; the registry decides whether anything changed.
            plan.updates.append((path, spec))
        else:
            plan.adds.append((path, spec))
    plan.removes = [path for path in current if path not in wanted]
    return plan


def _run_operation(
    action: str, path: str, spec: FolderSpec | None, call: Callable[[], FolderStatus]
) -> FolderOperation:
    try:
        status = call()
    except FolderOperationFailed as exc:
        return FolderOperation(action, path, spec, exc.status, str(exc))
    except Exception as exc:
        log.warning("Watched folder %s %s raised: %s", action, path, exc, exc_info=True)
        return FolderOperation(action, path, spec, FolderStatus.ERROR, str(exc))
    if not isinstance(status, FolderStatus):
        status = FolderStatus.OK if status in (None, True) else FolderStatus.ERROR
    return FolderOperation(action, path, spec, status)


def reconcile(
    registry: FolderRegistry,
    desired: Mapping[str, FolderSpec],
    normalize: PathNormalizer = normalize_folder_path,
) -> ReconciliationReport:
    current = dict(registry.list())
    plan = plan_reconciliation(current, desired, normalize)
    report = ReconciliationReport()

    for action, entries in (("add", plan.adds), ("update", plan.updates)):
        call_for = registry.add if action == "add" else registry.update
        for path, spec in entries:
            op = _run_operation(action, path, spec, lambda: call_for(path, spec))
            report.operations.append(op)
            if op.ok:
                report.accepted[path] = spec
                log.debug("New watched folder: %s to %s", path, spec.label)
            else:
                log.debug("Watched folder %s failed with error %s", path, op.status.value)

    # Existing paths whose update failed are dropped along with the unwanted ones.
    removes = [path for path in current if path not in report.accepted]
    for path in removes:
        op = _run_operation("remove", path, current.get(path), lambda: registry.remove(path))
        report.operations.append(op)
        if op.ok:
            log.debug("Removed watched folder %s", path)
        else:
            log.warning("Unable to remove watched folder %s: %s", path, op.status.value)

    return report


class LocalFolderRegistry:
    """In-process registry that checks folders on the local filesystem."""

    def __init__(self, initial: Mapping[str, FolderSpec] | None = None) -> None:
        self._folders: dict[str, FolderSpec] = dict(initial or {})

    def list(self) -> dict[str, FolderSpec]:
        return dict(self._folders)

    def _check_destination(self, spec: FolderSpec) -> FolderStatus:
        if spec.kind is not LocationKind.CUSTOM or not spec.destination:
            return FolderStatus.OK
        destination = spec.destination
        if os.path.isdir(destination) and not os.access(destination, os.W_OK):
            return FolderStatus.CANNOT_WRITE
        return FolderStatus.OK

    def add(self, path: str, spec: FolderSpec) -> FolderStatus:
        if path in self._folders:
            return FolderStatus.ALREADY_IN_LIST
        if not os.path.isdir(path):
            return FolderStatus.DOES_NOT_EXIST
        if not os.access(path, os.R_OK):
            return FolderStatus.CANNOT_READ
        status = self._check_destination(spec)
        if status is FolderStatus.OK:
            self._folders[path] = spec
        return status

    def update(self, path: str, spec: FolderSpec) -> FolderStatus:
        if path not in self._folders:
            return FolderStatus.NOT_IN_LIST
        status = self._check_destination(spec)
        if status is FolderStatus.OK:
            self._folders[path] = spec
        return status

    def remove(self, path: str) -> FolderStatus:
        if self._folders.pop(path, None) is None:
            return FolderStatus.NOT_IN_LIST
        return FolderStatus.OK
