import pytest

from prefsd.patch_reader import TypeMismatch
from prefsd.watched_folders import (
    FolderOperationFailed,
    FolderSpec,
    FolderStatus,
    LocalFolderRegistry,
    folder_set_from_wire,
    plan_reconciliation,
    reconcile,
)


class FakeRegistry:
    def __init__(self, initial, *, fail_add=(), fail_update=(), fail_remove=(), explode_on=()):
        self.folders = dict(initial)
        self.fail_add = set(fail_add)
        self.fail_update = set(fail_update)
        self.fail_remove = set(fail_remove)
        self.explode_on = set(explode_on)
        self.calls = []

    def list(self):
        return dict(self.folders)

    def add(self, path, spec):
        self.calls.append(("add", path))
        if path in self.explode_on:
            raise RuntimeError("watcher crashed")
        if path in self.fail_add:
            return FolderStatus.DOES_NOT_EXIST
        self.folders[path] = spec
        return FolderStatus.OK

    def update(self, path, spec):
        self.calls.append(("update", path))
        if path in self.fail_update:
            return FolderStatus.CANNOT_WRITE
        self.folders[path] = spec
        return FolderStatus.OK

    def remove(self, path):
        self.calls.append(("remove", path))
        if path in self.fail_remove:
            raise FolderOperationFailed(path, FolderStatus.CANNOT_READ)
        self.folders.pop(path)
        return FolderStatus.OK


def test_wire_values_map_to_folder_kinds():
    desired = folder_set_from_wire("scan_dirs", {"/a/": 0, "/b": 1, "/c": "/dest//x/"})
    assert desired == {
        "/a": FolderSpec.watched(),
        "/b": FolderSpec.default(),
        "/c": FolderSpec.custom("/dest/x"),
    }
    assert FolderSpec.default().label == "Default folder"
    assert FolderSpec.watched().label == "Watch folder"


def test_wire_rejects_unknown_location_kinds():
    with pytest.raises(TypeMismatch):
        folder_set_from_wire("scan_dirs", {"/a": 5})
    with pytest.raises(TypeMismatch):
        folder_set_from_wire("scan_dirs", ["/a"])


def test_plan_always_updates_existing_paths():
    current = {"/a": FolderSpec.default(), "/b": FolderSpec.watched()}
    plan = plan_reconciliation(current, {"/a": FolderSpec.default(), "/c": FolderSpec.watched()})
    assert plan.updates == [("/a", FolderSpec.default())]
    assert plan.adds == [("/c", FolderSpec.watched())]
    assert plan.removes == ["/b"]


def test_failed_remove_is_reported_and_not_accepted():
    registry = FakeRegistry(
        {"/a": FolderSpec.default(), "/b": FolderSpec.custom("/x")},
        fail_remove={"/b"},
    )
    report = reconcile(registry, {"/a": FolderSpec.default(), "/c": FolderSpec.watched()})

    assert report.accepted == {"/a": FolderSpec.default(), "/c": FolderSpec.watched()}
    assert report.rejected == {"/b": FolderStatus.CANNOT_READ}
    assert report.failed_removals == ["/b"]
    assert report.removed == []
    assert ("remove", "/b") in registry.calls


def test_failed_add_is_excluded_and_others_continue():
    registry = FakeRegistry({}, fail_add={"/missing"}, explode_on={"/boom"})
    report = reconcile(
        registry,
        {"/missing": FolderSpec.watched(), "/boom": FolderSpec.watched(), "/ok": FolderSpec.default()},
    )
    assert report.accepted == {"/ok": FolderSpec.default()}
    assert report.rejected == {"/missing": FolderStatus.DOES_NOT_EXIST, "/boom": FolderStatus.ERROR}
    payload = report.to_payload()
    assert payload["rejected"]["/missing"] == {"action": "add", "status": "does_not_exist"}


def test_failed_update_drops_the_existing_folder():
    registry = FakeRegistry({"/a": FolderSpec.default(), "/b": FolderSpec.watched()}, fail_update={"/a"})

    report = reconcile(registry, {"/a": FolderSpec.custom("/ro"), "/b": FolderSpec.watched()})

    assert report.accepted == {"/b": FolderSpec.watched()}
    assert registry.calls == [("update", "/a"), ("update", "/b"), ("remove", "/a")]
    assert registry.folders == {"/b": FolderSpec.watched()}
    assert report.removed == ["/a"]
    assert report.to_payload()["rejected"] == {"/a": {"action": "update", "status": "cannot_write"}}


def test_local_registry_checks_the_filesystem(tmp_path):
    watched = tmp_path / "incoming"
    watched.mkdir()
    registry = LocalFolderRegistry()

    assert registry.add(str(tmp_path / "nope"), FolderSpec.watched()) is FolderStatus.DOES_NOT_EXIST
    assert registry.add(str(watched), FolderSpec.watched()) is FolderStatus.OK
    assert registry.add(str(watched), FolderSpec.default()) is FolderStatus.ALREADY_IN_LIST
    assert registry.update(str(watched), FolderSpec.default()) is FolderStatus.OK
    assert registry.list() == {str(watched): FolderSpec.default()}
    assert registry.remove(str(watched)) is FolderStatus.OK
    assert registry.remove(str(watched)) is FolderStatus.NOT_IN_LIST
