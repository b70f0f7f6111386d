import pytest

from prefsd.translations import (
    ActiveLocale,
    DirectoryTranslationLoader,
    LocaleState,
    LocaleSwitcher,
    ResourceLoadFailed,
    Translation,
)


def _write_catalog(root, locale_id, body):
    path = root / f"prefsd_{locale_id}.yaml"
    path.write_text(body, encoding="utf-8")
    return path


def test_directory_loader_reads_yaml_catalogs(tmp_path):
    _write_catalog(tmp_path, "fr", "Watch folder: Dossier surveillé\n")
    translation = DirectoryTranslationLoader(tmp_path).load("fr")
    assert translation.gettext("Watch folder") == "Dossier surveillé"
    assert translation.gettext("Untranslated") == "Untranslated"


def test_directory_loader_rejects_missing_and_path_like_ids(tmp_path):
    loader = DirectoryTranslationLoader(tmp_path)
    with pytest.raises(ResourceLoadFailed):
        loader.load("xx")
    with pytest.raises(ResourceLoadFailed):
        loader.load("../etc/passwd")


def test_switch_installs_loaded_translation(tmp_path):
    _write_catalog(tmp_path, "de", "Default folder: Standardordner\n")
    state = LocaleState()
    outcome = LocaleSwitcher(state, DirectoryTranslationLoader(tmp_path)).switch_to("de")

    assert outcome.changed is True
    assert outcome.recognized is True
    assert state.active.locale_id == "de"
    assert state.gettext("Default folder") == "Standardordner"


def test_unrecognized_locale_is_still_installed(tmp_path):
    state = LocaleState()
    outcome = LocaleSwitcher(state, DirectoryTranslationLoader(tmp_path)).switch_to("xx")

    assert outcome.recognized is False
    assert outcome.changed is True
    assert state.active.locale_id == "xx"
    assert state.active.translation.is_identity


def test_switch_to_active_locale_is_a_no_op():
    class ExplodingLoader:
        def load(self, locale_id):
            raise AssertionError("loader must not be consulted")

    state = LocaleState(ActiveLocale("fr", Translation("fr", {"a": "b"})))
    outcome = LocaleSwitcher(state, ExplodingLoader()).switch_to("fr")
    assert outcome.changed is False
    assert outcome.recognized is True
