import pytest

from prefsd.patch_reader import (
    FieldKind,
    MalformedPatch,
    TypeMismatch,
    coerce_bool,
    coerce_int,
    coerce_string_list,
    parse_patch,
)


def test_parse_patch_rejects_invalid_json():
    with pytest.raises(MalformedPatch):
        parse_patch("{not json")


def test_parse_patch_rejects_non_object_documents():
    for raw in ("[]", "42", '"text"', b"null"):
        with pytest.raises(MalformedPatch):
            parse_patch(raw)


def test_presence_is_independent_of_value():
    reader = parse_patch('{"dht": false, "save_path": "", "listen_port": 0}')
    assert reader.has("dht")
    assert reader.has("save_path")
    assert reader.has("listen_port")
    assert not reader.has("pex")
    assert reader.get("dht", FieldKind.BOOL) is False
    assert reader.get("save_path", FieldKind.STRING) == ""


def test_get_absent_key_raises_key_error():
    reader = parse_patch({})
    with pytest.raises(KeyError):
        reader.get("dht", FieldKind.BOOL)


def test_bool_coercion_accepts_common_forms():
    assert coerce_bool("k", True) is True
    assert coerce_bool("k", 0) is False
    assert coerce_bool("k", "yes") is True
    assert coerce_bool("k", "Off") is False
    with pytest.raises(TypeMismatch):
        coerce_bool("k", "maybe")
    with pytest.raises(TypeMismatch):
        coerce_bool("k", 2)


def test_int_coercion_rejects_booleans_and_fractions():
    assert coerce_int("k", "42") == 42
    assert coerce_int("k", 7.0) == 7
    with pytest.raises(TypeMismatch):
        coerce_int("k", True)
    with pytest.raises(TypeMismatch):
        coerce_int("k", 1.5)
    with pytest.raises(TypeMismatch):
        coerce_int("k", "ten")


def test_enum_values_outside_range_are_type_mismatches():
    reader = parse_patch({"encryption": 3})
    with pytest.raises(TypeMismatch) as excinfo:
        reader.get("encryption", FieldKind.ENUM, choices={0, 1, 2})
    assert excinfo.value.key == "encryption"


def test_real_requires_finite_numbers():
    reader = parse_patch({"max_ratio": "1.25", "bad": "nan"})
    assert reader.get("max_ratio", FieldKind.REAL) == 1.25
    with pytest.raises(TypeMismatch):
        reader.get("bad", FieldKind.REAL)


def test_string_list_drops_empty_tokens():
    assert coerce_string_list("k", "a\n\n b ,,c") == ["a", "b", "c"]
    assert coerce_string_list("k", ["x", " ", "y"]) == ["x", "y"]
    with pytest.raises(TypeMismatch):
        coerce_string_list("k", [1, 2])


def test_unknown_keys_preserve_document_order():
    reader = parse_patch({"zzz": 1, "dht": True, "aaa": 2})
    assert reader.unknown_keys({"dht"}) == ["zzz", "aaa"]
