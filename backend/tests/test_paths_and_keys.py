import pytest

from bridge.errors import UnresolvedPathError
from bridge.keys import MapKeyCodec, sanitize_label, short_id
from bridge.paths import (
    FieldSegment,
    IndexSegment,
    KeySegment,
    child_path,
    is_same_or_descendant,
    normalize_path,
    parent_path,
    split_path,
)
from bridge.schema import ArrayField, FieldRegistry, MapField, ObjectField, PrimitiveField


def _registry() -> FieldRegistry:
    return FieldRegistry(
        [
            ArrayField(
                id="students",
                items=ObjectField(
                    id="student",
                    properties=(PrimitiveField("name"), ArrayField("goals", PrimitiveField("g"))),
                ),
            ),
            MapField(id="contacts", values=ObjectField(id="contact", additional_properties=True)),
        ]
    )


def test_goal_key_uses_id_prefix_and_truncated_label() -> None:
    codec = MapKeyCodec(label_field="goalStatement", label_max_length=27)
    key = codec.derive(
        {
            "id": "AB12CD34-9f1e-4c1a-8c55-0d2f6a7b8c9d",
            "goalStatement": "Student will use 2-3 word phrases",
        }
    )
    assert key == "ab12cd34_student_will_use_23_word_ph"
    assert MapKeyCodec.id_prefix(key) == "ab12cd34"


def test_key_codec_fallbacks() -> None:
    codec = MapKeyCodec(label_field="name")
    assert codec.derive({"id": "", "name": ""}) == "unknown_unnamed"
    assert sanitize_label("  ---  ") == "unnamed"
    assert sanitize_label("Ms. O'Neil   (SLP)") == "ms_oneil_slp"
    assert short_id("ABCDEF0123456", 8) == "abcdef01"


def test_key_codec_rejects_short_prefixes() -> None:
    with pytest.raises(ValueError):
        MapKeyCodec(label_field="name", prefix_length=4)


def test_label_truncation_drops_trailing_underscore() -> None:
    assert sanitize_label("Speech therapist", max_length=7) == "speech"


def test_normalize_and_split_paths() -> None:
    assert normalize_path(None) == "/"
    assert normalize_path("  students//0/ ") == "/students/0"
    assert normalize_path("contacts") == "/contacts"

    escaped = child_path("/contacts", "a/b~c")
    assert escaped == "/contacts/a~1b~0c"
    assert split_path(escaped) == ["contacts", "a/b~c"]
    assert parent_path(escaped) == "/contacts"
    assert child_path("/", "students") == "/students"


def test_descendant_check_respects_token_boundaries() -> None:
    assert is_same_or_descendant("/students/1/goals", "/students/1")
    assert is_same_or_descendant("/students", "/")
    assert not is_same_or_descendant("/students/10", "/students/1")


def test_registry_binds_typed_segments() -> None:
    bound = _registry().bind("/students/3/goals")

    assert [b.segment for b in bound] == [
        FieldSegment("students"),
        IndexSegment(3),
        FieldSegment("goals"),
    ]
    assert [b.path for b in bound] == ["/students", "/students/3", "/students/3/goals"]

    keyed = _registry().bind("/contacts/mom/nickname")
    assert keyed[1].segment == KeySegment("mom")
    assert keyed[2].unbound is True


def test_registry_rejects_unknown_fields_and_bad_indexes() -> None:
    registry = _registry()
    with pytest.raises(UnresolvedPathError):
        registry.bind("/teachers")
    with pytest.raises(UnresolvedPathError):
        registry.bind("/students/first")
    with pytest.raises(UnresolvedPathError):
        registry.bind("/students/0/name/extra")


def test_registry_rejects_duplicate_root_fields() -> None:
    with pytest.raises(ValueError):
        FieldRegistry([PrimitiveField("a"), PrimitiveField("a")])


def test_registry_describe_includes_hints() -> None:
    registry = FieldRegistry(
        [PrimitiveField("status", enum=("draft", "active"), format="enum", required=True)]
    )
    assert registry.describe() == [
        {
            "id": "status",
            "kind": "primitive",
            "required": True,
            "type": "string",
            "enum": ["draft", "active"],
            "format": "enum",
        }
    ]
