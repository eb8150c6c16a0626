"""
Unit tests for write building and commit bodies.

Tests cover:
- set / merge-set / create / update / delete wire shapes
- Sentinel lifting (DELETE_FIELD, transforms)
- Preconditions
- Usage errors for malformed write data
"""

import pytest

from firestore_rest.errors import PathError, UsageError
from firestore_rest.paths import DatabaseId, FieldPath, ResourcePath
from firestore_rest.transforms import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Increment,
    Maximum,
    Minimum,
)
from firestore_rest.writes import (
    WriteKind,
    build_create,
    build_delete,
    build_set,
    build_update,
    commit_body,
)

DB = DatabaseId("demo-project")
ALICE = ResourcePath.from_relative(DB, "users/alice")
NAME = "projects/demo-project/databases/(default)/documents/users/alice"


class TestBuildSet:
    """Tests for set writes."""

    def test_plain_set_replaces_document(self):
        """A set without merge carries no mask."""
        write = build_set(ALICE, {"score": 10, "name": "Alice"})
        assert write.kind == WriteKind.SET
        assert write.to_wire() == {
            "update": {
                "name": NAME,
                "fields": {"score": {"integerValue": "10"}, "name": {"stringValue": "Alice"}},
            }
        }

    def test_merge_true_masks_leaves(self):
        """merge=True masks exactly the leaves given."""
        write = build_set(ALICE, {"address": {"city": "Oslo"}, "age": 3}, merge=True)
        wire = write.to_wire()
        assert wire["updateMask"] == {"fieldPaths": ["address.city", "age"]}

    def test_merge_list(self):
        """An explicit merge list becomes the mask."""
        write = build_set(ALICE, {"a": 1, "b": 2}, merge=["a"])
        assert write.to_wire()["updateMask"] == {"fieldPaths": ["a"]}

    def test_merge_with_delete(self):
        """DELETE_FIELD is allowed with merge and lands in the mask only."""
        write = build_set(ALICE, {"a": 1, "gone": DELETE_FIELD}, merge=True)
        wire = write.to_wire()
        assert "gone" not in wire["update"]["fields"]
        assert wire["updateMask"]["fieldPaths"] == ["a", "gone"]

    def test_delete_without_merge_rejected(self):
        with pytest.raises(UsageError):
            build_set(ALICE, {"gone": DELETE_FIELD})

    def test_transforms_lifted(self):
        """Transforms are sent as updateTransforms, not fields."""
        write = build_set(ALICE, {"n": Increment(2), "meta": {"at": SERVER_TIMESTAMP}})
        wire = write.to_wire()
        assert wire["update"]["fields"] == {}
        assert wire["updateTransforms"] == [
            {"fieldPath": "n", "increment": {"integerValue": "2"}},
            {"fieldPath": "meta.at", "setToServerValue": "REQUEST_TIME"},
        ]

    def test_empty_nested_map_is_a_value(self):
        """An empty dict is written as an empty map."""
        write = build_set(ALICE, {"meta": {}})
        assert write.to_wire()["update"]["fields"] == {"meta": {"mapValue": {}}}

    def test_non_mapping_rejected(self):
        with pytest.raises(UsageError):
            build_set(ALICE, ["not", "a", "map"])

    def test_collection_path_rejected(self):
        with pytest.raises(PathError):
            build_set(ResourcePath.from_relative(DB, "users"), {"a": 1})


class TestBuildCreate:
    def test_precondition_not_exists(self):
        wire = build_create(ALICE, {"a": 1}).to_wire()
        assert wire["currentDocument"] == {"exists": False}
        assert "updateMask" not in wire


class TestBuildUpdate:
    """Tests for update writes."""

    def test_dotted_paths_nest(self):
        """Dotted keys address nested fields and appear in the mask."""
        write = build_update(ALICE, {"address.city": "Oslo", "score": 5})
        wire = write.to_wire()
        assert wire["update"]["fields"] == {
            "address": {"mapValue": {"fields": {"city": {"stringValue": "Oslo"}}}},
            "score": {"integerValue": "5"},
        }
        assert wire["updateMask"] == {"fieldPaths": ["address.city", "score"]}
        assert wire["currentDocument"] == {"exists": True}

    def test_field_path_keys(self):
        """FieldPath keys allow dots inside a segment."""
        wire = build_update(ALICE, {FieldPath("a.b"): 1}).to_wire()
        assert wire["update"]["fields"] == {"a.b": {"integerValue": "1"}}
        assert wire["updateMask"] == {"fieldPaths": ["`a.b`"]}

    def test_delete_field(self):
        """DELETE_FIELD goes into the mask without a value."""
        wire = build_update(ALICE, {"old": DELETE_FIELD}).to_wire()
        assert wire["update"]["fields"] == {}
        assert wire["updateMask"] == {"fieldPaths": ["old"]}

    def test_transforms(self):
        """Transforms are not part of the mask."""
        wire = build_update(
            ALICE,
            {
                "hits": Increment(1),
                "high": Maximum(9.5),
                "low": Minimum(-1),
                "tags": ArrayUnion("a", "b"),
                "old_tags": ArrayRemove("z"),
            },
        ).to_wire()
        assert wire["updateMask"] == {"fieldPaths": []}
        assert wire["updateTransforms"] == [
            {"fieldPath": "hits", "increment": {"integerValue": "1"}},
            {"fieldPath": "high", "maximum": {"doubleValue": 9.5}},
            {"fieldPath": "low", "minimum": {"integerValue": "-1"}},
            {
                "fieldPath": "tags",
                "appendMissingElements": {"values": [{"stringValue": "a"}, {"stringValue": "b"}]},
            },
            {"fieldPath": "old_tags", "removeAllFromArray": {"values": [{"stringValue": "z"}]}},
        ]

    def test_map_value_replaces_subtree(self):
        """A map value replaces the whole field at that path."""
        wire = build_update(ALICE, {"address": {"city": "Oslo"}}).to_wire()
        assert wire["updateMask"] == {"fieldPaths": ["address"]}

    def test_overlapping_paths_rejected(self):
        with pytest.raises(UsageError):
            build_update(ALICE, {"a": 1, "a.b": 2})

    def test_empty_rejected(self):
        with pytest.raises(UsageError):
            build_update(ALICE, {})

    def test_must_exist_false_has_no_precondition(self):
        wire = build_update(ALICE, {"a": 1}, must_exist=False).to_wire()
        assert "currentDocument" not in wire

    def test_last_update_time(self):
        """An update-time token is sent verbatim."""
        token = "2024-01-01T00:00:00.000001Z"
        wire = build_update(ALICE, {"a": 1}, last_update_time=token).to_wire()
        assert wire["currentDocument"] == {"updateTime": token}


class TestBuildDelete:
    def test_plain_delete(self):
        assert build_delete(ALICE).to_wire() == {"delete": NAME}

    def test_must_exist(self):
        assert build_delete(ALICE, must_exist=True).to_wire()["currentDocument"] == {"exists": True}

    def test_last_update_time(self):
        wire = build_delete(ALICE, last_update_time="t1").to_wire()
        assert wire["currentDocument"] == {"updateTime": "t1"}


class TestCommitBody:
    def test_writes_in_order(self):
        """Writes keep their issue order."""
        bob = ResourcePath.from_relative(DB, "users/bob")
        body = commit_body([build_delete(bob), build_set(ALICE, {"a": 1})], transaction="tx1")
        assert body["transaction"] == "tx1"
        assert [list(w)[0] for w in body["writes"]] == ["delete", "update"]

    def test_no_transaction(self):
        assert "transaction" not in commit_body([])
