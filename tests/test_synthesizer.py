"""
tests/test_synthesizer.py
Unit tests for crudgen.synthesizer.

Tests cover:
- Kind → storage type mapping (primitive, array, nested, reference)
- Injected system fields for root documents, array items and embedded structures
- Required / optional resolution against defaults
- Implicit empty-array defaults
- Determinism and fingerprints
- Failure modes: unknown kind, conflicts, unreachable values, depth bound
"""

from __future__ import annotations

import pytest

from crudgen.errors import (
    ModelCycleError,
    SchemaConflictError,
    UnknownKindError,
    ValidationGapError,
)
from crudgen.models import FieldSpec, GenerationConfig, SchemaDescriptor, TypeModel
from crudgen.synthesizer import SchemaSynthesizer, synthesize


def _model(*fields: FieldSpec, name: str = "Thing", timestamps: bool = True) -> TypeModel:
    return TypeModel(name=name, fields=list(fields), timestamps=timestamps)


# ===========================================================================
# Structure
# ===========================================================================


class TestStructure:
    def test_storage_types(self, user_descriptor: SchemaDescriptor) -> None:
        by_name = {f.name: f for f in user_descriptor.fields}
        assert by_name["name"].storage_type == "string"
        assert by_name["age"].storage_type == "number"
        assert by_name["tags"].storage_type == "string"
        assert by_name["tags"].repeated
        assert by_name["address"].storage_type == "embedded"
        assert not by_name["address"].repeated
        assert by_name["notes"].storage_type == "embedded"
        assert by_name["notes"].repeated
        assert by_name["manager"].storage_type == "identifier"
        assert by_name["manager"].ref == "User"

    def test_fields_keep_input_order(self, user_descriptor: SchemaDescriptor) -> None:
        assert user_descriptor.field_names == [
            "name", "email", "role", "age", "tags", "address", "notes", "manager",
        ]

    def test_root_system_fields(self, user_descriptor: SchemaDescriptor) -> None:
        assert [f.name for f in user_descriptor.system_fields] == [
            "id", "created_at", "updated_at",
        ]
        assert all(f.system_managed for f in user_descriptor.system_fields)
        assert user_descriptor.timestamps
        assert user_descriptor.collection == "users"

    def test_no_timestamps_keeps_identity_only(self) -> None:
        descriptor = synthesize(
            _model(FieldSpec(name="title", kind="primitive", type="string"), timestamps=False)
        )
        assert [f.name for f in descriptor.system_fields] == ["id"]
        assert not descriptor.timestamps

    def test_array_items_get_identity_only(self, user_descriptor: SchemaDescriptor) -> None:
        notes = user_descriptor.get_field("notes")
        assert notes.sub_schema is not None
        assert [f.name for f in notes.sub_schema.system_fields] == ["id"]
        assert not notes.sub_schema.timestamps
        assert notes.sub_schema.collection is None

    def test_embedded_structure_gets_no_system_fields(
        self, user_descriptor: SchemaDescriptor
    ) -> None:
        address = user_descriptor.get_field("address")
        assert address.sub_schema.system_fields == []
        assert address.sub_schema.field_names == ["street", "city"]

    def test_custom_system_field_names(self) -> None:
        config = GenerationConfig(
            identity_field="_id", created_field="createdAt", updated_field="updatedAt"
        )
        descriptor = synthesize(_model(FieldSpec(name="a", kind="primitive", type="string")), config)
        assert [f.name for f in descriptor.system_fields] == ["_id", "createdAt", "updatedAt"]

    def test_validator_attached_only_when_rules_exist(
        self, user_descriptor: SchemaDescriptor
    ) -> None:
        assert user_descriptor.get_field("email").validator is None
        role = user_descriptor.get_field("role")
        assert role.validator is not None
        assert role.validator.enum_values == ["admin", "member"]
        assert user_descriptor.get_field("age").validator.minimum == 0


# ===========================================================================
# Required / defaults
# ===========================================================================


class TestRequired:
    def test_required_fields(self, user_descriptor: SchemaDescriptor) -> None:
        # role has a default, tags/notes get an implicit []
        assert user_descriptor.required_fields == ["name"]

    def test_default_relaxes_explicit_required(self) -> None:
        field = FieldSpec(name="status", kind="primitive", type="string", required=True, default="new")
        relaxed = synthesize(_model(field))
        assert relaxed.required_fields == []

        strict = synthesize(_model(field), GenerationConfig(default_relaxes_required=False))
        assert strict.required_fields == ["status"]

    def test_explicit_required_false(self) -> None:
        field = FieldSpec(name="note", kind="primitive", type="string", required=False)
        assert synthesize(_model(field)).required_fields == []

    def test_array_gets_empty_default(self, user_descriptor: SchemaDescriptor) -> None:
        tags = user_descriptor.get_field("tags")
        assert tags.has_default
        assert tags.default == []
        assert not tags.required

    def test_explicit_array_default_kept(self) -> None:
        field = FieldSpec(name="tags", kind="array", element_type="string", default=["x"])
        assert synthesize(_model(field)).get_field("tags").default == ["x"]

    def test_array_without_default_when_disabled(self) -> None:
        config = GenerationConfig(auto_array_defaults=False)
        optional = FieldSpec(name="tags", kind="array", element_type="string", optional=True)
        descriptor = synthesize(_model(optional), config)
        assert not descriptor.get_field("tags").has_default
        assert descriptor.required_fields == []

        required = FieldSpec(name="tags", kind="array", element_type="string")
        with pytest.raises(ValidationGapError):
            synthesize(_model(required), config)


# ===========================================================================
# Determinism
# ===========================================================================


class TestDeterminism:
    def test_same_input_same_descriptor(self, user_model: TypeModel) -> None:
        first = synthesize(user_model)
        second = SchemaSynthesizer().synthesize(user_model)
        assert first == second
        assert first.fingerprint() == second.fingerprint()

    def test_fingerprint_changes_with_input(self, user_model: TypeModel) -> None:
        other = TypeModel(name="User", fields=user_model.fields[:-1])
        assert synthesize(user_model).fingerprint() != synthesize(other).fingerprint()


# ===========================================================================
# Failures
# ===========================================================================


class TestFailures:
    def test_unknown_kind(self) -> None:
        rogue = FieldSpec.model_construct(name="blob", kind="blob")
        model = TypeModel.model_construct(name="Rogue", fields=[rogue], timestamps=True, collection=None)
        with pytest.raises(UnknownKindError) as exc_info:
            synthesize(model)
        assert exc_info.value.field == "blob"
        assert exc_info.value.model == "Rogue"

    def test_system_field_conflict(self) -> None:
        model = _model(FieldSpec(name="created_at", kind="primitive", type="date"))
        with pytest.raises(SchemaConflictError):
            synthesize(model)

    def test_item_identity_conflict(self) -> None:
        item = TypeModel(name="Line", fields=[FieldSpec(name="id", kind="primitive", type="string")])
        model = _model(FieldSpec(name="lines", kind="array", nested_model=item))
        with pytest.raises(SchemaConflictError):
            synthesize(model)

    def test_embedded_structure_may_use_identity_name(self) -> None:
        inner = TypeModel(name="Ext", fields=[FieldSpec(name="id", kind="primitive", type="string")])
        model = _model(FieldSpec(name="external", kind="nested", nested_model=inner))
        assert synthesize(model).get_field("external").sub_schema.field_names == ["id"]

    def test_null_default_on_non_nullable(self) -> None:
        field = FieldSpec(name="title", kind="primitive", type="string", default=None)
        with pytest.raises(ValidationGapError):
            synthesize(_model(field))

    def test_default_violating_own_rules(self) -> None:
        field = FieldSpec(
            name="role", kind="primitive", type="string", enum_values=["a", "b"], default="c"
        )
        with pytest.raises(ValidationGapError):
            synthesize(_model(field))

    def test_default_with_wrong_type(self) -> None:
        field = FieldSpec(name="count", kind="primitive", type="number", default="many")
        with pytest.raises(ValidationGapError):
            synthesize(_model(field))

    def test_depth_bound(self) -> None:
        inner = TypeModel(name="Inner", fields=[FieldSpec(name="x", kind="primitive", type="string")])
        mid = TypeModel(name="Mid", fields=[FieldSpec(name="inner", kind="nested", nested_model=inner)])
        outer = _model(FieldSpec(name="mid", kind="nested", nested_model=mid), name="Outer")

        with pytest.raises(ModelCycleError):
            synthesize(outer, GenerationConfig(max_nesting_depth=1))
        assert synthesize(outer, GenerationConfig(max_nesting_depth=2)) is not None
