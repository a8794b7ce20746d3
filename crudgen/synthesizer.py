# File: crudgen/synthesizer.py
"""
NexaFlow CrudGen - Schema Synthesizer
=======================================
Maps a ``TypeModel`` onto a ``SchemaDescriptor``:

    primitive  → storage type of the same name
    array      → repeated element storage type (primitive, embedded or identifier)
    nested     → embedded sub-schema (recursive)
    reference  → identifier annotated with the referenced model name

Kind dispatch is a closed match over the four ``FieldKind`` values; any other
value can only come from a model built without validation and raises
``UnknownKindError``.  Nested models are walked by explicit recursion with a
depth bound and an ancestor check, so a self-referential structure is a
``ModelCycleError`` rather than unbounded recursion.

The synthesizer is purely computational and keeps no state between calls:
synthesizing the same model twice yields equal descriptors.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from crudgen.documents import value_problems
from crudgen.errors import (
    ModelCycleError,
    SchemaConflictError,
    UnknownKindError,
    ValidationGapError,
)
from crudgen.models import (
    FieldKind,
    FieldSpec,
    FieldValidator,
    GenerationConfig,
    SchemaDescriptor,
    SchemaField,
    StorageType,
    TypeModel,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.synthesizer")

# Where a sub-schema sits decides which system fields it receives.
_ROLE_ROOT: str = "root"  # identity + timestamps
_ROLE_ITEM: str = "item"  # identity only (embedded array element)
_ROLE_EMBEDDED: str = "embedded"  # nothing

_PRIMITIVE_STORAGE: dict = {
    "string": StorageType.STRING,
    "number": StorageType.NUMBER,
    "boolean": StorageType.BOOLEAN,
    "date": StorageType.DATE,
    "identifier": StorageType.IDENTIFIER,
}


def _value(enum_or_str: Any) -> Any:
    return getattr(enum_or_str, "value", enum_or_str)


class SchemaSynthesizer:
    """
    Derives ``SchemaDescriptor`` trees from ``TypeModel`` trees.

    Usage::

        synthesizer = SchemaSynthesizer(config)
        descriptor = synthesizer.synthesize(user_model)
    """

    def __init__(self, config: Optional[GenerationConfig] = None) -> None:
        self._config: GenerationConfig = config or GenerationConfig()

    @property
    def config(self) -> GenerationConfig:
        return self._config

    # -----------------------------------------------------------------
    # Public
    # -----------------------------------------------------------------

    def synthesize(self, model: TypeModel) -> SchemaDescriptor:
        descriptor: SchemaDescriptor = self._synthesize_model(
            model, role=_ROLE_ROOT, depth=0, ancestors=()
        )
        logger.debug(
            "Synthesized %r: required=%s", descriptor, descriptor.required_fields
        )
        return descriptor

    # -----------------------------------------------------------------
    # Models
    # -----------------------------------------------------------------

    def _synthesize_model(
        self,
        model: TypeModel,
        *,
        role: str,
        depth: int,
        ancestors: Tuple[int, ...],
    ) -> SchemaDescriptor:
        if id(model) in ancestors:
            raise ModelCycleError(
                f"Model '{model.name}' embeds itself; use a reference field instead.",
                model=model.name,
            )
        if depth > self._config.max_nesting_depth:
            raise ModelCycleError(
                f"Model '{model.name}' nests deeper than "
                f"{self._config.max_nesting_depth} levels.",
                model=model.name,
            )

        system_fields: List[SchemaField] = self._system_fields(model, role)
        reserved = {f.name for f in system_fields}
        lineage: Tuple[int, ...] = ancestors + (id(model),)

        fields: List[SchemaField] = []
        for spec in model.fields:
            if spec.name in reserved:
                raise SchemaConflictError(
                    f"Field '{spec.name}' of model '{model.name}' collides with a "
                    f"system-managed field.",
                    model=model.name,
                    field=spec.name,
                )
            fields.append(self._synthesize_field(model, spec, depth=depth, lineage=lineage))

        timestamps: bool = role == _ROLE_ROOT and model.timestamps
        return SchemaDescriptor(
            name=model.name,
            collection=model.collection_name if role == _ROLE_ROOT else None,
            fields=fields,
            system_fields=system_fields,
            timestamps=timestamps,
        )

    def _system_fields(self, model: TypeModel, role: str) -> List[SchemaField]:
        if role == _ROLE_EMBEDDED:
            return []
        cfg: GenerationConfig = self._config
        result: List[SchemaField] = [
            SchemaField(
                name=cfg.identity_field,
                storage_type=StorageType.IDENTIFIER,
                system_managed=True,
            )
        ]
        if role == _ROLE_ROOT and model.timestamps:
            for name in (cfg.created_field, cfg.updated_field):
                result.append(
                    SchemaField(name=name, storage_type=StorageType.DATE, system_managed=True)
                )
        return result

    # -----------------------------------------------------------------
    # Fields
    # -----------------------------------------------------------------

    def _synthesize_field(
        self,
        owner: TypeModel,
        spec: FieldSpec,
        *,
        depth: int,
        lineage: Tuple[int, ...],
    ) -> SchemaField:
        kind: Any = _value(spec.kind)
        repeated: bool = False
        ref: Optional[str] = None
        sub_schema: Optional[SchemaDescriptor] = None

        if kind == FieldKind.PRIMITIVE.value:
            storage_type: StorageType = self._primitive_storage(owner, spec, spec.type)
        elif kind == FieldKind.ARRAY.value:
            repeated = True
            if spec.nested_model is not None:
                storage_type = StorageType.EMBEDDED
                sub_schema = self._synthesize_model(
                    spec.nested_model, role=_ROLE_ITEM, depth=depth + 1, ancestors=lineage
                )
            elif spec.reference:
                storage_type = StorageType.IDENTIFIER
                ref = spec.reference
            else:
                storage_type = self._primitive_storage(owner, spec, spec.element_type)
        elif kind == FieldKind.NESTED.value:
            if spec.nested_model is None:
                raise ValidationGapError(
                    f"Nested field '{spec.name}' of model '{owner.name}' has no nested model.",
                    model=owner.name,
                    field=spec.name,
                )
            storage_type = StorageType.EMBEDDED
            sub_schema = self._synthesize_model(
                spec.nested_model, role=_ROLE_EMBEDDED, depth=depth + 1, ancestors=lineage
            )
        elif kind == FieldKind.REFERENCE.value:
            storage_type = StorageType.IDENTIFIER
            ref = spec.reference
        else:
            raise UnknownKindError(
                f"Field '{spec.name}' of model '{owner.name}' has unknown kind {kind!r}.",
                model=owner.name,
                field=spec.name,
            )

        field_validator: Optional[FieldValidator] = self._validator_for(spec)
        has_default: bool = spec.has_default
        default: Any = spec.default if has_default else None

        if repeated and not has_default:
            if self._config.auto_array_defaults:
                default, has_default = [], True
            elif not spec.optional:
                raise ValidationGapError(
                    f"Required array field '{spec.name}' of model '{owner.name}' "
                    f"has no default and cannot be supplied implicitly.",
                    model=owner.name,
                    field=spec.name,
                )

        field: SchemaField = SchemaField(
            name=spec.name,
            storage_type=storage_type,
            repeated=repeated,
            ref=ref,
            required=self._resolve_required(spec, has_default),
            default=default,
            has_default=has_default,
            validator=field_validator,
            sub_schema=sub_schema,
        )

        if has_default:
            self._check_default(owner, spec, field)
        return field

    def _primitive_storage(self, owner: TypeModel, spec: FieldSpec, primitive: Any) -> StorageType:
        storage: Optional[StorageType] = _PRIMITIVE_STORAGE.get(_value(primitive))
        if storage is None:
            raise UnknownKindError(
                f"Field '{spec.name}' of model '{owner.name}' has unknown "
                f"primitive type {primitive!r}.",
                model=owner.name,
                field=spec.name,
            )
        return storage

    def _resolve_required(self, spec: FieldSpec, has_default: bool) -> bool:
        required: bool = (not spec.optional) if spec.required is None else spec.required
        if has_default and (self._config.default_relaxes_required or spec.required is not True):
            return False
        return required

    @staticmethod
    def _validator_for(spec: FieldSpec) -> Optional[FieldValidator]:
        if (
            spec.enum_values is None
            and spec.pattern is None
            and spec.minimum is None
            and spec.maximum is None
            and spec.max_length is None
        ):
            return None
        return FieldValidator(
            enum_values=spec.enum_values,
            pattern=spec.pattern,
            minimum=spec.minimum,
            maximum=spec.maximum,
            max_length=spec.max_length,
        )

    @staticmethod
    def _check_default(owner: TypeModel, spec: FieldSpec, field: SchemaField) -> None:
        if field.default is None:
            if not spec.optional:
                raise ValidationGapError(
                    f"Field '{spec.name}' of model '{owner.name}' is not nullable "
                    f"but its default is null.",
                    model=owner.name,
                    field=spec.name,
                )
            return
        problems: List[str] = value_problems(field, field.default, f"{owner.name}.{spec.name}")
        if problems:
            raise ValidationGapError(
                f"Default of field '{spec.name}' of model '{owner.name}' "
                f"violates its own rules: {'; '.join(problems)}",
                model=owner.name,
                field=spec.name,
            )


def synthesize(model: TypeModel, config: Optional[GenerationConfig] = None) -> SchemaDescriptor:
    """Module-level shortcut for ``SchemaSynthesizer(config).synthesize(model)``."""
    return SchemaSynthesizer(config).synthesize(model)


__all__: List[str] = ["SchemaSynthesizer", "synthesize"]

logger.debug("crudgen.synthesizer loaded.")
