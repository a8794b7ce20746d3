# File: crudgen/validators.py
"""
NexaFlow CrudGen - Definition & Configuration Validators
==========================================================
This module provides a **pure-function validation pipeline** that operates
on the Pydantic V2 models defined in ``crudgen.models``.

Pydantic's built-in validators handle per-field and per-model structural
correctness (field kinds carry their payload, names are unique, actions
match operation kinds).  This module adds **cross-entity semantic
validation**: parameters resolve to model fields, item operations target
embedded arrays, references name known models, routes do not collide,
field constraints fit their field type, and configuration is consistent.

Usage by downstream modules:
    from crudgen.validators import validate_full
    result = validate_full(definitions)
    if result.has_errors:
        raise SystemExit(...)
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from crudgen.models import (
    AuthStrategy,
    DefinitionSet,
    FieldKind,
    FieldSpec,
    GenerationConfig,
    HttpVerb,
    ITEM_ACTIONS,
    OperationAction,
    OperationKind,
    OperationSpec,
    ParamType,
    PrimitiveType,
    TypeModel,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.validators")

# ---------------------------------------------------------------------------
# Validation result container
# ---------------------------------------------------------------------------


class ValidationError:
    """Lightweight error descriptor (no Pydantic overhead)."""

    __slots__ = ("level", "code", "message", "context")

    def __init__(
        self,
        level: str,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.level: str = level  # "error" | "warning" | "info"
        self.code: str = code
        self.message: str = message
        self.context: Dict[str, Any] = context or {}

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    @property
    def is_warning(self) -> bool:
        return self.level == "warning"

    def __repr__(self) -> str:
        return f"[{self.level.upper()}] {self.code}: {self.message}"

    def __str__(self) -> str:
        return self.__repr__()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationResult:
    """Accumulates ``ValidationError`` instances produced by the pipeline."""

    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: List[ValidationError] = []

    # -- Mutation -----------------------------------------------------------

    def add_error(
        self,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._items.append(ValidationError("error", code, message, context))

    def add_warning(
        self,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._items.append(ValidationError("warning", code, message, context))

    def add_info(
        self,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._items.append(ValidationError("info", code, message, context))

    def merge(self, other: "ValidationResult") -> None:
        self._items.extend(other._items)

    # -- Query --------------------------------------------------------------

    @property
    def errors(self) -> List[ValidationError]:
        return [e for e in self._items if e.is_error]

    @property
    def warnings(self) -> List[ValidationError]:
        return [e for e in self._items if e.is_warning]

    @property
    def all_items(self) -> List[ValidationError]:
        return list(self._items)

    @property
    def codes(self) -> Set[str]:
        return {e.code for e in self._items}

    @property
    def has_errors(self) -> bool:
        return any(e.is_error for e in self._items)

    @property
    def has_warnings(self) -> bool:
        return any(e.is_warning for e in self._items)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self._items if e.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for e in self._items if e.is_warning)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    def summary(self) -> str:
        return (
            f"Validation: {self.error_count} error(s), "
            f"{self.warning_count} warning(s), "
            f"{len(self._items)} total item(s)."
        )

    def __repr__(self) -> str:
        return f"<ValidationResult {self.summary()}>"

    def __bool__(self) -> bool:
        """Truthy when there are NO errors (i.e. valid)."""
        return self.is_valid

    def __len__(self) -> int:
        return len(self._items)

    def format_report(self, include_info: bool = False) -> str:
        """Human-readable multi-line report."""
        lines: List[str] = [self.summary(), ""]
        for item in self._items:
            if not include_info and item.level == "info":
                continue
            prefix: str = {
                "error": "❌",
                "warning": "⚠️",
                "info": "ℹ️",
            }.get(item.level, "•")
            lines.append(f"  {prefix} [{item.code}] {item.message}")
            if item.context:
                for k, v in item.context.items():
                    lines.append(f"       {k}: {v}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_PASCAL_CASE_RE: re.Pattern[str] = re.compile(r"^[A-Z][a-zA-Z0-9]*$")
_IDENTIFIER_RE: re.Pattern[str] = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_PATH_PARAM_RE: re.Pattern[str] = re.compile(r"\{([^}]+)\}")

_STRINGISH_TYPES: Set[str] = {PrimitiveType.STRING.value, PrimitiveType.IDENTIFIER.value}

# Parameter type → primitive field types it can sensibly filter on.
_PARAM_FIELD_TYPES: Dict[str, Set[str]] = {
    ParamType.IDENTIFIER.value: {PrimitiveType.IDENTIFIER.value, PrimitiveType.STRING.value},
    ParamType.ENUM.value: {PrimitiveType.STRING.value},
    ParamType.STRING.value: {PrimitiveType.STRING.value, PrimitiveType.IDENTIFIER.value},
    ParamType.TEXT.value: {PrimitiveType.STRING.value},
    ParamType.NUMBER.value: {PrimitiveType.NUMBER.value},
    ParamType.BOOLEAN.value: {PrimitiveType.BOOLEAN.value},
    ParamType.DATE.value: {PrimitiveType.DATE.value},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iter_models(
    model: TypeModel, path: str, depth: int = 0, limit: int = 64
) -> Iterator[Tuple[str, TypeModel, bool]]:
    """
    Yield ``(path, model, is_item)`` for *model* and every embedded model.

    ``is_item`` marks models embedded as array elements (they receive an
    identity field).  Depth-limited; cycles are reported by the synthesizer.
    """
    yield path, model, False
    if depth >= limit:
        return
    for spec in model.fields:
        if spec.nested_model is None:
            continue
        sub_path: str = f"{path}.{spec.name}"
        for item_path, sub_model, is_item in _iter_models(
            spec.nested_model, sub_path, depth + 1, limit
        ):
            if sub_model is spec.nested_model:
                is_item = spec.kind == FieldKind.ARRAY
            yield item_path, sub_model, is_item


def _primitive_of(spec: FieldSpec) -> Optional[str]:
    if spec.kind == FieldKind.PRIMITIVE:
        return spec.type
    if spec.kind == FieldKind.ARRAY:
        return spec.element_type
    if spec.kind == FieldKind.REFERENCE:
        return PrimitiveType.IDENTIFIER.value
    return None


# ---------------------------------------------------------------------------
# Individual validators
# ---------------------------------------------------------------------------


def validate_model_names(definitions: DefinitionSet) -> ValidationResult:
    """Model names: identifiers, PascalCase by convention."""
    result: ValidationResult = ValidationResult()
    for model in definitions.models:
        ctx: Dict[str, Any] = {"model": model.name}
        if not _IDENTIFIER_RE.match(model.name):
            result.add_error(
                "INVALID_MODEL_NAME",
                f"Model name '{model.name}' is not a valid identifier.",
                ctx,
            )
            continue
        if not _PASCAL_CASE_RE.match(model.name):
            result.add_warning(
                "MODEL_NAME_NOT_PASCAL_CASE",
                f"Model name '{model.name}' is not PascalCase.",
                ctx,
            )
    return result


def validate_field_names(definitions: DefinitionSet) -> ValidationResult:
    """
    Field names across every model and embedded model:
    - Valid identifier
    - No collision with a system-managed field the synthesizer will inject
    """
    result: ValidationResult = ValidationResult()
    config: GenerationConfig = definitions.config
    checked: int = 0

    for root in definitions.models:
        for path, model, is_item in _iter_models(root, root.name):
            if model is root:
                reserved: Set[str] = (
                    config.system_field_names if model.timestamps else {config.identity_field}
                )
            elif is_item:
                reserved = {config.identity_field}
            else:
                reserved = set()

            for spec in model.fields:
                checked += 1
                ctx: Dict[str, Any] = {"model": path, "field": spec.name}
                if not _IDENTIFIER_RE.match(spec.name):
                    result.add_error(
                        "INVALID_FIELD_NAME",
                        f"Field '{path}.{spec.name}' is not a valid identifier.",
                        ctx,
                    )
                if spec.name in reserved:
                    result.add_error(
                        "FIELD_NAME_RESERVED",
                        f"Field '{path}.{spec.name}' collides with a system-managed field.",
                        ctx,
                    )

    logger.debug("validate_field_names: checked %d fields, %d issue(s).", checked, len(result))
    return result


def validate_references(definitions: DefinitionSet) -> ValidationResult:
    """Reference fields should name a model defined in the same file."""
    result: ValidationResult = ValidationResult()
    known: Set[str] = set(definitions.type_model_names)
    for root in definitions.models:
        for path, model, _ in _iter_models(root, root.name):
            for spec in model.fields:
                if spec.reference and spec.reference not in known:
                    result.add_warning(
                        "REFERENCE_UNKNOWN_MODEL",
                        f"Field '{path}.{spec.name}' references model "
                        f"'{spec.reference}', which is not defined here.",
                        {"model": path, "field": spec.name, "reference": spec.reference},
                    )
    return result


def validate_field_constraints(definitions: DefinitionSet) -> ValidationResult:
    """Field rules must fit the field's type and be satisfiable."""
    result: ValidationResult = ValidationResult()
    for root in definitions.models:
        for path, model, _ in _iter_models(root, root.name):
            for spec in model.fields:
                ctx: Dict[str, Any] = {"model": path, "field": spec.name}
                primitive: Optional[str] = _primitive_of(spec)

                if (
                    spec.minimum is not None
                    and spec.maximum is not None
                    and spec.minimum > spec.maximum
                ):
                    result.add_error(
                        "MIN_GREATER_THAN_MAX",
                        f"Field '{path}.{spec.name}': minimum {spec.minimum} "
                        f"exceeds maximum {spec.maximum}.",
                        ctx,
                    )
                if (spec.minimum is not None or spec.maximum is not None) and (
                    primitive != PrimitiveType.NUMBER.value
                ):
                    result.add_warning(
                        "RANGE_ON_NON_NUMBER",
                        f"Field '{path}.{spec.name}' has a numeric range but is not a number.",
                        ctx,
                    )
                if (spec.pattern is not None or spec.max_length is not None) and (
                    primitive not in _STRINGISH_TYPES
                ):
                    result.add_warning(
                        "STRING_RULE_ON_NON_STRING",
                        f"Field '{path}.{spec.name}' has a pattern/max_length "
                        f"but is not a string.",
                        ctx,
                    )
                if spec.enum_values is not None and spec.nested_model is not None:
                    result.add_warning(
                        "ENUM_ON_EMBEDDED",
                        f"Field '{path}.{spec.name}' declares enum values on an "
                        f"embedded structure; they are ignored.",
                        ctx,
                    )
                if spec.optional and spec.required:
                    result.add_warning(
                        "OPTIONAL_AND_REQUIRED",
                        f"Field '{path}.{spec.name}' is both optional and "
                        f"explicitly required; 'required' wins.",
                        ctx,
                    )
    return result


def _resolve_param_field(
    definitions: DefinitionSet, op: OperationSpec, model: TypeModel
) -> Tuple[Optional[TypeModel], Set[str]]:
    """Model whose fields the operation's parameters address, plus system names."""
    config: GenerationConfig = definitions.config
    if op.action in ITEM_ACTIONS:
        target: Optional[FieldSpec] = model.get_field(op.target_field or "")
        if target is None:
            return None, set()
        return target.nested_model, {config.identity_field}
    return model, config.system_field_names


def validate_operations(definitions: DefinitionSet) -> ValidationResult:
    """
    Cross-check every operation against its target model:
    - The model exists
    - Item actions target an array of embedded structures
    - Each parameter addresses an existing field of a compatible type
    - Verbs fit the operation kind
    - Pagination parameter names do not shadow declared filters
    """
    result: ValidationResult = ValidationResult()

    for op in definitions.operations:
        ctx: Dict[str, Any] = {"operation": op.name}
        model: Optional[TypeModel] = definitions.get_model(op.model)
        if model is None:
            result.add_error(
                "OPERATION_UNKNOWN_MODEL",
                f"Operation '{op.name}' targets unknown model '{op.model}'.",
                {**ctx, "model": op.model},
            )
            continue

        if op.action in ITEM_ACTIONS:
            target: Optional[FieldSpec] = model.get_field(op.target_field or "")
            if (
                target is None
                or target.kind != FieldKind.ARRAY
                or target.nested_model is None
            ):
                result.add_error(
                    "ITEM_TARGET_NOT_EMBEDDED_ARRAY",
                    f"Operation '{op.name}' targets '{op.target_field}', which is "
                    f"not an array of embedded structures on '{model.name}'.",
                    ctx,
                )
                continue

        if op.kind == OperationKind.QUERY and op.verb != HttpVerb.GET:
            result.add_warning(
                "QUERY_NOT_GET",
                f"Query operation '{op.name}' uses {op.verb}; queries are usually GET.",
                ctx,
            )
        if op.kind == OperationKind.MUTATION and op.verb == HttpVerb.GET:
            result.add_warning(
                "MUTATION_USES_GET",
                f"Mutation operation '{op.name}' uses GET.",
                ctx,
            )

        if op.pagination:
            for reserved in (op.page_param, op.page_size_param):
                if reserved in op.parameters:
                    result.add_warning(
                        "PARAM_SHADOWED_BY_PAGINATION",
                        f"Parameter '{reserved}' of '{op.name}' is read as "
                        f"pagination and never filters.",
                        {**ctx, "parameter": reserved},
                    )
        elif op.kind == OperationKind.QUERY:
            result.add_info(
                "QUERY_UNPAGINATED",
                f"Query operation '{op.name}' returns every match (no pagination).",
                ctx,
            )

        scope, system_names = _resolve_param_field(definitions, op, model)
        if scope is None:
            continue
        for name, param in op.parameters.items():
            if name in (op.id_param, op.item_id_param) and op.kind == OperationKind.MUTATION:
                continue
            if op.pagination and name in (op.page_param, op.page_size_param):
                continue
            field_name: str = op.field_for(name)
            pctx: Dict[str, Any] = {**ctx, "parameter": name, "field": field_name}
            if field_name in system_names:
                continue
            spec: Optional[FieldSpec] = scope.get_field(field_name)
            if spec is None:
                result.add_error(
                    "PARAM_UNKNOWN_FIELD",
                    f"Parameter '{name}' of '{op.name}' addresses unknown field "
                    f"'{field_name}' of '{scope.name}'.",
                    pctx,
                )
                continue
            primitive: Optional[str] = _primitive_of(spec)
            if op.kind == OperationKind.QUERY and primitive is None:
                result.add_error(
                    "PARAM_ON_EMBEDDED",
                    f"Parameter '{name}' of '{op.name}' filters on embedded field "
                    f"'{field_name}'.",
                    pctx,
                )
                continue
            if primitive is not None and primitive not in _PARAM_FIELD_TYPES[param.type]:
                result.add_warning(
                    "PARAM_TYPE_MISMATCH",
                    f"Parameter '{name}' of '{op.name}' is {param.type} but field "
                    f"'{field_name}' is {primitive}.",
                    pctx,
                )
            if param.type == ParamType.ENUM and not (param.enum_values or spec.enum_values):
                result.add_info(
                    "ENUM_WITHOUT_VALUES",
                    f"Enum parameter '{name}' of '{op.name}' lists no values; "
                    f"any string is accepted.",
                    pctx,
                )

    return result


def validate_operation_routes(definitions: DefinitionSet) -> ValidationResult:
    """No two operations may share a verb and route; id placeholders must exist."""
    result: ValidationResult = ValidationResult()
    seen: Dict[Tuple[str, str], str] = {}

    for op in definitions.operations:
        path: str = op.route_path()
        ctx: Dict[str, Any] = {"operation": op.name, "path": path}

        # Placeholder names differ between operations; compare the shape only.
        key: Tuple[str, str] = (str(op.verb), _PATH_PARAM_RE.sub("{}", path))
        if key in seen:
            result.add_error(
                "DUPLICATE_ROUTE",
                f"Operations '{seen[key]}' and '{op.name}' both map to "
                f"{op.verb} {path}.",
                ctx,
            )
        else:
            seen[key] = op.name

        if not path.startswith("/"):
            result.add_error("ROUTE_NO_SLASH", f"Route '{path}' must start with '/'.", ctx)

        placeholders: Set[str] = set(_PATH_PARAM_RE.findall(path))
        needs_id: bool = op.action not in (
            OperationAction.LIST.value,
            OperationAction.CREATE.value,
        )
        if needs_id and op.id_param not in placeholders:
            result.add_warning(
                "ROUTE_WITHOUT_ID",
                f"Route of '{op.name}' has no '{{{op.id_param}}}' placeholder; "
                f"the id must come from the request body.",
                ctx,
            )
    return result


def validate_generation_config(config: GenerationConfig) -> ValidationResult:
    """
    Validate the generation configuration for semantic correctness beyond
    what Pydantic field constraints enforce.
    """
    result: ValidationResult = ValidationResult()

    if config.auth_strategy == AuthStrategy.API_KEY and not config.api_key:
        result.add_error(
            "API_KEY_MISSING",
            "auth_strategy is 'api_key' but no api_key is configured.",
        )
    if config.auth_strategy == AuthStrategy.NONE:
        result.add_info(
            "AUTH_DISABLED",
            "auth_strategy is 'none'; every session is accepted.",
        )

    if config.api_prefix and not config.api_prefix.startswith("/"):
        result.add_warning(
            "API_PREFIX_NO_SLASH",
            f"api_prefix '{config.api_prefix}' should start with '/'.",
            {"api_prefix": config.api_prefix},
        )
    if config.api_prefix.endswith("/"):
        result.add_warning(
            "API_PREFIX_TRAILING_SLASH",
            f"api_prefix '{config.api_prefix}' should not end with '/'.",
            {"api_prefix": config.api_prefix},
        )

    if not config.auto_array_defaults:
        result.add_info(
            "ARRAY_DEFAULTS_DISABLED",
            "auto_array_defaults is off; required arrays need explicit defaults.",
        )
    return result


# ---------------------------------------------------------------------------
# Aggregate validators
# ---------------------------------------------------------------------------


def validate_definitions(definitions: DefinitionSet) -> ValidationResult:
    """Run all definition-level validators.  Returns a merged ``ValidationResult``."""
    result: ValidationResult = ValidationResult()

    validators: List[Callable[[DefinitionSet], ValidationResult]] = [
        validate_model_names,
        validate_field_names,
        validate_references,
        validate_field_constraints,
        validate_operations,
        validate_operation_routes,
    ]

    for validator_fn in validators:
        logger.debug("Running validator: %s", validator_fn.__name__)
        result.merge(validator_fn(definitions))

    logger.info("Definition validation complete: %s", result.summary())
    return result


def validate_config(config: GenerationConfig) -> ValidationResult:
    result: ValidationResult = validate_generation_config(config)
    logger.info("Config validation complete: %s", result.summary())
    return result


def validate_full(definitions: DefinitionSet) -> ValidationResult:
    """
    **Master validation entry point.**

    This is the single function that ``generator.py`` and ``cli.py`` call
    before synthesizing schemas.
    """
    logger.info(
        "Starting full validation — %d models, %d operations",
        len(definitions.models),
        len(definitions.operations),
    )

    result: ValidationResult = ValidationResult()
    result.merge(validate_definitions(definitions))
    result.merge(validate_config(definitions.config))

    if result.has_errors:
        logger.error(
            "Validation FAILED with %d error(s). %s",
            result.error_count,
            result.summary(),
        )
    else:
        logger.info("Validation PASSED. %s", result.summary())

    return result


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "ValidationError",
    "ValidationResult",
    "validate_model_names",
    "validate_field_names",
    "validate_references",
    "validate_field_constraints",
    "validate_operations",
    "validate_operation_routes",
    "validate_generation_config",
    "validate_definitions",
    "validate_config",
    "validate_full",
]

logger.debug("crudgen.validators loaded — %d public symbols.", len(__all__))
