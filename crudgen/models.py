# File: crudgen/models.py
"""
NexaFlow CrudGen - Core Data Models
=====================================
Pydantic V2 models for both ends of the generation pipeline:

    TypeModel      ──▶ SchemaSynthesizer ──▶ SchemaDescriptor
    OperationSpec  ──▶ QueryBuilder / mutation routine ──▶ ResponseEnvelope

Definitions supplied by the caller (``TypeModel``, ``OperationSpec``) and
derived artifacts (``SchemaDescriptor``) are frozen, so that the same input
always compares equal to itself and a descriptor can be re-derived safely.
Per-request objects (``FilterExpression``, ``PageBounds``,
``ResponseEnvelope``) are built by one handler invocation and discarded.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_core import to_jsonable_python

from crudgen.utils import (
    model_to_route_prefix,
    sha256_hex,
    to_kebab_case,
    to_plural,
    to_snake_case,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.models")

# ---------------------------------------------------------------------------
# Enums: fixed sets used across the project
# ---------------------------------------------------------------------------


class FieldKind(str, Enum):
    """The four structural kinds a TypeModel field can take."""

    PRIMITIVE = "primitive"
    ARRAY = "array"
    NESTED = "nested"
    REFERENCE = "reference"


class PrimitiveType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    IDENTIFIER = "identifier"


class StorageType(str, Enum):
    """Storage-level types of a synthesized schema field."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    IDENTIFIER = "identifier"
    EMBEDDED = "embedded"


class ParamType(str, Enum):
    """Request parameter types; each one has a fixed filter operator."""

    IDENTIFIER = "identifier"
    ENUM = "enum"
    STRING = "string"
    TEXT = "text"  # free-text search
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


class HttpVerb(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class OperationKind(str, Enum):
    QUERY = "query"
    MUTATION = "mutation"


class OperationAction(str, Enum):
    """What a generated handler does once it holds a store connection."""

    LIST = "list"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ADD_ITEM = "add_item"
    UPDATE_ITEM = "update_item"
    REMOVE_ITEM = "remove_item"


class PredicateOperator(str, Enum):
    EQUALS = "equals"
    REGEX_MATCH = "regexMatch"


class AuthStrategy(str, Enum):
    """Session check used by the FastAPI adapter."""

    NONE = "none"
    API_KEY = "api_key"


# Plain values: models store enum values, and str-Enum members hash by name.
ITEM_ACTIONS: FrozenSet[str] = frozenset(
    {OperationAction.ADD_ITEM.value, OperationAction.UPDATE_ITEM.value, OperationAction.REMOVE_ITEM.value}
)

_VERB_DEFAULT_ACTIONS: Dict[str, OperationAction] = {
    "POST": OperationAction.CREATE,
    "PUT": OperationAction.UPDATE,
    "PATCH": OperationAction.UPDATE,
    "DELETE": OperationAction.DELETE,
}


# ---------------------------------------------------------------------------
# Mixin: shared model configuration
# ---------------------------------------------------------------------------

_SHARED_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    validate_assignment=True,
    use_enum_values=True,
    frozen=False,
    extra="forbid",
)

_FROZEN_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    use_enum_values=True,
    frozen=True,
    extra="forbid",
)


# ---------------------------------------------------------------------------
# TypeModel: synthesis input
# ---------------------------------------------------------------------------


class FieldSpec(BaseModel):
    """
    One named field of a ``TypeModel``.

    ``default`` is only meaningful when it was given explicitly; use
    ``has_default`` rather than testing it against ``None``.
    """

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Field name.")
    kind: FieldKind = Field(..., description="Structural kind.")
    type: Optional[PrimitiveType] = Field(
        default=None, description="Primitive type (primitive kind only)."
    )
    element_type: Optional[PrimitiveType] = Field(
        default=None, description="Element type for arrays of primitives."
    )
    nested_model: Optional[TypeModel] = Field(
        default=None, description="Embedded structure (nested kind or array of nested)."
    )
    reference: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Name of an externally stored model (reference kind or array of references).",
    )
    optional: bool = Field(default=False, description="May the field be omitted?")
    required: Optional[bool] = Field(
        default=None,
        description="Explicit required flag from the source description, if any.",
    )
    default: Any = Field(default=None, description="Explicit default value.")
    enum_values: Optional[List[Any]] = Field(default=None, min_length=1)
    pattern: Optional[str] = Field(default=None, description="Regex a string value must match.")
    minimum: Optional[float] = Field(default=None)
    maximum: Optional[float] = Field(default=None)
    max_length: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = Field(default=None)

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as exc:
                raise ValueError(f"Invalid regex pattern {v!r}: {exc}") from exc
        return v

    @model_validator(mode="after")
    def _validate_kind_payload(self) -> "FieldSpec":
        if self.kind == FieldKind.PRIMITIVE and self.type is None:
            raise ValueError(f"Primitive field '{self.name}' needs a 'type'.")
        if self.kind == FieldKind.NESTED and self.nested_model is None:
            raise ValueError(f"Nested field '{self.name}' needs a 'nested_model'.")
        if self.kind == FieldKind.REFERENCE and not self.reference:
            raise ValueError(f"Reference field '{self.name}' needs a 'reference' model name.")
        if self.kind == FieldKind.ARRAY:
            payloads: int = sum(
                1 for p in (self.element_type, self.nested_model, self.reference) if p is not None
            )
            if payloads != 1:
                raise ValueError(
                    f"Array field '{self.name}' needs exactly one of "
                    f"'element_type', 'nested_model' or 'reference'."
                )
        return self

    def __repr__(self) -> str:
        opt: str = " optional" if self.optional else ""
        return f"<FieldSpec {self.name} {self.kind}{opt}>"


class TypeModel(BaseModel):
    """Ordered structural description of a data shape."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Model name (PascalCase).")
    fields: List[FieldSpec] = Field(default_factory=list, description="Ordered fields.")
    timestamps: bool = Field(
        default=True, description="Inject creation/modification timestamp fields."
    )
    collection: Optional[str] = Field(
        default=None, description="Storage collection (defaults to snake_case plural)."
    )

    @property
    def collection_name(self) -> str:
        return self.collection or to_plural(to_snake_case(self.name))

    @model_validator(mode="after")
    def _validate_unique_field_names(self) -> "TypeModel":
        names: List[str] = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            dupes: List[str] = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate field names in model '{self.name}': {dupes}")
        return self

    def get_field(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def __repr__(self) -> str:
        return f"<TypeModel {self.name} ({len(self.fields)} fields)>"


FieldSpec.model_rebuild()


# ---------------------------------------------------------------------------
# SchemaDescriptor: synthesis output
# ---------------------------------------------------------------------------


class FieldValidator(BaseModel):
    """Field-level validation rule attached to a schema field."""

    model_config = _FROZEN_CONFIG

    enum_values: Optional[List[Any]] = None
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    max_length: Optional[int] = None

    def check(self, value: Any) -> List[str]:
        """Return the rule violations for a single (non-repeated) value."""
        problems: List[str] = []
        if self.enum_values is not None and value not in self.enum_values:
            problems.append(f"must be one of {self.enum_values}")
        if self.pattern is not None and isinstance(value, str):
            if re.search(self.pattern, value) is None:
                problems.append(f"must match pattern {self.pattern!r}")
        if self.max_length is not None and isinstance(value, str):
            if len(value) > self.max_length:
                problems.append(f"must be at most {self.max_length} characters")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.minimum is not None and value < self.minimum:
                problems.append(f"must be >= {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                problems.append(f"must be <= {self.maximum}")
        return problems


class SchemaField(BaseModel):
    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1)
    storage_type: StorageType
    repeated: bool = False
    ref: Optional[str] = Field(default=None, description="Referenced model name.")
    required: bool = False
    default: Any = None
    has_default: bool = False
    validator: Optional[FieldValidator] = None
    sub_schema: Optional[SchemaDescriptor] = None
    system_managed: bool = False

    def __repr__(self) -> str:
        rep: str = "[]" if self.repeated else ""
        req: str = " required" if self.required else ""
        return f"<SchemaField {self.name} {self.storage_type}{rep}{req}>"


class SchemaDescriptor(BaseModel):
    """
    Validated storage schema derived from one ``TypeModel``.

    ``fields`` holds the explicit fields in input order; ``system_fields``
    holds the injected identity and timestamp fields.
    """

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1)
    collection: Optional[str] = None
    fields: List[SchemaField] = Field(default_factory=list)
    system_fields: List[SchemaField] = Field(default_factory=list)
    timestamps: bool = True

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def all_fields(self) -> List[SchemaField]:
        return list(self.system_fields) + list(self.fields)

    def get_field(self, name: str) -> Optional[SchemaField]:
        for f in self.all_fields:
            if f.name == name:
                return f
        return None

    def fingerprint(self) -> str:
        """Comparison-stable digest of the whole descriptor tree."""
        canonical: str = json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        return sha256_hex(canonical)

    def __repr__(self) -> str:
        return (
            f"<SchemaDescriptor {self.name} "
            f"({len(self.fields)} fields, {len(self.system_fields)} system)>"
        )


SchemaField.model_rebuild()


# ---------------------------------------------------------------------------
# OperationSpec: handler input
# ---------------------------------------------------------------------------


class ParameterSpec(BaseModel):
    """A named request parameter and the document field it targets."""

    model_config = _FROZEN_CONFIG

    type: ParamType = Field(default=ParamType.STRING)
    required: bool = False
    field: Optional[str] = Field(
        default=None, description="Document field (defaults to the parameter name)."
    )
    enum_values: Optional[List[str]] = Field(default=None, min_length=1)
    description: Optional[str] = None


class SortKey(BaseModel):
    model_config = _FROZEN_CONFIG

    field: str = Field(..., min_length=1)
    descending: bool = True


class OperationSpec(BaseModel):
    """Declaration of one API operation; consumed read-only."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1, description="Target TypeModel name.")
    verb: HttpVerb = HttpVerb.GET
    kind: OperationKind = OperationKind.QUERY
    action: Optional[OperationAction] = None
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    pagination: bool = False
    path: Optional[str] = None
    target_field: Optional[str] = Field(
        default=None, description="Embedded array targeted by item actions."
    )
    id_param: str = "id"
    item_id_param: str = "item_id"
    page_param: str = "page"
    page_size_param: str = "pageSize"
    sort: List[SortKey] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _derive_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("action") is None:
            kind: Any = data.get("kind", OperationKind.QUERY)
            kind = getattr(kind, "value", kind)
            if kind == OperationKind.QUERY.value:
                action: OperationAction = OperationAction.LIST
            else:
                verb: Any = data.get("verb", HttpVerb.GET)
                verb = str(getattr(verb, "value", verb)).upper()
                action = _VERB_DEFAULT_ACTIONS.get(verb, OperationAction.UPDATE)
            data = {**data, "action": action}
        return data

    @model_validator(mode="after")
    def _validate_action_matches_kind(self) -> "OperationSpec":
        if self.kind == OperationKind.QUERY and self.action != OperationAction.LIST:
            raise ValueError(f"Query operation '{self.name}' can only use the 'list' action.")
        if self.kind == OperationKind.MUTATION and self.action == OperationAction.LIST:
            raise ValueError(f"Mutation operation '{self.name}' cannot use the 'list' action.")
        if self.action in ITEM_ACTIONS and not self.target_field:
            raise ValueError(
                f"Operation '{self.name}' uses item action '{self.action}' "
                f"but names no 'target_field'."
            )
        return self

    @property
    def is_query(self) -> bool:
        return self.kind == OperationKind.QUERY

    def field_for(self, param_name: str) -> str:
        param: Optional[ParameterSpec] = self.parameters.get(param_name)
        if param is None or not param.field:
            return param_name
        return param.field

    def route_path(self) -> str:
        """Explicit ``path`` or the conventional one for the action."""
        if self.path:
            return self.path
        base: str = model_to_route_prefix(self.model)
        if self.action in (OperationAction.LIST.value, OperationAction.CREATE.value):
            return base
        base = f"{base}/{{{self.id_param}}}"
        if self.action in ITEM_ACTIONS:
            base = f"{base}/{to_kebab_case(self.target_field or '')}"
            if self.action != OperationAction.ADD_ITEM.value:
                base = f"{base}/{{{self.item_id_param}}}"
        return base

    def __repr__(self) -> str:
        return f"<OperationSpec {self.name} {self.verb} {self.kind}/{self.action} → {self.model}>"


# ---------------------------------------------------------------------------
# Date values
# ---------------------------------------------------------------------------


def canonical_date(value: Any) -> Any:
    """
    Return the stored JSON form of a date value.

    Datetimes are moved to UTC (naive ones are taken as UTC) and rendered
    with a ``Z`` suffix, so ``+00:00``, ``.000Z`` and other spellings of one
    instant become the same string.  Plain dates render as ``YYYY-MM-DD``.
    Strings are parsed first; anything that is not a date comes back as is.
    """
    if isinstance(value, str):
        text: str = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(
                    text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
                )
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return to_jsonable_python(value.astimezone(timezone.utc))
    if isinstance(value, date):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Per-request objects
# ---------------------------------------------------------------------------


class PredicateTerm(BaseModel):
    model_config = _FROZEN_CONFIG

    field: str
    operator: PredicateOperator
    value: Any

    @property
    def pattern(self) -> str:
        """Escaped regex for ``regexMatch`` terms (substring semantics)."""
        return re.escape(str(self.value))

    @property
    def options(self) -> str:
        return "i" if self.operator == PredicateOperator.REGEX_MATCH else ""

    def matches(self, document: Mapping[str, Any]) -> bool:
        actual: Any = document.get(self.field)
        if self.operator == PredicateOperator.REGEX_MATCH:
            candidates: List[Any] = actual if isinstance(actual, list) else [actual]
            return any(
                c is not None and re.search(self.pattern, str(c), re.IGNORECASE) is not None
                for c in candidates
            )
        expected: Any = self.value
        if isinstance(expected, (date, datetime)):
            # Compare instants, not spellings.
            expected = canonical_date(expected)
            candidates = actual if isinstance(actual, list) else [actual]
            return any(canonical_date(c) == expected for c in candidates)
        if isinstance(actual, list):
            return expected in actual
        return actual == expected


class FilterExpression(BaseModel):
    """Conjunction of predicate terms, in parameter declaration order."""

    model_config = _SHARED_CONFIG

    terms: List[PredicateTerm] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.terms

    def matches(self, document: Mapping[str, Any]) -> bool:
        return all(term.matches(document) for term in self.terms)

    def as_query(self) -> Dict[str, Any]:
        """Render as a document-store query mapping."""
        clauses: List[Dict[str, Any]] = []
        for term in self.terms:
            if term.operator == PredicateOperator.REGEX_MATCH:
                clauses.append({term.field: {"$regex": term.pattern, "$options": term.options}})
            else:
                clauses.append({term.field: term.value})
        fields: Set[str] = {t.field for t in self.terms}
        if len(fields) == len(clauses):
            merged: Dict[str, Any] = {}
            for clause in clauses:
                merged.update(clause)
            return merged
        return {"$and": clauses}

    def __repr__(self) -> str:
        inner: str = " AND ".join(f"{t.field} {t.operator} {t.value!r}" for t in self.terms)
        return f"<FilterExpression {inner or 'ALL'}>"


class PageBounds(BaseModel):
    model_config = _SHARED_CONFIG

    skip: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1)

    @classmethod
    def unbounded(cls) -> "PageBounds":
        return cls()


class ErrorBody(BaseModel):
    model_config = _SHARED_CONFIG

    message: str
    status_code: int = Field(..., ge=400, le=599)


class ResponseEnvelope(BaseModel):
    """Uniform handler output: exactly one of success / error is populated."""

    model_config = _SHARED_CONFIG

    data: Any = None
    total: Optional[int] = Field(default=None, ge=0)
    error: Optional[ErrorBody] = None

    @model_validator(mode="after")
    def _exactly_one_branch(self) -> "ResponseEnvelope":
        if self.error is not None:
            if self.data is not None or self.total is not None:
                raise ValueError("An error envelope cannot also carry data or total.")
        elif self.data is None:
            raise ValueError("A success envelope must carry data.")
        return self

    @classmethod
    def success(cls, data: Any, total: Optional[int] = None) -> "ResponseEnvelope":
        return cls(data=data, total=total)

    @classmethod
    def failure(cls, message: str, status_code: int) -> "ResponseEnvelope":
        return cls(error=ErrorBody(message=message, status_code=status_code))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_payload(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"error": {"message": self.error.message, "statusCode": self.error.status_code}}
        payload: Dict[str, Any] = {"data": self.data}
        if self.total is not None:
            payload["total"] = self.total
        return payload


# ---------------------------------------------------------------------------
# Generation configuration
# ---------------------------------------------------------------------------


class GenerationConfig(BaseModel):
    """
    Settings shared by synthesis, query building and the generated handlers.

    Loaded from the ``config:`` section of a definitions file; every value
    has a default so an empty section is valid.
    """

    model_config = _SHARED_CONFIG

    # -- System-managed fields ----------------------------------------------
    identity_field: str = Field(default="id", min_length=1)
    created_field: str = Field(default="created_at", min_length=1)
    updated_field: str = Field(default="updated_at", min_length=1)

    # -- Synthesis policy ---------------------------------------------------
    auto_array_defaults: bool = Field(
        default=True,
        description="Give arrays without an explicit default an empty-sequence default.",
    )
    default_relaxes_required: bool = Field(
        default=True,
        description="A field with a default is never required, even if declared required.",
    )
    max_nesting_depth: int = Field(default=16, ge=1, le=256)

    # -- Queries ------------------------------------------------------------
    default_page_size: int = Field(default=10, ge=1, le=1000)
    max_page_size: int = Field(default=100, ge=1, le=10000)

    # -- Hosting adapter ----------------------------------------------------
    api_prefix: str = Field(default="/api/v1")
    auth_strategy: AuthStrategy = Field(default=AuthStrategy.NONE)
    api_key_header: str = Field(default="X-API-Key", min_length=1)
    api_key: Optional[str] = Field(default=None)
    database_url: str = Field(default="sqlite:///./crudgen.db")

    @property
    def system_field_names(self) -> Set[str]:
        return {self.identity_field, self.created_field, self.updated_field}

    @model_validator(mode="after")
    def _validate_page_sizes(self) -> "GenerationConfig":
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) must be "
                f"<= max_page_size ({self.max_page_size})."
            )
        return self

    @model_validator(mode="after")
    def _validate_system_names_distinct(self) -> "GenerationConfig":
        if len(self.system_field_names) != 3:
            raise ValueError("identity_field, created_field and updated_field must differ.")
        return self


# ---------------------------------------------------------------------------
# Definition set: top-level container
# ---------------------------------------------------------------------------


class DefinitionSet(BaseModel):
    """All models and operations from one definitions file."""

    model_config = _SHARED_CONFIG

    models: List[TypeModel] = Field(..., min_length=1)
    operations: List[OperationSpec] = Field(default_factory=list)
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    source_file: Optional[str] = None

    @model_validator(mode="after")
    def _validate_unique_names(self) -> "DefinitionSet":
        names: List[str] = [m.name for m in self.models]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate model names: {sorted({n for n in names if names.count(n) > 1})}")
        ops: List[str] = [o.name for o in self.operations]
        if len(ops) != len(set(ops)):
            raise ValueError(f"Duplicate operation names: {sorted({n for n in ops if ops.count(n) > 1})}")
        return self

    def get_model(self, name: str) -> Optional[TypeModel]:
        for m in self.models:
            if m.name == name:
                return m
        return None

    @property
    def type_model_names(self) -> List[str]:
        return [m.name for m in self.models]

    def __repr__(self) -> str:
        return f"<DefinitionSet {len(self.models)} models, {len(self.operations)} operations>"


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
    "FieldKind",
    "PrimitiveType",
    "StorageType",
    "ParamType",
    "HttpVerb",
    "OperationKind",
    "OperationAction",
    "PredicateOperator",
    "AuthStrategy",
    "ITEM_ACTIONS",
    "FieldSpec",
    "TypeModel",
    "FieldValidator",
    "SchemaField",
    "SchemaDescriptor",
    "ParameterSpec",
    "SortKey",
    "OperationSpec",
    "canonical_date",
    "PredicateTerm",
    "FilterExpression",
    "PageBounds",
    "ErrorBody",
    "ResponseEnvelope",
    "GenerationConfig",
    "DefinitionSet",
]

logger.debug("crudgen.models loaded — %d public symbols.", len(__all__))
