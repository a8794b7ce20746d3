# File: crudgen/loader.py
"""
NexaFlow CrudGen - Definitions Loader
=======================================
Reads a definitions file (JSON or YAML) and parses it into a validated
``DefinitionSet``.

File layout::

    config:                     # optional, GenerationConfig fields
      default_page_size: 20
    models:                     # mapping name → model, or list with "name"
      User:
        fields:                 # mapping name → field, or list with "name"
          name: string          # shorthand: primitive type
          nickname: string?     # "?" suffix → optional
          roles: string[]       # "[]" suffix → array of primitives
          address: Address      # model name → embedded structure
          manager: {reference: User}
          age: {type: number, optional: true, minimum: 0}
      Address:
        embedded: true          # only used inside other models
        fields: {street: string, city: string}
    operations:                 # mapping name → operation, or list with "name"
      listUsers:
        model: User
        verb: GET
        pagination: true
        parameters:
          name: text
          role: {type: string, field: roles}

Field kinds are inferred when ``kind`` is absent.  Nested models may be
named (resolved against ``models``) or given inline; resolution walks the
names with an explicit stack so a model that embeds itself is reported as
``ModelCycleError`` instead of recursing forever.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError

from crudgen.errors import DefinitionError, ModelCycleError, UnknownKindError
from crudgen.models import (
    DefinitionSet,
    FieldKind,
    FieldSpec,
    GenerationConfig,
    HttpVerb,
    OperationKind,
    OperationSpec,
    ParameterSpec,
    PrimitiveType,
    SortKey,
    TypeModel,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.loader")

_PRIMITIVES = frozenset(p.value for p in PrimitiveType)
_KINDS = frozenset(k.value for k in FieldKind)

# Keys copied verbatim from a raw field onto FieldSpec.
_FIELD_PASSTHROUGH: Tuple[str, ...] = (
    "required",
    "pattern",
    "max_length",
    "description",
)
_FIELD_ALIASES: Dict[str, str] = {
    "enum": "enum_values",
    "enum_values": "enum_values",
    "min": "minimum",
    "minimum": "minimum",
    "max": "maximum",
    "maximum": "maximum",
}


# ---------------------------------------------------------------------------
# File loading
# ---------------------------------------------------------------------------


def _load_json_file(path: Path) -> Dict[str, Any]:
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DefinitionError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise DefinitionError(
            f"Expected a JSON object at top level, got {type(data).__name__}."
        )
    return data


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise DefinitionError(
            f"Expected a YAML mapping at top level, got {type(data).__name__}."
        )
    return data


def load_definition_file(path: Path) -> Dict[str, Any]:
    """
    Load a definitions file (JSON or YAML), dispatching on the extension.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        DefinitionError: If the file can't be parsed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Definitions file not found: {path}")
    if not path.is_file():
        raise DefinitionError(f"Definitions path is not a file: {path}")

    suffix: str = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _load_yaml_file(path)
    if suffix == ".json":
        return _load_json_file(path)

    # YAML is a superset of JSON.
    logger.info("Unknown extension '%s' — parsing as YAML.", suffix)
    return _load_yaml_file(path)


# ---------------------------------------------------------------------------
# Raw → model helpers
# ---------------------------------------------------------------------------


def _named_entries(raw: Any, what: str) -> List[Tuple[str, Any]]:
    """Accept either ``{name: spec}`` or ``[{name: ..., ...}]``."""
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        return [(str(name), spec) for name, spec in raw.items()]
    if isinstance(raw, list):
        entries: List[Tuple[str, Any]] = []
        for index, spec in enumerate(raw):
            if not isinstance(spec, Mapping) or not spec.get("name"):
                raise DefinitionError(f"{what} #{index} needs a 'name'.")
            entries.append((str(spec["name"]), {k: v for k, v in spec.items() if k != "name"}))
        return entries
    raise DefinitionError(f"'{what}' must be a mapping or a list, got {type(raw).__name__}.")


class _ModelResolver:
    """Builds ``TypeModel`` trees from raw model entries, resolving names."""

    def __init__(self, raw_models: Dict[str, Mapping[str, Any]], config: GenerationConfig) -> None:
        self._raw: Dict[str, Mapping[str, Any]] = raw_models
        self._config: GenerationConfig = config
        self._built: Dict[str, TypeModel] = {}
        self._stack: List[str] = []

    def resolve(self, name: str) -> TypeModel:
        if name in self._built:
            return self._built[name]
        if name in self._stack:
            cycle: str = " → ".join(self._stack + [name])
            raise ModelCycleError(
                f"Model '{name}' embeds itself ({cycle}); use a reference field instead.",
                model=name,
            )
        if name not in self._raw:
            raise DefinitionError(f"Unknown model '{name}'.")
        model: TypeModel = self._build(name, self._raw[name])
        self._built[name] = model
        return model

    def _build(self, name: str, raw: Mapping[str, Any]) -> TypeModel:
        if len(self._stack) >= self._config.max_nesting_depth:
            raise ModelCycleError(
                f"Model '{name}' nests deeper than {self._config.max_nesting_depth} levels.",
                model=name,
            )
        if not isinstance(raw, Mapping):
            raise DefinitionError(f"Model '{name}' must be a mapping.")

        self._stack.append(name)
        try:
            fields: List[FieldSpec] = [
                self._field(name, field_name, spec)
                for field_name, spec in _named_entries(raw.get("fields"), f"{name}.fields")
            ]
        finally:
            self._stack.pop()

        try:
            return TypeModel(
                name=name,
                fields=fields,
                timestamps=raw.get("timestamps", True),
                collection=raw.get("collection"),
            )
        except ValidationError as exc:
            raise DefinitionError(f"Invalid model '{name}': {exc}") from exc

    def _nested(self, owner: str, field_name: str, ref: Any) -> TypeModel:
        if isinstance(ref, Mapping):
            inline_name: str = str(
                ref.get("name") or f"{owner}{field_name[:1].upper()}{field_name[1:]}"
            )
            return self._build(inline_name, {k: v for k, v in ref.items() if k != "name"})
        return self.resolve(str(ref))

    def _field(self, owner: str, field_name: str, raw: Any) -> FieldSpec:
        if isinstance(raw, str):
            raw = {"type": raw}
        if not isinstance(raw, Mapping):
            raise DefinitionError(f"Field '{owner}.{field_name}' must be a string or a mapping.")

        type_text: Any = raw.get("type")
        optional: bool = bool(raw.get("optional", False))
        is_array: bool = False
        if isinstance(type_text, str):
            if type_text.endswith("?"):
                optional, type_text = True, type_text[:-1]
            if type_text.endswith("[]"):
                is_array, type_text = True, type_text[:-2]
            elif type_text == FieldKind.ARRAY.value:
                is_array, type_text = True, raw.get("items", raw.get("element_type"))

        model_ref: Any = raw.get("model", raw.get("nested_model"))
        reference: Optional[str] = raw.get("reference")
        if isinstance(type_text, str) and type_text not in _PRIMITIVES and model_ref is None:
            model_ref, type_text = type_text, None

        kind: Any = raw.get("kind")
        if kind is None:
            if is_array:
                kind = FieldKind.ARRAY.value
            elif model_ref is not None:
                kind = FieldKind.NESTED.value
            elif reference:
                kind = FieldKind.REFERENCE.value
            else:
                kind = FieldKind.PRIMITIVE.value
        elif kind not in _KINDS:
            raise UnknownKindError(
                f"Field '{owner}.{field_name}' has unknown kind {kind!r}.",
                model=owner,
                field=field_name,
            )

        payload: Dict[str, Any] = {"name": field_name, "kind": kind, "optional": optional}
        if kind == FieldKind.PRIMITIVE.value:
            payload["type"] = type_text
        elif kind == FieldKind.REFERENCE.value:
            payload["reference"] = reference
        elif kind == FieldKind.NESTED.value:
            payload["nested_model"] = self._nested(owner, field_name, model_ref)
        else:
            if model_ref is not None:
                payload["nested_model"] = self._nested(owner, field_name, model_ref)
            elif reference:
                payload["reference"] = reference
            else:
                payload["element_type"] = type_text

        for key in _FIELD_PASSTHROUGH:
            if key in raw:
                payload[key] = raw[key]
        for key, target in _FIELD_ALIASES.items():
            if key in raw:
                payload[target] = raw[key]
        if "default" in raw:
            payload["default"] = raw["default"]

        try:
            return FieldSpec.model_validate(payload)
        except ValidationError as exc:
            raise DefinitionError(f"Invalid field '{owner}.{field_name}': {exc}") from exc


def _parse_parameter(op_name: str, name: str, raw: Any) -> ParameterSpec:
    if raw is None:
        raw = {}
    elif isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Parameter '{op_name}.{name}' must be a string or a mapping.")
    data: Dict[str, Any] = dict(raw)
    if "enum" in data:
        data["enum_values"] = data.pop("enum")
    try:
        return ParameterSpec.model_validate(data)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid parameter '{op_name}.{name}': {exc}") from exc


def _parse_sort(raw: Any) -> List[SortKey]:
    keys: List[SortKey] = []
    for entry in raw or []:
        if isinstance(entry, str):
            descending: bool = entry.startswith("-")
            keys.append(SortKey(field=entry.lstrip("+-"), descending=descending))
        else:
            keys.append(SortKey.model_validate(entry))
    return keys


def _parse_operation(name: str, raw: Any) -> OperationSpec:
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Operation '{name}' must be a mapping.")
    data: Dict[str, Any] = dict(raw)
    verb: str = str(data.pop("method", data.get("verb", HttpVerb.GET.value))).upper()
    data["verb"] = verb
    if "kind" not in data:
        data["kind"] = (
            OperationKind.QUERY.value if verb == HttpVerb.GET.value else OperationKind.MUTATION.value
        )
    params: Any = data.pop("params", data.pop("parameters", None))
    data["parameters"] = {
        pname: _parse_parameter(name, pname, spec)
        for pname, spec in _named_entries(params, f"{name}.parameters")
    }
    if "paginate" in data:
        data["pagination"] = data.pop("paginate")
    if "target" in data:
        data["target_field"] = data.pop("target")
    try:
        data["sort"] = _parse_sort(data.get("sort"))
        return OperationSpec.model_validate({"name": name, **data})
    except ValidationError as exc:
        raise DefinitionError(f"Invalid operation '{name}': {exc}") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_definitions(
    raw: Mapping[str, Any],
    config_overrides: Optional[Mapping[str, Any]] = None,
    *,
    source_file: Optional[str] = None,
) -> DefinitionSet:
    """
    Parse a raw dictionary (from JSON/YAML) into a validated ``DefinitionSet``.

    Expected top-level keys: ``models`` (required), ``operations`` and
    ``config`` (optional).  ``config_overrides`` win over the file's config.

    Raises:
        DefinitionError: On any structural problem.
        UnknownKindError, ModelCycleError: From field resolution.
    """
    config_data: Dict[str, Any] = dict(raw.get("config") or {})
    config_data.update(config_overrides or {})
    try:
        config: GenerationConfig = GenerationConfig.model_validate(config_data)
    except ValidationError as exc:
        raise DefinitionError(f"Config validation failed: {exc}") from exc

    model_entries: List[Tuple[str, Any]] = _named_entries(raw.get("models"), "models")
    if not model_entries:
        raise DefinitionError("Definitions declare no models (expected top-level 'models').")

    raw_models: Dict[str, Mapping[str, Any]] = {}
    for name, spec in model_entries:
        if name in raw_models:
            raise DefinitionError(f"Model '{name}' is defined more than once.")
        raw_models[name] = spec if isinstance(spec, Mapping) else {"fields": spec}

    resolver: _ModelResolver = _ModelResolver(raw_models, config)
    models: List[TypeModel] = [
        resolver.resolve(name)
        for name, spec in raw_models.items()
        if not spec.get("embedded", False)
    ]
    operations: List[OperationSpec] = [
        _parse_operation(name, spec)
        for name, spec in _named_entries(raw.get("operations"), "operations")
    ]

    try:
        definitions: DefinitionSet = DefinitionSet(
            models=models,
            operations=operations,
            config=config,
            source_file=source_file,
        )
    except ValidationError as exc:
        raise DefinitionError(f"Definitions validation failed: {exc}") from exc

    logger.info(
        "Parsed %d model(s) and %d operation(s)%s.",
        len(definitions.models),
        len(definitions.operations),
        f" from {source_file}" if source_file else "",
    )
    return definitions


def load_definitions(
    path: Path,
    config_overrides: Optional[Mapping[str, Any]] = None,
) -> DefinitionSet:
    """``load_definition_file`` + ``parse_definitions`` in one call."""
    path = Path(path)
    return parse_definitions(
        load_definition_file(path),
        config_overrides,
        source_file=str(path),
    )


__all__: List[str] = [
    "load_definition_file",
    "parse_definitions",
    "load_definitions",
]

logger.debug("crudgen.loader loaded.")
