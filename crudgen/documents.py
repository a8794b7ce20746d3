# File: crudgen/documents.py
"""
NexaFlow CrudGen - Document Rules
===================================
Applies a ``SchemaDescriptor`` to concrete documents: defaults, storage-type
checks, field validators, identities for new documents and embedded array
items, and timestamps.

Used by the synthesizer (to check explicit defaults against their own field)
and by the mutation routines of ``OperationHandler``.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from crudgen.errors import DocumentValidationError
from crudgen.models import (
    GenerationConfig,
    SchemaDescriptor,
    SchemaField,
    StorageType,
    canonical_date,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.documents")

Document = Dict[str, Any]


def new_identifier() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Type checks
# ---------------------------------------------------------------------------


def _is_date_like(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if isinstance(value, str):
        text: str = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            datetime.fromisoformat(text)
        except ValueError:
            return False
        return True
    return False


def _storage_type_ok(storage_type: str, value: Any) -> bool:
    if storage_type == StorageType.STRING.value:
        return isinstance(value, str)
    if storage_type == StorageType.IDENTIFIER.value:
        return isinstance(value, str) and bool(value)
    if storage_type == StorageType.NUMBER.value:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if storage_type == StorageType.BOOLEAN.value:
        return isinstance(value, bool)
    if storage_type == StorageType.DATE.value:
        return _is_date_like(value)
    if storage_type == StorageType.EMBEDDED.value:
        return isinstance(value, Mapping)
    return False


def _single_value_problems(field: SchemaField, value: Any, path: str) -> List[str]:
    storage: str = getattr(field.storage_type, "value", field.storage_type)
    if not _storage_type_ok(storage, value):
        return [f"{path}: expected {storage}, got {type(value).__name__}"]
    if storage == StorageType.EMBEDDED.value:
        if field.sub_schema is None:
            return []
        return document_problems(field.sub_schema, value, prefix=f"{path}.")
    if field.validator is not None:
        return [f"{path}: {p}" for p in field.validator.check(value)]
    return []


def value_problems(field: SchemaField, value: Any, path: Optional[str] = None) -> List[str]:
    """Storage-type and validator violations of one field value."""
    path = path or field.name
    if field.repeated:
        if not isinstance(value, list):
            return [f"{path}: expected a list"]
        problems: List[str] = []
        for index, item in enumerate(value):
            problems.extend(_single_value_problems(field, item, f"{path}[{index}]"))
        return problems
    return _single_value_problems(field, value, path)


def document_problems(
    descriptor: SchemaDescriptor,
    document: Mapping[str, Any],
    *,
    partial: bool = False,
    prefix: str = "",
) -> List[str]:
    """
    Every rule violation of *document* against *descriptor*.

    With ``partial=True`` missing required fields are not reported; this is
    how a change set is checked before it is merged into a stored document.
    An explicit ``None`` for a required field is reported either way.
    """
    problems: List[str] = []
    known: Dict[str, SchemaField] = {f.name: f for f in descriptor.all_fields}

    for key in document:
        if key not in known:
            problems.append(f"{prefix}{key}: unknown field")

    for field in descriptor.fields:
        value: Any = document.get(field.name)
        if value is None:
            if field.required and (not partial or field.name in document):
                problems.append(f"{prefix}{field.name}: is required")
            continue
        problems.extend(value_problems(field, value, f"{prefix}{field.name}"))

    return problems


def validate_document(
    descriptor: SchemaDescriptor,
    document: Mapping[str, Any],
    *,
    partial: bool = False,
) -> None:
    problems: List[str] = document_problems(descriptor, document, partial=partial)
    if problems:
        logger.debug("Document rejected by schema '%s': %s", descriptor.name, problems)
        raise DocumentValidationError(problems)


# ---------------------------------------------------------------------------
# Defaults, identities and timestamps
# ---------------------------------------------------------------------------


def apply_defaults(descriptor: SchemaDescriptor, document: Mapping[str, Any]) -> Document:
    """Return a copy of *document* with every missing defaulted field filled in."""
    result: Document = dict(document)
    for field in descriptor.fields:
        if result.get(field.name) is None and field.has_default:
            result[field.name] = copy.deepcopy(field.default)
        value: Any = result.get(field.name)
        if field.sub_schema is None or value is None:
            continue
        if field.repeated and isinstance(value, list):
            result[field.name] = [
                apply_defaults(field.sub_schema, item) if isinstance(item, Mapping) else item
                for item in value
            ]
        elif isinstance(value, Mapping):
            result[field.name] = apply_defaults(field.sub_schema, value)
    return result


def assign_item_identities(
    descriptor: SchemaDescriptor,
    document: Mapping[str, Any],
    config: GenerationConfig,
) -> Document:
    """Give every embedded array item without an identity a fresh one."""
    result: Document = dict(document)
    for field in descriptor.fields:
        value: Any = result.get(field.name)
        if field.sub_schema is None or value is None:
            continue
        if field.repeated and isinstance(value, list):
            items: List[Any] = []
            for item in value:
                if isinstance(item, Mapping):
                    item = assign_item_identities(field.sub_schema, item, config)
                    if item.get(config.identity_field) is None:
                        item[config.identity_field] = new_identifier()
                items.append(item)
            result[field.name] = items
        elif isinstance(value, Mapping):
            result[field.name] = assign_item_identities(field.sub_schema, value, config)
    return result


def canonicalize_dates(descriptor: SchemaDescriptor, document: Mapping[str, Any]) -> Document:
    """
    Return a copy of *document* with every date value in its stored form.

    Covers the explicit fields, embedded documents and arrays included.  Only
    keys present are touched, so a partial change set can go through here as
    well.  System timestamps belong to the stamping functions below.
    """
    result: Document = dict(document)
    for field in descriptor.fields:
        value: Any = result.get(field.name)
        if value is None:
            continue
        storage: str = getattr(field.storage_type, "value", field.storage_type)
        if storage == StorageType.DATE.value:
            if field.repeated and isinstance(value, list):
                result[field.name] = [canonical_date(v) for v in value]
            else:
                result[field.name] = canonical_date(value)
        elif field.sub_schema is not None:
            if field.repeated and isinstance(value, list):
                result[field.name] = [
                    canonicalize_dates(field.sub_schema, item) if isinstance(item, Mapping) else item
                    for item in value
                ]
            elif isinstance(value, Mapping):
                result[field.name] = canonicalize_dates(field.sub_schema, value)
    return result


def stamp_new(
    descriptor: SchemaDescriptor,
    document: Mapping[str, Any],
    config: GenerationConfig,
    now: Optional[datetime] = None,
) -> Document:
    now = now or utcnow()
    result: Document = canonicalize_dates(
        descriptor, assign_item_identities(descriptor, document, config)
    )
    result[config.identity_field] = new_identifier()
    if descriptor.timestamps:
        result[config.created_field] = now
        result[config.updated_field] = now
    return result


def touch(
    descriptor: SchemaDescriptor,
    document: Mapping[str, Any],
    config: GenerationConfig,
    now: Optional[datetime] = None,
) -> Document:
    result: Document = canonicalize_dates(
        descriptor, assign_item_identities(descriptor, document, config)
    )
    if descriptor.timestamps:
        result[config.updated_field] = now or utcnow()
    return result


__all__: List[str] = [
    "Document",
    "new_identifier",
    "utcnow",
    "value_problems",
    "document_problems",
    "validate_document",
    "apply_defaults",
    "assign_item_identities",
    "canonicalize_dates",
    "stamp_new",
    "touch",
]
