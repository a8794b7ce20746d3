# File: crudgen/__init__.py
"""
NexaFlow CrudGen — Schema & CRUD Handler Generator
====================================================

Turns structural type descriptions and declarative operation specs (JSON or
YAML) into validated storage schemas and ready-to-mount request handlers:
queries with filtering and pagination, and create / update / delete
mutations, including atomic edits of embedded array items.

Architecture overview::

    ┌──────────────┐     ┌──────────────────┐     ┌───────────────────┐
    │  CLI / Entry │────▶│ ArtifactGenerator │────▶│ SchemaSynthesizer │
    │   (cli.py)   │     │  (generator.py)   │     │ (synthesizer.py)  │
    └──────────────┘     └────────┬─────────┘     └───────────────────┘
                                  │
                     ┌────────────┼─────────────┐
                     ▼            ▼             ▼
              ┌──────────┐ ┌────────────┐ ┌────────────┐
              │validators│ │  handler   │ │    web     │
              │  (.py)   │ │ + query.py │ │ + store.py │
              └──────────┘ └────────────┘ └────────────┘

Usage::

    # As a library
    from crudgen import ArtifactGenerator, build_handlers
    report = ArtifactGenerator().generate_from_file("definitions.yaml")
    handlers = build_handlers(report, provider_factory)

    # From the command line
    python -m crudgen --definitions definitions.yaml --serve

Public API:
    - ArtifactGenerator  — Master orchestrator
    - SchemaSynthesizer  — TypeModel → SchemaDescriptor
    - QueryBuilder       — request parameters → FilterExpression + PageBounds
    - OperationHandler   — per-operation request state machine
    - validate_full      — Definitions validation entry point

The FastAPI adapter (``crudgen.web``) and the SQLAlchemy reference store
(``crudgen.store``) are imported on demand.
"""

from __future__ import annotations

__version__: str = "1.0.0"
__author__: str = "NexaFlow Team"
__license__: str = "MIT"

from crudgen.errors import (
    CrudGenError,
    DefinitionError,
    DocumentValidationError,
    InvalidPaginationError,
    InvalidParameterError,
    MissingParameterError,
    ModelCycleError,
    NotFoundError,
    RequestError,
    SchemaConflictError,
    SynthesisError,
    Unauthorized,
    Unavailable,
    UnexpectedStoreError,
    UnknownKindError,
    ValidationGapError,
)
from crudgen.models import (
    DefinitionSet,
    FieldKind,
    FieldSpec,
    FilterExpression,
    GenerationConfig,
    OperationSpec,
    PageBounds,
    ParameterSpec,
    PredicateTerm,
    ResponseEnvelope,
    SchemaDescriptor,
    SchemaField,
    TypeModel,
)
from crudgen.synthesizer import SchemaSynthesizer, synthesize
from crudgen.query import QueryBuilder, build_filter
from crudgen.handler import HandlerOutcome, HandlerState, OperationHandler
from crudgen.validators import ValidationResult, validate_full
from crudgen.loader import load_definitions, parse_definitions
from crudgen.generator import ArtifactGenerator, GenerationReport, build_handlers

# ---------------------------------------------------------------------------
# Public API surface
# ---------------------------------------------------------------------------

__all__: list[str] = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Core orchestrator
    "ArtifactGenerator",
    "GenerationReport",
    "build_handlers",
    # Definitions
    "load_definitions",
    "parse_definitions",
    "validate_full",
    "ValidationResult",
    # Models
    "DefinitionSet",
    "FieldKind",
    "FieldSpec",
    "TypeModel",
    "SchemaDescriptor",
    "SchemaField",
    "OperationSpec",
    "ParameterSpec",
    "PredicateTerm",
    "FilterExpression",
    "PageBounds",
    "ResponseEnvelope",
    "GenerationConfig",
    # Synthesis and requests
    "SchemaSynthesizer",
    "synthesize",
    "QueryBuilder",
    "build_filter",
    "OperationHandler",
    "HandlerOutcome",
    "HandlerState",
    # Errors
    "CrudGenError",
    "DefinitionError",
    "SynthesisError",
    "UnknownKindError",
    "ValidationGapError",
    "ModelCycleError",
    "SchemaConflictError",
    "RequestError",
    "MissingParameterError",
    "InvalidParameterError",
    "InvalidPaginationError",
    "DocumentValidationError",
    "Unauthorized",
    "NotFoundError",
    "Unavailable",
    "UnexpectedStoreError",
]
