# File: crudgen/errors.py
"""
NexaFlow CrudGen - Error Taxonomy
===================================
Every failure the generator or a generated handler can produce is a
``CrudGenError`` subclass.  Each class carries the status code the handler
boundary maps it to and the message a caller is allowed to see.

Construction-time errors (schema synthesis, definition parsing) are raised
to whoever builds the artifact.  Request-time errors are caught once, at the
``OperationHandler`` boundary, and turned into a ``ResponseEnvelope``.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.errors")


class CrudGenError(Exception):
    """Root of the taxonomy.  Unmapped subclasses surface as 500."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, message: str = "", *, public_message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


# ---------------------------------------------------------------------------
# Construction-time errors
# ---------------------------------------------------------------------------


class DefinitionError(CrudGenError):
    """A definitions file could not be loaded or parsed."""


class SynthesisError(CrudGenError):
    """Base class for failures while deriving a SchemaDescriptor."""

    def __init__(self, message: str, *, model: str = "", field: str = "") -> None:
        super().__init__(message)
        self.model: str = model
        self.field: str = field


class UnknownKindError(SynthesisError):
    """A field's kind is not one of primitive / array / nested / reference."""


class ValidationGapError(SynthesisError):
    """A required field can never receive a valid value."""


class ModelCycleError(SynthesisError):
    """Nested models refer back to an ancestor, or nest deeper than allowed."""


class SchemaConflictError(SynthesisError):
    """An explicit field collides with a system-managed field."""


# ---------------------------------------------------------------------------
# Request-time errors
# ---------------------------------------------------------------------------


class RequestError(CrudGenError):
    """The caller sent something the operation cannot accept."""

    status_code = 400
    public_message = "Bad request"

    def __init__(self, message: str, *, public_message: Optional[str] = None) -> None:
        # Client errors describe the caller's own input, so by default the
        # message is returned verbatim.
        super().__init__(message, public_message=public_message or message)


class MissingParameterError(RequestError):
    def __init__(self, parameter: str) -> None:
        super().__init__(f"Missing required parameter '{parameter}'.")
        self.parameter: str = parameter


class InvalidParameterError(RequestError):
    def __init__(self, parameter: str, reason: str) -> None:
        super().__init__(f"Invalid value for parameter '{parameter}': {reason}.")
        self.parameter: str = parameter


class InvalidPaginationError(RequestError):
    pass


def _top_level_field(problem: str) -> str:
    """``notes[0].text: is required`` → ``notes``."""
    path: str = problem.split(":", 1)[0]
    return re.split(r"[.\[]", path, maxsplit=1)[0]


class DocumentValidationError(RequestError):
    """
    A document failed the field-level rules of its SchemaDescriptor.

    The caller is told which top-level fields were rejected; the full
    problem list stays on ``problems`` and in the exception text for the log.
    """

    def __init__(self, problems: List[str]) -> None:
        fields: List[str] = sorted({_top_level_field(p) for p in problems})
        super().__init__(
            "Document validation failed: " + "; ".join(problems),
            public_message="Document validation failed for field(s): " + ", ".join(fields) + ".",
        )
        self.problems: List[str] = list(problems)


class Unauthorized(CrudGenError):
    status_code = 401
    public_message = "Unauthorized"


class NotFoundError(CrudGenError):
    """The target document (or a sub-element inside it) does not exist."""

    status_code = 404
    public_message = "Not found"

    def __init__(self, message: str = "Document not found") -> None:
        super().__init__(message, public_message=message)


class Unavailable(CrudGenError):
    """The store connection could not be acquired."""


class UnexpectedStoreError(CrudGenError):
    """Anything the store raised that the taxonomy does not name."""


# ---------------------------------------------------------------------------
# Module-level exports
# ---------------------------------------------------------------------------

__all__: List[str] = [
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

logger.debug("crudgen.errors loaded — %d public symbols.", len(__all__))
