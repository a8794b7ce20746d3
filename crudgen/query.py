# File: crudgen/query.py
"""
NexaFlow CrudGen - Query Builder
==================================
Turns an ``OperationSpec`` of kind ``query`` plus the raw request parameters
into a ``FilterExpression`` and ``PageBounds``.

Operator policy (fixed per parameter type):

    identifier, enum, string   → equals (exact match)
    text                       → regexMatch (case-insensitive substring)
    number, boolean, date      → equals on the coerced value

Parameters that are empty after coercion produce no term, so an optional
filter that the caller leaves blank matches everything.  Terms follow the
parameter declaration order of the operation.  Nothing here suspends or touches
a store.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from crudgen.errors import (
    InvalidPaginationError,
    InvalidParameterError,
    MissingParameterError,
)
from crudgen.models import (
    FilterExpression,
    GenerationConfig,
    OperationSpec,
    PageBounds,
    ParameterSpec,
    ParamType,
    PredicateOperator,
    PredicateTerm,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.query")

_OPERATOR_POLICY: Dict[str, PredicateOperator] = {
    ParamType.IDENTIFIER.value: PredicateOperator.EQUALS,
    ParamType.ENUM.value: PredicateOperator.EQUALS,
    ParamType.STRING.value: PredicateOperator.EQUALS,
    ParamType.TEXT.value: PredicateOperator.REGEX_MATCH,
    ParamType.NUMBER.value: PredicateOperator.EQUALS,
    ParamType.BOOLEAN.value: PredicateOperator.EQUALS,
    ParamType.DATE.value: PredicateOperator.EQUALS,
}

_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "off"})


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _parse_date(name: str, text: str) -> Any:
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError as exc:
        raise InvalidParameterError(name, "expected an ISO-8601 date") from exc


def _parse_number(name: str, raw: Any) -> Any:
    if isinstance(raw, bool):
        raise InvalidParameterError(name, "expected a number")
    if isinstance(raw, (int, float)):
        number: Any = raw
    else:
        text: str = str(raw)
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError as exc:
                raise InvalidParameterError(name, "expected a number") from exc
    if isinstance(number, float) and not math.isfinite(number):
        raise InvalidParameterError(name, "expected a finite number")
    return number


def _parse_boolean(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    word: str = str(raw).lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise InvalidParameterError(name, "expected true or false")


def coerce_parameter(name: str, param: ParameterSpec, raw: Any) -> Optional[Any]:
    """
    Coerce one raw request value to the parameter's declared type.

    Returns ``None`` when the value is absent or empty.
    """
    if isinstance(raw, (list, tuple)):
        raw = raw[-1] if raw else None
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None

    ptype: str = getattr(param.type, "value", param.type)
    if ptype == ParamType.NUMBER.value:
        return _parse_number(name, raw)
    if ptype == ParamType.BOOLEAN.value:
        return _parse_boolean(name, raw)
    if ptype == ParamType.DATE.value:
        if isinstance(raw, (date, datetime)):
            return raw
        return _parse_date(name, str(raw))

    value: str = str(raw)
    if ptype == ParamType.ENUM.value and param.enum_values and value not in param.enum_values:
        raise InvalidParameterError(name, f"expected one of {param.enum_values}")
    return value


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class QueryBuilder:
    """Stateless; one instance can serve every request of every operation."""

    def __init__(self, config: Optional[GenerationConfig] = None) -> None:
        self._config: GenerationConfig = config or GenerationConfig()

    def build_filter(
        self,
        spec: OperationSpec,
        params: Mapping[str, Any],
    ) -> Tuple[FilterExpression, PageBounds]:
        paging_params = (
            {spec.page_param, spec.page_size_param} if spec.pagination else set()
        )
        terms: List[PredicateTerm] = []

        for name, param in spec.parameters.items():
            if name in paging_params:
                continue
            value: Optional[Any] = coerce_parameter(name, param, params.get(name))
            if value is None:
                if param.required:
                    raise MissingParameterError(name)
                continue
            terms.append(
                PredicateTerm(
                    field=spec.field_for(name),
                    operator=_OPERATOR_POLICY[getattr(param.type, "value", param.type)],
                    value=value,
                )
            )

        expression: FilterExpression = FilterExpression(terms=terms)
        bounds: PageBounds = self.page_bounds(spec, params)
        logger.debug("Built %r with %r for '%s'.", expression, bounds, spec.name)
        return expression, bounds

    def page_bounds(self, spec: OperationSpec, params: Mapping[str, Any]) -> PageBounds:
        if not spec.pagination:
            return PageBounds.unbounded()
        page: int = self._positive_int(spec.page_param, params.get(spec.page_param), 1)
        page_size: int = self._positive_int(
            spec.page_size_param,
            params.get(spec.page_size_param),
            self._config.default_page_size,
        )
        if page_size > self._config.max_page_size:
            raise InvalidPaginationError(
                f"'{spec.page_size_param}' must not exceed {self._config.max_page_size}."
            )
        return PageBounds(
            skip=(page - 1) * page_size,
            limit=page_size,
            page=page,
            page_size=page_size,
        )

    @staticmethod
    def _positive_int(name: str, raw: Any, default: int) -> int:
        if isinstance(raw, (list, tuple)):
            raw = raw[-1] if raw else None
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return default
        if isinstance(raw, bool):
            raise InvalidPaginationError(f"'{name}' must be a positive integer.")
        try:
            value: int = raw if isinstance(raw, int) else int(str(raw).strip())
        except ValueError as exc:
            raise InvalidPaginationError(f"'{name}' must be a positive integer.") from exc
        if value < 1:
            raise InvalidPaginationError(f"'{name}' must be a positive integer.")
        return value


def build_filter(
    spec: OperationSpec,
    params: Mapping[str, Any],
    config: Optional[GenerationConfig] = None,
) -> Tuple[FilterExpression, PageBounds]:
    """Module-level shortcut for ``QueryBuilder(config).build_filter(...)``."""
    return QueryBuilder(config).build_filter(spec, params)


__all__: List[str] = ["QueryBuilder", "build_filter", "coerce_parameter"]

logger.debug("crudgen.query loaded.")
