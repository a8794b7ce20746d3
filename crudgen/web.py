# File: crudgen/web.py
"""
NexaFlow CrudGen - FastAPI Adapter
====================================
Mounts generated ``OperationHandler``s on a FastAPI application.

The adapter is deliberately thin: it turns an HTTP request into the opaque
``name → raw value`` mapping the handler expects (query string for queries,
JSON object body for mutations, path parameters for both) and the
``HandlerOutcome`` back into a JSON response.  Every parameter check,
status-code decision and error message belongs to the handler.

Session strategies (``GenerationConfig.auth_strategy``):
    - ``none``     every request is accepted
    - ``api_key``  the ``api_key_header`` must carry ``api_key``
"""

from __future__ import annotations

import contextlib
import hmac
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from crudgen import __version__
from crudgen.errors import Unauthorized
from crudgen.generator import GenerationReport, OperationPlan, build_handlers
from crudgen.handler import (
    ConnectionProvider,
    OperationHandler,
    ResponseSink,
    SessionValidator,
)
from crudgen.models import AuthStrategy, GenerationConfig, ResponseEnvelope, SchemaDescriptor
from crudgen.store import SqlConnectionProvider, create_tables, make_engine

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.web")

SessionFactory = Callable[[Request], SessionValidator]


# ---------------------------------------------------------------------------
# Session validators
# ---------------------------------------------------------------------------


class AllowAllSession:
    async def check(self) -> bool:
        return True


class ApiKeySession:
    """Accepts the request when the presented key matches the configured one."""

    def __init__(self, presented: Optional[str], expected: str) -> None:
        self._presented: Optional[str] = presented
        self._expected: str = expected

    async def check(self) -> bool:
        if not self._presented or not self._expected:
            raise Unauthorized("Missing API key")
        if not hmac.compare_digest(self._presented.encode(), self._expected.encode()):
            raise Unauthorized("Invalid API key")
        return True


def session_factory_for(config: GenerationConfig) -> SessionFactory:
    if config.auth_strategy == AuthStrategy.API_KEY.value:
        header: str = config.api_key_header
        expected: str = config.api_key or ""

        def api_key_session(request: Request) -> SessionValidator:
            return ApiKeySession(request.headers.get(header), expected)

        return api_key_session

    def allow_all(request: Request) -> SessionValidator:
        return AllowAllSession()

    return allow_all


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _json_response(payload: Dict[str, Any], status_code: int) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


async def _request_params(request: Request, is_query: bool) -> Dict[str, Any]:
    """
    Collect the raw parameters of *request*.

    Raises ``ValueError`` when a mutation body is not a JSON object.
    """
    params: Dict[str, Any] = {}
    if is_query:
        for key in request.query_params.keys():
            values: List[str] = request.query_params.getlist(key)
            params[key] = values if len(values) > 1 else values[0]
    else:
        raw: bytes = await request.body()
        if raw.strip():
            body: Any = json.loads(raw)
            if not isinstance(body, dict):
                raise ValueError("Request body must be a JSON object.")
            params.update(body)
    # Path parameters identify the target and win over the body.
    params.update(request.path_params)
    return params


def _make_endpoint(handler: OperationHandler, session_factory: SessionFactory) -> Callable[..., Any]:
    is_query: bool = handler.spec.is_query

    async def endpoint(request: Request) -> JSONResponse:
        try:
            params: Dict[str, Any] = await _request_params(request, is_query)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Rejected body for '%s': %s", handler.spec.name, exc)
            return _json_response(
                ResponseEnvelope.failure("Request body must be valid JSON.", 400).to_payload(), 400
            )
        except ValueError as exc:
            message: str = str(exc)
            logger.warning("Rejected body for '%s': %s", handler.spec.name, exc)
            return _json_response(ResponseEnvelope.failure(message, 400).to_payload(), 400)

        outcome = await handler.handle(params, session_factory(request))
        return _json_response(outcome.envelope.to_payload(), outcome.status_code)

    endpoint.__name__ = handler.spec.name
    return endpoint


def build_router(
    handlers: Sequence[Tuple[OperationPlan, OperationHandler]],
    session_factory: SessionFactory,
) -> APIRouter:
    router: APIRouter = APIRouter()
    for plan, handler in handlers:
        router.add_api_route(
            plan.path,
            _make_endpoint(handler, session_factory),
            methods=[plan.method],
            name=plan.spec.name,
            tags=[plan.descriptor.name],
        )
        logger.debug("Mounted %s %s → %s", plan.method, plan.path, plan.spec.name)
    return router


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    report: GenerationReport,
    *,
    engine: Optional[AsyncEngine] = None,
    provider_factory: Optional[Callable[[SchemaDescriptor], ConnectionProvider]] = None,
    sink: Optional[ResponseSink] = None,
    title: str = "NexaFlow CrudGen",
) -> FastAPI:
    """
    Build a FastAPI app serving every planned operation of *report*.

    Without a ``provider_factory`` the SQLAlchemy reference store is used,
    on *engine* or on one created from ``config.database_url``.  The table is
    created at startup; an engine the app created itself is disposed at
    shutdown.
    """
    config: GenerationConfig = report.config or GenerationConfig()
    bound: Optional[AsyncEngine] = None
    owns_engine: bool = False

    if provider_factory is None:
        owns_engine = engine is None
        bound = engine if engine is not None else make_engine(config.database_url)
        sql_engine: AsyncEngine = bound

        def sql_provider(descriptor: SchemaDescriptor) -> ConnectionProvider:
            return SqlConnectionProvider(sql_engine, descriptor, config.identity_field)

        provider_factory = sql_provider

    handlers: List[Tuple[OperationPlan, OperationHandler]] = build_handlers(
        report, provider_factory, sink=sink
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if bound is not None:
            await create_tables(bound)
        try:
            yield
        finally:
            if bound is not None and owns_engine:
                await bound.dispose()
                logger.info("Disposed engine %s.", bound.url)

    app: FastAPI = FastAPI(title=title, version=__version__, lifespan=lifespan)
    app.include_router(
        build_router(handlers, session_factory_for(config)),
        prefix=config.api_prefix.rstrip("/"),
    )

    @app.get("/health", tags=["meta"])
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "schemas": sorted(report.descriptors),
            "operations": len(handlers),
        }

    logger.info(
        "Application ready: %d route(s) under '%s'.",
        len(handlers),
        config.api_prefix,
    )
    return app


__all__: List[str] = [
    "AllowAllSession",
    "ApiKeySession",
    "session_factory_for",
    "build_router",
    "create_app",
]

logger.debug("crudgen.web loaded.")
