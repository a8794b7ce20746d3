# File: crudgen/handler.py
"""
NexaFlow CrudGen - Operation Handler
======================================
Runs one request of a generated operation through a fixed state machine::

    Start → SessionCheck → ConnectionAcquire → Execute → Format → Done
                 │                 │              │         │
                 └─────────────────┴──────┬───────┴─────────┘
                                          ▼
                                        Failed

The handler object is built once per operation and shared by every request;
all per-request state lives in an ``Invocation``.  The collaborators it talks
to (session validator, connection provider, store, response sink) are
``typing.Protocol`` contracts so the hosting layer can plug in anything that
fits them.

Error handling:
    - Every failure is caught once, at ``handle()``, and converted into the
      error branch of a ``ResponseEnvelope``.
    - ``CrudGenError`` subclasses map through their ``status_code``; any other
      exception is wrapped as ``UnexpectedStoreError`` (500).
    - Server-side details are logged; the caller only sees the public message.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from crudgen.documents import (
    Document,
    apply_defaults,
    assign_item_identities,
    canonicalize_dates,
    new_identifier,
    stamp_new,
    touch,
    utcnow,
    validate_document,
)
from crudgen.errors import (
    CrudGenError,
    DefinitionError,
    MissingParameterError,
    NotFoundError,
    Unauthorized,
    Unavailable,
    UnexpectedStoreError,
)
from crudgen.models import (
    FilterExpression,
    GenerationConfig,
    ITEM_ACTIONS,
    OperationAction,
    OperationSpec,
    ResponseEnvelope,
    SchemaDescriptor,
    SchemaField,
)
from crudgen.query import QueryBuilder

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.handler")

SortSpec = List[Tuple[str, int]]


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionValidator(Protocol):
    async def check(self) -> bool:
        """Return True for an authorised caller; may raise ``Unauthorized``."""
        ...


@runtime_checkable
class Store(Protocol):
    async def find(
        self,
        filter: FilterExpression,
        sort: SortSpec,
        skip: int,
        limit: Optional[int],
    ) -> List[Document]:
        ...

    async def count(self, filter: FilterExpression) -> int:
        ...

    async def find_by_id(self, document_id: str) -> Optional[Document]:
        ...

    async def save(self, document: Document) -> Document:
        ...

    async def delete(self, document_id: str) -> bool:
        ...


@runtime_checkable
class AtomicItemStore(Protocol):
    """
    Optional store capability: change one embedded array in a single step.

    Each method returns the updated document, or ``None`` when either the
    document or the addressed item does not exist.  ``stamp`` holds top-level
    fields (the modification timestamp) to set in the same write.
    """

    async def add_item(
        self, document_id: str, field: str, item: Document, stamp: Mapping[str, Any]
    ) -> Optional[Document]:
        ...

    async def update_item(
        self,
        document_id: str,
        field: str,
        item_id: str,
        changes: Mapping[str, Any],
        stamp: Mapping[str, Any],
    ) -> Optional[Document]:
        ...

    async def remove_item(
        self, document_id: str, field: str, item_id: str, stamp: Mapping[str, Any]
    ) -> Optional[Document]:
        ...


class ConnectionProvider(Protocol):
    def acquire(self) -> AsyncContextManager[Store]:
        ...


class ResponseSink(Protocol):
    def send(self, envelope: ResponseEnvelope, status_code: int) -> None:
        ...


# ---------------------------------------------------------------------------
# Invocation bookkeeping
# ---------------------------------------------------------------------------


class HandlerState(str, Enum):
    START = "start"
    SESSION_CHECK = "session_check"
    CONNECTION_ACQUIRE = "connection_acquire"
    EXECUTE = "execute"
    FORMAT = "format"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=False, slots=True)
class Invocation:
    """State of one request; created by ``handle()`` and discarded with it."""

    operation: str = ""
    state: HandlerState = HandlerState.START
    history: List[HandlerState] = field(default_factory=lambda: [HandlerState.START])
    failed_from: Optional[HandlerState] = None
    error: Optional[CrudGenError] = None

    def advance(self, state: HandlerState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: CrudGenError) -> None:
        self.failed_from = self.state
        self.error = error
        self.advance(HandlerState.FAILED)


@dataclass(frozen=True, slots=True)
class HandlerOutcome:
    envelope: ResponseEnvelope
    status_code: int
    invocation: Invocation


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class OperationHandler:
    """
    Request pipeline for one ``OperationSpec`` over one ``SchemaDescriptor``.

    Usage::

        handler = OperationHandler(spec, descriptor, provider, config=config)
        outcome = await handler.handle({"name": "ada"}, session)
        outcome.status_code, outcome.envelope.to_payload()
    """

    def __init__(
        self,
        spec: OperationSpec,
        descriptor: SchemaDescriptor,
        provider: ConnectionProvider,
        *,
        config: Optional[GenerationConfig] = None,
        sink: Optional[ResponseSink] = None,
        query_builder: Optional[QueryBuilder] = None,
    ) -> None:
        if spec.model != descriptor.name:
            raise DefinitionError(
                f"Operation '{spec.name}' targets model '{spec.model}' "
                f"but was given the schema of '{descriptor.name}'."
            )
        self.spec: OperationSpec = spec
        self.descriptor: SchemaDescriptor = descriptor
        self.config: GenerationConfig = config or GenerationConfig()
        self._provider: ConnectionProvider = provider
        self._sink: Optional[ResponseSink] = sink
        self._query_builder: QueryBuilder = query_builder or QueryBuilder(self.config)
        self._item_field: Optional[SchemaField] = None

        if spec.action in ITEM_ACTIONS:
            target: Optional[SchemaField] = descriptor.get_field(spec.target_field or "")
            if target is None or not target.repeated or target.sub_schema is None:
                raise DefinitionError(
                    f"Operation '{spec.name}' targets '{spec.target_field}', which is "
                    f"not an embedded array of model '{descriptor.name}'."
                )
            self._item_field = target

    def __repr__(self) -> str:
        return f"<OperationHandler {self.spec.name} ({self.spec.action})>"

    # -----------------------------------------------------------------
    # Boundary
    # -----------------------------------------------------------------

    async def handle(
        self,
        params: Optional[Mapping[str, Any]],
        session: SessionValidator,
    ) -> HandlerOutcome:
        invocation: Invocation = Invocation(operation=self.spec.name)
        try:
            envelope, status_code = await self._run(invocation, params or {}, session)
        except CrudGenError as exc:
            envelope, status_code = self._failure(invocation, exc)
        except Exception as exc:  # anything a collaborator raised outside the taxonomy
            wrapped: UnexpectedStoreError = UnexpectedStoreError(
                f"{type(exc).__name__}: {exc}"
            )
            wrapped.__cause__ = exc
            envelope, status_code = self._failure(invocation, wrapped)

        if self._sink is not None:
            self._sink.send(envelope, status_code)
        return HandlerOutcome(envelope=envelope, status_code=status_code, invocation=invocation)

    def _failure(
        self, invocation: Invocation, exc: CrudGenError
    ) -> Tuple[ResponseEnvelope, int]:
        invocation.fail(exc)
        status_code: int = exc.status_code
        if status_code >= 500:
            logger.error(
                "Operation '%s' failed during %s: %s",
                self.spec.name,
                invocation.failed_from.value if invocation.failed_from else "?",
                exc,
                exc_info=exc,
            )
            message: str = CrudGenError.public_message
        else:
            logger.warning(
                "Operation '%s' rejected during %s (%d): %s",
                self.spec.name,
                invocation.failed_from.value if invocation.failed_from else "?",
                status_code,
                exc,
            )
            message = exc.public_message
        return ResponseEnvelope.failure(message, status_code), status_code

    # -----------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------

    async def _run(
        self,
        invocation: Invocation,
        params: Mapping[str, Any],
        session: SessionValidator,
    ) -> Tuple[ResponseEnvelope, int]:
        invocation.advance(HandlerState.SESSION_CHECK)
        await self._check_session(session)

        async with contextlib.AsyncExitStack() as stack:
            invocation.advance(HandlerState.CONNECTION_ACQUIRE)
            store: Store = await self._acquire(stack)

            invocation.advance(HandlerState.EXECUTE)
            result: Any = await self._execute(store, params)

        invocation.advance(HandlerState.FORMAT)
        envelope, status_code = self._format(result)

        invocation.advance(HandlerState.DONE)
        logger.debug("Operation '%s' done: %s", self.spec.name, invocation.history)
        return envelope, status_code

    async def _check_session(self, session: SessionValidator) -> None:
        try:
            accepted: bool = await session.check()
        except Unauthorized:
            raise
        except Exception as exc:
            # Fail closed: a broken validator never lets a request through.
            logger.error("Session validator raised for '%s': %s", self.spec.name, exc)
            raise Unauthorized("Session validator failed") from exc
        if not accepted:
            raise Unauthorized("Session rejected")

    async def _acquire(self, stack: contextlib.AsyncExitStack) -> Store:
        try:
            return await stack.enter_async_context(self._provider.acquire())
        except Unavailable:
            raise
        except Exception as exc:
            raise Unavailable(f"Could not acquire a store connection: {exc}") from exc

    async def _execute(self, store: Store, params: Mapping[str, Any]) -> Any:
        action: Any = self.spec.action
        if action == OperationAction.LIST.value:
            return await self._list(store, params)
        if action == OperationAction.CREATE.value:
            return await self._create(store, params)
        if action == OperationAction.UPDATE.value:
            return await self._update(store, params)
        if action == OperationAction.DELETE.value:
            return await self._delete(store, params)
        if action == OperationAction.ADD_ITEM.value:
            return await self._add_item(store, params)
        if action == OperationAction.UPDATE_ITEM.value:
            return await self._update_item(store, params)
        if action == OperationAction.REMOVE_ITEM.value:
            return await self._remove_item(store, params)
        raise UnexpectedStoreError(f"Unsupported action {action!r}")

    def _format(self, result: Any) -> Tuple[ResponseEnvelope, int]:
        if self.spec.action == OperationAction.LIST.value:
            documents, total = result
            data: List[Document] = [self._present(d) for d in documents]
            return ResponseEnvelope.success(data, total=total), 200
        status_code: int = 201 if self.spec.action == OperationAction.CREATE.value else 200
        return ResponseEnvelope.success(self._present(result)), status_code

    def _present(self, document: Mapping[str, Any]) -> Document:
        identity: str = self.config.identity_field
        return {**document, identity: document.get(identity)}

    # -----------------------------------------------------------------
    # Query
    # -----------------------------------------------------------------

    def _sort(self) -> SortSpec:
        if self.spec.sort:
            return [(key.field, -1 if key.descending else 1) for key in self.spec.sort]
        if self.descriptor.timestamps:
            return [(self.config.created_field, -1)]
        return [(self.config.identity_field, 1)]

    async def _list(self, store: Store, params: Mapping[str, Any]) -> Tuple[List[Document], int]:
        expression, bounds = self._query_builder.build_filter(self.spec, params)
        results: List[Any] = await asyncio.gather(
            store.find(expression, self._sort(), bounds.skip, bounds.limit),
            store.count(expression),
            return_exceptions=True,
        )
        # Both fetches have finished here; any failure fails the pair.
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome
        documents, total = results
        return list(documents), int(total)

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def _required(self, params: Mapping[str, Any], name: str) -> str:
        value: Any = params.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingParameterError(name)
        return str(value)

    def _changes(self, params: Mapping[str, Any]) -> Document:
        """Field changes carried by the request, keyed by document field."""
        skip = {self.spec.id_param, self.spec.item_id_param}
        if not self.spec.parameters:
            skip |= self.config.system_field_names
            return {k: v for k, v in params.items() if k not in skip}
        changes: Document = {}
        for name, param in self.spec.parameters.items():
            if name in skip:
                continue
            if name not in params:
                if param.required:
                    raise MissingParameterError(name)
                continue
            changes[self.spec.field_for(name)] = params[name]
        return changes

    async def _load(self, store: Store, document_id: str) -> Document:
        document: Optional[Document] = await store.find_by_id(document_id)
        if document is None:
            raise NotFoundError("Document not found")
        return document

    async def _create(self, store: Store, params: Mapping[str, Any]) -> Document:
        document: Document = apply_defaults(self.descriptor, self._changes(params))
        validate_document(self.descriptor, document)
        return await store.save(stamp_new(self.descriptor, document, self.config))

    async def _update(self, store: Store, params: Mapping[str, Any]) -> Document:
        document_id: str = self._required(params, self.spec.id_param)
        changes: Document = self._changes(params)
        current: Document = await self._load(store, document_id)
        merged: Document = {**current, **changes}
        validate_document(self.descriptor, merged)
        return await store.save(touch(self.descriptor, merged, self.config))

    async def _delete(self, store: Store, params: Mapping[str, Any]) -> Document:
        document_id: str = self._required(params, self.spec.id_param)
        current: Document = await self._load(store, document_id)
        if not await store.delete(document_id):
            raise NotFoundError("Document not found")
        return current

    # -- embedded array items -----------------------------------------------

    def _stamp(self) -> Dict[str, Any]:
        return {self.config.updated_field: utcnow()} if self.descriptor.timestamps else {}

    async def _missing(self, store: Store, document_id: str) -> NotFoundError:
        # An atomic primitive answers None for both cases; tell them apart.
        if await store.find_by_id(document_id) is None:
            return NotFoundError("Document not found")
        return NotFoundError("Item not found")

    def _item_index(self, items: Sequence[Any], item_id: str) -> int:
        identity: str = self.config.identity_field
        for index, item in enumerate(items):
            if isinstance(item, Mapping) and str(item.get(identity)) == item_id:
                return index
        raise NotFoundError("Item not found")

    async def _add_item(self, store: Store, params: Mapping[str, Any]) -> Document:
        target: SchemaField = self._item_field
        document_id: str = self._required(params, self.spec.id_param)
        item: Document = apply_defaults(target.sub_schema, self._changes(params))
        validate_document(target.sub_schema, item)
        item = assign_item_identities(
            target.sub_schema, canonicalize_dates(target.sub_schema, item), self.config
        )
        item[self.config.identity_field] = new_identifier()

        if isinstance(store, AtomicItemStore):
            updated: Optional[Document] = await store.add_item(
                document_id, target.name, item, self._stamp()
            )
            if updated is None:
                raise await self._missing(store, document_id)
            return updated

        current: Document = await self._load(store, document_id)
        items: List[Any] = list(current.get(target.name) or [])
        items.append(item)
        return await store.save(
            touch(self.descriptor, {**current, target.name: items}, self.config)
        )

    async def _update_item(self, store: Store, params: Mapping[str, Any]) -> Document:
        target: SchemaField = self._item_field
        document_id: str = self._required(params, self.spec.id_param)
        item_id: str = self._required(params, self.spec.item_id_param)
        changes: Document = self._changes(params)
        validate_document(target.sub_schema, changes, partial=True)
        changes = canonicalize_dates(target.sub_schema, changes)

        if isinstance(store, AtomicItemStore):
            updated: Optional[Document] = await store.update_item(
                document_id, target.name, item_id, changes, self._stamp()
            )
            if updated is None:
                raise await self._missing(store, document_id)
            return updated

        current: Document = await self._load(store, document_id)
        items: List[Any] = copy.deepcopy(list(current.get(target.name) or []))
        index: int = self._item_index(items, item_id)
        items[index] = {**items[index], **changes}
        validate_document(target.sub_schema, items[index])
        return await store.save(
            touch(self.descriptor, {**current, target.name: items}, self.config)
        )

    async def _remove_item(self, store: Store, params: Mapping[str, Any]) -> Document:
        target: SchemaField = self._item_field
        document_id: str = self._required(params, self.spec.id_param)
        item_id: str = self._required(params, self.spec.item_id_param)

        if isinstance(store, AtomicItemStore):
            updated: Optional[Document] = await store.remove_item(
                document_id, target.name, item_id, self._stamp()
            )
            if updated is None:
                raise await self._missing(store, document_id)
            return updated

        current: Document = await self._load(store, document_id)
        items: List[Any] = list(current.get(target.name) or [])
        del items[self._item_index(items, item_id)]
        return await store.save(
            touch(self.descriptor, {**current, target.name: items}, self.config)
        )


__all__: List[str] = [
    "SessionValidator",
    "Store",
    "AtomicItemStore",
    "ConnectionProvider",
    "ResponseSink",
    "HandlerState",
    "Invocation",
    "HandlerOutcome",
    "OperationHandler",
]

logger.debug("crudgen.handler loaded.")
