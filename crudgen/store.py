# File: crudgen/store.py
"""
NexaFlow CrudGen - SQLAlchemy Reference Store
===============================================
A document store on top of SQLAlchemy 2.0's asyncio extension, used by
``crudgen --serve`` and the test-suite.  Every document lives in one row of
``crudgen_documents``::

    collection  VARCHAR  ─┐ primary key
    id          VARCHAR  ─┘
    body        JSON        (the whole document, identity included)

Scalar filters and sorting are pushed down as JSON-path expressions
(``json_extract`` on SQLite, ``->>`` on PostgreSQL).  Filters on repeated
fields (list membership) have no portable SQL form; such queries are
evaluated in Python over the collection instead.  Date values are written
in one UTC spelling (``canonical_date``), which makes date equality a text
comparison.

``find`` runs on the request's session while ``count`` takes a connection of
its own, so the handler's paired fetch really runs both at once.

Item-level mutations lock the row (``SELECT ... FOR UPDATE`` where the
dialect supports it) and write it back in the same transaction, so the
handler uses them instead of read-modify-write.
"""

from __future__ import annotations

import contextlib
import copy
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic_core import to_jsonable_python
from sqlalchemy import JSON, String, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from crudgen.documents import canonicalize_dates
from crudgen.errors import Unavailable
from crudgen.models import (
    FilterExpression,
    PredicateOperator,
    PredicateTerm,
    SchemaDescriptor,
    SchemaField,
    StorageType,
    canonical_date,
)
from crudgen.utils import to_plural, to_snake_case

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("crudgen.store")

Document = Dict[str, Any]

# Async driver per dialect, for URLs that name none.
ASYNC_DRIVERS: Dict[str, str] = {
    "sqlite": "aiosqlite",
    "postgresql": "asyncpg",
}


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


class DocumentRecord(Base):
    __tablename__ = "crudgen_documents"

    collection: Mapped[str] = mapped_column(String(128), primary_key=True)
    document_id: Mapped[str] = mapped_column("id", String(64), primary_key=True)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<DocumentRecord {self.collection}/{self.document_id}>"


def async_database_url(database_url: str) -> str:
    """``sqlite:///x.db`` → ``sqlite+aiosqlite:///x.db``; explicit drivers are kept."""
    scheme, sep, rest = database_url.partition("://")
    driver: Optional[str] = ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return database_url
    return f"{scheme}+{driver}{sep}{rest}"


def make_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Async engine for *database_url*; in-memory SQLite gets one shared connection."""
    url: str = async_database_url(database_url)
    if url.startswith("sqlite"):
        if url.endswith("://") or url.endswith(":memory:") or "mode=memory" in url:
            return create_async_engine(url, echo=echo, poolclass=StaticPool)
        return create_async_engine(url, echo=echo)
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ensured table '%s' on %s.", DocumentRecord.__tablename__, engine.url)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _storage_of(field: Optional[SchemaField]) -> str:
    if field is None:
        return StorageType.STRING.value
    return getattr(field.storage_type, "value", field.storage_type)


def _python_sort_key(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SqlDocumentStore:
    """One collection of documents, bound to one ``AsyncSession``."""

    def __init__(
        self,
        session: AsyncSession,
        descriptor: SchemaDescriptor,
        identity_field: str = "id",
        *,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self._session: AsyncSession = session
        self._engine: Optional[AsyncEngine] = engine
        self._descriptor: SchemaDescriptor = descriptor
        self._identity: str = identity_field
        self._collection: str = descriptor.collection or to_plural(to_snake_case(descriptor.name))

    @property
    def collection(self) -> str:
        return self._collection

    # -- expression building ------------------------------------------------

    def _json_node(self, field_name: str) -> Any:
        field: Optional[SchemaField] = self._descriptor.get_field(field_name)
        node: Any = DocumentRecord.body[field_name]
        storage: str = _storage_of(field)
        if storage == StorageType.NUMBER.value:
            return node.as_float()
        if storage == StorageType.BOOLEAN.value:
            return node.as_boolean()
        return node.as_string()

    def _term_clause(self, term: PredicateTerm) -> Any:
        if term.operator == PredicateOperator.REGEX_MATCH:
            pattern: str = f"%{_escape_like(str(term.value))}%"
            return DocumentRecord.body[term.field].as_string().ilike(pattern, escape="\\")
        field: Optional[SchemaField] = self._descriptor.get_field(term.field)
        storage: str = _storage_of(field)
        if storage == StorageType.BOOLEAN.value:
            return DocumentRecord.body[term.field].as_boolean() == bool(term.value)
        if storage == StorageType.NUMBER.value:
            return DocumentRecord.body[term.field].as_float() == float(term.value)
        if storage == StorageType.DATE.value:
            # Stored dates are canonical; the filter value is brought to the same form.
            return DocumentRecord.body[term.field].as_string() == str(canonical_date(term.value))
        return DocumentRecord.body[term.field].as_string() == str(to_jsonable_python(term.value))

    def _needs_python(self, expression: FilterExpression) -> bool:
        for term in expression.terms:
            field: Optional[SchemaField] = self._descriptor.get_field(term.field)
            if field is not None and field.repeated:
                return True
        return False

    def _scoped(self, expression: FilterExpression) -> List[Any]:
        clauses: List[Any] = [DocumentRecord.collection == self._collection]
        clauses.extend(self._term_clause(t) for t in expression.terms)
        return clauses

    async def _python_matches(
        self, executor: Any, expression: FilterExpression
    ) -> List[Document]:
        result: Any = await executor.scalars(
            select(DocumentRecord.body).where(DocumentRecord.collection == self._collection)
        )
        return [dict(b) for b in result.all() if expression.matches(b)]

    @contextlib.asynccontextmanager
    async def _reader(self) -> AsyncIterator[Any]:
        """A connection apart from the session; the session itself without an engine."""
        if self._engine is None:
            yield self._session
            return
        connection: AsyncConnection
        async with self._engine.connect() as connection:
            yield connection

    # -- Store protocol -----------------------------------------------------

    async def find(
        self,
        filter: FilterExpression,
        sort: Sequence[Tuple[str, int]],
        skip: int,
        limit: Optional[int],
    ) -> List[Document]:
        if self._needs_python(filter):
            documents: List[Document] = await self._python_matches(self._session, filter)
            for field_name, direction in reversed(list(sort)):
                documents.sort(
                    key=lambda d, f=field_name: _python_sort_key(d.get(f)),
                    reverse=direction < 0,
                )
            end: Optional[int] = None if limit is None else skip + limit
            return documents[skip:end]

        stmt: Any = select(DocumentRecord.body).where(*self._scoped(filter))
        for field_name, direction in sort:
            node: Any = self._json_node(field_name)
            stmt = stmt.order_by(node.desc() if direction < 0 else node.asc())
        stmt = stmt.order_by(DocumentRecord.document_id.asc()).offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        result: Any = await self._session.scalars(stmt)
        return [dict(b) for b in result.all()]

    async def count(self, filter: FilterExpression) -> int:
        async with self._reader() as executor:
            if self._needs_python(filter):
                return len(await self._python_matches(executor, filter))
            stmt: Any = (
                select(func.count()).select_from(DocumentRecord).where(*self._scoped(filter))
            )
            return int(await executor.scalar(stmt) or 0)

    async def find_by_id(self, document_id: str) -> Optional[Document]:
        record: Optional[DocumentRecord] = await self._session.get(
            DocumentRecord, (self._collection, document_id)
        )
        return None if record is None else dict(record.body)

    async def save(self, document: Document) -> Document:
        body: Document = to_jsonable_python(canonicalize_dates(self._descriptor, document))
        document_id: str = str(body[self._identity])
        await self._session.merge(
            DocumentRecord(collection=self._collection, document_id=document_id, body=body)
        )
        await self._session.commit()
        logger.debug("Saved %s/%s.", self._collection, document_id)
        return body

    async def delete(self, document_id: str) -> bool:
        record: Optional[DocumentRecord] = await self._session.get(
            DocumentRecord, (self._collection, document_id)
        )
        if record is None:
            return False
        await self._session.delete(record)
        await self._session.commit()
        logger.debug("Deleted %s/%s.", self._collection, document_id)
        return True

    # -- AtomicItemStore protocol -------------------------------------------

    async def _locked(self, document_id: str) -> Optional[DocumentRecord]:
        stmt: Any = (
            select(DocumentRecord)
            .where(
                DocumentRecord.collection == self._collection,
                DocumentRecord.document_id == document_id,
            )
            .with_for_update()
        )
        result: Any = await self._session.scalars(stmt)
        return result.first()

    async def _write(
        self, record: DocumentRecord, body: Document, stamp: Mapping[str, Any]
    ) -> Document:
        body.update(to_jsonable_python(dict(stamp)))
        record.body = body
        await self._session.commit()
        return body

    def _canonical_item(self, field: str, values: Mapping[str, Any]) -> Document:
        target: Optional[SchemaField] = self._descriptor.get_field(field)
        if target is None or target.sub_schema is None:
            return dict(values)
        return canonicalize_dates(target.sub_schema, values)

    def _item_position(self, items: List[Any], item_id: str) -> Optional[int]:
        for index, item in enumerate(items):
            if isinstance(item, Mapping) and str(item.get(self._identity)) == item_id:
                return index
        return None

    async def add_item(
        self, document_id: str, field: str, item: Document, stamp: Mapping[str, Any]
    ) -> Optional[Document]:
        record: Optional[DocumentRecord] = await self._locked(document_id)
        if record is None:
            await self._session.rollback()
            return None
        body: Document = copy.deepcopy(record.body)
        body[field] = list(body.get(field) or []) + [
            to_jsonable_python(self._canonical_item(field, item))
        ]
        return await self._write(record, body, stamp)

    async def update_item(
        self,
        document_id: str,
        field: str,
        item_id: str,
        changes: Mapping[str, Any],
        stamp: Mapping[str, Any],
    ) -> Optional[Document]:
        record: Optional[DocumentRecord] = await self._locked(document_id)
        if record is None:
            await self._session.rollback()
            return None
        body: Document = copy.deepcopy(record.body)
        items: List[Any] = list(body.get(field) or [])
        position: Optional[int] = self._item_position(items, item_id)
        if position is None:
            await self._session.rollback()
            return None
        items[position] = {
            **items[position],
            **to_jsonable_python(self._canonical_item(field, changes)),
        }
        body[field] = items
        return await self._write(record, body, stamp)

    async def remove_item(
        self, document_id: str, field: str, item_id: str, stamp: Mapping[str, Any]
    ) -> Optional[Document]:
        record: Optional[DocumentRecord] = await self._locked(document_id)
        if record is None:
            await self._session.rollback()
            return None
        body: Document = copy.deepcopy(record.body)
        items: List[Any] = list(body.get(field) or [])
        position: Optional[int] = self._item_position(items, item_id)
        if position is None:
            await self._session.rollback()
            return None
        del items[position]
        body[field] = items
        return await self._write(record, body, stamp)


# ---------------------------------------------------------------------------
# Connection provider
# ---------------------------------------------------------------------------


class SqlConnectionProvider:
    """
    Hands out one ``SqlDocumentStore`` per request, each on its own session.

    The session is rolled back on error and always closed on exit.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        descriptor: SchemaDescriptor,
        identity_field: str = "id",
    ) -> None:
        self._engine: AsyncEngine = engine
        self._descriptor: SchemaDescriptor = descriptor
        self._identity: str = identity_field
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[SqlDocumentStore]:
        session: AsyncSession = self._session_factory()
        try:
            await session.connection()
        except SQLAlchemyError as exc:
            await session.close()
            raise Unavailable(f"Database connection failed: {exc}") from exc

        try:
            yield SqlDocumentStore(
                session, self._descriptor, self._identity, engine=self._engine
            )
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


__all__: List[str] = [
    "ASYNC_DRIVERS",
    "Base",
    "DocumentRecord",
    "async_database_url",
    "make_engine",
    "create_tables",
    "SqlDocumentStore",
    "SqlConnectionProvider",
]

logger.debug("crudgen.store loaded.")
