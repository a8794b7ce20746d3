"""
tests/conftest.py
Shared fixtures for the crudgen test suite.

Provides:
- Raw definitions dicts and their YAML files (tmp_path)
- A reference ``TypeModel`` / ``SchemaDescriptor`` pair
- In-memory collaborators for ``OperationHandler``: a plain store, a store
  with atomic item primitives, a counting connection provider, fixed
  session validators and a recording response sink
"""

from __future__ import annotations

import contextlib
import copy
import pathlib
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
import yaml

from crudgen.models import (
    FieldSpec,
    FilterExpression,
    GenerationConfig,
    ResponseEnvelope,
    SchemaDescriptor,
    TypeModel,
)
from crudgen.synthesizer import synthesize


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

ROOT_DIR: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
DEFINITIONS_EXAMPLE_PATH: pathlib.Path = ROOT_DIR / "definitions_example.yaml"


# ---------------------------------------------------------------------------
# Raw definitions fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def raw_example_dict() -> Dict[str, Any]:
    """Load the reference definitions_example.yaml once per session."""
    assert DEFINITIONS_EXAMPLE_PATH.exists(), (
        f"Reference definitions not found at {DEFINITIONS_EXAMPLE_PATH}."
    )
    with open(DEFINITIONS_EXAMPLE_PATH, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    assert isinstance(data, dict), "Top-level YAML must be a mapping."
    return data


@pytest.fixture()
def example_dict(raw_example_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Return a deep copy so each test can mutate freely."""
    return copy.deepcopy(raw_example_dict)


@pytest.fixture()
def minimal_dict() -> Dict[str, Any]:
    """Smallest useful definitions: one model, one query, one mutation."""
    return {
        "config": {"default_page_size": 5, "max_page_size": 20},
        "models": {
            "Item": {
                "fields": {
                    "title": {"type": "string", "max_length": 100},
                    "count": "number?",
                }
            }
        },
        "operations": {
            "listItems": {
                "model": "Item",
                "verb": "GET",
                "pagination": True,
                "parameters": {"title": "text"},
            },
            "createItem": {"model": "Item", "verb": "POST"},
        },
    }


def write_yaml(path: pathlib.Path, data: Dict[str, Any]) -> pathlib.Path:
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, allow_unicode=True, sort_keys=False)
    return path


@pytest.fixture()
def example_yaml_path(example_dict: Dict[str, Any], tmp_path: pathlib.Path) -> pathlib.Path:
    return write_yaml(tmp_path / "definitions.yaml", example_dict)


@pytest.fixture()
def minimal_yaml_path(minimal_dict: Dict[str, Any], tmp_path: pathlib.Path) -> pathlib.Path:
    return write_yaml(tmp_path / "minimal.yaml", minimal_dict)


# ---------------------------------------------------------------------------
# Model / descriptor fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config() -> GenerationConfig:
    return GenerationConfig()


@pytest.fixture()
def address_model() -> TypeModel:
    return TypeModel(
        name="Address",
        fields=[
            FieldSpec(name="street", kind="primitive", type="string"),
            FieldSpec(name="city", kind="primitive", type="string"),
        ],
    )


@pytest.fixture()
def note_model() -> TypeModel:
    return TypeModel(
        name="Note",
        fields=[
            FieldSpec(name="text", kind="primitive", type="string", max_length=50),
            FieldSpec(name="pinned", kind="primitive", type="boolean", default=False),
        ],
    )


@pytest.fixture()
def user_model(address_model: TypeModel, note_model: TypeModel) -> TypeModel:
    return TypeModel(
        name="User",
        fields=[
            FieldSpec(name="name", kind="primitive", type="string", max_length=100),
            FieldSpec(name="email", kind="primitive", type="string", optional=True),
            FieldSpec(
                name="role",
                kind="primitive",
                type="string",
                enum_values=["admin", "member"],
                default="member",
            ),
            FieldSpec(name="age", kind="primitive", type="number", optional=True, minimum=0),
            FieldSpec(name="tags", kind="array", element_type="string"),
            FieldSpec(name="address", kind="nested", nested_model=address_model, optional=True),
            FieldSpec(name="notes", kind="array", nested_model=note_model),
            FieldSpec(name="manager", kind="reference", reference="User", optional=True),
        ],
    )


@pytest.fixture()
def user_descriptor(user_model: TypeModel, config: GenerationConfig) -> SchemaDescriptor:
    return synthesize(user_model, config)


@pytest.fixture()
def event_descriptor(config: GenerationConfig) -> SchemaDescriptor:
    reminder = TypeModel(
        name="Reminder",
        fields=[FieldSpec(name="at", kind="primitive", type="date")],
    )
    event = TypeModel(
        name="Event",
        fields=[
            FieldSpec(name="title", kind="primitive", type="string"),
            FieldSpec(name="at", kind="primitive", type="date"),
            FieldSpec(name="days", kind="array", element_type="date"),
            FieldSpec(name="reminders", kind="array", nested_model=reminder),
        ],
    )
    return synthesize(event, config)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (1, "")
    return (0, value)


class InMemoryStore:
    """Store protocol over a dict; records every call it receives."""

    def __init__(
        self,
        documents: Optional[Sequence[Mapping[str, Any]]] = None,
        *,
        identity_field: str = "id",
        fail_on: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        self.identity_field: str = identity_field
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.fail_on: Dict[str, BaseException] = dict(fail_on or {})
        for doc in documents or []:
            self.documents[str(doc[identity_field])] = copy.deepcopy(dict(doc))

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    async def find(
        self,
        filter: FilterExpression,
        sort: Sequence[Tuple[str, int]],
        skip: int,
        limit: Optional[int],
    ) -> List[Dict[str, Any]]:
        self._record("find")
        matches = [copy.deepcopy(d) for d in self.documents.values() if filter.matches(d)]
        for field_name, direction in reversed(list(sort)):
            matches.sort(key=lambda d, f=field_name: _sort_key(d.get(f)), reverse=direction < 0)
        end = None if limit is None else skip + limit
        return matches[skip:end]

    async def count(self, filter: FilterExpression) -> int:
        self._record("count")
        return sum(1 for d in self.documents.values() if filter.matches(d))

    async def find_by_id(self, document_id: str) -> Optional[Dict[str, Any]]:
        self._record("find_by_id")
        doc = self.documents.get(document_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def save(self, document: Dict[str, Any]) -> Dict[str, Any]:
        self._record("save")
        self.documents[str(document[self.identity_field])] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def delete(self, document_id: str) -> bool:
        self._record("delete")
        return self.documents.pop(document_id, None) is not None


class AtomicInMemoryStore(InMemoryStore):
    """Adds the single-step embedded array primitives."""

    def _position(self, items: List[Any], item_id: str) -> Optional[int]:
        for index, item in enumerate(items):
            if str(item.get(self.identity_field)) == item_id:
                return index
        return None

    async def add_item(
        self, document_id: str, field: str, item: Dict[str, Any], stamp: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self._record("add_item")
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        doc[field] = list(doc.get(field) or []) + [copy.deepcopy(item)]
        doc.update(stamp)
        return copy.deepcopy(doc)

    async def update_item(
        self,
        document_id: str,
        field: str,
        item_id: str,
        changes: Mapping[str, Any],
        stamp: Mapping[str, Any],
    ) -> Optional[Dict[str, Any]]:
        self._record("update_item")
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        items = list(doc.get(field) or [])
        position = self._position(items, item_id)
        if position is None:
            return None
        items[position] = {**items[position], **changes}
        doc[field] = items
        doc.update(stamp)
        return copy.deepcopy(doc)

    async def remove_item(
        self, document_id: str, field: str, item_id: str, stamp: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self._record("remove_item")
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        items = list(doc.get(field) or [])
        position = self._position(items, item_id)
        if position is None:
            return None
        del items[position]
        doc[field] = items
        doc.update(stamp)
        return copy.deepcopy(doc)


class CountingProvider:
    """Connection provider that counts acquisitions and releases."""

    def __init__(self, store: Any, *, fail_with: Optional[BaseException] = None) -> None:
        self.store = store
        self.fail_with = fail_with
        self.acquired: int = 0
        self.released: int = 0

    @contextlib.asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        if self.fail_with is not None:
            raise self.fail_with
        self.acquired += 1
        try:
            yield self.store
        finally:
            self.released += 1


class StaticSession:
    """Session validator with a fixed answer, or a fixed exception."""

    def __init__(self, accept: bool = True, *, raises: Optional[BaseException] = None) -> None:
        self.accept = accept
        self.raises = raises
        self.checks: int = 0

    async def check(self) -> bool:
        self.checks += 1
        if self.raises is not None:
            raise self.raises
        return self.accept


class RecordingSink:
    def __init__(self) -> None:
        self.sent: List[Tuple[ResponseEnvelope, int]] = []

    def send(self, envelope: ResponseEnvelope, status_code: int) -> None:
        self.sent.append((envelope, status_code))


@pytest.fixture()
def session() -> StaticSession:
    return StaticSession(True)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()
