"""
tests/test_handler.py
Unit tests for crudgen.handler.OperationHandler.

Tests cover:
- State machine progression and the state a failure happened in
- Session check (rejection, validator crash) before any connection is taken
- Connection failures, joint find/count failure, unexpected store errors
- Query results: filtering, sorting, pagination, total
- Create / update / delete mutations
- Embedded array item actions via atomic primitives and read-modify-write
- Construction-time checks
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from conftest import (
    AtomicInMemoryStore,
    CountingProvider,
    InMemoryStore,
    RecordingSink,
    StaticSession,
)
from crudgen.errors import DefinitionError, Unauthorized, Unavailable, UnexpectedStoreError
from crudgen.handler import HandlerState, OperationHandler
from crudgen.models import (
    FieldSpec,
    FilterExpression,
    GenerationConfig,
    OperationSpec,
    SchemaDescriptor,
    TypeModel,
)
from crudgen.synthesizer import synthesize

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _user(doc_id: str, name: str, minutes: int, **extra: Any) -> Dict[str, Any]:
    created = T0 + timedelta(minutes=minutes)
    return {
        "id": doc_id,
        "name": name,
        "role": "member",
        "tags": [],
        "notes": [],
        "created_at": created,
        "updated_at": created,
        **extra,
    }


def _seeded_users() -> List[Dict[str, Any]]:
    return [
        _user("u1", "Ada Lovelace", 1, role="admin", tags=["math"]),
        _user("u2", "Grace Hopper", 2, tags=["navy"]),
        _user("u3", "Adam Smith", 3),
        _user(
            "u4",
            "Alan Turing",
            4,
            notes=[{"id": "n1", "text": "enigma", "pinned": False}],
        ),
    ]


def _op(name: str, **kwargs: Any) -> OperationSpec:
    return OperationSpec(name=name, model="User", **kwargs)


LIST_USERS = _op(
    "listUsers",
    verb="GET",
    pagination=True,
    parameters={"name": {"type": "text"}, "role": {"type": "enum"}, "tag": {"field": "tags"}},
)
CREATE_USER = _op("createUser", verb="POST", kind="mutation")
UPDATE_USER = _op("updateUser", verb="PATCH", kind="mutation")
DELETE_USER = _op("deleteUser", verb="DELETE", kind="mutation")
ADD_NOTE = _op("addNote", verb="POST", kind="mutation", action="add_item", target_field="notes")
UPDATE_NOTE = _op(
    "updateNote", verb="PATCH", kind="mutation", action="update_item", target_field="notes"
)
REMOVE_NOTE = _op(
    "removeNote", verb="DELETE", kind="mutation", action="remove_item", target_field="notes"
)


class RendezvousStore(InMemoryStore):
    """``find`` and ``count`` each wait until the other one has started."""

    def __init__(self, documents: Sequence[Dict[str, Any]]) -> None:
        super().__init__(documents)
        self.find_started = asyncio.Event()
        self.count_started = asyncio.Event()

    async def find(
        self,
        filter: FilterExpression,
        sort: Sequence[Tuple[str, int]],
        skip: int,
        limit: Optional[int],
    ) -> List[Dict[str, Any]]:
        self.find_started.set()
        await self.count_started.wait()
        return await super().find(filter, sort, skip, limit)

    async def count(self, filter: FilterExpression) -> int:
        self.count_started.set()
        await self.find_started.wait()
        return await super().count(filter)


def _handler(
    spec: OperationSpec,
    descriptor: SchemaDescriptor,
    store: Any,
    **kwargs: Any,
) -> tuple:
    provider = CountingProvider(store)
    return OperationHandler(spec, descriptor, provider, **kwargs), provider


# ===========================================================================
# State machine and collaborators
# ===========================================================================


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_success_walks_every_state(self, user_descriptor, session) -> None:
        handler, provider = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({}, session)

        assert outcome.status_code == 200
        assert outcome.invocation.history == [
            HandlerState.START,
            HandlerState.SESSION_CHECK,
            HandlerState.CONNECTION_ACQUIRE,
            HandlerState.EXECUTE,
            HandlerState.FORMAT,
            HandlerState.DONE,
        ]
        assert outcome.invocation.failed_from is None
        assert provider.acquired == provider.released == 1

    @pytest.mark.asyncio
    async def test_find_and_count_run_concurrently(self, user_descriptor, session) -> None:
        # A serial join leaves the first fetch waiting for its partner forever.
        store = RendezvousStore(_seeded_users())
        handler, _ = _handler(LIST_USERS, user_descriptor, store)
        outcome = await asyncio.wait_for(handler.handle({"name": "ada"}, session), timeout=5)

        assert outcome.status_code == 200
        assert outcome.envelope.total == 2
        assert [d["id"] for d in outcome.envelope.data] == ["u3", "u1"]

    @pytest.mark.asyncio
    async def test_session_rejected_never_acquires(self, user_descriptor) -> None:
        handler, provider = _handler(LIST_USERS, user_descriptor, InMemoryStore())
        outcome = await handler.handle({}, StaticSession(False))

        assert outcome.status_code == 401
        assert outcome.envelope.to_payload() == {
            "error": {"message": "Unauthorized", "statusCode": 401}
        }
        assert provider.acquired == 0
        assert outcome.invocation.state == HandlerState.FAILED
        assert outcome.invocation.failed_from == HandlerState.SESSION_CHECK

    @pytest.mark.asyncio
    async def test_session_validator_crash_fails_closed(self, user_descriptor) -> None:
        handler, provider = _handler(LIST_USERS, user_descriptor, InMemoryStore())
        outcome = await handler.handle({}, StaticSession(raises=RuntimeError("boom")))

        assert outcome.status_code == 401
        assert isinstance(outcome.invocation.error, Unauthorized)
        assert provider.acquired == 0

    @pytest.mark.asyncio
    async def test_connection_failure_is_500(self, user_descriptor, session) -> None:
        provider = CountingProvider(InMemoryStore(), fail_with=ConnectionError("db down"))
        handler = OperationHandler(LIST_USERS, user_descriptor, provider)
        outcome = await handler.handle({}, session)

        assert outcome.status_code == 500
        assert outcome.envelope.error.message == "Internal server error"
        assert outcome.invocation.failed_from == HandlerState.CONNECTION_ACQUIRE
        assert isinstance(outcome.invocation.error, Unavailable)

    @pytest.mark.asyncio
    async def test_count_failure_fails_the_pair(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users(), fail_on={"count": RuntimeError("count broke")})
        handler, provider = _handler(LIST_USERS, user_descriptor, store)
        outcome = await handler.handle({}, session)

        assert outcome.status_code == 500
        assert outcome.envelope.to_payload() == {
            "error": {"message": "Internal server error", "statusCode": 500}
        }
        assert "find" in store.calls and "count" in store.calls
        assert outcome.invocation.failed_from == HandlerState.EXECUTE
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_unexpected_store_error_is_wrapped(self, user_descriptor, session) -> None:
        store = InMemoryStore(fail_on={"save": KeyError("disk")})
        handler, _ = _handler(CREATE_USER, user_descriptor, store)
        outcome = await handler.handle({"name": "Ada"}, session)

        assert outcome.status_code == 500
        error = outcome.invocation.error
        assert isinstance(error, UnexpectedStoreError)
        assert isinstance(error.__cause__, KeyError)
        assert "disk" not in outcome.envelope.error.message

    @pytest.mark.asyncio
    async def test_sink_receives_every_outcome(self, user_descriptor, session) -> None:
        sink = RecordingSink()
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore(), sink=sink)
        await handler.handle({}, session)
        await handler.handle({}, StaticSession(False))

        assert [code for _, code in sink.sent] == [200, 401]
        assert sink.sent[1][0].is_error

    @pytest.mark.asyncio
    async def test_handler_is_reusable(self, user_descriptor, session) -> None:
        handler, provider = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        first = await handler.handle({"name": "ada"}, session)
        second = await handler.handle({"name": "grace"}, session)
        assert first.envelope.total == 2
        assert second.envelope.total == 1
        assert first.invocation is not second.invocation
        assert provider.acquired == 2


# ===========================================================================
# Queries
# ===========================================================================


class TestList:
    @pytest.mark.asyncio
    async def test_text_filter_and_default_sort(self, user_descriptor, session) -> None:
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({"name": "ADA"}, session)

        assert outcome.status_code == 200
        assert outcome.envelope.total == 2
        # newest first
        assert [d["id"] for d in outcome.envelope.data] == ["u3", "u1"]

    @pytest.mark.asyncio
    async def test_pagination_and_total(self, user_descriptor, session) -> None:
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({"page": "2", "pageSize": "3"}, session)

        assert outcome.envelope.total == 4
        assert [d["id"] for d in outcome.envelope.data] == ["u1"]

    @pytest.mark.asyncio
    async def test_array_field_membership(self, user_descriptor, session) -> None:
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({"tag": "navy"}, session)
        assert [d["id"] for d in outcome.envelope.data] == ["u2"]

    @pytest.mark.asyncio
    async def test_explicit_sort(self, user_descriptor, session) -> None:
        spec = _op("byName", verb="GET", sort=[{"field": "name", "descending": False}])
        handler, _ = _handler(spec, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({}, session)
        assert [d["name"] for d in outcome.envelope.data] == [
            "Ada Lovelace", "Adam Smith", "Alan Turing", "Grace Hopper",
        ]
        assert outcome.envelope.total == 4

    @pytest.mark.asyncio
    async def test_empty_result_is_success(self, user_descriptor, session) -> None:
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore(_seeded_users()))
        outcome = await handler.handle({"name": "nobody"}, session)
        assert outcome.envelope.to_payload() == {"data": [], "total": 0}

    @pytest.mark.asyncio
    async def test_bad_pagination_is_400(self, user_descriptor, session) -> None:
        handler, _ = _handler(LIST_USERS, user_descriptor, InMemoryStore())
        outcome = await handler.handle({"pageSize": "0"}, session)
        assert outcome.status_code == 400
        assert "pageSize" in outcome.envelope.error.message

    @pytest.mark.asyncio
    async def test_required_parameter_missing_is_400(self, user_descriptor, session) -> None:
        spec = _op("byRole", verb="GET", parameters={"role": {"required": True}})
        handler, _ = _handler(spec, user_descriptor, InMemoryStore())
        outcome = await handler.handle({}, session)
        assert outcome.status_code == 400
        assert outcome.envelope.error.message == "Missing required parameter 'role'."

    @pytest.mark.asyncio
    async def test_date_filter_matches_any_spelling(self, session) -> None:
        event = TypeModel(
            name="Event",
            fields=[
                FieldSpec(name="title", kind="primitive", type="string"),
                FieldSpec(name="at", kind="primitive", type="date"),
            ],
        )
        descriptor = synthesize(event, GenerationConfig())
        create = OperationSpec(name="createEvent", model="Event", verb="POST", kind="mutation")
        listing = OperationSpec(
            name="listEvents", model="Event", verb="GET", parameters={"at": {"type": "date"}}
        )
        store = InMemoryStore()
        creator = OperationHandler(create, descriptor, CountingProvider(store))
        lister = OperationHandler(listing, descriptor, CountingProvider(store))

        created = await creator.handle(
            {"title": "launch", "at": "2024-05-01T10:00:00+00:00"}, session
        )
        assert created.status_code == 201
        assert created.envelope.data["at"] == "2024-05-01T10:00:00Z"

        for spelling in (
            "2024-05-01T10:00:00+00:00",
            "2024-05-01T10:00:00.000Z",
            "2024-05-01T12:00:00+02:00",
        ):
            outcome = await lister.handle({"at": spelling}, session)
            assert outcome.envelope.total == 1, spelling
        missed = await lister.handle({"at": "2024-05-01T10:00:01Z"}, session)
        assert missed.envelope.total == 0


# ===========================================================================
# Document mutations
# ===========================================================================


class TestMutations:
    @pytest.mark.asyncio
    async def test_create(self, user_descriptor, session) -> None:
        store = InMemoryStore()
        handler, _ = _handler(CREATE_USER, user_descriptor, store)
        outcome = await handler.handle({"name": "Ada", "notes": [{"text": "hello"}]}, session)

        assert outcome.status_code == 201
        data = outcome.envelope.data
        assert data["name"] == "Ada"
        assert data["role"] == "member"
        assert data["tags"] == []
        assert data["id"] in store.documents
        assert data["created_at"] == data["updated_at"]
        assert data["notes"][0]["id"]
        assert data["notes"][0]["pinned"] is False

    @pytest.mark.asyncio
    async def test_create_ignores_client_system_fields(self, user_descriptor, session) -> None:
        handler, _ = _handler(CREATE_USER, user_descriptor, InMemoryStore())
        outcome = await handler.handle({"name": "Ada", "id": "mine", "created_at": "x"}, session)
        assert outcome.status_code == 201
        assert outcome.envelope.data["id"] != "mine"
        assert isinstance(outcome.envelope.data["created_at"], datetime)

    @pytest.mark.asyncio
    async def test_create_invalid_document(self, user_descriptor, session) -> None:
        store = InMemoryStore()
        handler, _ = _handler(CREATE_USER, user_descriptor, store)
        outcome = await handler.handle({"role": "owner"}, session)

        assert outcome.status_code == 400
        assert outcome.envelope.error.message.startswith("Document validation failed")
        assert "save" not in store.calls

    @pytest.mark.asyncio
    async def test_create_with_declared_parameters(self, user_descriptor, session) -> None:
        spec = _op(
            "signup",
            verb="POST",
            kind="mutation",
            parameters={"fullName": {"field": "name", "required": True}},
        )
        handler, _ = _handler(spec, user_descriptor, InMemoryStore())
        outcome = await handler.handle({"fullName": "Ada", "role": "admin"}, session)
        assert outcome.status_code == 201
        assert outcome.envelope.data["name"] == "Ada"
        # undeclared parameters are not applied
        assert outcome.envelope.data["role"] == "member"

        missing = await handler.handle({}, session)
        assert missing.status_code == 400
        assert missing.envelope.error.message == "Missing required parameter 'fullName'."

    @pytest.mark.asyncio
    async def test_update(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users())
        handler, _ = _handler(UPDATE_USER, user_descriptor, store)
        outcome = await handler.handle({"id": "u2", "age": 85}, session)

        assert outcome.status_code == 200
        data = outcome.envelope.data
        assert data["age"] == 85
        assert data["name"] == "Grace Hopper"
        assert data["updated_at"] > data["created_at"]
        assert store.documents["u2"]["age"] == 85

    @pytest.mark.asyncio
    async def test_update_unknown_document(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users())
        handler, _ = _handler(UPDATE_USER, user_descriptor, store)
        outcome = await handler.handle({"id": "nope", "age": 1}, session)

        assert outcome.status_code == 404
        assert outcome.envelope.to_payload() == {
            "error": {"message": "Document not found", "statusCode": 404}
        }
        assert "save" not in store.calls

    @pytest.mark.asyncio
    async def test_update_invalid_value(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users())
        handler, _ = _handler(UPDATE_USER, user_descriptor, store)
        outcome = await handler.handle({"id": "u2", "age": -5}, session)
        assert outcome.status_code == 400
        assert "age" in outcome.envelope.error.message
        assert "age" not in store.documents["u2"]

    @pytest.mark.asyncio
    async def test_update_needs_id(self, user_descriptor, session) -> None:
        handler, provider = _handler(UPDATE_USER, user_descriptor, InMemoryStore())
        outcome = await handler.handle({"age": 3}, session)
        assert outcome.status_code == 400
        assert outcome.envelope.error.message == "Missing required parameter 'id'."
        assert provider.released == provider.acquired

    @pytest.mark.asyncio
    async def test_delete_returns_removed_document(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users())
        handler, _ = _handler(DELETE_USER, user_descriptor, store)
        outcome = await handler.handle({"id": "u1"}, session)

        assert outcome.status_code == 200
        assert outcome.envelope.data["name"] == "Ada Lovelace"
        assert "u1" not in store.documents

    @pytest.mark.asyncio
    async def test_delete_unknown_document(self, user_descriptor, session) -> None:
        handler, _ = _handler(DELETE_USER, user_descriptor, InMemoryStore())
        outcome = await handler.handle({"id": "ghost"}, session)
        assert outcome.status_code == 404


# ===========================================================================
# Embedded array items
# ===========================================================================


@pytest.fixture(params=["atomic", "read-modify-write"])
def item_store(request) -> InMemoryStore:
    if request.param == "atomic":
        return AtomicInMemoryStore(_seeded_users())
    return InMemoryStore(_seeded_users())


class TestItemActions:
    @pytest.mark.asyncio
    async def test_add_item(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(ADD_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u1", "text": "first program"}, session)

        assert outcome.status_code == 200
        notes = outcome.envelope.data["notes"]
        assert len(notes) == 1
        assert notes[0]["text"] == "first program"
        assert notes[0]["pinned"] is False
        assert notes[0]["id"]
        assert item_store.documents["u1"]["notes"] == notes
        assert outcome.envelope.data["updated_at"] > T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_update_item(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(UPDATE_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u4", "item_id": "n1", "pinned": True}, session)

        assert outcome.status_code == 200
        assert outcome.envelope.data["notes"] == [{"id": "n1", "text": "enigma", "pinned": True}]

    @pytest.mark.asyncio
    async def test_update_item_invalid_change(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(UPDATE_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u4", "item_id": "n1", "text": "x" * 51}, session)
        assert outcome.status_code == 400
        assert item_store.documents["u4"]["notes"][0]["text"] == "enigma"

    @pytest.mark.asyncio
    async def test_remove_item(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(REMOVE_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u4", "item_id": "n1"}, session)

        assert outcome.status_code == 200
        assert outcome.envelope.data["notes"] == []
        assert item_store.documents["u4"]["notes"] == []

    @pytest.mark.asyncio
    async def test_unknown_item(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(REMOVE_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u4", "item_id": "missing"}, session)
        assert outcome.status_code == 404
        assert outcome.envelope.error.message == "Item not found"

    @pytest.mark.asyncio
    async def test_unknown_document(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(ADD_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "ghost", "text": "x"}, session)
        assert outcome.status_code == 404
        assert outcome.envelope.error.message == "Document not found"

    @pytest.mark.asyncio
    async def test_item_id_required(self, user_descriptor, session, item_store) -> None:
        handler, _ = _handler(UPDATE_NOTE, user_descriptor, item_store)
        outcome = await handler.handle({"id": "u4", "pinned": True}, session)
        assert outcome.status_code == 400
        assert outcome.envelope.error.message == "Missing required parameter 'item_id'."

    @pytest.mark.asyncio
    async def test_atomic_store_skips_read_modify_write(self, user_descriptor, session) -> None:
        store = AtomicInMemoryStore(_seeded_users())
        handler, _ = _handler(ADD_NOTE, user_descriptor, store)
        await handler.handle({"id": "u1", "text": "x"}, session)
        assert store.calls == ["add_item"]

    @pytest.mark.asyncio
    async def test_plain_store_uses_read_modify_write(self, user_descriptor, session) -> None:
        store = InMemoryStore(_seeded_users())
        handler, _ = _handler(ADD_NOTE, user_descriptor, store)
        await handler.handle({"id": "u1", "text": "x"}, session)
        assert store.calls == ["find_by_id", "save"]


# ===========================================================================
# Construction
# ===========================================================================


class TestConstruction:
    def test_model_mismatch(self, user_descriptor) -> None:
        spec = OperationSpec(name="listPosts", model="Post")
        with pytest.raises(DefinitionError):
            OperationHandler(spec, user_descriptor, CountingProvider(InMemoryStore()))

    def test_item_target_must_be_embedded_array(self, user_descriptor) -> None:
        spec = _op("addTag", verb="POST", kind="mutation", action="add_item", target_field="tags")
        with pytest.raises(DefinitionError):
            OperationHandler(spec, user_descriptor, CountingProvider(InMemoryStore()))
