"""Unit tests for the shared scope behaviour and the in-memory document store."""

from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest

from workshop_erp.constants import Collection
from workshop_erp.exceptions import NotFoundError, RecordDecodeError, ValidationFailure
from workshop_erp.records import ClientRecord, OperatorRecord, VehicleRecord
from workshop_erp.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def test_create_assigns_monotonic_identifiers(store):
    """Identifiers should increase and never be reused after deletion."""

    first = store.create(Collection.CLIENTS, ClientRecord(name="Rossi"))
    second = store.create(Collection.CLIENTS, ClientRecord(name="Verdi"))
    store.delete(Collection.CLIENTS, second)
    third = store.create(Collection.CLIENTS, ClientRecord(name="Bianchi"))

    assert (first, second, third) == (1, 2, 3)
    assert store.get(Collection.CLIENTS, 3).name == "Bianchi"


def test_sequences_are_per_collection(store):
    """Each collection should keep its own identifier sequence."""

    store.create(Collection.CLIENTS, ClientRecord(name="Rossi"))
    assert store.create(Collection.OPERATORS, OperatorRecord(badge="B1")) == 1


def test_get_missing_record_raises_not_found(store):
    """Unknown identifiers should surface as NotFoundError."""

    with pytest.raises(NotFoundError) as excinfo:
        store.get(Collection.CLIENTS, 42)
    assert excinfo.value.collection is Collection.CLIENTS
    assert excinfo.value.record_id == 42


def test_update_and_delete_require_existing_record(store):
    """update/delete on a missing identifier must not succeed silently."""

    with pytest.raises(NotFoundError):
        store.update(Collection.CLIENTS, 1, ClientRecord(name="Rossi"))
    with pytest.raises(NotFoundError):
        store.delete(Collection.CLIENTS, 1)


def test_update_keeps_identifier(store):
    """The stored identifier is the addressed one, whatever the record carries."""

    record_id = store.create(Collection.CLIENTS, ClientRecord(name="Rossi"))
    store.update(Collection.CLIENTS, record_id, ClientRecord(id=99, name="Rossi Mario"))

    assert store.get(Collection.CLIENTS, record_id) == ClientRecord(id=record_id, name="Rossi Mario")


def test_create_rejects_record_of_other_collection(store):
    """A record must be stored in the collection of its type."""

    with pytest.raises(ValidationFailure):
        store.create(Collection.CLIENTS, VehicleRecord(client_id=1))


def test_create_rejects_structurally_invalid_record(store):
    """Structural validation should run before anything is written."""

    with pytest.raises(ValidationFailure):
        store.create(Collection.CLIENTS, ClientRecord(name=""))
    assert store.list(Collection.CLIENTS) == []
    with store.read_scope() as scope:
        assert scope.sequence(Collection.CLIENTS) == 0


def test_write_scope_rolls_back_on_error(store):
    """An exception inside a write scope must discard every staged mutation."""

    store.create(Collection.CLIENTS, ClientRecord(name="Rossi"))

    with pytest.raises(RuntimeError):
        with store.write_scope() as scope:
            scope.create(Collection.CLIENTS, ClientRecord(name="Verdi"))
            scope.delete(Collection.CLIENTS, 1)
            raise RuntimeError("boom")

    assert [client.name for client in store.list(Collection.CLIENTS)] == ["Rossi"]
    with store.read_scope() as scope:
        assert scope.sequence(Collection.CLIENTS) == 1


def test_read_scope_sees_consistent_snapshot(store):
    """A reader opened before a commit should not observe the commit."""

    store.create(Collection.CLIENTS, ClientRecord(name="Rossi"))
    with store.read_scope() as reader:
        store.create(Collection.CLIENTS, ClientRecord(name="Verdi"))
        assert len(reader.list(Collection.CLIENTS)) == 1
    assert len(store.list(Collection.CLIENTS)) == 2


def test_write_scopes_are_mutually_exclusive(store):
    """A second writer must wait until the first one commits."""

    entered = threading.Event()
    release = threading.Event()
    order = []

    def first_writer():
        with store.write_scope() as scope:
            entered.set()
            release.wait(timeout=5)
            scope.create(Collection.CLIENTS, ClientRecord(name="First"))
            order.append("first")

    def second_writer():
        entered.wait(timeout=5)
        with store.write_scope() as scope:
            scope.create(Collection.CLIENTS, ClientRecord(name="Second"))
            order.append("second")

    threads = [threading.Thread(target=first_writer), threading.Thread(target=second_writer)]
    for thread in threads:
        thread.start()
    entered.wait(timeout=5)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert order == ["first", "second"]
    assert {client.id: client.name for client in store.list(Collection.CLIENTS)} == {1: "First", 2: "Second"}


def test_list_skips_malformed_documents_and_counts_them():
    """Malformed documents are dropped from listings and reported to the hook."""

    hook = Mock(name="on_skip")
    store = MemoryStore(on_skip=hook)
    store.load_documents(
        Collection.VEHICLES,
        [
            {"id": 1, "plate": "AB123CD", "client_id": 1, "year": 2019},
            {"id": 2, "plate": "XY987ZW", "client_id": 1, "year": "twenty"},
            {"plate": "NO-ID"},
        ],
    )

    vehicles = store.list(Collection.VEHICLES)

    assert [vehicle.plate for vehicle in vehicles] == ["AB123CD"]
    assert store.skipped_records == 2
    assert hook.call_count == 2
    assert all(isinstance(call.args[0], RecordDecodeError) for call in hook.call_args_list)


def test_get_surfaces_decode_error_for_malformed_document():
    """A direct lookup should not hide corruption."""

    store = MemoryStore()
    store.load_documents(Collection.CLIENTS, [{"id": 5, "name": "Rossi", "phone": None, "email": 3}])
    store.load_documents(Collection.WORK_ORDERS, [{"id": 1, "vehicle_id": 1, "labor_cost": "bad"}])

    assert store.get(Collection.CLIENTS, 5).email == "3"
    with pytest.raises(RecordDecodeError):
        store.get(Collection.WORK_ORDERS, 1)


def test_insert_uses_explicit_identifier_and_raises_sequence(store):
    """Bulk inserts keep their identifiers and later creates continue after them."""

    with store.write_scope() as scope:
        scope.insert(Collection.CLIENTS, ClientRecord(id=10, name="Rossi"))
        with pytest.raises(ValidationFailure):
            scope.insert(Collection.CLIENTS, ClientRecord(id=10, name="Dup"))
        with pytest.raises(ValidationFailure):
            scope.insert(Collection.CLIENTS, ClientRecord(name="No id"))
        with pytest.raises(ValidationFailure):
            scope.insert(Collection.CLIENTS, ClientRecord(id=12, name="Bad\x02"))

    assert store.create(Collection.CLIENTS, ClientRecord(name="Verdi")) == 11


def test_clear_and_bump_sequence(store):
    """clear empties a collection without ever lowering its sequence."""

    for name in ("A", "B", "C"):
        store.create(Collection.CLIENTS, ClientRecord(name=name))

    with store.write_scope() as scope:
        assert scope.clear(Collection.CLIENTS) == 3
        scope.bump_sequence(Collection.CLIENTS, 2)
        assert scope.sequence(Collection.CLIENTS) == 3
        scope.bump_sequence(Collection.CLIENTS, 8)

    assert store.list(Collection.CLIENTS) == []
    assert store.create(Collection.CLIENTS, ClientRecord(name="D")) == 9


def test_find_filters_with_predicate(store):
    """find should return only the records matching the predicate."""

    store.create(Collection.VEHICLES, VehicleRecord(plate="AA", client_id=1))
    store.create(Collection.VEHICLES, VehicleRecord(plate="BB", client_id=2))

    with store.read_scope() as scope:
        found = scope.find(Collection.VEHICLES, lambda vehicle: vehicle.client_id == 2)
    assert [vehicle.plate for vehicle in found] == ["BB"]


def test_find_owned_skips_only_malformed_documents_of_other_owners():
    """A corrupt dependent of a listed owner is surfaced instead of skipped."""

    store = MemoryStore()
    store.load_documents(
        Collection.VEHICLES,
        [
            {"id": 1, "plate": "AA", "client_id": 1},
            {"id": 2, "plate": "BB", "client_id": 2, "year": "old"},
            {"id": 3, "plate": "CC", "client_id": 3},
        ],
    )

    with store.read_scope() as scope:
        assert [vehicle.plate for vehicle in scope.find_owned(Collection.VEHICLES, "client_id", [1, 3])] == [
            "AA",
            "CC",
        ]
        with pytest.raises(RecordDecodeError):
            scope.find_owned(Collection.VEHICLES, "client_id", [2])
    assert store.skipped_records == 1


def test_find_owned_surfaces_unreadable_owner_reference():
    store = MemoryStore()
    store.load_documents(Collection.VEHICLES, [{"id": 1, "plate": "AA", "client_id": "someone"}])

    with store.read_scope() as scope:
        with pytest.raises(RecordDecodeError):
            scope.find_owned(Collection.VEHICLES, "client_id", [1])


def test_documents_are_json_safe(store):
    """The memory backend keeps the codec's documents, not live objects."""

    store.create(Collection.VEHICLES, VehicleRecord(plate="AA", client_id=1, mileage=1200))
    with store.read_scope() as scope:
        (document,) = scope._scan(Collection.VEHICLES)
    assert document["mileage"] == 1200
    assert document["last_inspection"] is None


def test_closed_store_rejects_scopes(store):
    """Using a closed handle is a programming error."""

    store.close()
    assert store.closed
    with pytest.raises(RuntimeError):
        store.list(Collection.CLIENTS)
