"""Record store contract and the in-memory document-store backend.

Every backend exposes the same two scopes:

* a **write scope**, exclusive with every other write scope, in which all
  mutations either commit together or are discarded together, and
* a **read scope**, which sees the last committed state and never blocks on
  other readers.

Backends only implement a handful of document primitives (load, scan,
insert, replace, remove, clear, sequence bookkeeping). Identifier allocation,
existence checks, structural validation, and the lenient listing policy live
in the shared scope classes below so every backend behaves identically.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from . import log
from .constants import Collection
from .exceptions import NotFoundError, RecordDecodeError, ValidationFailure
from .records import Record, collection_of, from_document, to_document, validate_structure, with_id


SkipHook = Callable[[RecordDecodeError], None]


class ReadScope(ABC):
    """Consistent, read-only view of a store."""

    def __init__(self, store: "RecordStore") -> None:
        self._store = store

    # -- backend primitives -------------------------------------------------

    @abstractmethod
    def _load(self, collection: Collection, record_id: int) -> Optional[Mapping[str, Any]]:
        """Return the stored document for ``record_id`` or ``None``."""

    @abstractmethod
    def _scan(self, collection: Collection) -> Iterable[Mapping[str, Any]]:
        """Yield every stored document of ``collection``."""

    @abstractmethod
    def sequence(self, collection: Collection) -> int:
        """Return the last identifier issued for ``collection``."""

    # -- shared behaviour ---------------------------------------------------

    def exists(self, collection: Collection, record_id: int) -> bool:
        return self._load(Collection(collection), record_id) is not None

    def get(self, collection: Collection, record_id: int) -> Record:
        """Return the record stored under ``record_id``.

        Raises:
            NotFoundError: If the identifier does not exist in ``collection``.
            RecordDecodeError: If the stored document is malformed.
        """
        collection = Collection(collection)
        document = self._load(collection, record_id)
        if document is None:
            raise NotFoundError(collection, record_id)
        return from_document(collection, document)

    def list(self, collection: Collection) -> List[Record]:
        """Return every decodable record of ``collection``, in no particular order.

        Malformed documents are dropped from the result and reported to the
        owning store, which counts them and forwards them to its skip hook.
        """
        collection = Collection(collection)
        records: List[Record] = []
        for document in self._scan(collection):
            try:
                records.append(from_document(collection, document))
            except RecordDecodeError as error:
                self._store._record_skip(error)
        return records

    def find(self, collection: Collection, predicate: Callable[[Any], bool]) -> List[Record]:
        """Return the records of ``collection`` for which ``predicate`` holds."""
        return [record for record in self.list(collection) if predicate(record)]

    def find_owned(self, collection: Collection, owner_field: str, owners: Iterable[int]) -> List[Record]:
        """Return the records of ``collection`` whose ``owner_field`` is one of ``owners``.

        Unlike :meth:`find`, a malformed document is only skipped when its raw
        owner reference clearly points elsewhere. If it names one of
        ``owners``, or the reference itself is unreadable, the decode error is
        raised so an owner is never removed while a dependent survives it.

        Raises:
            RecordDecodeError: For a malformed document that may be owned.
        """
        collection = Collection(collection)
        owners = set(owners)
        owned: List[Record] = []
        for document in self._scan(collection):
            try:
                record = from_document(collection, document)
            except RecordDecodeError as error:
                reference = _raw_reference(document.get(owner_field))
                if reference is None or reference in owners:
                    raise
                self._store._record_skip(error)
                continue
            if getattr(record, owner_field) in owners:
                owned.append(record)
        return owned


def _raw_reference(value: Any) -> Optional[int]:
    """Read an owner id from an undecoded document; ``None`` when unreadable."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class WriteScope(ReadScope):
    """Exclusive scope in which mutations are staged until commit."""

    # -- backend primitives -------------------------------------------------

    @abstractmethod
    def _insert_document(self, collection: Collection, document: Dict[str, Any]) -> None:
        """Persist a new document whose identifier is not yet in use."""

    @abstractmethod
    def _replace_document(self, collection: Collection, record_id: int, document: Dict[str, Any]) -> None:
        """Overwrite the existing document stored under ``record_id``."""

    @abstractmethod
    def _remove_document(self, collection: Collection, record_id: int) -> None:
        """Remove the existing document stored under ``record_id``."""

    @abstractmethod
    def _clear(self, collection: Collection) -> int:
        """Remove every document of ``collection`` and return how many were removed."""

    @abstractmethod
    def _set_sequence(self, collection: Collection, value: int) -> None:
        """Record ``value`` as the last identifier issued for ``collection``."""

    # -- shared behaviour ---------------------------------------------------

    def create(self, collection: Collection, record: Record) -> int:
        """Allocate the next identifier and persist ``record`` under it."""
        collection = self._check_type(collection, record)
        validate_structure(record)
        record_id = self.sequence(collection) + 1
        self._set_sequence(collection, record_id)
        self._insert_document(collection, to_document(with_id(record, record_id)))
        return record_id

    def update(self, collection: Collection, record_id: int, record: Record) -> None:
        """Replace the record stored under ``record_id``; the identifier is kept."""
        collection = self._check_type(collection, record)
        if self._load(collection, record_id) is None:
            raise NotFoundError(collection, record_id)
        validate_structure(record)
        self._replace_document(collection, record_id, to_document(with_id(record, record_id)))

    def delete(self, collection: Collection, record_id: int) -> None:
        collection = Collection(collection)
        if self._load(collection, record_id) is None:
            raise NotFoundError(collection, record_id)
        self._remove_document(collection, record_id)

    def clear(self, collection: Collection) -> int:
        return self._clear(Collection(collection))

    def insert(self, collection: Collection, record: Record) -> None:
        """Persist ``record`` under its own identifier (bulk restore path).

        The collection sequence is raised to at least the inserted identifier
        so later creates never hand it out again.
        """
        collection = self._check_type(collection, record)
        if record.id <= 0:
            raise ValidationFailure(f"Cannot insert {collection.value} record without an identifier")
        validate_structure(record)
        if self._load(collection, record.id) is not None:
            raise ValidationFailure(f"{collection.value} record {record.id} already exists")
        self._insert_document(collection, to_document(record))
        self.bump_sequence(collection, record.id)

    def bump_sequence(self, collection: Collection, value: int) -> None:
        """Raise the sequence of ``collection`` to ``value`` if it is lower."""
        collection = Collection(collection)
        if value > self.sequence(collection):
            self._set_sequence(collection, value)

    @staticmethod
    def _check_type(collection: Collection, record: Record) -> Collection:
        collection = Collection(collection)
        if collection_of(record) is not collection:
            raise ValidationFailure(
                f"{type(record).__name__} cannot be stored in {collection.value}"
            )
        return collection


class RecordStore(ABC):
    """Process-wide handle on a backing store.

    Open one per process and pass it around explicitly; tests build isolated
    instances. The single-operation helpers each run in their own scope. Use
    :meth:`write_scope` directly when several steps must commit together.
    """

    supports_file_snapshot = False

    def __init__(self, *, on_skip: Optional[SkipHook] = None) -> None:
        self.on_skip = on_skip
        self.skipped_records = 0
        self._skip_lock = threading.Lock()
        self._closed = False

    @abstractmethod
    def read_scope(self) -> Iterator[ReadScope]:
        """Context manager yielding a consistent read-only scope."""

    @abstractmethod
    def write_scope(self) -> Iterator[WriteScope]:
        """Context manager yielding an exclusive all-or-nothing write scope."""

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} is closed")

    def write_snapshot(self, destination: Path) -> None:
        """Copy the whole store to ``destination`` (file snapshot capability)."""
        raise NotImplementedError(f"{type(self).__name__} does not support file snapshots")

    def replace_with(self, snapshot_path: Path) -> None:
        """Replace the whole store with a file snapshot (file snapshot capability)."""
        raise NotImplementedError(f"{type(self).__name__} does not support file snapshots")

    def _record_skip(self, error: RecordDecodeError) -> None:
        with self._skip_lock:
            self.skipped_records += 1
        log.warning("Skipping malformed record: %s", error)
        if self.on_skip is not None:
            self.on_skip(error)

    def create(self, collection: Collection, record: Record) -> int:
        with self.write_scope() as scope:
            return scope.create(collection, record)

    def get(self, collection: Collection, record_id: int) -> Record:
        with self.read_scope() as scope:
            return scope.get(collection, record_id)

    def update(self, collection: Collection, record_id: int, record: Record) -> None:
        with self.write_scope() as scope:
            scope.update(collection, record_id, record)

    def delete(self, collection: Collection, record_id: int) -> None:
        with self.write_scope() as scope:
            scope.delete(collection, record_id)

    def list(self, collection: Collection) -> List[Record]:
        with self.read_scope() as scope:
            return scope.list(collection)


@dataclass
class _MemoryState:
    """Committed contents of a :class:`MemoryStore`; never mutated once published."""

    documents: Dict[Collection, Dict[int, Dict[str, Any]]] = field(
        default_factory=lambda: {collection: {} for collection in Collection}
    )
    sequences: Dict[Collection, int] = field(
        default_factory=lambda: {collection: 0 for collection in Collection}
    )

    def fork(self) -> "_MemoryState":
        return _MemoryState(
            documents={name: dict(bucket) for name, bucket in self.documents.items()},
            sequences=dict(self.sequences),
        )


class MemoryReadScope(ReadScope):
    def __init__(self, store: "MemoryStore", state: _MemoryState) -> None:
        super().__init__(store)
        self._state = state

    def _load(self, collection: Collection, record_id: int) -> Optional[Mapping[str, Any]]:
        return self._state.documents[collection].get(record_id)

    def _scan(self, collection: Collection) -> Iterable[Mapping[str, Any]]:
        return list(self._state.documents[Collection(collection)].values())

    def sequence(self, collection: Collection) -> int:
        return self._state.sequences[Collection(collection)]


class MemoryWriteScope(WriteScope, MemoryReadScope):
    def _insert_document(self, collection: Collection, document: Dict[str, Any]) -> None:
        self._state.documents[collection][document["id"]] = dict(document)

    def _replace_document(self, collection: Collection, record_id: int, document: Dict[str, Any]) -> None:
        self._state.documents[collection][record_id] = dict(document)

    def _remove_document(self, collection: Collection, record_id: int) -> None:
        del self._state.documents[collection][record_id]

    def _clear(self, collection: Collection) -> int:
        removed = len(self._state.documents[collection])
        self._state.documents[collection] = {}
        return removed

    def _set_sequence(self, collection: Collection, value: int) -> None:
        self._state.sequences[collection] = value


class MemoryStore(RecordStore):
    """Document-store backend keeping JSON-safe documents in process memory.

    Write scopes work on a fork of the committed state and publish it with a
    single reference swap on success, so readers never see a partial write
    and an exception inside the scope simply drops the fork.
    """

    def __init__(self, *, on_skip: Optional[SkipHook] = None) -> None:
        super().__init__(on_skip=on_skip)
        self._state = _MemoryState()
        self._writer = threading.Lock()

    @contextmanager
    def read_scope(self) -> Iterator[MemoryReadScope]:
        self._ensure_open()
        yield MemoryReadScope(self, self._state)

    @contextmanager
    def write_scope(self) -> Iterator[MemoryWriteScope]:
        self._ensure_open()
        with self._writer:
            working = self._state.fork()
            try:
                yield MemoryWriteScope(self, working)
            except BaseException:
                log.debug("Memory store write scope rolled back")
                raise
            self._state = working
            log.debug("Memory store write scope committed")

    def load_documents(self, collection: Collection, documents: Iterable[Mapping[str, Any]]) -> None:
        """Seed raw documents, bypassing the codec; meant for fixtures and imports.

        Documents without an integer ``id`` are kept under a negative key so a
        listing still encounters them and reports them as malformed.
        """
        collection = Collection(collection)
        with self.write_scope() as scope:
            bucket = scope._state.documents[collection]
            for document in documents:
                key = document.get("id")
                if not isinstance(key, int) or isinstance(key, bool):
                    key = -(len(bucket) + 1)
                bucket[key] = dict(document)
                if key > 0:
                    scope.bump_sequence(collection, key)


__all__ = [
    "ReadScope",
    "WriteScope",
    "RecordStore",
    "MemoryStore",
    "SkipHook",
]
