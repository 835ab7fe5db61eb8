"""Embedded single-file store backed by an ``.xlsx`` workbook.

Each collection lives on its own worksheet (header row plus one row per
record) and the ``_Sequences`` worksheet remembers the last identifier issued
per collection. The file on disk is only ever replaced atomically, which is
what gives write scopes their all-or-nothing behaviour:

* a write scope loads a private copy of the workbook from disk, applies its
  mutations to that copy, and on success saves it through
  :func:`~workshop_erp.data_manager.save_workbook` (temp file + rename)
  before publishing it to readers;
* an exception inside the scope simply discards the copy.

Read scopes use the last published workbook, which no writer touches again.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import Collection
from .exceptions import RestoreFailure
from .store import ReadScope, RecordStore, SkipHook, WriteScope


class WorkbookReadScope(ReadScope):
    def __init__(self, store: "WorkbookStore", workbook: Workbook) -> None:
        super().__init__(store)
        self._workbook = workbook

    def _find_row(self, collection: Collection, record_id: int) -> Optional[Tuple[int, Dict[str, Any]]]:
        for row_idx, document in data_manager.iter_documents(self._workbook, collection):
            if document.get("id") == record_id:
                return row_idx, document
        return None

    def _load(self, collection: Collection, record_id: int) -> Optional[Mapping[str, Any]]:
        found = self._find_row(collection, record_id)
        return None if found is None else found[1]

    def _scan(self, collection: Collection) -> Iterable[Mapping[str, Any]]:
        return [document for _, document in data_manager.iter_documents(self._workbook, collection)]

    def sequence(self, collection: Collection) -> int:
        collection = Collection(collection)
        recorded = data_manager.read_sequences(self._workbook).get(collection.value, 0)
        highest = max(
            (document["id"] for document in self._scan(collection) if isinstance(document.get("id"), int)),
            default=0,
        )
        return max(recorded, highest)


class WorkbookWriteScope(WriteScope, WorkbookReadScope):
    def __init__(self, store: "WorkbookStore", workbook: Workbook) -> None:
        super().__init__(store, workbook)
        self.dirty = False

    def _insert_document(self, collection: Collection, document: Dict[str, Any]) -> None:
        data_manager.append_document(self._workbook, collection, document)
        self.dirty = True

    def _replace_document(self, collection: Collection, record_id: int, document: Dict[str, Any]) -> None:
        row_idx, _ = self._require_row(collection, record_id)
        data_manager.write_document(self._workbook, collection, row_idx, document)
        self.dirty = True

    def _remove_document(self, collection: Collection, record_id: int) -> None:
        row_idx, _ = self._require_row(collection, record_id)
        self._workbook[collection.value].delete_rows(row_idx)
        self.dirty = True

    def _clear(self, collection: Collection) -> int:
        removed = data_manager.clear_sheet(self._workbook, collection)
        self.dirty = True
        return removed

    def _set_sequence(self, collection: Collection, value: int) -> None:
        data_manager.write_sequence(self._workbook, collection, value)
        self.dirty = True

    def _require_row(self, collection: Collection, record_id: int) -> Tuple[int, Dict[str, Any]]:
        found = self._find_row(collection, record_id)
        if found is None:
            raise KeyError(f"{collection.value} row for record {record_id} vanished mid-scope")
        return found


class WorkbookStore(RecordStore):
    """Record store persisted in a single workbook file.

    Args:
        data_file (Path): Path of an initialised store workbook (see
            :func:`~workshop_erp.setup_workbook.create_master_workbook`).
        on_skip (SkipHook | None): Called for each malformed record skipped
            while listing.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        ValueError: If the workbook lacks one of the required worksheets.
    """

    supports_file_snapshot = True

    def __init__(self, data_file: Path, *, on_skip: Optional[SkipHook] = None) -> None:
        super().__init__(on_skip=on_skip)
        self.data_file = Path(data_file).expanduser().resolve()
        self._writer = threading.Lock()
        self._workbook = self._load_verified(self.data_file)
        log.info("Opened workbook store '%s'", self.data_file)

    @staticmethod
    def _load_verified(path: Path) -> Workbook:
        workbook = data_manager.open_workbook(path)
        missing = data_manager.missing_sheets(workbook)
        if missing:
            raise ValueError(f"Workbook '{path}' is missing sheets: {', '.join(missing)}")
        data_manager.log_workbook_summary(workbook, path)
        return workbook

    @contextmanager
    def read_scope(self) -> Iterator[WorkbookReadScope]:
        self._ensure_open()
        yield WorkbookReadScope(self, self._workbook)

    @contextmanager
    def write_scope(self) -> Iterator[WorkbookWriteScope]:
        self._ensure_open()
        with self._writer:
            working = data_manager.open_workbook(self.data_file)
            scope = WorkbookWriteScope(self, working)
            try:
                yield scope
            except BaseException:
                log.debug("Workbook write scope rolled back for '%s'", self.data_file)
                raise
            if scope.dirty:
                data_manager.save_workbook(working, self.data_file)
                self._workbook = working
                log.debug("Workbook write scope committed to '%s'", self.data_file)

    def close(self) -> None:
        with self._writer:
            self._workbook.close()
            super().close()
        log.info("Closed workbook store '%s'", self.data_file)

    def write_snapshot(self, destination: Path) -> None:
        """Copy the whole store to ``destination`` as one consistent file.

        The writer lock is held for the duration of the copy so no commit can
        replace the file halfway through; readers are not blocked.
        """
        self._ensure_open()
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        with self._writer:
            shutil.copyfile(self.data_file, destination)

    def replace_with(self, snapshot_path: Path) -> None:
        """Replace the live store with the workbook at ``snapshot_path``.

        The snapshot is first copied next to the live file and opened to make
        sure it is a complete store. Its ``_Sequences`` rows are raised to the
        live values so identifiers issued after the snapshot stay taken. Only
        then is it renamed over the live file, after which the store reopens
        it. Any failure before the rename leaves the live file untouched.

        Raises:
            RestoreFailure: If the staged copy is not a usable store workbook.
        """
        self._ensure_open()
        snapshot_path = Path(snapshot_path)
        with self._writer:
            handle = tempfile.NamedTemporaryFile(
                prefix=f".{self.data_file.stem}-restore-",
                suffix=".xlsx",
                dir=self.data_file.parent,
                delete=False,
            )
            handle.close()
            staged = Path(handle.name)
            try:
                shutil.copyfile(snapshot_path, staged)
                try:
                    restored = self._load_verified(staged)
                    self._carry_sequences(restored)
                except (ValueError, KeyError, OSError, zipfile.BadZipFile, InvalidFileException) as exc:
                    raise RestoreFailure(f"Snapshot '{snapshot_path}' is not a usable store: {exc}") from exc
                data_manager.save_workbook(restored, staged)
                restored.close()
                self._workbook.close()
                staged.replace(self.data_file)
            except BaseException:
                staged.unlink(missing_ok=True)
                raise
            self._workbook = self._load_verified(self.data_file)
        log.info("Workbook store '%s' replaced from '%s'", self.data_file, snapshot_path)

    def _carry_sequences(self, restored: Workbook) -> None:
        live = WorkbookReadScope(self, self._workbook)
        incoming = WorkbookReadScope(self, restored)
        for collection in Collection:
            floor = live.sequence(collection)
            if incoming.sequence(collection) < floor:
                data_manager.write_sequence(restored, collection, floor)
                log.debug("Raised %s sequence of restored workbook to %d", collection.value, floor)


__all__ = ["WorkbookStore", "WorkbookReadScope", "WorkbookWriteScope"]
