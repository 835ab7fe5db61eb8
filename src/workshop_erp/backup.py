"""Backup & Retention Manager.

Snapshots are written under the backup directory with a sortable,
timestamp-derived name (``backup_<YYYYMMDDHHMMSS>``). Two layouts exist:

* **file** snapshots (``backup_<ts>.xlsx``) are a consistent copy of a
  single-file store, available when the store sets
  ``supports_file_snapshot``;
* **export** snapshots (``backup_<ts>/``) hold one JSON document list per
  collection plus ``manifest.json`` with the timestamp, the collection names,
  the format version and the identifier sequences.

Snapshots are assembled under a hidden ``.partial-`` name and renamed into
place once complete, so a crash never leaves a half-written snapshot in the
listing. Ordering always comes from the name (timestamp, then the ``_NN``
collision counter) and never from filesystem metadata.
"""

from __future__ import annotations

import json
import re
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import log
from .constants import (
    MANIFEST_FILE_NAME,
    SNAPSHOT_FORMAT_VERSION,
    SNAPSHOT_PREFIX,
    SNAPSHOT_TIMESTAMP_FORMAT,
    Collection,
    SnapshotStrategy,
)
from .core_logic import RuntimeContext
from .data_manager import ConfigSettings
from .exceptions import RecordDecodeError, RestoreFailure, RetentionFailure, SnapshotFailure, WorkshopError
from .records import Record, from_document, to_document
from .store import RecordStore


FILE_SNAPSHOT_SUFFIX = ".xlsx"
PARTIAL_PREFIX = ".partial-"

_SNAPSHOT_NAME = re.compile(
    rf"^{re.escape(SNAPSHOT_PREFIX)}(?P<stamp>\d{{14}})(?:_(?P<counter>\d{{2,}}))?(?P<suffix>{re.escape(FILE_SNAPSHOT_SUFFIX)})?$"
)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of :meth:`BackupManager.snapshot`.

    ``retention_error`` is set when the snapshot was written but pruning old
    snapshots failed afterwards.
    """

    location: Path
    retention_error: Optional[RetentionFailure] = None

    @property
    def degraded(self) -> bool:
        return self.retention_error is not None


def parse_snapshot_name(name: str) -> Optional[Tuple[datetime, int]]:
    """Return the ``(timestamp, counter)`` sort key encoded in a snapshot name.

    Returns:
        tuple[datetime, int] | None: ``None`` when ``name`` is not a snapshot.
    """
    match = _SNAPSHOT_NAME.match(name)
    if match is None:
        return None
    try:
        stamp = datetime.strptime(match.group("stamp"), SNAPSHOT_TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    return stamp, int(match.group("counter") or 0)


def snapshot_name(moment: datetime, counter: int, strategy: SnapshotStrategy) -> str:
    """Build the name of a snapshot taken at ``moment``."""
    name = f"{SNAPSHOT_PREFIX}{moment.astimezone(UTC).strftime(SNAPSHOT_TIMESTAMP_FORMAT)}"
    if counter:
        name += f"_{counter:02d}"
    if strategy is SnapshotStrategy.FILE:
        name += FILE_SNAPSHOT_SUFFIX
    return name


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink()


class BackupManager:
    """Take, list, prune and restore snapshots of one store.

    Args:
        store (RecordStore): The live store.
        directory (Path): Directory holding the snapshots; created on demand.
        max_snapshots (int): How many snapshots :meth:`snapshot` keeps.
        clock (Callable[[], datetime] | None): Source of the snapshot
            timestamp; defaults to the current UTC time.
        strategy (SnapshotStrategy | None): Snapshot layout. When ``None`` the
            file layout is used if the store supports it, else the export one.

    Raises:
        ValueError: If ``max_snapshots`` is below 1 or the file strategy is
            requested for a store that cannot provide it.
    """

    def __init__(
        self,
        store: RecordStore,
        directory: Path,
        *,
        max_snapshots: int,
        clock: Optional[Clock] = None,
        strategy: Optional[SnapshotStrategy] = None,
    ) -> None:
        if max_snapshots < 1:
            raise ValueError(f"max_snapshots must be at least 1, got {max_snapshots}")
        if strategy is None:
            strategy = SnapshotStrategy.FILE if store.supports_file_snapshot else SnapshotStrategy.EXPORT
        strategy = SnapshotStrategy(strategy)
        if strategy is SnapshotStrategy.FILE and not store.supports_file_snapshot:
            raise ValueError(f"{type(store).__name__} does not support file snapshots")

        self.store = store
        self.directory = Path(directory).expanduser()
        self.max_snapshots = max_snapshots
        self.strategy = strategy
        self._clock: Clock = clock or (lambda: datetime.now(UTC))

    # -- snapshot -----------------------------------------------------------

    def snapshot(self) -> SnapshotResult:
        """Write a new snapshot, then prune down to ``max_snapshots``.

        Returns:
            SnapshotResult: Location of the new snapshot. A pruning failure is
                reported through ``retention_error`` rather than raised.

        Raises:
            SnapshotFailure: If the snapshot could not be written. Nothing is
                left behind in the backup directory in that case.
        """
        moment = self._clock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            location = self._free_location(moment)
        except OSError as exc:
            log.error("Cannot prepare backup directory '%s': %s", self.directory, exc)
            raise SnapshotFailure(f"Cannot prepare backup directory '{self.directory}': {exc}") from exc

        partial = location.with_name(PARTIAL_PREFIX + location.name)
        try:
            if self.strategy is SnapshotStrategy.FILE:
                self.store.write_snapshot(partial)
            else:
                self._write_export(partial, moment)
            partial.rename(location)
        except (OSError, WorkshopError) as exc:
            if partial.exists():
                _remove_path(partial)
            log.error("Snapshot '%s' failed: %s", location.name, exc)
            raise SnapshotFailure(f"Snapshot '{location.name}' failed: {exc}") from exc
        log.info("Snapshot written to '%s'", location)

        try:
            self.prune(self.max_snapshots)
        except RetentionFailure as exc:
            log.warning("Snapshot '%s' created but cleanup failed: %s", location.name, exc)
            return SnapshotResult(location=location, retention_error=exc)
        return SnapshotResult(location=location)

    def _free_location(self, moment: datetime) -> Path:
        counter = 0
        while True:
            candidate = self.directory / snapshot_name(moment, counter, self.strategy)
            partial = candidate.with_name(PARTIAL_PREFIX + candidate.name)
            if not self._stamp_taken(candidate) and not partial.exists():
                return candidate
            counter += 1

    def _stamp_taken(self, candidate: Path) -> bool:
        # A directory and a file taken in the same second share the sort key.
        key = parse_snapshot_name(candidate.name)
        return any(parse_snapshot_name(path.name) == key for path in self.directory.iterdir())

    def _write_export(self, target: Path, moment: datetime) -> None:
        target.mkdir()
        with self.store.read_scope() as scope:
            for collection in Collection:
                documents = [to_document(record) for record in sorted(scope.list(collection), key=lambda r: r.id)]
                with (target / f"{collection.value}.json").open("w", encoding="utf-8") as handle:
                    json.dump(documents, handle, indent=2)
            sequences = {collection.value: scope.sequence(collection) for collection in Collection}

        manifest = {
            "timestamp": moment.astimezone(UTC).isoformat(),
            "collections": [collection.value for collection in Collection],
            "formatVersion": SNAPSHOT_FORMAT_VERSION,
            "sequences": sequences,
        }
        with (target / MANIFEST_FILE_NAME).open("w", encoding="utf-8") as handle:
            json.dump(manifest, handle, indent=2)

    # -- listing & retention ------------------------------------------------

    def list(self) -> List[Path]:
        """Return the existing snapshots, most recent first."""
        if not self.directory.is_dir():
            return []
        found = []
        for path in self.directory.iterdir():
            key = parse_snapshot_name(path.name)
            if key is not None:
                found.append((key, path))
        found.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in found]

    def prune(self, max_snapshots: Optional[int] = None) -> List[Path]:
        """Delete the oldest snapshots until at most ``max_snapshots`` remain.

        Args:
            max_snapshots (int | None): Limit to enforce; defaults to the
                manager's own limit.

        Returns:
            list[Path]: Removed snapshots, oldest first. Empty when the count
                is already within the limit.

        Raises:
            ValueError: If the limit is below 1.
            RetentionFailure: If a snapshot could not be removed.
        """
        keep = self.max_snapshots if max_snapshots is None else max_snapshots
        if keep < 1:
            raise ValueError(f"max_snapshots must be at least 1, got {keep}")

        removed: List[Path] = []
        for path in reversed(self.list()[keep:]):
            try:
                _remove_path(path)
            except OSError as exc:
                log.error("Cannot remove snapshot '%s': %s", path, exc)
                raise RetentionFailure(f"Cannot remove snapshot '{path}': {exc}") from exc
            removed.append(path)
            log.info("Pruned snapshot '%s'", path.name)
        return removed

    # -- restore ------------------------------------------------------------

    def restore(self, location: Path) -> None:
        """Replace the live store's content with the snapshot at ``location``.

        Everything is staged before the live store is touched: a file snapshot
        is copied and verified beside the live file, an export is read and
        decoded in full. Callers must not use the store concurrently.

        Raises:
            RestoreFailure: If the snapshot is missing, unreadable or
                malformed, or the replacement fails. The live store keeps its
                previous content.
        """
        location = Path(location)
        if not location.exists():
            raise RestoreFailure(f"Snapshot not found: {location}")

        if location.is_dir():
            self._restore_export(location)
        else:
            self._restore_file(location)
        log.info("Store restored from '%s'", location)

    def _restore_file(self, location: Path) -> None:
        if not self.store.supports_file_snapshot:
            raise RestoreFailure(f"{type(self.store).__name__} cannot restore the file snapshot '{location}'")
        try:
            self.store.replace_with(location)
        except OSError as exc:
            log.error("Restore from '%s' failed: %s", location, exc)
            raise RestoreFailure(f"Restore from '{location}' failed: {exc}") from exc

    def _restore_export(self, location: Path) -> None:
        manifest = self._read_manifest(location)
        staged: Dict[Collection, List[Record]] = {}
        for collection in manifest["collections"]:
            staged[collection] = self._read_collection(location, collection)
        sequences: Dict[str, Any] = manifest["sequences"]

        try:
            with self.store.write_scope() as scope:
                for collection, records in staged.items():
                    scope.clear(collection)
                    for record in records:
                        scope.insert(collection, record)
                    scope.bump_sequence(collection, int(sequences.get(collection.value, 0)))
        except (OSError, WorkshopError, ValueError) as exc:
            log.error("Restore from '%s' failed: %s", location, exc)
            raise RestoreFailure(f"Restore from '{location}' failed: {exc}") from exc

    @staticmethod
    def _read_manifest(location: Path) -> Dict[str, Any]:
        try:
            raw = json.loads((location / MANIFEST_FILE_NAME).read_text(encoding="utf-8"))
            if raw.get("formatVersion") != SNAPSHOT_FORMAT_VERSION:
                raise ValueError(f"unsupported format version {raw.get('formatVersion')!r}")
            collections = [Collection(name) for name in raw["collections"]]
            sequences = raw.get("sequences") or {}
            if not isinstance(sequences, dict):
                raise ValueError("sequences must be an object")
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            log.error("Unusable manifest in '%s': %s", location, exc)
            raise RestoreFailure(f"Unusable manifest in '{location}': {exc}") from exc
        return {"collections": collections, "sequences": sequences}

    @staticmethod
    def _read_collection(location: Path, collection: Collection) -> List[Record]:
        path = location / f"{collection.value}.json"
        try:
            documents = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(documents, list):
                raise ValueError("expected a list of documents")
            return [from_document(collection, document) for document in documents]
        except (OSError, ValueError, AttributeError, RecordDecodeError) as exc:
            log.error("Unusable %s export in '%s': %s", collection.value, location, exc)
            raise RestoreFailure(f"Unusable {collection.value} export in '{location}': {exc}") from exc


def manager_from_settings(store: RecordStore, settings: ConfigSettings) -> BackupManager:
    """Build the manager described by the ``[Backup]`` section."""
    return BackupManager(
        store,
        settings.resolved_backup_dir,
        max_snapshots=settings.max_snapshots,
    )


def run_startup_backup(context: RuntimeContext) -> Optional[SnapshotResult]:
    """Take the automatic snapshot performed when the application starts.

    Returns:
        SnapshotResult | None: ``None`` when backups are disabled.

    Raises:
        SnapshotFailure: If the snapshot could not be written.
    """
    if not context.settings.backup_enabled:
        log.info("Startup backup disabled in configuration")
        return None
    return manager_from_settings(context.store, context.settings).snapshot()


__all__ = [
    "SnapshotResult",
    "BackupManager",
    "parse_snapshot_name",
    "snapshot_name",
    "manager_from_settings",
    "run_startup_backup",
]
