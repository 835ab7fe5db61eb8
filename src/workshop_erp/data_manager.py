"""Configuration and workbook helpers for the workshop persistence layer.

This module provides the low-level pieces the store backends are built on.
Business rules belong elsewhere.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, verifying, and atomically persisting the
   ``.xlsx`` file that backs the embedded store.
3. Sheet operations: turning worksheet rows into documents keyed by field
   name, locating rows by identifier, and maintaining the identifier
   sequences.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SEQUENCES_SHEET, Backend, Collection
from .records import column_title, field_names


CONFIG_FILE_NAME = "config.ini"
DEFAULT_MAX_SNAPSHOTS = 7
DEFAULT_BACKUP_DIR_NAME = "backups"
SEQUENCE_COLUMNS = ("Collection", "LastID")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    workshop_name: str
    schema_version: str
    backend: Backend = Backend.WORKBOOK
    backup_dir: Optional[Path] = None
    max_snapshots: int = DEFAULT_MAX_SNAPSHOTS
    backup_enabled: bool = True

    @property
    def resolved_backup_dir(self) -> Path:
        """Backup directory, defaulting to ``backups`` beside the data file."""
        if self.backup_dir is not None:
            return self.backup_dir
        return self.data_file.parent / DEFAULT_BACKUP_DIR_NAME


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the store is opened.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must declare ``DataFile``, ``WorkshopName`` and
    ``SchemaVersion``; ``Backend`` is optional. ``memory`` keeps nothing
    between processes and is meant for tests and embedding; the CLI refuses it. The ``[Backup]`` section is
    optional as a whole. Relative paths are anchored at ``base_path`` (or the
    current working directory) and resolved so downstream consumers operate on
    canonical values.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            paths. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional entry holds a value of the wrong shape.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        workshop_name = parser.get("System", "WorkshopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    backend_raw = parser.get("System", "Backend", fallback=Backend.WORKBOOK.value)
    try:
        backend = Backend(backend_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown store backend: {backend_raw}") from exc

    backup_dir_raw = parser.get("Backup", "Directory", fallback=None)
    max_snapshots = parser.getint("Backup", "MaxSnapshots", fallback=DEFAULT_MAX_SNAPSHOTS)
    backup_enabled = parser.getboolean("Backup", "Enabled", fallback=True)
    if max_snapshots < 1:
        raise ValueError(f"MaxSnapshots must be at least 1, got {max_snapshots}")

    return ConfigSettings(
        data_file=_anchor(Path(data_file_raw), base_path),
        workshop_name=workshop_name,
        schema_version=schema_version,
        backend=backend,
        backup_dir=_anchor(Path(backup_dir_raw), base_path) if backup_dir_raw else None,
        max_snapshots=max_snapshots,
        backup_enabled=backup_enabled,
    )


def _anchor(path: Path, base_path: Path) -> Path:
    path = path.expanduser()
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ``.xlsx`` store.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so that ``destination`` is replaced atomically.

    The workbook is first written to a temporary file in the destination
    directory and then moved over the target with :func:`os.replace`. Readers
    of ``destination`` therefore see either the previous file or the complete
    new one, never a half-written workbook.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".tmp.xlsx", dir=dest.parent)
    os.close(handle)
    try:
        workbook.save(temp_name)
        os.replace(temp_name, dest)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def missing_sheets(workbook: Workbook) -> Tuple[str, ...]:
    """Return the names of required worksheets absent from ``workbook``."""

    required = [collection.value for collection in Collection] + [SEQUENCES_SHEET]
    return tuple(name for name in required if name not in workbook.sheetnames)


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles on row 1 to their 1-based column index."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_documents(workbook: Workbook, collection: Collection) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """Stream raw documents from the worksheet backing ``collection``.

    Header titles are mapped back to field names so the documents have the same
    shape as those produced by :func:`~workshop_erp.records.to_document`.
    Fully empty rows are skipped. Columns present in the sheet but unknown to
    the record type are ignored.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        collection (Collection): Collection to read.

    Yields:
        tuple[int, dict[str, Any]]: 1-based row index and the document read
            from that row.
    """

    sheet = workbook[Collection(collection).value]
    titles = {column_title(name): name for name in field_names(collection)}
    headers = [cell.value for cell in sheet[1]]
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not any(cell is not None for cell in raw):
            continue
        document = {
            titles[title]: value
            for title, value in zip(headers, raw)
            if title in titles
        }
        yield row_idx, document


def serialize_document(collection: Collection, document: Mapping[str, Any]) -> list[object]:
    """Arrange a document into the worksheet column ordering for ``collection``."""

    return [document.get(name) for name in field_names(collection)]


def append_document(workbook: Workbook, collection: Collection, document: Mapping[str, Any]) -> None:
    """Append ``document`` as a new row of the collection worksheet."""

    sheet = workbook[Collection(collection).value]
    sheet.append(serialize_document(collection, document))


def write_document(workbook: Workbook, collection: Collection, row_index: int, document: Mapping[str, Any]) -> None:
    """Overwrite row ``row_index`` of the collection worksheet with ``document``.

    Raises:
        KeyError: If the worksheet header lacks a column the record declares.
    """

    sheet = workbook[Collection(collection).value]
    columns = header_map(sheet)
    for name in field_names(collection):
        title = column_title(name)
        if title not in columns:
            raise KeyError(f"Unknown {collection.value} column: {title}")
        sheet.cell(row=row_index, column=columns[title], value=document.get(name))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (Any): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def clear_sheet(workbook: Workbook, collection: Collection) -> int:
    """Remove every data row of the collection worksheet, keeping the header.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[Collection(collection).value]
    removed = max(sheet.max_row - 1, 0)
    if removed:
        sheet.delete_rows(2, removed)
    return removed


def read_sequences(workbook: Workbook) -> Dict[str, int]:
    """Return the last identifier issued per collection name."""

    sheet = workbook[SEQUENCES_SHEET]
    sequences: Dict[str, int] = {}
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if raw[0] is None:
            continue
        sequences[str(raw[0])] = int(raw[1] or 0)
    return sequences


def write_sequence(workbook: Workbook, collection: Collection, value: int) -> None:
    """Record ``value`` as the last identifier issued for ``collection``."""

    name = Collection(collection).value
    row_index = locate_row(workbook, SEQUENCES_SHEET, SEQUENCE_COLUMNS[0], name)
    sheet = workbook[SEQUENCES_SHEET]
    if row_index is None:
        sheet.append([name, value])
    else:
        sheet.cell(row=row_index, column=2, value=value)


def log_workbook_summary(workbook: Workbook, data_file: Path) -> None:
    """Emit a debug line listing the row count of each collection sheet."""

    counts = ", ".join(
        f"{collection.value}={max(workbook[collection.value].max_row - 1, 0)}"
        for collection in Collection
        if collection.value in workbook.sheetnames
    )
    log.debug("Workbook '%s' rows: %s", data_file, counts)
