"""Business layer for the workshop persistence core.

This module owns the runtime context (settings plus the open store handle) and
the Identifier & Derived-Field Assigner: every entity created or updated
through :func:`create_record` / :func:`update_record` gets its identifier,
business number, totals and status timestamps stamped here, inside the same
write scope that persists it. Higher layers (cascade, ledger, backup, CLI)
consume the store exclusively through the context built here.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    INVOICE_NUMBER_FORMAT,
    OWNING_COLLECTIONS,
    QUOTE_NUMBER_FORMAT,
    WORK_ORDER_NUMBER_FORMAT,
    Backend,
    Collection,
    WorkOrderStatus,
)
from .exceptions import NotFoundError, ValidationFailure
from .records import (
    AppointmentRecord,
    InvoiceRecord,
    LedgerEntryRecord,
    QuoteRecord,
    Record,
    VehicleRecord,
    WorkOrderRecord,
    collection_of,
    validate_structure,
)
from .store import MemoryStore, ReadScope, RecordStore, WriteScope
from .workbook_store import WorkbookStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for the configuration and the process-wide store handle."""

    settings: data_manager.ConfigSettings
    store: RecordStore


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. When ``None``
            the current UTC time is used instead.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise
            :func:`datetime.now` in UTC.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def open_store(settings: data_manager.ConfigSettings) -> RecordStore:
    """Open the backend selected by ``settings.backend``.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration.

    Returns:
        RecordStore: A :class:`WorkbookStore` on ``settings.data_file`` or an
            empty :class:`MemoryStore`.

    Raises:
        FileNotFoundError: If the workbook backend is selected and the data
            file does not exist.
        ValueError: If the workbook lacks required worksheets.
    """
    if settings.backend is Backend.MEMORY:
        log.info("Opening in-memory document store")
        return MemoryStore()
    return WorkbookStore(settings.data_file)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the configured store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the business functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = open_store(settings)
    log.info("Loaded runtime context for '%s' (%s backend)", settings.workshop_name, settings.backend.value)
    return RuntimeContext(settings=settings, store=store)


def close_runtime_context(context: RuntimeContext) -> None:
    """Close the store handle held by ``context``; safe to call twice."""
    if not context.store.closed:
        context.store.close()


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Identifier & derived-field assigner
# ---------------------------------------------------------------------------


def work_order_total(labor_cost: Decimal, parts_cost: Decimal) -> Decimal:
    """Return the total a work order must carry for the given costs."""
    return labor_cost + parts_cost


def assign_on_create(record: Record, record_id: int, *, now: datetime) -> Record:
    """Stamp the derived fields of a record about to be created.

    Args:
        record (Record): Caller-supplied record; its ``id`` is ignored.
        record_id (int): Identifier the store will assign in this scope. It
            doubles as the sequence of the business number.
        now (datetime): Creation moment.

    Returns:
        Record: Copy of ``record`` with identifier and derived fields set.
    """
    record = replace(record, id=record_id)
    if isinstance(record, WorkOrderRecord):
        closed_at = None
        if record.status == WorkOrderStatus.CLOSED:
            closed_at = record.closed_at or now
        return replace(
            record,
            number=WORK_ORDER_NUMBER_FORMAT.format(sequence=record_id),
            opened_at=now,
            closed_at=closed_at,
            total=work_order_total(record.labor_cost, record.parts_cost),
        )
    if isinstance(record, InvoiceRecord):
        issued = record.date or now
        return replace(
            record,
            date=issued,
            number=INVOICE_NUMBER_FORMAT.format(sequence=record_id, year=issued.year),
        )
    if isinstance(record, QuoteRecord):
        return replace(
            record,
            number=QUOTE_NUMBER_FORMAT.format(sequence=record_id),
            date=now,
            accepted=False,
        )
    if isinstance(record, LedgerEntryRecord) and record.date is None:
        return replace(record, date=now)
    return record


def assign_on_update(stored: Record, record: Record, *, now: datetime) -> Record:
    """Re-derive the fields of a record about to replace ``stored``.

    Business numbers and the work-order opening date are carried over from the
    stored record whatever the caller supplies. A work order moving to Closed
    keeps an existing close date (or the caller's, or ``now``); moving back to
    Open clears it. The total is recomputed every time.
    """
    record = replace(record, id=stored.id)
    if isinstance(record, WorkOrderRecord):
        closed_at: Optional[datetime] = None
        if record.status == WorkOrderStatus.CLOSED:
            closed_at = stored.closed_at or record.closed_at or now
        return replace(
            record,
            number=stored.number,
            opened_at=stored.opened_at,
            closed_at=closed_at,
            total=work_order_total(record.labor_cost, record.parts_cost),
        )
    if isinstance(record, (InvoiceRecord, QuoteRecord)):
        return replace(record, number=stored.number)
    return record


_OWNER_REFERENCES: Tuple[Tuple[type, str, Collection], ...] = (
    (VehicleRecord, "client_id", Collection.CLIENTS),
    (WorkOrderRecord, "vehicle_id", Collection.VEHICLES),
    (AppointmentRecord, "vehicle_id", Collection.VEHICLES),
    (LedgerEntryRecord, "work_order_id", Collection.WORK_ORDERS),
    (LedgerEntryRecord, "supplier_id", Collection.SUPPLIERS),
    (InvoiceRecord, "client_id", Collection.CLIENTS),
)


def check_references(scope: ReadScope, record: Record, *, previous: Optional[Record] = None) -> None:
    """Verify that every non-zero owner reference of ``record`` exists.

    When ``previous`` is given only references that changed are checked, so a
    record whose historical reference was left behind by a cascade (an invoice
    of a deleted client) can still be edited.

    Raises:
        ValidationFailure: Naming the first dangling reference.
    """
    for record_cls, attribute, target in _OWNER_REFERENCES:
        if not isinstance(record, record_cls):
            continue
        reference = getattr(record, attribute)
        if reference <= 0:
            continue
        if previous is not None and getattr(previous, attribute) == reference:
            continue
        if not scope.exists(target, reference):
            log.error("Rejected %s: %s %s does not exist", type(record).__name__, attribute, reference)
            raise ValidationFailure(f"{attribute} {reference} does not reference an existing {target.value} record")


def create_in_scope(scope: WriteScope, record: Record, *, now: Optional[datetime] = None) -> Record:
    """Assign and persist ``record`` inside an already open write scope.

    Returns:
        Record: The record as stored, identifier included.
    """
    validate_structure(record)
    collection = collection_of(record)
    record_id = scope.sequence(collection) + 1
    stamped = assign_on_create(record, record_id, now=_resolve_timestamp(now))
    check_references(scope, stamped)
    assigned = scope.create(collection, stamped)
    if assigned != record_id:
        raise RuntimeError(f"{collection.value} identifier moved from {record_id} to {assigned} mid-scope")
    return stamped


def update_in_scope(scope: WriteScope, record_id: int, record: Record, *, now: Optional[datetime] = None) -> Record:
    """Re-derive and persist ``record`` under ``record_id`` inside ``scope``.

    Raises:
        NotFoundError: If ``record_id`` does not exist.
        ValidationFailure: If the record is structurally invalid or references
            a missing owner.
    """
    validate_structure(record)
    collection = collection_of(record)
    stored = scope.get(collection, record_id)
    updated = assign_on_update(stored, record, now=_resolve_timestamp(now))
    check_references(scope, updated, previous=stored)
    scope.update(collection, record_id, updated)
    return updated


def create_record(context: RuntimeContext, record: Record) -> Record:
    """Create ``record`` with a fresh identifier and its derived fields.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        record (Record): Fully-formed record; ``id`` and derived fields are
            overwritten.

    Returns:
        Record: The stored record.

    Raises:
        ValidationFailure: If the record fails structural checks or references
            a missing owner. Nothing is written in that case.
    """
    with context.store.write_scope() as scope:
        created = create_in_scope(scope, record)
    log.info("Created %s record %s", collection_of(created).value, created.id)
    return created


def update_record(context: RuntimeContext, record_id: int, record: Record) -> Record:
    """Replace the record stored under ``record_id``, re-deriving its fields.

    Returns:
        Record: The record as stored after the update.

    Raises:
        NotFoundError: If ``record_id`` does not exist.
        ValidationFailure: If the record fails structural or reference checks.
    """
    with context.store.write_scope() as scope:
        updated = update_in_scope(scope, record_id, record)
    log.info("Updated %s record %s", collection_of(updated).value, record_id)
    return updated


def get_record(context: RuntimeContext, collection: Collection, record_id: int) -> Record:
    """Return a single record.

    Raises:
        NotFoundError: If ``record_id`` does not exist in ``collection``.
    """
    try:
        return context.store.get(collection, record_id)
    except NotFoundError:
        log.warning("Lookup failed for %s record %s", Collection(collection).value, record_id)
        raise


def list_records(
    context: RuntimeContext,
    collection: Collection,
    *,
    sort_key: Optional[Callable[[Any], Any]] = None,
) -> List[Record]:
    """Return every decodable record of ``collection``.

    The store returns records unordered; ``sort_key`` orders them, defaulting
    to the identifier.
    """
    records = context.store.list(collection)
    return sorted(records, key=sort_key or (lambda record: record.id))


def delete_record(context: RuntimeContext, collection: Collection, record_id: int) -> None:
    """Delete a leaf record (ledger entry, appointment, quote, invoice, operator).

    Raises:
        ValidationFailure: If ``collection`` owns dependents; use
            :func:`workshop_erp.cascade.cascade_delete` instead.
        NotFoundError: If ``record_id`` does not exist.
    """
    collection = Collection(collection)
    if collection in OWNING_COLLECTIONS:
        raise ValidationFailure(f"{collection.value} records must be deleted through the cascade engine")
    context.store.delete(collection, record_id)
    log.info("Deleted %s record %s", collection.value, record_id)


# ---------------------------------------------------------------------------
# Relationship queries
# ---------------------------------------------------------------------------


def vehicles_for_client(context: RuntimeContext, client_id: int) -> List[VehicleRecord]:
    with context.store.read_scope() as scope:
        found = scope.find(Collection.VEHICLES, lambda vehicle: vehicle.client_id == client_id)
    return sorted(found, key=lambda vehicle: vehicle.id)


def work_orders_for_vehicle(context: RuntimeContext, vehicle_id: int) -> List[WorkOrderRecord]:
    with context.store.read_scope() as scope:
        found = scope.find(Collection.WORK_ORDERS, lambda order: order.vehicle_id == vehicle_id)
    return sorted(found, key=lambda order: order.id)


def ledger_entries_for_work_order(context: RuntimeContext, work_order_id: int) -> List[LedgerEntryRecord]:
    with context.store.read_scope() as scope:
        found = scope.find(Collection.LEDGER_ENTRIES, lambda entry: entry.work_order_id == work_order_id)
    return sorted(found, key=lambda entry: entry.id)


def ledger_entries_for_supplier(context: RuntimeContext, supplier_id: int) -> List[LedgerEntryRecord]:
    with context.store.read_scope() as scope:
        found = scope.find(Collection.LEDGER_ENTRIES, lambda entry: entry.supplier_id == supplier_id)
    return sorted(found, key=lambda entry: entry.id)


def appointments_on(context: RuntimeContext, day: date) -> List[AppointmentRecord]:
    """Return the appointments scheduled on ``day`` (UTC), earliest first."""
    with context.store.read_scope() as scope:
        found = scope.find(
            Collection.APPOINTMENTS,
            lambda item: item.scheduled_at is not None and item.scheduled_at.astimezone(UTC).date() == day,
        )
    return sorted(found, key=lambda item: item.scheduled_at)


def work_order_stats(context: RuntimeContext) -> Tuple[int, int]:
    """Return the number of open and closed work orders."""
    orders = context.store.list(Collection.WORK_ORDERS)
    closed = sum(1 for order in orders if order.status == WorkOrderStatus.CLOSED)
    return len(orders) - closed, closed


__all__ = [
    "RuntimeContext",
    "open_store",
    "load_runtime_context",
    "close_runtime_context",
    "ensure_schema_version",
    "work_order_total",
    "assign_on_create",
    "assign_on_update",
    "check_references",
    "create_in_scope",
    "update_in_scope",
    "create_record",
    "update_record",
    "get_record",
    "list_records",
    "delete_record",
    "vehicles_for_client",
    "work_orders_for_vehicle",
    "ledger_entries_for_work_order",
    "ledger_entries_for_supplier",
    "appointments_on",
    "work_order_stats",
]
