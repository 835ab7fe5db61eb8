"""Cascade Delete Engine.

Deleting an owning entity removes everything it transitively owns:

* Client -> Vehicles -> (WorkOrders -> LedgerEntries, Appointments)
* Vehicle -> WorkOrders -> LedgerEntries, and the Vehicle's Appointments
* WorkOrder -> LedgerEntries
* Supplier -> LedgerEntries tagged with the supplier (never WorkOrders)

Discovery and deletion run inside one write scope, leaves first, so either the
whole subtree disappears or nothing does. Invoices keep their ``client_id`` as
a historical reference and are never cascaded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

from . import log
from .constants import OWNING_COLLECTIONS, Collection
from .core_logic import RuntimeContext
from .exceptions import CascadeFailure, NotFoundError, ValidationFailure
from .store import ReadScope, WriteScope


# Deletion order: leaves before their owners.
_DELETE_ORDER = (
    Collection.LEDGER_ENTRIES,
    Collection.WORK_ORDERS,
    Collection.APPOINTMENTS,
    Collection.VEHICLES,
)


@dataclass(frozen=True)
class CascadeReport:
    """Counts of dependents removed (or about to be removed) with a root record."""

    collection: Collection
    record_id: int
    vehicles: int = 0
    work_orders: int = 0
    ledger_entries: int = 0
    appointments: int = 0

    @property
    def dependents(self) -> int:
        return self.vehicles + self.work_orders + self.ledger_entries + self.appointments

    @property
    def total(self) -> int:
        """Dependents plus the root record itself."""
        return self.dependents + 1


def _ids(records: Iterable) -> List[int]:
    return sorted(record.id for record in records)


def discover_dependents(scope: ReadScope, collection: Collection, record_id: int) -> Dict[Collection, List[int]]:
    """Enumerate the identifiers owned, directly or not, by a root record.

    Args:
        scope (ReadScope): Scope to search; a write scope when the result is
            about to be deleted.
        collection (Collection): Owning collection of the root.
        record_id (int): Identifier of the root.

    Returns:
        dict[Collection, list[int]]: Dependent identifiers per collection. The
            root itself is not included.

    Raises:
        NotFoundError: If the root does not exist.
        ValidationFailure: If ``collection`` owns nothing.
        RecordDecodeError: If a malformed document may belong to the subtree.
    """
    collection = Collection(collection)
    if collection not in OWNING_COLLECTIONS:
        raise ValidationFailure(f"{collection.value} records have no dependents to cascade")
    if not scope.exists(collection, record_id):
        raise NotFoundError(collection, record_id)

    doomed: Dict[Collection, List[int]] = {name: [] for name in _DELETE_ORDER}

    if collection is Collection.SUPPLIERS:
        doomed[Collection.LEDGER_ENTRIES] = _ids(
            scope.find_owned(Collection.LEDGER_ENTRIES, "supplier_id", [record_id])
        )
        return doomed

    vehicle_ids: List[int] = []
    if collection is Collection.CLIENTS:
        vehicle_ids = _ids(scope.find_owned(Collection.VEHICLES, "client_id", [record_id]))
        doomed[Collection.VEHICLES] = vehicle_ids
    elif collection is Collection.VEHICLES:
        vehicle_ids = [record_id]

    order_ids: List[int] = []
    if vehicle_ids:
        owners = set(vehicle_ids)
        order_ids = _ids(scope.find_owned(Collection.WORK_ORDERS, "vehicle_id", owners))
        doomed[Collection.WORK_ORDERS] = order_ids
        doomed[Collection.APPOINTMENTS] = _ids(
            scope.find_owned(Collection.APPOINTMENTS, "vehicle_id", owners)
        )
    elif collection is Collection.WORK_ORDERS:
        order_ids = [record_id]

    if order_ids:
        orders = set(order_ids)
        doomed[Collection.LEDGER_ENTRIES] = _ids(
            scope.find_owned(Collection.LEDGER_ENTRIES, "work_order_id", orders)
        )
    return doomed


def _report(collection: Collection, record_id: int, doomed: Dict[Collection, List[int]]) -> CascadeReport:
    return CascadeReport(
        collection=collection,
        record_id=record_id,
        vehicles=len(doomed[Collection.VEHICLES]),
        work_orders=len(doomed[Collection.WORK_ORDERS]),
        ledger_entries=len(doomed[Collection.LEDGER_ENTRIES]),
        appointments=len(doomed[Collection.APPOINTMENTS]),
    )


def cascade_in_scope(scope: WriteScope, collection: Collection, record_id: int) -> CascadeReport:
    """Delete a root record and its dependents inside an open write scope."""
    collection = Collection(collection)
    doomed = discover_dependents(scope, collection, record_id)
    for dependent in _DELETE_ORDER:
        for dependent_id in doomed[dependent]:
            scope.delete(dependent, dependent_id)
    scope.delete(collection, record_id)
    return _report(collection, record_id, doomed)


def cascade_delete(context: RuntimeContext, collection: Collection, record_id: int) -> CascadeReport:
    """Atomically delete an owning record and everything it owns.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        collection (Collection): One of the owning collections.
        record_id (int): Identifier of the root record.

    Returns:
        CascadeReport: Counts of the removed dependents.

    Raises:
        NotFoundError: If the root record does not exist.
        ValidationFailure: If ``collection`` is not an owning collection.
        CascadeFailure: If any step fails; the scope is rolled back and every
            record is left as it was. The original error is chained.
    """
    collection = Collection(collection)
    try:
        with context.store.write_scope() as scope:
            report = cascade_in_scope(scope, collection, record_id)
    except NotFoundError as exc:
        if exc.collection is collection and exc.record_id == record_id:
            log.warning("Cascade delete requested for missing %s record %s", collection.value, record_id)
            raise
        log.error("Cascade delete of %s record %s aborted: %s", collection.value, record_id, exc)
        raise CascadeFailure(collection, record_id, str(exc)) from exc
    except ValidationFailure:
        raise
    except Exception as exc:
        log.error("Cascade delete of %s record %s aborted: %s", collection.value, record_id, exc)
        raise CascadeFailure(collection, record_id, str(exc)) from exc

    log.info(
        "Cascade deleted %s record %s (vehicles=%s, work_orders=%s, ledger_entries=%s, appointments=%s)",
        collection.value,
        record_id,
        report.vehicles,
        report.work_orders,
        report.ledger_entries,
        report.appointments,
    )
    return report


def preview_cascade(context: RuntimeContext, collection: Collection, record_id: int) -> CascadeReport:
    """Return what :func:`cascade_delete` would remove, without deleting anything."""
    collection = Collection(collection)
    with context.store.read_scope() as scope:
        doomed = discover_dependents(scope, collection, record_id)
    return _report(collection, record_id, doomed)


def delete_client(context: RuntimeContext, client_id: int) -> CascadeReport:
    return cascade_delete(context, Collection.CLIENTS, client_id)


def delete_vehicle(context: RuntimeContext, vehicle_id: int) -> CascadeReport:
    return cascade_delete(context, Collection.VEHICLES, vehicle_id)


def delete_work_order(context: RuntimeContext, work_order_id: int) -> CascadeReport:
    return cascade_delete(context, Collection.WORK_ORDERS, work_order_id)


def delete_supplier(context: RuntimeContext, supplier_id: int) -> CascadeReport:
    return cascade_delete(context, Collection.SUPPLIERS, supplier_id)


__all__ = [
    "CascadeReport",
    "discover_dependents",
    "cascade_in_scope",
    "cascade_delete",
    "preview_cascade",
    "delete_client",
    "delete_vehicle",
    "delete_work_order",
    "delete_supplier",
]
