"""Enumerations shared across the workshop persistence layer.

Centralises the collection names, entity states, and business-number formats
so the stores, the business layer, and the backup tooling agree on a single
set of identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating a store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Version written into export manifests; restores refuse anything else.
SNAPSHOT_FORMAT_VERSION = "1.0"

SNAPSHOT_PREFIX = "backup_"
SNAPSHOT_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
MANIFEST_FILE_NAME = "manifest.json"

SEQUENCES_SHEET = "_Sequences"

WORK_ORDER_NUMBER_FORMAT = "COM-{sequence:04d}"
INVOICE_NUMBER_FORMAT = "FT-{sequence:04d}/{year}"
QUOTE_NUMBER_FORMAT = "PREV-{sequence:04d}"


class Collection(str, Enum):
    """Enumerate the record collections managed by every store backend."""

    CLIENTS = "Clients"
    SUPPLIERS = "Suppliers"
    VEHICLES = "Vehicles"
    WORK_ORDERS = "WorkOrders"
    LEDGER_ENTRIES = "LedgerEntries"
    APPOINTMENTS = "Appointments"
    QUOTES = "Quotes"
    INVOICES = "Invoices"
    OPERATORS = "Operators"


# Collections whose deletion must cascade to dependents.
OWNING_COLLECTIONS: frozenset[Collection] = frozenset(
    {
        Collection.CLIENTS,
        Collection.VEHICLES,
        Collection.WORK_ORDERS,
        Collection.SUPPLIERS,
    }
)


class WorkOrderStatus(str, Enum):
    """Enumerate the lifecycle states of a work order."""

    OPEN = "Open"
    CLOSED = "Closed"


class LedgerEntryType(str, Enum):
    """Enumerate the sides of a cash-ledger entry."""

    INCOME = "Income"
    EXPENSE = "Expense"


class PaymentMethod(str, Enum):
    """Enumerate the accepted payment methods for ledger entries."""

    CASH = "Cash"
    BANK = "Bank"
    CARD = "Card"
    CHECK = "Check"
    TRANSFER = "Transfer"


class PaymentKind(str, Enum):
    """Enumerate how an income entry relates to its work order total."""

    SETTLEMENT = "settlement"
    DEPOSIT = "deposit"


class Backend(str, Enum):
    """Enumerate the store backends selectable from ``config.ini``."""

    WORKBOOK = "workbook"
    MEMORY = "memory"


class SnapshotStrategy(str, Enum):
    """Enumerate the ways a snapshot of the store can be taken."""

    FILE = "file"
    EXPORT = "export"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SNAPSHOT_FORMAT_VERSION",
    "SNAPSHOT_PREFIX",
    "SNAPSHOT_TIMESTAMP_FORMAT",
    "MANIFEST_FILE_NAME",
    "SEQUENCES_SHEET",
    "WORK_ORDER_NUMBER_FORMAT",
    "INVOICE_NUMBER_FORMAT",
    "QUOTE_NUMBER_FORMAT",
    "Collection",
    "OWNING_COLLECTIONS",
    "WorkOrderStatus",
    "LedgerEntryType",
    "PaymentMethod",
    "PaymentKind",
    "Backend",
    "SnapshotStrategy",
]
