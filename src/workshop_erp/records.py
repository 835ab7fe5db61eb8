"""Typed records and the document codec shared by every store backend.

Records are frozen dataclasses. Stores never persist them directly: they go
through :func:`to_document`, which yields a JSON-safe mapping, and come back
through :func:`from_document`, which coerces each value to the annotated field
type. The workbook backend writes one document per worksheet row and the
memory backend keeps the documents themselves, so both share the exact same
encoding and a snapshot taken from one can be restored into the other.
"""

from __future__ import annotations

import types
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union, get_args, get_origin, get_type_hints

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from .constants import Collection, LedgerEntryType, PaymentMethod, WorkOrderStatus
from .exceptions import RecordDecodeError, ValidationFailure


ZERO = Decimal("0.00")


@dataclass(frozen=True)
class ClientRecord:
    """A workshop customer; owns vehicles."""

    id: int = 0
    name: str = ""
    phone: str = ""
    email: str = ""
    pec: str = ""
    tax_code: str = ""
    vat_number: str = ""
    recipient_code: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    province: str = ""


@dataclass(frozen=True)
class SupplierRecord:
    """A parts or services supplier; owns expense ledger entries."""

    id: int = 0
    name: str = ""
    phone: str = ""
    email: str = ""
    pec: str = ""
    tax_code: str = ""
    vat_number: str = ""
    recipient_code: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    province: str = ""


@dataclass(frozen=True)
class VehicleRecord:
    """A vehicle belonging to a client; owns work orders and appointments."""

    id: int = 0
    plate: str = ""
    make: str = ""
    model: str = ""
    year: int = 0
    client_id: int = 0
    mileage: int = 0
    last_inspection: Optional[datetime] = None


@dataclass(frozen=True)
class WorkOrderRecord:
    """A job performed on a vehicle; owns income ledger entries.

    ``number``, ``opened_at``, ``closed_at`` and ``total`` are derived fields
    maintained by the business layer, whatever the caller puts in them.
    """

    id: int = 0
    number: str = ""
    vehicle_id: int = 0
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    status: WorkOrderStatus = WorkOrderStatus.OPEN
    work_performed: str = ""
    notes: str = ""
    labor_cost: Decimal = ZERO
    parts_cost: Decimal = ZERO
    total: Decimal = ZERO


@dataclass(frozen=True)
class LedgerEntryRecord:
    """A cash-ledger movement. The sign lives in ``entry_type``, never in ``amount``."""

    id: int = 0
    date: Optional[datetime] = None
    entry_type: LedgerEntryType = LedgerEntryType.INCOME
    amount: Decimal = ZERO
    payment_method: PaymentMethod = PaymentMethod.CASH
    work_order_id: int = 0
    supplier_id: int = 0
    description: str = ""
    supplier_invoice_number: str = ""
    supplier_invoice_date: Optional[datetime] = None


@dataclass(frozen=True)
class AppointmentRecord:
    id: int = 0
    scheduled_at: Optional[datetime] = None
    vehicle_id: int = 0
    note: str = ""


@dataclass(frozen=True)
class QuoteRecord:
    id: int = 0
    number: str = ""
    client_name: str = ""
    date: Optional[datetime] = None
    amount: Decimal = ZERO
    description: str = ""
    accepted: bool = False


@dataclass(frozen=True)
class InvoiceRecord:
    id: int = 0
    number: str = ""
    date: Optional[datetime] = None
    client_id: int = 0
    amount: Decimal = ZERO


@dataclass(frozen=True)
class OperatorRecord:
    id: int = 0
    badge: str = ""
    first_name: str = ""
    last_name: str = ""
    role: str = ""


Record = Union[
    ClientRecord,
    SupplierRecord,
    VehicleRecord,
    WorkOrderRecord,
    LedgerEntryRecord,
    AppointmentRecord,
    QuoteRecord,
    InvoiceRecord,
    OperatorRecord,
]


RECORD_TYPES: Dict[Collection, Type[Any]] = {
    Collection.CLIENTS: ClientRecord,
    Collection.SUPPLIERS: SupplierRecord,
    Collection.VEHICLES: VehicleRecord,
    Collection.WORK_ORDERS: WorkOrderRecord,
    Collection.LEDGER_ENTRIES: LedgerEntryRecord,
    Collection.APPOINTMENTS: AppointmentRecord,
    Collection.QUOTES: QuoteRecord,
    Collection.INVOICES: InvoiceRecord,
    Collection.OPERATORS: OperatorRecord,
}

_COLLECTIONS_BY_TYPE: Dict[Type[Any], Collection] = {
    record_cls: collection for collection, record_cls in RECORD_TYPES.items()
}


def record_type(collection: Collection) -> Type[Any]:
    """Return the dataclass used for ``collection``."""
    return RECORD_TYPES[Collection(collection)]


def collection_of(record: Record) -> Collection:
    """Return the collection a record instance belongs to.

    Raises:
        TypeError: If ``record`` is not one of the known record dataclasses.
    """
    try:
        return _COLLECTIONS_BY_TYPE[type(record)]
    except KeyError as exc:
        raise TypeError(f"Not a workshop record: {type(record).__name__}") from exc


@lru_cache(maxsize=None)
def field_names(collection: Collection) -> Tuple[str, ...]:
    """Return the ordered field names for ``collection``; ``id`` is always first."""
    return tuple(item.name for item in fields(record_type(collection)))


@lru_cache(maxsize=None)
def _field_types(collection: Collection) -> Dict[str, Any]:
    return get_type_hints(record_type(collection))


def column_title(field_name: str) -> str:
    """Map a snake_case field name to the worksheet header used for it.

    ``client_id`` becomes ``ClientID`` and ``labor_cost`` becomes ``LaborCost``,
    matching the CamelCase headers of the workbook layout.
    """
    return "".join("ID" if part == "id" else part.capitalize() for part in field_name.split("_"))


def column_titles(collection: Collection) -> Tuple[str, ...]:
    """Return the worksheet header row for ``collection``."""
    return tuple(column_title(name) for name in field_names(collection))


def to_document(record: Record) -> Dict[str, Any]:
    """Convert a record into a JSON-safe mapping keyed by field name.

    Decimals become strings so no precision is lost, datetimes become ISO-8601
    strings, and enumeration members are reduced to their values.

    Args:
        record (Record): Any workshop record dataclass.

    Returns:
        dict[str, Any]: Plain mapping suitable for JSON or a worksheet row.
    """
    document: Dict[str, Any] = {}
    for item in fields(record):
        document[item.name] = _encode_value(getattr(record, item.name))
    return document


def _encode_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def from_document(collection: Collection, document: Mapping[str, Any]) -> Record:
    """Rebuild a typed record from a stored document.

    Every known field is coerced to its annotated type. Keys the dataclass does
    not declare are ignored and missing keys fall back to the field default, so
    documents written by an older layout still load.

    Args:
        collection (Collection): Collection the document was read from.
        document (Mapping[str, Any]): Raw stored values keyed by field name.

    Returns:
        Record: Dataclass instance for ``collection``.

    Raises:
        RecordDecodeError: If any value cannot be coerced to its field type or
            the document has no usable identifier.
    """
    collection = Collection(collection)
    raw_id = document.get("id")
    hints = _field_types(collection)
    values: Dict[str, Any] = {}
    try:
        for name in field_names(collection):
            if name not in document:
                continue
            values[name] = _decode_value(document[name], hints[name])
    except (ValueError, TypeError, InvalidOperation) as exc:
        raise RecordDecodeError(collection, _safe_id(raw_id), str(exc)) from exc

    if values.get("id", 0) <= 0:
        raise RecordDecodeError(collection, _safe_id(raw_id), "missing identifier")
    return record_type(collection)(**values)


def _safe_id(raw_id: Any) -> Optional[int]:
    try:
        return int(raw_id)
    except (TypeError, ValueError):
        return None


def _decode_value(value: Any, annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        if value is None or value == "":
            return None
        inner = [arg for arg in get_args(annotation) if arg is not type(None)]
        return _decode_value(value, inner[0])

    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return annotation(value)
    if annotation is bool:
        return _decode_bool(value)
    if annotation is int:
        return _decode_int(value)
    if annotation is Decimal:
        return _decode_decimal(value)
    if annotation is datetime:
        return _decode_datetime(value)
    if annotation is str:
        return "" if value is None else str(value)
    raise TypeError(f"Unsupported field type: {annotation!r}")


def _decode_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise TypeError(f"Expected an integer, got boolean {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Expected an integer, got {value!r}")
        return int(value)
    return int(str(value).strip())


def _decode_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise TypeError(f"Expected a decimal, got boolean {value!r}")
    amount = Decimal(str(value).strip())
    if not amount.is_finite():
        raise ValueError(f"Non-finite amount: {value!r}")
    return amount


def _decode_bool(value: Any) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    normalized = str(value).strip().lower()
    if normalized in {"true", "1", "yes"}:
        return True
    if normalized in {"false", "0", "no"}:
        return False
    raise ValueError(f"Expected a boolean, got {value!r}")


def _decode_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        moment = datetime.fromisoformat(value.strip())
    else:
        raise TypeError(f"Expected an ISO-8601 timestamp, got {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def with_id(record: Record, record_id: int) -> Record:
    """Return a copy of ``record`` carrying ``record_id``."""
    return replace(record, id=record_id)


def validate_structure(record: Record) -> None:
    """Apply the structural checks every store write must satisfy.

    Field *contents* (plate formats, e-mail syntax and the like) are the
    caller's responsibility. This guard only rejects records the persistence
    layer cannot keep consistent: unknown enumeration values, missing owner
    references, non-finite amounts, text the workbook cannot hold,
    non-positive ledger amounts, negative work-order costs, and ledger entries
    claimed by two owners at once.

    Args:
        record (Record): Record about to be written.

    Raises:
        ValidationFailure: Describing the first violated rule.
    """
    _require_storable_values(record)
    if isinstance(record, (ClientRecord, SupplierRecord)):
        if not record.name.strip():
            raise ValidationFailure("name must not be empty")
    elif isinstance(record, VehicleRecord):
        if record.client_id <= 0:
            raise ValidationFailure("vehicle requires a client_id")
    elif isinstance(record, WorkOrderRecord):
        if record.vehicle_id <= 0:
            raise ValidationFailure("work order requires a vehicle_id")
        _require_member(WorkOrderStatus, record.status, "status")
        if record.labor_cost < 0 or record.parts_cost < 0:
            raise ValidationFailure("work order costs must not be negative")
    elif isinstance(record, LedgerEntryRecord):
        _require_member(LedgerEntryType, record.entry_type, "entry_type")
        _require_member(PaymentMethod, record.payment_method, "payment_method")
        if record.amount <= 0:
            raise ValidationFailure("ledger amount must be greater than zero")
        if record.work_order_id > 0 and record.supplier_id > 0:
            raise ValidationFailure("ledger entry cannot belong to a work order and a supplier")
    elif isinstance(record, AppointmentRecord):
        if record.vehicle_id <= 0:
            raise ValidationFailure("appointment requires a vehicle_id")


def _require_storable_values(record: Record) -> None:
    for item in fields(record):
        value = getattr(record, item.name)
        if isinstance(value, Decimal) and not value.is_finite():
            raise ValidationFailure(f"{item.name} must be a finite amount")
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            raise ValidationFailure(f"{item.name} contains control characters")


def _require_member(enum_cls: Type[Enum], value: Any, label: str) -> None:
    try:
        enum_cls(value)
    except ValueError as exc:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValidationFailure(f"{label} must be one of: {valid}") from exc


__all__ = [
    "ClientRecord",
    "SupplierRecord",
    "VehicleRecord",
    "WorkOrderRecord",
    "LedgerEntryRecord",
    "AppointmentRecord",
    "QuoteRecord",
    "InvoiceRecord",
    "OperatorRecord",
    "Record",
    "RECORD_TYPES",
    "record_type",
    "collection_of",
    "field_names",
    "column_title",
    "column_titles",
    "to_document",
    "from_document",
    "with_id",
    "validate_structure",
]
