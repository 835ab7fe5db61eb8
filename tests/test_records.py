"""Unit tests for the record dataclasses and the shared document codec."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from workshop_erp import records
from workshop_erp.constants import Collection, LedgerEntryType, PaymentMethod, WorkOrderStatus
from workshop_erp.exceptions import RecordDecodeError, ValidationFailure


def test_field_names_start_with_identifier():
    """Every collection layout should lead with the identifier column."""

    for collection in Collection:
        assert records.field_names(collection)[0] == "id"


def test_column_title_maps_snake_case_to_headers():
    """Header titles should use CamelCase with an upper-case ID suffix."""

    assert records.column_title("client_id") == "ClientID"
    assert records.column_title("labor_cost") == "LaborCost"
    assert records.column_title("id") == "ID"


def test_collection_of_rejects_foreign_objects():
    """Only workshop records belong to a collection."""

    assert records.collection_of(records.VehicleRecord()) is Collection.VEHICLES
    with pytest.raises(TypeError):
        records.collection_of(object())


def test_to_document_produces_json_safe_values():
    """Decimals, datetimes, and enums should be reduced to plain values."""

    moment = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)
    order = records.WorkOrderRecord(
        id=4,
        number="COM-0004",
        vehicle_id=2,
        opened_at=moment,
        status=WorkOrderStatus.CLOSED,
        labor_cost=Decimal("120.50"),
    )

    document = records.to_document(order)

    assert document["status"] == "Closed"
    assert document["labor_cost"] == "120.50"
    assert document["opened_at"] == moment.isoformat()
    assert document["closed_at"] is None


def test_from_document_coerces_workbook_values():
    """Values read back from a sheet should be coerced to their field types."""

    document = {
        "id": 3,
        "date": "2024-05-02T10:00:00",
        "entry_type": "Expense",
        "amount": 49.9,
        "payment_method": "Bank",
        "work_order_id": None,
        "supplier_id": "7",
        "description": None,
    }

    entry = records.from_document(Collection.LEDGER_ENTRIES, document)

    assert entry.entry_type is LedgerEntryType.EXPENSE
    assert entry.payment_method is PaymentMethod.BANK
    assert entry.amount == Decimal("49.9")
    assert entry.supplier_id == 7
    assert entry.work_order_id == 0
    assert entry.description == ""
    assert entry.date == datetime(2024, 5, 2, 10, 0, tzinfo=UTC)


def test_from_document_ignores_unknown_and_defaults_missing_fields():
    """Older or richer layouts should still load."""

    quote = records.from_document(Collection.QUOTES, {"id": 1, "client_name": "Bianchi", "legacy": "x"})

    assert quote.client_name == "Bianchi"
    assert quote.accepted is False
    assert quote.amount == records.ZERO


@pytest.mark.parametrize(
    "document",
    [
        {"id": 1, "status": "Archived", "vehicle_id": 1},
        {"id": 1, "labor_cost": "abc", "vehicle_id": 1},
        {"id": 1, "labor_cost": "NaN", "vehicle_id": 1},
        {"id": 1, "opened_at": "yesterday", "vehicle_id": 1},
        {"vehicle_id": 1},
    ],
)
def test_from_document_raises_decode_error(document):
    """Malformed values or a missing identifier should raise RecordDecodeError."""

    with pytest.raises(RecordDecodeError) as excinfo:
        records.from_document(Collection.WORK_ORDERS, document)
    assert excinfo.value.collection is Collection.WORK_ORDERS


def test_validate_structure_accepts_well_formed_records():
    """Structurally sound records pass silently."""

    records.validate_structure(records.ClientRecord(name="Rossi"))
    records.validate_structure(records.VehicleRecord(client_id=1))
    records.validate_structure(records.LedgerEntryRecord(amount=Decimal("1.00")))
    records.validate_structure(records.OperatorRecord())


@pytest.mark.parametrize(
    "record",
    [
        records.ClientRecord(name="  "),
        records.SupplierRecord(),
        records.VehicleRecord(plate="AB123CD"),
        records.WorkOrderRecord(),
        records.WorkOrderRecord(vehicle_id=1, labor_cost=Decimal("-1")),
        records.LedgerEntryRecord(amount=Decimal("0")),
        records.LedgerEntryRecord(amount=Decimal("-5")),
        records.LedgerEntryRecord(amount=Decimal("5"), work_order_id=1, supplier_id=2),
        records.LedgerEntryRecord(amount=Decimal("5"), payment_method="Crypto"),
        records.AppointmentRecord(),
        records.LedgerEntryRecord(amount=Decimal("NaN")),
        records.LedgerEntryRecord(amount=Decimal("Infinity")),
        records.WorkOrderRecord(vehicle_id=1, labor_cost=Decimal("Infinity")),
        records.WorkOrderRecord(vehicle_id=1, parts_cost=Decimal("sNaN")),
        records.QuoteRecord(amount=Decimal("-Infinity")),
        records.ClientRecord(name="Rossi\x01"),
        records.VehicleRecord(client_id=1, plate="AB\x0b123"),
    ],
)
def test_validate_structure_rejects_broken_records(record):
    """Each structural rule should surface as ValidationFailure."""

    with pytest.raises(ValidationFailure):
        records.validate_structure(record)
