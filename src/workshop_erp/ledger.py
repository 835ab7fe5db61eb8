"""Ledger Aggregator.

Income entries tagged with a work order are described as a *settlement* when
they bring the amount paid so far to (or past) the work order total, and as a
*deposit* otherwise. The description is computed once, when the entry is
written, and stored as plain text; later entries never rewrite it. Expense
entries tagged with a supplier get a description naming the supplier and, when
known, the supplier's invoice number.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional

from . import core_logic, log
from .constants import Collection, LedgerEntryType, PaymentKind
from .core_logic import RuntimeContext
from .exceptions import NotFoundError
from .records import ZERO, LedgerEntryRecord, SupplierRecord, validate_structure
from .store import ReadScope


SETTLEMENT_DESCRIPTION = "Balance payment for work order {number} - plate {plate}"
DEPOSIT_DESCRIPTION = "Deposit for work order {number} - plate {plate}"
SUPPLIER_DESCRIPTION = "Payment to supplier {name}"
SUPPLIER_INVOICE_SUFFIX = " - invoice {number}"


@dataclass(frozen=True)
class LedgerDescription:
    kind: PaymentKind
    text: str


@dataclass(frozen=True)
class WorkOrderBalance:
    total: Decimal
    paid: Decimal
    residual: Decimal


@dataclass(frozen=True)
class SupplierSummary:
    entries: int
    expense_total: Decimal


@dataclass(frozen=True)
class LedgerTotals:
    income: Decimal
    expense: Decimal
    balance: Decimal


def paid_in_scope(scope: ReadScope, work_order_id: int, excluding_entry_id: Optional[int] = None) -> Decimal:
    """Sum the income entries of a work order visible in ``scope``."""
    entries = scope.find(
        Collection.LEDGER_ENTRIES,
        lambda entry: entry.work_order_id == work_order_id
        and entry.entry_type == LedgerEntryType.INCOME
        and entry.id != excluding_entry_id,
    )
    return sum((entry.amount for entry in entries), ZERO)


def paid_so_far(context: RuntimeContext, work_order_id: int, excluding_entry_id: Optional[int] = None) -> Decimal:
    """Return how much has been paid against a work order.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        work_order_id (int): Work order whose income entries are summed.
        excluding_entry_id (int | None): Entry to leave out of the sum, used
            while that very entry is being edited.

    Returns:
        Decimal: Sum of the ``Income`` entries tagged with ``work_order_id``.
    """
    with context.store.read_scope() as scope:
        return paid_in_scope(scope, work_order_id, excluding_entry_id)


def describe_in_scope(
    scope: ReadScope,
    work_order_id: int,
    new_amount: Decimal,
    excluding_entry_id: Optional[int] = None,
) -> LedgerDescription:
    """Classify a payment against a work order using the state seen by ``scope``.

    Raises:
        NotFoundError: If the work order does not exist.
    """
    order = scope.get(Collection.WORK_ORDERS, work_order_id)
    try:
        plate = scope.get(Collection.VEHICLES, order.vehicle_id).plate
    except NotFoundError:
        log.warning("Work order %s references missing vehicle %s", work_order_id, order.vehicle_id)
        plate = ""

    paid = paid_in_scope(scope, work_order_id, excluding_entry_id)
    if paid + new_amount >= order.total:
        return LedgerDescription(PaymentKind.SETTLEMENT, SETTLEMENT_DESCRIPTION.format(number=order.number, plate=plate))
    return LedgerDescription(PaymentKind.DEPOSIT, DEPOSIT_DESCRIPTION.format(number=order.number, plate=plate))


def classify_and_describe(
    context: RuntimeContext,
    work_order_id: int,
    new_amount: Decimal,
    excluding_entry_id: Optional[int] = None,
) -> LedgerDescription:
    """Describe a new payment as a settlement or a deposit.

    The payment settles the work order when the amount already paid plus
    ``new_amount`` reaches or exceeds the work order total.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        work_order_id (int): Work order being paid.
        new_amount (Decimal): Amount of the entry being written.
        excluding_entry_id (int | None): Entry to leave out of the running sum.

    Returns:
        LedgerDescription: Classification and the text to store.

    Raises:
        NotFoundError: If the work order does not exist.
    """
    with context.store.read_scope() as scope:
        return describe_in_scope(scope, work_order_id, new_amount, excluding_entry_id)


def describe_supplier_expense(supplier: SupplierRecord, invoice_number: str = "") -> str:
    text = SUPPLIER_DESCRIPTION.format(name=supplier.name)
    if invoice_number.strip():
        text += SUPPLIER_INVOICE_SUFFIX.format(number=invoice_number.strip())
    return text


def _describe_entry(scope: ReadScope, entry: LedgerEntryRecord, excluding_entry_id: Optional[int]) -> LedgerEntryRecord:
    if entry.entry_type == LedgerEntryType.INCOME and entry.work_order_id > 0:
        described = describe_in_scope(scope, entry.work_order_id, entry.amount, excluding_entry_id)
        return replace(entry, description=described.text)
    if entry.entry_type == LedgerEntryType.EXPENSE and entry.supplier_id > 0:
        supplier = scope.get(Collection.SUPPLIERS, entry.supplier_id)
        return replace(entry, description=describe_supplier_expense(supplier, entry.supplier_invoice_number))
    return entry


def record_ledger_entry(context: RuntimeContext, entry: LedgerEntryRecord) -> LedgerEntryRecord:
    """Create a ledger entry with its generated description in one write scope.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        entry (LedgerEntryRecord): Entry to create. Its description is replaced
            when the entry is tagged with a work order (income) or a supplier
            (expense).

    Returns:
        LedgerEntryRecord: The stored entry.

    Raises:
        ValidationFailure: If the entry is malformed or tagged with a missing
            work order or supplier.
    """
    validate_structure(entry)
    with context.store.write_scope() as scope:
        core_logic.check_references(scope, entry)
        created = core_logic.create_in_scope(scope, _describe_entry(scope, entry, None))
    log.info("Recorded %s ledger entry %s: %s", created.entry_type.value, created.id, created.description)
    return created


def update_ledger_entry(context: RuntimeContext, entry_id: int, entry: LedgerEntryRecord) -> LedgerEntryRecord:
    """Update a ledger entry, regenerating its description without counting it twice.

    Raises:
        NotFoundError: If ``entry_id`` does not exist.
        ValidationFailure: If the entry is malformed or tagged with a missing
            work order or supplier.
    """
    validate_structure(entry)
    with context.store.write_scope() as scope:
        stored = scope.get(Collection.LEDGER_ENTRIES, entry_id)
        core_logic.check_references(scope, entry, previous=stored)
        updated = core_logic.update_in_scope(scope, entry_id, _describe_entry(scope, entry, entry_id))
    log.info("Updated ledger entry %s: %s", entry_id, updated.description)
    return updated


def work_order_balance(context: RuntimeContext, work_order_id: int) -> WorkOrderBalance:
    """Return the total, the amount paid and the residual of a work order.

    Raises:
        NotFoundError: If the work order does not exist.
    """
    with context.store.read_scope() as scope:
        order = scope.get(Collection.WORK_ORDERS, work_order_id)
        paid = paid_in_scope(scope, work_order_id)
    return WorkOrderBalance(total=order.total, paid=paid, residual=order.total - paid)


def supplier_summary(context: RuntimeContext, supplier_id: int) -> SupplierSummary:
    """Return the number of entries tagged with a supplier and their expense total.

    Raises:
        NotFoundError: If the supplier does not exist.
    """
    with context.store.read_scope() as scope:
        if not scope.exists(Collection.SUPPLIERS, supplier_id):
            raise NotFoundError(Collection.SUPPLIERS, supplier_id)
        entries = scope.find(Collection.LEDGER_ENTRIES, lambda entry: entry.supplier_id == supplier_id)
    expense = sum(
        (entry.amount for entry in entries if entry.entry_type == LedgerEntryType.EXPENSE),
        ZERO,
    )
    return SupplierSummary(entries=len(entries), expense_total=expense)


def ledger_totals(context: RuntimeContext, year: Optional[int] = None) -> LedgerTotals:
    """Return income, expense and balance, optionally restricted to ``year``."""
    entries = context.store.list(Collection.LEDGER_ENTRIES)
    if year is not None:
        entries = [entry for entry in entries if entry.date is not None and entry.date.year == year]
    income = sum((entry.amount for entry in entries if entry.entry_type == LedgerEntryType.INCOME), ZERO)
    expense = sum((entry.amount for entry in entries if entry.entry_type == LedgerEntryType.EXPENSE), ZERO)
    return LedgerTotals(income=income, expense=expense, balance=income - expense)


__all__ = [
    "LedgerDescription",
    "WorkOrderBalance",
    "SupplierSummary",
    "LedgerTotals",
    "paid_so_far",
    "classify_and_describe",
    "describe_supplier_expense",
    "record_ledger_entry",
    "update_ledger_entry",
    "work_order_balance",
    "supplier_summary",
    "ledger_totals",
]
