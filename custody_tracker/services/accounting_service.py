from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from pydantic import BaseModel

from db.store import EntityStore
from models.entities import (
    AccountingEntry,
    EntryKind,
    InboundRental,
    ItemRef,
    OutboundRental,
    RecordKind,
    RepairCase,
)
from services.pricing_service import ZERO, real_to_date_total, round_money

LOGGER = logging.getLogger("custody_tracker.accounting")

UNKNOWN_ITEM = "unknown item"


class LedgerSummary(BaseModel):
    revenue: Decimal = ZERO
    expense: Decimal = ZERO
    net: Decimal = ZERO
    entry_count: int = 0


def item_name(store: EntityStore, ref: ItemRef) -> str | None:
    if ref.kind == "asset":
        asset = store.get_asset(ref.item_id)
        return asset.name if asset else None
    if ref.kind == "rental":
        parent = store.get(RecordKind.RENTAL, ref.item_id)
        return item_name(store, parent.source) if parent else None
    record = store.get(RecordKind(ref.kind), ref.item_id)
    return record.name if record else None


def person_name(store: EntityStore, person_id: str | None) -> str | None:
    person = store.get_person(person_id)
    return person.full_name if person else None


def has_entry(store: EntityStore, source_id: str, kind: EntryKind) -> bool:
    return any(entry.source_id == source_id and entry.kind == kind for entry in store.ledger)


def post_entry(
    store: EntityStore,
    kind: EntryKind,
    amount,
    description: str,
    *,
    asset_name: str | None = None,
    person_name: str | None = None,
    source_id: str | None = None,
) -> AccountingEntry:
    entry = AccountingEntry(
        posted_on=store.today(),
        kind=kind,
        amount=round_money(amount),
        description=description,
        asset_name=asset_name,
        person_name=person_name,
        source_id=source_id,
    )
    store.post(entry)
    LOGGER.info("Ledger entry posted kind=%s amount=%s source_id=%s", kind.value, entry.amount, source_id)
    return entry


def post_rental_revenue(store: EntityStore, rental: OutboundRental) -> AccountingEntry | None:
    if has_entry(store, rental.id, EntryKind.RENTAL_REVENUE):
        return None
    name = item_name(store, rental.source)
    return post_entry(
        store,
        EntryKind.RENTAL_REVENUE,
        real_to_date_total(rental, store.today()),
        f"Rental of {name or UNKNOWN_ITEM}",
        asset_name=name,
        person_name=person_name(store, rental.person_id),
        source_id=rental.id,
    )


def post_deposit_kept(store: EntityStore, rental: OutboundRental, amount: Decimal) -> AccountingEntry | None:
    if amount <= 0:
        return None
    name = item_name(store, rental.source) or UNKNOWN_ITEM
    if rental.deposit_kept < rental.deposit:
        description = f"Partial deposit kept ({round_money(amount)} of {round_money(rental.deposit)}) - {name}"
    else:
        description = f"Deposit kept - {name}"
    return post_entry(
        store,
        EntryKind.DEPOSIT_KEPT,
        amount,
        description,
        asset_name=item_name(store, rental.source),
        person_name=person_name(store, rental.person_id),
        source_id=rental.id,
    )


def post_repair_expense(store: EntityStore, repair: RepairCase) -> AccountingEntry | None:
    if has_entry(store, repair.id, EntryKind.REPAIR_EXPENSE):
        return None
    amount = ZERO if repair.free else repair.cost
    if not repair.free and amount <= 0:
        return None
    name = item_name(store, repair.source)
    description = f"Repair of {name or UNKNOWN_ITEM}"
    if repair.free:
        description += " (free)"
    return post_entry(
        store,
        EntryKind.REPAIR_EXPENSE,
        amount,
        description,
        asset_name=name,
        person_name=person_name(store, repair.person_id),
        source_id=repair.id,
    )


def post_inbound_rental_expense(store: EntityStore, inbound: InboundRental) -> AccountingEntry | None:
    if has_entry(store, inbound.id, EntryKind.BORROW_RENTAL_EXPENSE):
        return None
    amount = real_to_date_total(inbound, store.today())
    if amount <= 0:
        return None
    lessor = person_name(store, inbound.person_id) or "unknown"
    return post_entry(
        store,
        EntryKind.BORROW_RENTAL_EXPENSE,
        amount,
        f"Rental of {inbound.name} from {lessor}",
        asset_name=inbound.name,
        person_name=lessor,
        source_id=inbound.id,
    )


def post_deposit_lost(store: EntityStore, inbound: InboundRental, amount: Decimal) -> AccountingEntry | None:
    if amount <= 0:
        return None
    if inbound.deposit_kept < inbound.deposit:
        description = f"Partial deposit lost ({round_money(amount)} of {round_money(inbound.deposit)}) - {inbound.name}"
    else:
        description = f"Deposit lost - {inbound.name}"
    return post_entry(
        store,
        EntryKind.DEPOSIT_LOST,
        amount,
        description,
        asset_name=inbound.name,
        person_name=person_name(store, inbound.person_id),
        source_id=inbound.id,
    )


def ledger_between(store: EntityStore, start: date | None = None, end: date | None = None) -> list[AccountingEntry]:
    rows = [
        entry
        for entry in store.ledger
        if (start is None or entry.posted_on >= start) and (end is None or entry.posted_on <= end)
    ]
    rows.sort(key=lambda entry: entry.posted_on, reverse=True)
    return rows


def summarize(entries: list[AccountingEntry]) -> LedgerSummary:
    revenue = sum((entry.amount for entry in entries if entry.kind.is_revenue), ZERO)
    expense = sum((entry.amount for entry in entries if not entry.kind.is_revenue), ZERO)
    return LedgerSummary(revenue=revenue, expense=expense, net=revenue - expense, entry_count=len(entries))


def month_summary(store: EntityStore, year: int, month: int) -> LedgerSummary:
    return summarize([entry for entry in store.ledger if entry.posted_on.year == year and entry.posted_on.month == month])


def year_summary(store: EntityStore, year: int) -> LedgerSummary:
    return summarize([entry for entry in store.ledger if entry.posted_on.year == year])


def all_time_summary(store: EntityStore) -> LedgerSummary:
    return summarize(list(store.ledger))


def available_years(store: EntityStore) -> list[int]:
    return sorted({entry.posted_on.year for entry in store.ledger}, reverse=True)


def available_months(store: EntityStore, year: int) -> list[int]:
    return sorted({entry.posted_on.month for entry in store.ledger if entry.posted_on.year == year}, reverse=True)


def pending_rental_revenue(store: EntityStore) -> Decimal:
    today = store.today()
    return sum(
        (real_to_date_total(rental, today) for rental in store.records(RecordKind.RENTAL) if not rental.payment_received),
        ZERO,
    )


def pending_repair_expense(store: EntityStore) -> Decimal:
    return sum((repair.cost for repair in store.records(RecordKind.REPAIR) if not repair.paid), ZERO)


def outstanding_inbound_deposits(store: EntityStore) -> Decimal:
    return sum((inbound.deposit_remaining for inbound in store.records(RecordKind.INBOUND_RENTAL)), ZERO)
