from __future__ import annotations

import logging
from datetime import date

from db.store import EntityStore
from models.entities import (
    Asset,
    Holding,
    HoldingKind,
    InboundBorrow,
    InboundRental,
    ItemRef,
    OutboundLoan,
    OutboundRental,
    Person,
    PersonRole,
    RecordKind,
    RepairCase,
    Tariff,
)
from services import accounting_service
from services.errors import AlreadyClosed, Blocked, InvariantViolation, NotAvailable, NotFound, StillActive
from services.pricing_service import (
    ZERO,
    check_amount,
    prorated_units,
    real_to_date_total,
    settle_deposit,
    total_price,
)
from services.reconciliation_service import rewrite_person_reference
from services.status_service import (
    INBOUND_KINDS,
    find_inbound,
    list_active,
    list_overdue,
    resolve,
    resolve_borrow,
    resolve_item,
)

LOGGER = logging.getLogger("custody_tracker.lifecycle")

_HOLDING_BY_KIND = {
    RecordKind.LOAN: HoldingKind.LENT,
    RecordKind.RENTAL: HoldingKind.RENTED,
    RecordKind.REPAIR: HoldingKind.IN_REPAIR,
}


def _note_permissive_dates(label: str, start: date, due: date | None) -> None:
    if due is not None and due < start:
        LOGGER.warning("Accepted %s with due date before start start=%s due=%s", label, start, due)


# -- registration ---------------------------------------------------------------


def add_asset(
    store: EntityStore,
    name: str,
    *,
    acquired_on: date | None = None,
    category: str = "",
    description: str = "",
    value=ZERO,
    storage_location_id: str | None = None,
) -> Asset:
    asset = Asset(
        name=name,
        category=category.strip(),
        description=description,
        value=check_amount(value, "asset value"),
        acquired_on=acquired_on or store.today(),
        storage_location_id=storage_location_id,
    )
    with store.transaction():
        if storage_location_id:
            store.require_storage_location(storage_location_id)
        store.add_asset(asset)
    LOGGER.info("Asset added asset_id=%s name=%s", asset.id, asset.name)
    return asset


def update_asset(store: EntityStore, asset_id: str, **changes) -> Asset:
    with store.transaction():
        asset = store.require_asset(asset_id)
        if "value" in changes:
            changes["value"] = check_amount(changes["value"], "asset value")
        if changes.get("storage_location_id"):
            store.require_storage_location(changes["storage_location_id"])
        store.update(asset, **changes)
    return asset


def delete_asset(store: EntityStore, asset_id: str) -> None:
    with store.transaction():
        asset = store.require_asset(asset_id)
        if not resolve(store, asset_id).is_available:
            raise StillActive(f"Asset {asset.name} still has an active relationship.", asset_id)

        if asset.inbound_id:
            _, inbound = find_inbound(store, asset.inbound_id)
            store.update(inbound, asset_id=None)
        removed = []
        for kind in (RecordKind.LOAN, RecordKind.RENTAL, RecordKind.REPAIR):
            for record in store.records(kind):
                if record.source.kind == "asset" and record.source.item_id == asset_id:
                    removed.append(record.id)
                    store.remove(kind, record.id)
        for rental in store.records(RecordKind.RENTAL):
            if rental.source.kind == "rental" and rental.source.item_id in removed:
                store.remove(RecordKind.RENTAL, rental.id)
        store.remove_asset(asset_id)
    LOGGER.info("Asset deleted asset_id=%s history_removed=%s", asset_id, len(removed))


def add_person(
    store: EntityStore,
    last_name: str,
    *,
    first_name: str = "",
    email: str = "",
    phone: str = "",
    organisation: str = "",
    role: PersonRole | None = None,
    work_site_id: str | None = None,
) -> Person:
    person = Person(
        last_name=last_name,
        first_name=first_name,
        email=email,
        phone=phone,
        organisation=organisation,
        role=role,
        work_site_id=work_site_id,
    )
    with store.transaction():
        if work_site_id:
            store.require_work_site(work_site_id)
        store.add_person(person)
    LOGGER.info("Person added person_id=%s", person.id)
    return person


def update_person(store: EntityStore, person_id: str, **changes) -> Person:
    with store.transaction():
        person = store.require_person(person_id)
        if changes.get("work_site_id"):
            store.require_work_site(changes["work_site_id"])
        store.update(person, **changes)
    return person


def delete_person(store: EntityStore, person_id: str) -> None:
    # References are left dangling on purpose; orphans() finds them later.
    with store.transaction():
        store.require_person(person_id)
        store.remove_person(person_id)
    LOGGER.info("Person deleted person_id=%s", person_id)


def add_borrow(
    store: EntityStore,
    name: str,
    lender_id: str,
    due_date: date,
    *,
    start_date: date | None = None,
    notes: str = "",
    has_image: bool = False,
) -> InboundBorrow:
    with store.transaction():
        store.require_person(lender_id)
        start = start_date or store.today()
        _note_permissive_dates("borrow", start, due_date)
        borrow = store.add(
            RecordKind.BORROW,
            InboundBorrow(
                name=name,
                person_id=lender_id,
                start_date=start,
                due_date=due_date,
                notes=notes,
                has_image=has_image,
            ),
        )
    LOGGER.info("Borrow recorded borrow_id=%s lender_id=%s", borrow.id, lender_id)
    return borrow


def add_inbound_rental(
    store: EntityStore,
    name: str,
    lessor_id: str,
    due_date: date,
    tariff: Tariff,
    unit_price,
    *,
    deposit=ZERO,
    start_date: date | None = None,
    notes: str = "",
    has_image: bool = False,
) -> InboundRental:
    unit = check_amount(unit_price, "unit price")
    deposit_amount = check_amount(deposit, "deposit")
    with store.transaction():
        store.require_person(lessor_id)
        start = start_date or store.today()
        _note_permissive_dates("inbound rental", start, due_date)
        inbound = store.add(
            RecordKind.INBOUND_RENTAL,
            InboundRental(
                name=name,
                person_id=lessor_id,
                start_date=start,
                due_date=due_date,
                tariff=tariff,
                unit_price=unit,
                total_price=total_price(tariff, unit, prorated_units(tariff, start, due_date)),
                deposit=deposit_amount,
                notes=notes,
                has_image=has_image,
            ),
        )
    LOGGER.info("Inbound rental recorded inbound_id=%s lessor_id=%s total=%s", inbound.id, lessor_id, inbound.total_price)
    return inbound


def create_asset_from_inbound(
    store: EntityStore,
    inbound_id: str,
    *,
    category: str = "",
    storage_location_id: str | None = None,
) -> Asset:
    with store.transaction():
        _, inbound = find_inbound(store, inbound_id)
        if not inbound.is_active:
            raise NotAvailable(f"{inbound.name} has already been given back.", inbound_id)
        if inbound.asset_id:
            existing = store.get_asset(inbound.asset_id)
            if existing is not None:
                return existing
        asset = store.add_asset(
            Asset(
                name=inbound.name,
                description="Tracked from an inbound record",
                category=category.strip(),
                storage_location_id=storage_location_id,
                acquired_on=inbound.start_date,
                inbound_id=inbound.id,
            )
        )
        store.update(inbound, asset_id=asset.id)
    LOGGER.info("Asset linked to inbound asset_id=%s inbound_id=%s", asset.id, inbound_id)
    return asset


# -- item sources and claims ------------------------------------------------------


def _source_for(store: EntityStore, item_id: str, *, allow_sublet: bool = False) -> ItemRef:
    asset = store.get_asset(item_id)
    if asset is not None:
        if not asset.inbound_id:
            return ItemRef(kind="asset", item_id=asset.id)
        item_id = asset.inbound_id

    for kind in INBOUND_KINDS:
        inbound = store.get(kind, item_id)
        if inbound is not None:
            if not inbound.is_active:
                raise NotAvailable(f"{inbound.name} has already been given back.", item_id)
            return ItemRef(kind=kind.value, item_id=inbound.id)

    if allow_sublet:
        rental = store.get(RecordKind.RENTAL, item_id)
        if rental is not None:
            if not rental.is_active:
                raise NotAvailable(f"Rental {item_id} is closed.", item_id)
            if rental.source.kind != "asset":
                raise NotAvailable(f"Rental {item_id} is already a chained relationship and cannot be sub-let.", item_id)
            return ItemRef(kind="rental", item_id=rental.id)

    raise NotFound(f"Item {item_id} not found.", item_id)


def _ensure_available(store: EntityStore, ref: ItemRef) -> None:
    status = resolve_item(store, ref)
    if not status.is_available:
        raise NotAvailable(f"{ref.kind} {ref.item_id} is currently {status.state.value}.", ref.item_id)


def _claim(store: EntityStore, ref: ItemRef, kind: RecordKind, record_id: str) -> None:
    if ref.kind == "asset":
        # store.add already holds the asset index slot.
        return
    if ref.kind == "rental":
        store.update(store.require(RecordKind.RENTAL, ref.item_id), sublet_id=record_id)
    else:
        _, inbound = find_inbound(store, ref.item_id)
        store.update(inbound, holding=Holding(kind=_HOLDING_BY_KIND[kind], record_id=record_id))


def _release(store: EntityStore, record) -> None:
    ref = record.source
    if ref.kind == "asset":
        store.release_asset(ref.item_id, record.id)
        return

    if ref.kind == "rental":
        parent = store.get(RecordKind.RENTAL, ref.item_id)
        current = parent.sublet_id if parent else None
    else:
        kind = RecordKind(ref.kind)
        parent = store.get(kind, ref.item_id)
        current = parent.holding.record_id if parent and parent.holding else None

    if current != record.id:
        LOGGER.error("Back-reference mismatch record_id=%s parent=%s:%s current=%s", record.id, ref.kind, ref.item_id, current)
        raise InvariantViolation(f"{ref.kind} {ref.item_id} does not point back at {record.id}.", record.id)
    if ref.kind == "rental":
        store.update(parent, sublet_id=None)
    else:
        store.update(parent, holding=None)


def _ensure_unchained(store: EntityStore, kind: RecordKind, record) -> None:
    if kind in INBOUND_KINDS:
        status = resolve_borrow(store, record.id)
    elif kind == RecordKind.RENTAL and record.sublet_id is not None:
        status = resolve_item(store, ItemRef(kind="rental", item_id=record.id))
    else:
        return
    if not status.is_available:
        raise Blocked(
            f"{kind.value} {record.id} is still {status.state.value} through record {status.record_id}.",
            record.id,
        )


def _open_repair(
    store: EntityStore,
    ref: ItemRef,
    repairer_id: str,
    description: str,
    due_date: date | None,
    estimated_cost,
    free: bool,
    notes: str,
    origin_record_id: str | None = None,
) -> RepairCase:
    if ref.kind not in ("asset", "borrow"):
        raise NotAvailable(f"Repairs are only tracked for owned or borrowed items, not {ref.kind}.", ref.item_id)
    estimate = None if free or estimated_cost is None else check_amount(estimated_cost, "estimated cost")
    start = store.today()
    _note_permissive_dates("repair", start, due_date)
    repair = store.add(
        RecordKind.REPAIR,
        RepairCase(
            source=ref,
            person_id=repairer_id,
            start_date=start,
            due_date=due_date,
            description=description,
            estimated_cost=estimate,
            final_cost=ZERO if free else None,
            paid=free,
            free=free,
            origin_record_id=origin_record_id,
            notes=notes,
        ),
    )
    _claim(store, ref, RecordKind.REPAIR, repair.id)
    return repair


# -- outward transitions ------------------------------------------------------------


def lend(
    store: EntityStore,
    item_id: str,
    person_id: str,
    due_date: date,
    notes: str = "",
    *,
    start_date: date | None = None,
) -> OutboundLoan:
    with store.transaction():
        store.require_person(person_id)
        ref = _source_for(store, item_id)
        _ensure_available(store, ref)
        start = start_date or store.today()
        _note_permissive_dates("loan", start, due_date)
        loan = store.add(
            RecordKind.LOAN,
            OutboundLoan(source=ref, person_id=person_id, start_date=start, due_date=due_date, notes=notes),
        )
        _claim(store, ref, RecordKind.LOAN, loan.id)
    LOGGER.info("Loan created loan_id=%s source=%s:%s person_id=%s due=%s", loan.id, ref.kind, ref.item_id, person_id, due_date)
    return loan


def rent(
    store: EntityStore,
    item_id: str,
    person_id: str,
    due_date: date,
    tariff: Tariff,
    unit_price,
    deposit=ZERO,
    notes: str = "",
    *,
    start_date: date | None = None,
) -> OutboundRental:
    unit = check_amount(unit_price, "unit price")
    deposit_amount = check_amount(deposit, "deposit")
    with store.transaction():
        store.require_person(person_id)
        ref = _source_for(store, item_id, allow_sublet=True)
        _ensure_available(store, ref)
        start = start_date or store.today()
        _note_permissive_dates("rental", start, due_date)
        rental = store.add(
            RecordKind.RENTAL,
            OutboundRental(
                source=ref,
                person_id=person_id,
                start_date=start,
                due_date=due_date,
                tariff=tariff,
                unit_price=unit,
                total_price=total_price(tariff, unit, prorated_units(tariff, start, due_date)),
                deposit=deposit_amount,
                notes=notes,
            ),
        )
        _claim(store, ref, RecordKind.RENTAL, rental.id)
    LOGGER.info(
        "Rental created rental_id=%s source=%s:%s person_id=%s tariff=%s total=%s",
        rental.id,
        ref.kind,
        ref.item_id,
        person_id,
        tariff.value,
        rental.total_price,
    )
    return rental


def send_to_repair(
    store: EntityStore,
    item_id: str,
    repairer_id: str,
    description: str,
    *,
    due_date: date | None = None,
    estimated_cost=None,
    free: bool = False,
    notes: str = "",
) -> RepairCase:
    with store.transaction():
        store.require_person(repairer_id)
        ref = _source_for(store, item_id)
        _ensure_available(store, ref)
        repair = _open_repair(store, ref, repairer_id, description, due_date, estimated_cost, free, notes)
    LOGGER.info("Repair opened repair_id=%s source=%s:%s repairer_id=%s free=%s", repair.id, ref.kind, ref.item_id, repairer_id, free)
    return repair


def return_and_repair(
    store: EntityStore,
    record_id: str,
    repairer_id: str,
    description: str,
    *,
    due_date: date | None = None,
    estimated_cost=None,
    free: bool = False,
    notes: str = "",
) -> RepairCase:
    """Take an item back from a loan or rental and send it straight to repair."""
    with store.transaction():
        store.require_person(repairer_id)
        kind, record = store.find(record_id)
        if kind not in (RecordKind.LOAN, RecordKind.RENTAL):
            raise NotFound(f"No loan or rental {record_id}.", record_id)
        if not record.is_active:
            raise AlreadyClosed(f"{kind.value} {record_id} was already returned.", record_id)
        _ensure_unchained(store, kind, record)
        _close_outward(store, kind, record, store.today())
        repair = _open_repair(
            store,
            record.source,
            repairer_id,
            description,
            due_date,
            estimated_cost,
            free,
            notes,
            origin_record_id=record.id,
        )
    LOGGER.info("Returned into repair record_id=%s repair_id=%s", record_id, repair.id)
    return repair


# -- closing transitions --------------------------------------------------------------


def _close_outward(store: EntityStore, kind: RecordKind, record, when: date) -> None:
    store.update(record, returned_on=when)
    _release(store, record)
    if kind == RecordKind.RENTAL:
        if record.tariff != Tariff.FLAT and record.unit_price > 0:
            store.update(record, total_price=real_to_date_total(record, when))
        if record.payment_received:
            accounting_service.post_rental_revenue(store, record)


def _close_inbound(store: EntityStore, kind: RecordKind, record, when: date) -> None:
    store.update(record, returned_on=when)
    if kind == RecordKind.INBOUND_RENTAL and record.tariff != Tariff.FLAT and record.unit_price > 0:
        store.update(record, total_price=real_to_date_total(record, when))
    # The tracked asset was never ours; it leaves with the item.
    if record.asset_id:
        if store.get_asset(record.asset_id) is not None:
            store.remove_asset(record.asset_id)
        store.update(record, asset_id=None)


def return_item(store: EntityStore, record_id: str, returned_on: date | None = None):
    with store.transaction():
        kind, record = store.find(record_id)
        if kind == RecordKind.REPAIR:
            return close_repair(store, record_id, returned_on=returned_on)
        if not record.is_active:
            raise AlreadyClosed(f"{kind.value} {record_id} was already returned on {record.returned_on}.", record_id)
        _ensure_unchained(store, kind, record)
        when = returned_on or store.today()
        if kind in INBOUND_KINDS:
            _close_inbound(store, kind, record, when)
        else:
            _close_outward(store, kind, record, when)
    LOGGER.info("Returned kind=%s record_id=%s on=%s", kind.value, record_id, when)
    return record


def close_repair(
    store: EntityStore,
    repair_id: str,
    final_cost=None,
    paid: bool | None = None,
    returned_on: date | None = None,
) -> RepairCase:
    with store.transaction():
        repair = store.require(RecordKind.REPAIR, repair_id)
        if not repair.is_active:
            raise AlreadyClosed(f"Repair {repair_id} was already closed on {repair.returned_on}.", repair_id)
        if final_cost is not None:
            store.update(repair, final_cost=check_amount(final_cost, "final cost"))
        if paid is not None:
            store.update(repair, paid=paid)
        store.update(repair, returned_on=returned_on or store.today())
        _release(store, repair)
        if repair.paid or repair.free:
            accounting_service.post_repair_expense(store, repair)
    LOGGER.info("Repair closed repair_id=%s cost=%s paid=%s", repair_id, repair.cost, repair.paid)
    return repair


# -- payments and deposits --------------------------------------------------------------


def mark_rental_paid(store: EntityStore, rental_id: str, received: bool = True) -> OutboundRental:
    with store.transaction():
        rental = store.require(RecordKind.RENTAL, rental_id)
        store.update(rental, payment_received=received)
        if received and not rental.is_active:
            accounting_service.post_rental_revenue(store, rental)
    LOGGER.info("Rental payment rental_id=%s received=%s", rental_id, received)
    return rental


def mark_inbound_rental_paid(store: EntityStore, inbound_id: str, paid: bool = True) -> InboundRental:
    with store.transaction():
        inbound = store.require(RecordKind.INBOUND_RENTAL, inbound_id)
        store.update(inbound, payment_made=paid)
        if paid:
            accounting_service.post_inbound_rental_expense(store, inbound)
    LOGGER.info("Inbound rental payment inbound_id=%s paid=%s", inbound_id, paid)
    return inbound


def mark_repair_paid(store: EntityStore, repair_id: str, paid: bool = True) -> RepairCase:
    with store.transaction():
        repair = store.require(RecordKind.REPAIR, repair_id)
        store.update(repair, paid=paid)
        if paid and not repair.is_active:
            accounting_service.post_repair_expense(store, repair)
    LOGGER.info("Repair payment repair_id=%s paid=%s", repair_id, paid)
    return repair


def settle_rental_deposit(store: EntityStore, record_id: str, recover=ZERO, keep=ZERO):
    with store.transaction():
        kind, record = store.find(record_id)
        if kind not in (RecordKind.RENTAL, RecordKind.INBOUND_RENTAL):
            raise NotFound(f"No rental {record_id}.", record_id)
        previous_kept = record.deposit_kept
        recovered, kept = settle_deposit(record.deposit, record.deposit_recovered, record.deposit_kept, recover, keep)
        store.update(record, deposit_recovered=recovered, deposit_kept=kept)
        increment = kept - previous_kept
        if kind == RecordKind.RENTAL:
            accounting_service.post_deposit_kept(store, record, increment)
        else:
            accounting_service.post_deposit_lost(store, record, increment)
    LOGGER.info("Deposit settled record_id=%s recovered=%s kept=%s", record_id, recovered, kept)
    return record


# -- people and records -----------------------------------------------------------------


def reaffect_orphan(store: EntityStore, record_id: str, new_person_id: str):
    with store.transaction():
        store.require_person(new_person_id)
        _, record = store.find(record_id)
        rewrite_person_reference(store, record, new_person_id)
    LOGGER.info("Record reassigned record_id=%s person_id=%s", record_id, new_person_id)
    return record


def delete_record(store: EntityStore, record_id: str) -> None:
    with store.transaction():
        kind, record = store.find(record_id)
        if record.is_active:
            raise StillActive(f"{kind.value} {record_id} is still active.", record_id)
        chained = record.holding if kind in INBOUND_KINDS else getattr(record, "sublet_id", None)
        if chained is not None:
            raise StillActive(f"{kind.value} {record_id} still has a chained relationship.", record_id)
        store.remove(kind, record_id)
    LOGGER.info("Record deleted kind=%s record_id=%s", kind.value, record_id)


def purge_returned_loans(store: EntityStore) -> int:
    with store.transaction():
        returned = [loan.id for loan in store.records(RecordKind.LOAN) if not loan.is_active]
        for loan_id in returned:
            store.remove(RecordKind.LOAN, loan_id)
    LOGGER.info("Returned loans purged count=%s", len(returned))
    return len(returned)
