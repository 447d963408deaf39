import logging
import os
from datetime import date
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from db.store import EntityStore
from models.entities import RecordKind
from schemas.requests import (
    AssetUpsert,
    CategoryRename,
    CloseRepairRequest,
    CreateBorrowDto,
    CreateInboundRentalDto,
    DepositSettlementRequest,
    LendRequest,
    MergePersonsRequest,
    PaymentRequest,
    PersonUpsert,
    ReassignRequest,
    RentRequest,
    RepairRequest,
    ReturnRequest,
    StorageLocationUpsert,
    TrackInboundRequest,
    WorkSiteAssignment,
    WorkSiteUpsert,
)
from services import accounting_service, lifecycle_service, location_service, reconciliation_service
from services.errors import CustodyError, InvalidAmount, InvalidRequest, InvariantViolation, NotFound
from services.status_service import resolve, resolve_id, verify_integrity

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

LOG_LEVEL = (os.environ.get("CUSTODY_TRACKER_LOG_LEVEL") or "INFO").strip().upper()
logging.getLogger("custody_tracker").setLevel(LOG_LEVEL)
API_LOGGER = logging.getLogger("custody_tracker.api")

DUPLICATE_MATCH_EMAIL = _parse_bool_env("DUPLICATE_MATCH_EMAIL", "false")

STORE = EntityStore()


def get_store() -> EntityStore:
    return STORE


def _status_code_for(exc: CustodyError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (InvalidAmount, InvalidRequest)):
        return 400
    if isinstance(exc, InvariantViolation):
        return 500
    return 409


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError):
    status_code = _status_code_for(exc)
    if status_code == 409:
        API_LOGGER.warning("Refused path=%s kind=%s record_id=%s", request.url.path, exc.kind, exc.record_id)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _dump_rows(rows) -> list[dict]:
    return [_dump(row) for row in rows]


def _record_kind(kind: str) -> RecordKind:
    try:
        return RecordKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown record kind {kind}.")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


# -- assets ---------------------------------------------------------------------


@app.get("/api/assets")
def get_assets(store: EntityStore = Depends(get_store)):
    with store.read():
        return [
            {**_dump(asset), "status": _dump(resolve(store, asset.id))}
            for asset in sorted(store.assets.values(), key=lambda asset: asset.name.lower())
        ]


@app.post("/api/assets")
def create_asset(payload: AssetUpsert, store: EntityStore = Depends(get_store)):
    asset = lifecycle_service.add_asset(
        store,
        payload.name,
        acquired_on=payload.acquiredOn,
        category=payload.category,
        description=payload.description,
        value=payload.value,
        storage_location_id=payload.storageLocationID,
    )
    return _dump(asset)


@app.get("/api/assets/{asset_id}")
def get_asset(asset_id: str, store: EntityStore = Depends(get_store)):
    with store.read():
        asset = store.require_asset(asset_id)
        return {**_dump(asset), "status": _dump(resolve(store, asset_id))}


@app.put("/api/assets/{asset_id}")
def update_asset(asset_id: str, payload: AssetUpsert, store: EntityStore = Depends(get_store)):
    changes = {
        "name": payload.name,
        "category": payload.category,
        "description": payload.description,
        "value": payload.value,
        "storage_location_id": payload.storageLocationID,
    }
    if payload.acquiredOn is not None:
        changes["acquired_on"] = payload.acquiredOn
    return _dump(lifecycle_service.update_asset(store, asset_id, **changes))


@app.delete("/api/assets/{asset_id}")
def delete_asset(asset_id: str, store: EntityStore = Depends(get_store)):
    lifecycle_service.delete_asset(store, asset_id)
    return {"deleted": asset_id}


# -- persons ----------------------------------------------------------------------


@app.get("/api/persons")
def get_persons(store: EntityStore = Depends(get_store)):
    with store.read():
        people = sorted(store.persons.values(), key=lambda person: (person.last_name.lower(), person.first_name.lower()))
        return _dump_rows(people)


@app.post("/api/persons")
def create_person(payload: PersonUpsert, store: EntityStore = Depends(get_store)):
    person = lifecycle_service.add_person(
        store,
        payload.lastName,
        first_name=payload.firstName,
        email=payload.email,
        phone=payload.phone,
        organisation=payload.organisation,
        role=payload.role,
        work_site_id=payload.workSiteID,
    )
    return _dump(person)


@app.get("/api/persons/duplicates")
def get_duplicate_persons(
    match_email: Optional[bool] = Query(None, alias="matchEmail"),
    store: EntityStore = Depends(get_store),
):
    use_email = DUPLICATE_MATCH_EMAIL if match_email is None else match_email
    with store.read():
        return [_dump_rows(group) for group in reconciliation_service.duplicates(store, match_email=use_email)]


@app.post("/api/persons/merge")
def merge_persons(payload: MergePersonsRequest, store: EntityStore = Depends(get_store)):
    survivor = reconciliation_service.merge_persons(store, payload.personIDs, keep_id=payload.keepID)
    return _dump(survivor)


@app.put("/api/persons/{person_id}")
def update_person(person_id: str, payload: PersonUpsert, store: EntityStore = Depends(get_store)):
    person = lifecycle_service.update_person(
        store,
        person_id,
        last_name=payload.lastName,
        first_name=payload.firstName,
        email=payload.email,
        phone=payload.phone,
        organisation=payload.organisation,
        role=payload.role,
        work_site_id=payload.workSiteID,
    )
    return _dump(person)


@app.delete("/api/persons/{person_id}")
def delete_person(person_id: str, store: EntityStore = Depends(get_store)):
    lifecycle_service.delete_person(store, person_id)
    return {"deleted": person_id}


@app.get("/api/persons/{person_id}/references")
def get_person_references(person_id: str, store: EntityStore = Depends(get_store)):
    with store.read():
        return [
            {"kind": kind.value, "record": _dump(record)}
            for kind, record in reconciliation_service.person_references(store, person_id)
        ]


@app.get("/api/orphans")
def get_orphans(store: EntityStore = Depends(get_store)):
    with store.read():
        return [{"kind": kind.value, "record": _dump(record)} for kind, record in reconciliation_service.orphans(store)]


# -- storage locations and work sites -----------------------------------------------


@app.get("/api/storage-locations")
def get_storage_locations(store: EntityStore = Depends(get_store)):
    with store.read():
        return [
            {**_dump(location), "fullAddress": location.full_address}
            for location in location_service.list_storage_locations(store)
        ]


@app.post("/api/storage-locations")
def create_storage_location(payload: StorageLocationUpsert, store: EntityStore = Depends(get_store)):
    location = location_service.add_storage_location(
        store,
        payload.name,
        address=payload.address,
        building=payload.building,
        floor=payload.floor,
        room=payload.room,
        notes=payload.notes,
    )
    return _dump(location)


@app.put("/api/storage-locations/{location_id}")
def update_storage_location(location_id: str, payload: StorageLocationUpsert, store: EntityStore = Depends(get_store)):
    location = location_service.update_storage_location(
        store,
        location_id,
        name=payload.name,
        address=payload.address,
        building=payload.building,
        floor=payload.floor,
        room=payload.room,
        notes=payload.notes,
    )
    return _dump(location)


@app.get("/api/storage-locations/{location_id}/assets")
def get_location_assets(location_id: str, store: EntityStore = Depends(get_store)):
    with store.read():
        return _dump_rows(location_service.assets_at_location(store, location_id))


@app.delete("/api/storage-locations/{location_id}")
def delete_storage_location(location_id: str, store: EntityStore = Depends(get_store)):
    cleared = location_service.delete_storage_location(store, location_id)
    return {"deleted": location_id, "assetsCleared": cleared}


@app.get("/api/work-sites")
def get_work_sites(
    active_only: bool = Query(False, alias="activeOnly"),
    store: EntityStore = Depends(get_store),
):
    with store.read():
        return _dump_rows(location_service.list_work_sites(store, active_only=active_only))


def _work_site_fields(payload: WorkSiteUpsert) -> dict:
    return {
        "address": payload.address,
        "description": payload.description,
        "start_date": payload.startDate,
        "end_date": payload.endDate,
        "notes": payload.notes,
        "active": payload.active,
        "contact_id": payload.contactID,
    }


@app.post("/api/work-sites")
def create_work_site(payload: WorkSiteUpsert, store: EntityStore = Depends(get_store)):
    return _dump(location_service.add_work_site(store, payload.name, **_work_site_fields(payload)))


@app.put("/api/work-sites/{site_id}")
def update_work_site(site_id: str, payload: WorkSiteUpsert, store: EntityStore = Depends(get_store)):
    site = location_service.update_work_site(store, site_id, name=payload.name, **_work_site_fields(payload))
    return _dump(site)


@app.delete("/api/work-sites/{site_id}")
def delete_work_site(site_id: str, store: EntityStore = Depends(get_store)):
    cleared = location_service.delete_work_site(store, site_id)
    return {"deleted": site_id, "personsCleared": cleared}


@app.get("/api/work-sites/{site_id}/employees")
def get_site_employees(site_id: str, store: EntityStore = Depends(get_store)):
    with store.read():
        return _dump_rows(location_service.employees_on_site(store, site_id))


@app.post("/api/work-sites/{site_id}/employees")
def assign_employee(site_id: str, payload: WorkSiteAssignment, store: EntityStore = Depends(get_store)):
    return _dump(location_service.assign_to_work_site(store, payload.personID, site_id))


@app.delete("/api/work-sites/{site_id}/employees/{person_id}")
def unassign_employee(site_id: str, person_id: str, store: EntityStore = Depends(get_store)):
    person = store.require_person(person_id)
    if person.work_site_id != site_id:
        raise HTTPException(status_code=404, detail=f"Person {person_id} is not assigned to work site {site_id}.")
    return _dump(location_service.remove_from_work_site(store, person_id))


@app.get("/api/employees/unassigned")
def get_unassigned_employees(store: EntityStore = Depends(get_store)):
    with store.read():
        return _dump_rows(location_service.unassigned_employees(store))


# -- categories -----------------------------------------------------------------------


@app.get("/api/categories")
def get_categories(store: EntityStore = Depends(get_store)):
    with store.read():
        return location_service.categories(store)


@app.put("/api/categories/{name}")
def rename_category(name: str, payload: CategoryRename, store: EntityStore = Depends(get_store)):
    renamed = location_service.rename_category(store, name, payload.newName)
    return {"category": payload.newName.strip(), "assets": renamed}


@app.delete("/api/categories/{name}")
def delete_category(name: str, store: EntityStore = Depends(get_store)):
    return {"deleted": name, "assets": location_service.delete_category(store, name)}


# -- inbound items ------------------------------------------------------------------


@app.post("/api/borrows")
def create_borrow(payload: CreateBorrowDto, store: EntityStore = Depends(get_store)):
    borrow = lifecycle_service.add_borrow(
        store,
        payload.name,
        payload.lenderID,
        payload.dueDate,
        start_date=payload.startDate,
        notes=payload.notes,
        has_image=payload.hasImage,
    )
    return _dump(borrow)


@app.post("/api/inbound-rentals")
def create_inbound_rental(payload: CreateInboundRentalDto, store: EntityStore = Depends(get_store)):
    inbound = lifecycle_service.add_inbound_rental(
        store,
        payload.name,
        payload.lessorID,
        payload.dueDate,
        payload.tariff,
        payload.unitPrice,
        deposit=payload.deposit,
        start_date=payload.startDate,
        notes=payload.notes,
        has_image=payload.hasImage,
    )
    return _dump(inbound)


@app.post("/api/inbound/{inbound_id}/track")
def track_inbound(inbound_id: str, payload: TrackInboundRequest, store: EntityStore = Depends(get_store)):
    asset = lifecycle_service.create_asset_from_inbound(
        store,
        inbound_id,
        category=payload.category,
        storage_location_id=payload.storageLocationID,
    )
    return _dump(asset)


@app.post("/api/inbound-rentals/{inbound_id}/payment")
def pay_inbound_rental(inbound_id: str, payload: PaymentRequest, store: EntityStore = Depends(get_store)):
    return _dump(lifecycle_service.mark_inbound_rental_paid(store, inbound_id, payload.paid))


# -- outward transitions ------------------------------------------------------------


@app.get("/api/items/{item_id}/status")
def get_item_status(item_id: str, store: EntityStore = Depends(get_store)):
    with store.read():
        return _dump(resolve_id(store, item_id))


@app.post("/api/loans")
def create_loan(payload: LendRequest, store: EntityStore = Depends(get_store)):
    loan = lifecycle_service.lend(
        store,
        payload.itemID,
        payload.personID,
        payload.dueDate,
        payload.notes,
        start_date=payload.startDate,
    )
    return _dump(loan)


@app.post("/api/loans/purge-returned")
def purge_returned_loans(store: EntityStore = Depends(get_store)):
    return {"purged": lifecycle_service.purge_returned_loans(store)}


@app.post("/api/rentals")
def create_rental(payload: RentRequest, store: EntityStore = Depends(get_store)):
    rental = lifecycle_service.rent(
        store,
        payload.itemID,
        payload.personID,
        payload.dueDate,
        payload.tariff,
        payload.unitPrice,
        payload.deposit,
        payload.notes,
        start_date=payload.startDate,
    )
    return _dump(rental)


@app.post("/api/rentals/{rental_id}/payment")
def pay_rental(rental_id: str, payload: PaymentRequest, store: EntityStore = Depends(get_store)):
    return _dump(lifecycle_service.mark_rental_paid(store, rental_id, payload.paid))


@app.post("/api/repairs")
def create_repair(payload: RepairRequest, store: EntityStore = Depends(get_store)):
    if not payload.itemID:
        raise HTTPException(status_code=400, detail="itemID is required.")
    repair = lifecycle_service.send_to_repair(
        store,
        payload.itemID,
        payload.repairerID,
        payload.description,
        due_date=payload.dueDate,
        estimated_cost=payload.estimatedCost,
        free=payload.free,
        notes=payload.notes,
    )
    return _dump(repair)


@app.post("/api/repairs/{repair_id}/close")
def close_repair(repair_id: str, payload: CloseRepairRequest, store: EntityStore = Depends(get_store)):
    repair = lifecycle_service.close_repair(
        store,
        repair_id,
        final_cost=payload.finalCost,
        paid=payload.paid,
        returned_on=payload.returnedOn,
    )
    return _dump(repair)


@app.post("/api/repairs/{repair_id}/payment")
def pay_repair(repair_id: str, payload: PaymentRequest, store: EntityStore = Depends(get_store)):
    return _dump(lifecycle_service.mark_repair_paid(store, repair_id, payload.paid))


# -- records ------------------------------------------------------------------------


@app.get("/api/records/{kind}/active")
def get_active_records(kind: str, store: EntityStore = Depends(get_store)):
    with store.read():
        return _dump_rows(lifecycle_service.list_active(store, _record_kind(kind)))


@app.get("/api/records/{kind}/overdue")
def get_overdue_records(kind: str, store: EntityStore = Depends(get_store)):
    today = store.today()
    with store.read():
        return [
            {**_dump(record), "daysOverdue": record.days_overdue(today)}
            for record in lifecycle_service.list_overdue(store, _record_kind(kind))
        ]


@app.post("/api/records/{record_id}/return")
def return_record(record_id: str, payload: ReturnRequest, store: EntityStore = Depends(get_store)):
    return _dump(lifecycle_service.return_item(store, record_id, returned_on=payload.returnedOn))


@app.post("/api/records/{record_id}/return-and-repair")
def return_record_to_repair(record_id: str, payload: RepairRequest, store: EntityStore = Depends(get_store)):
    repair = lifecycle_service.return_and_repair(
        store,
        record_id,
        payload.repairerID,
        payload.description,
        due_date=payload.dueDate,
        estimated_cost=payload.estimatedCost,
        free=payload.free,
        notes=payload.notes,
    )
    return _dump(repair)


@app.post("/api/records/{record_id}/deposit")
def settle_deposit(record_id: str, payload: DepositSettlementRequest, store: EntityStore = Depends(get_store)):
    record = lifecycle_service.settle_rental_deposit(store, record_id, recover=payload.recover, keep=payload.keep)
    return _dump(record)


@app.post("/api/records/{record_id}/reassign")
def reassign_record(record_id: str, payload: ReassignRequest, store: EntityStore = Depends(get_store)):
    return _dump(lifecycle_service.reaffect_orphan(store, record_id, payload.personID))


@app.delete("/api/records/{record_id}")
def delete_record(record_id: str, store: EntityStore = Depends(get_store)):
    lifecycle_service.delete_record(store, record_id)
    return {"deleted": record_id}


@app.get("/api/integrity")
def check_integrity(store: EntityStore = Depends(get_store)):
    with store.read():
        verify_integrity(store)
    return {"status": "ok"}


# -- ledger ---------------------------------------------------------------------------


@app.get("/api/ledger")
def get_ledger(
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    store: EntityStore = Depends(get_store),
):
    with store.read():
        return _dump_rows(accounting_service.ledger_between(store, start, end))


@app.get("/api/ledger/summary")
def get_ledger_summary(
    year: Optional[int] = Query(None),
    month: Optional[int] = Query(None),
    store: EntityStore = Depends(get_store),
):
    if month is not None and year is None:
        raise HTTPException(status_code=400, detail="month requires year.")
    with store.read():
        if month is not None:
            summary = accounting_service.month_summary(store, year, month)
        elif year is not None:
            summary = accounting_service.year_summary(store, year)
        else:
            summary = accounting_service.all_time_summary(store)
    return summary.model_dump(mode="json")


@app.get("/api/ledger/periods")
def get_ledger_periods(store: EntityStore = Depends(get_store)):
    with store.read():
        return [
            {"year": year, "months": accounting_service.available_months(store, year)}
            for year in accounting_service.available_years(store)
        ]


@app.get("/api/ledger/pending")
def get_pending_amounts(store: EntityStore = Depends(get_store)):
    with store.read():
        return {
            "rentalRevenue": str(accounting_service.pending_rental_revenue(store)),
            "repairExpense": str(accounting_service.pending_repair_expense(store)),
            "inboundDeposits": str(accounting_service.outstanding_inbound_deposits(store)),
        }
