from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_id() -> str:
    return uuid.uuid4().hex


class PersonRole(str, Enum):
    CUSTOMER = "customer"
    REPAIRER = "repairer"
    EMPLOYEE = "employee"
    RENTAL_AGENCY = "rental_agency"


class Tariff(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    FLAT = "flat"


class EntryKind(str, Enum):
    RENTAL_REVENUE = "rental_revenue"
    DEPOSIT_KEPT = "deposit_kept"
    REPAIR_EXPENSE = "repair_expense"
    BORROW_RENTAL_EXPENSE = "borrow_rental_expense"
    DEPOSIT_LOST = "deposit_lost"

    @property
    def is_revenue(self) -> bool:
        return self in {EntryKind.RENTAL_REVENUE, EntryKind.DEPOSIT_KEPT}


class RecordKind(str, Enum):
    LOAN = "loan"
    RENTAL = "rental"
    BORROW = "borrow"
    INBOUND_RENTAL = "inbound_rental"
    REPAIR = "repair"


class HoldingKind(str, Enum):
    LENT = "lent"
    RENTED = "rented"
    IN_REPAIR = "in_repair"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="ignore",
    )


class _Frozen(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Holding(_Frozen):
    """What an inbound item is currently doing on our side.

    An inbound record holds ``None`` or exactly one of these, so it can never
    be lent and sub-let at the same time.
    """

    kind: HoldingKind
    record_id: str


class ItemRef(_Frozen):
    kind: Literal["asset", "borrow", "inbound_rental", "rental"]
    item_id: str


class StorageLocation(_Model):
    id: str = Field(default_factory=new_id)
    name: str
    address: str = ""
    building: str = ""
    floor: str = ""
    room: str = ""
    notes: str = ""

    @property
    def full_address(self) -> str:
        parts = [part for part in (self.building, f"Floor {self.floor}" if self.floor else "", self.room, self.address) if part]
        return ", ".join(parts)


class WorkSite(_Model):
    id: str = Field(default_factory=new_id)
    name: str
    address: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: str = ""
    active: bool = True
    contact_id: Optional[str] = None


class Asset(_Model):
    id: str = Field(default_factory=new_id)
    name: str
    category: str = ""
    description: str = ""
    storage_location_id: Optional[str] = None
    value: Decimal = Decimal("0")
    acquired_on: date
    inbound_id: Optional[str] = None


class Person(_Model):
    id: str = Field(default_factory=new_id)
    first_name: str = ""
    last_name: str
    email: str = ""
    phone: str = ""
    organisation: str = ""
    role: Optional[PersonRole] = None
    work_site_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class _Dated(_Model):
    id: str = Field(default_factory=new_id)
    person_id: str
    start_date: date
    due_date: date
    returned_on: Optional[date] = None
    notes: str = ""

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    def is_overdue(self, today: date) -> bool:
        return self.is_active and self.due_date < today

    def days_overdue(self, today: date) -> int:
        if not self.is_overdue(today):
            return 0
        return (today - self.due_date).days


class _DepositTerms(_Model):
    tariff: Tariff = Tariff.DAY
    unit_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    deposit: Decimal = Decimal("0")
    deposit_recovered: Decimal = Decimal("0")
    deposit_kept: Decimal = Decimal("0")

    @property
    def deposit_remaining(self) -> Decimal:
        return max(Decimal("0"), self.deposit - self.deposit_recovered - self.deposit_kept)

    @property
    def deposit_settled(self) -> bool:
        return self.deposit_recovered + self.deposit_kept >= self.deposit


class OutboundLoan(_Dated):
    source: ItemRef


class OutboundRental(_Dated, _DepositTerms):
    source: ItemRef
    payment_received: bool = False
    sublet_id: Optional[str] = None

    @property
    def deposit_returned(self) -> bool:
        return self.deposit > 0 and self.deposit_settled and self.deposit_kept == 0


class InboundBorrow(_Dated):
    name: str
    has_image: bool = False
    holding: Optional[Holding] = None
    asset_id: Optional[str] = None


class InboundRental(_Dated, _DepositTerms):
    name: str
    payment_made: bool = False
    has_image: bool = False
    holding: Optional[Holding] = None
    asset_id: Optional[str] = None


class RepairCase(_Model):
    id: str = Field(default_factory=new_id)
    source: ItemRef
    person_id: str
    start_date: date
    due_date: Optional[date] = None
    returned_on: Optional[date] = None
    description: str = ""
    estimated_cost: Optional[Decimal] = None
    final_cost: Optional[Decimal] = None
    paid: bool = False
    free: bool = False
    origin_record_id: Optional[str] = None
    notes: str = ""

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    def is_overdue(self, today: date) -> bool:
        return self.is_active and self.due_date is not None and self.due_date < today

    def days_overdue(self, today: date) -> int:
        if not self.is_overdue(today):
            return 0
        return (today - self.due_date).days

    @property
    def cost(self) -> Decimal:
        if self.final_cost is not None:
            return self.final_cost
        if self.estimated_cost is not None:
            return self.estimated_cost
        return Decimal("0")


class AccountingEntry(_Frozen):
    id: str = Field(default_factory=new_id)
    posted_on: date
    kind: EntryKind
    amount: Decimal
    description: str
    asset_name: Optional[str] = None
    person_name: Optional[str] = None
    source_id: Optional[str] = None


class StoreSnapshot(_Model):
    assets: list[Asset] = []
    persons: list[Person] = []
    storage_locations: list[StorageLocation] = []
    work_sites: list[WorkSite] = []
    loans: list[OutboundLoan] = []
    rentals: list[OutboundRental] = []
    borrows: list[InboundBorrow] = []
    inbound_rentals: list[InboundRental] = []
    repairs: list[RepairCase] = []
    ledger: list[AccountingEntry] = []


RECORD_TYPES = {
    RecordKind.LOAN: OutboundLoan,
    RecordKind.RENTAL: OutboundRental,
    RecordKind.BORROW: InboundBorrow,
    RecordKind.INBOUND_RENTAL: InboundRental,
    RecordKind.REPAIR: RepairCase,
}
