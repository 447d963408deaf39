from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.entities import PersonRole, Tariff


class AssetUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    category: str = ""
    description: str = ""
    value: Decimal = Decimal("0")
    acquiredOn: Optional[date] = None
    storageLocationID: Optional[str] = None


class PersonUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lastName: str
    firstName: str = ""
    email: str = ""
    phone: str = ""
    organisation: str = ""
    role: Optional[PersonRole] = None
    workSiteID: Optional[str] = None


class CreateBorrowDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    lenderID: str
    dueDate: date
    startDate: Optional[date] = None
    notes: str = ""
    hasImage: bool = False


class CreateInboundRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    lessorID: str
    dueDate: date
    tariff: Tariff = Tariff.DAY
    unitPrice: Decimal = Decimal("0")
    deposit: Decimal = Decimal("0")
    startDate: Optional[date] = None
    notes: str = ""
    hasImage: bool = False


class TrackInboundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: str = ""
    storageLocationID: Optional[str] = None


class LendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    personID: str
    dueDate: date
    startDate: Optional[date] = None
    notes: str = ""


class RentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    personID: str
    dueDate: date
    tariff: Tariff = Tariff.DAY
    unitPrice: Decimal = Decimal("0")
    deposit: Decimal = Decimal("0")
    startDate: Optional[date] = None
    notes: str = ""


class RepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    repairerID: str
    description: str = ""
    itemID: Optional[str] = None
    dueDate: Optional[date] = None
    estimatedCost: Optional[Decimal] = None
    free: bool = False
    notes: str = ""


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnedOn: Optional[date] = None


class CloseRepairRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    finalCost: Optional[Decimal] = None
    paid: Optional[bool] = None
    returnedOn: Optional[date] = None


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    paid: bool = True


class DepositSettlementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    recover: Decimal = Decimal("0")
    keep: Decimal = Decimal("0")


class ReassignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: str


class MergePersonsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personIDs: List[str] = Field(min_length=2)
    keepID: Optional[str] = None


class StorageLocationUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    address: str = ""
    building: str = ""
    floor: str = ""
    room: str = ""
    notes: str = ""


class WorkSiteUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    address: str = ""
    description: str = ""
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    notes: str = ""
    active: bool = True
    contactID: Optional[str] = None


class WorkSiteAssignment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    personID: str


class CategoryRename(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newName: str
