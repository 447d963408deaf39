from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from db.store import CLAIMING_KINDS, EntityStore
from models.entities import HoldingKind, InboundBorrow, InboundRental, ItemRef, RecordKind
from services.errors import InvariantViolation, NotFound

LOGGER = logging.getLogger("custody_tracker.status")


class ItemState(str, Enum):
    AVAILABLE = "available"
    LENT = "lent"
    RENTED = "rented"
    IN_REPAIR = "in_repair"


class ItemStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ItemState
    record_id: Optional[str] = None
    person_id: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.state == ItemState.AVAILABLE


AVAILABLE = ItemStatus(state=ItemState.AVAILABLE)

_STATE_BY_KIND = {
    RecordKind.LOAN: ItemState.LENT,
    RecordKind.RENTAL: ItemState.RENTED,
    RecordKind.REPAIR: ItemState.IN_REPAIR,
}

_KIND_BY_HOLDING = {
    HoldingKind.LENT: RecordKind.LOAN,
    HoldingKind.RENTED: RecordKind.RENTAL,
    HoldingKind.IN_REPAIR: RecordKind.REPAIR,
}

INBOUND_KINDS = (RecordKind.BORROW, RecordKind.INBOUND_RENTAL)


def _violation(message: str, record_id: str | None) -> InvariantViolation:
    LOGGER.error("Invariant violation record_id=%s detail=%s", record_id, message)
    return InvariantViolation(message, record_id)


def _status_for(store: EntityStore, kind: RecordKind, record_id: str, owner_id: str) -> ItemStatus:
    record = store.get(kind, record_id)
    if record is None or not record.is_active:
        raise _violation(f"{owner_id} points at {kind.value} {record_id}, which is missing or closed.", owner_id)
    return ItemStatus(state=_STATE_BY_KIND[kind], record_id=record.id, person_id=record.person_id)


def find_inbound(store: EntityStore, inbound_id: str) -> tuple[RecordKind, InboundBorrow | InboundRental]:
    for kind in INBOUND_KINDS:
        record = store.get(kind, inbound_id)
        if record is not None:
            return kind, record
    raise NotFound(f"Inbound record {inbound_id} not found.", inbound_id)


def resolve(store: EntityStore, asset_id: str) -> ItemStatus:
    asset = store.require_asset(asset_id)
    if asset.inbound_id:
        return resolve_borrow(store, asset.inbound_id)
    claim = store.asset_claim(asset_id)
    if claim is None:
        return AVAILABLE
    kind, record_id = claim
    return _status_for(store, kind, record_id, asset_id)


def resolve_borrow(store: EntityStore, inbound_id: str) -> ItemStatus:
    _, inbound = find_inbound(store, inbound_id)
    if inbound.holding is None:
        return AVAILABLE
    kind = _KIND_BY_HOLDING[inbound.holding.kind]
    return _status_for(store, kind, inbound.holding.record_id, inbound.id)


def resolve_rental_sublet(store: EntityStore, rental_id: str) -> ItemStatus:
    rental = store.require(RecordKind.RENTAL, rental_id)
    if rental.sublet_id is None:
        return AVAILABLE
    return _status_for(store, RecordKind.RENTAL, rental.sublet_id, rental.id)


def resolve_item(store: EntityStore, ref: ItemRef) -> ItemStatus:
    if ref.kind == "asset":
        return resolve(store, ref.item_id)
    if ref.kind == "rental":
        return resolve_rental_sublet(store, ref.item_id)
    return resolve_borrow(store, ref.item_id)


def resolve_id(store: EntityStore, item_id: str) -> ItemStatus:
    if store.get_asset(item_id) is not None:
        return resolve(store, item_id)
    if store.get(RecordKind.RENTAL, item_id) is not None:
        return resolve_rental_sublet(store, item_id)
    return resolve_borrow(store, item_id)


def list_active(store: EntityStore, kind: RecordKind) -> list:
    rows = [record for record in store.records(kind) if record.is_active]
    rows.sort(key=lambda record: record.start_date)
    return rows


def list_overdue(store: EntityStore, kind: RecordKind) -> list:
    today = store.today()
    rows = [record for record in store.records(kind) if record.is_overdue(today)]
    rows.sort(key=lambda record: record.due_date or date.max)
    return rows


def verify_integrity(store: EntityStore) -> None:
    """Full scan of every cross-collection invariant.

    The resolvers trust the index and the holding slots; this re-derives both
    from the raw collections and raises on the first disagreement.
    """
    claims: dict[str, str] = {}
    for kind in CLAIMING_KINDS:
        for record in store.records(kind):
            if not record.is_active or record.source.kind != "asset":
                continue
            asset_id = record.source.item_id
            if asset_id in claims:
                raise _violation(f"Asset {asset_id} has two active relationships ({claims[asset_id]}, {record.id}).", asset_id)
            claims[asset_id] = record.id
            indexed = store.asset_claim(asset_id)
            if indexed is None or indexed[1] != record.id:
                raise _violation(f"Asset {asset_id} index does not match active {kind.value} {record.id}.", asset_id)

    for asset_id, (kind, record_id) in store.asset_claims().items():
        if claims.get(asset_id) != record_id:
            raise _violation(f"Index entry for asset {asset_id} points at inactive {kind.value} {record_id}.", asset_id)

    for inbound_kind in INBOUND_KINDS:
        for inbound in store.records(inbound_kind):
            holders = []
            for kind in CLAIMING_KINDS:
                for record in store.records(kind):
                    if record.is_active and record.source.item_id == inbound.id:
                        holders.append(record.id)
            if len(holders) > 1:
                raise _violation(f"Inbound {inbound.id} has several active onward relationships: {holders}.", inbound.id)
            if inbound.holding is not None:
                if not inbound.is_active:
                    raise _violation(f"Closed inbound {inbound.id} still holds {inbound.holding.record_id}.", inbound.id)
                resolve_borrow(store, inbound.id)
                if holders != [inbound.holding.record_id]:
                    raise _violation(f"Inbound {inbound.id} holding does not match its active records.", inbound.id)
            elif holders:
                raise _violation(f"Inbound {inbound.id} has active record {holders[0]} but no holding.", inbound.id)

    for rental in store.records(RecordKind.RENTAL):
        sublets = [
            record.id
            for record in store.records(RecordKind.RENTAL)
            if record.is_active and record.source.kind == "rental" and record.source.item_id == rental.id
        ]
        if len(sublets) > 1:
            raise _violation(f"Rental {rental.id} has several active sub-lets: {sublets}.", rental.id)
        if rental.sublet_id is not None:
            resolve_rental_sublet(store, rental.id)
            if sublets != [rental.sublet_id]:
                raise _violation(f"Rental {rental.id} sub-let slot does not match its active sub-lets.", rental.id)
        elif sublets:
            raise _violation(f"Rental {rental.id} has active sub-let {sublets[0]} but no slot.", rental.id)

    for kind in (RecordKind.RENTAL, RecordKind.INBOUND_RENTAL):
        for record in store.records(kind):
            if record.deposit_recovered + record.deposit_kept > record.deposit:
                raise _violation(f"{kind.value} {record.id} settles more deposit than was paid.", record.id)
