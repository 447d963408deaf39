from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date

from models.entities import (
    RECORD_TYPES,
    AccountingEntry,
    Asset,
    Person,
    RecordKind,
    StorageLocation,
    StoreSnapshot,
    WorkSite,
)
from services.errors import InvariantViolation, NotFound

LOGGER = logging.getLogger("custody_tracker.store")

_SNAPSHOT_FIELDS = {
    RecordKind.LOAN: "loans",
    RecordKind.RENTAL: "rentals",
    RecordKind.BORROW: "borrows",
    RecordKind.INBOUND_RENTAL: "inbound_rentals",
    RecordKind.REPAIR: "repairs",
}

# Kinds whose active records claim the item they were taken from.
CLAIMING_KINDS = (RecordKind.LOAN, RecordKind.RENTAL, RecordKind.REPAIR)


def _claims_asset(kind: RecordKind, record) -> bool:
    return kind in CLAIMING_KINDS and record.is_active and record.source.kind == "asset"


class EntityStore:
    """In-memory arena of every entity plus the asset claim index.

    All writes go through the store so a transaction can undo them: the
    journal holds one undo step per touched field or collection slot, and a
    failed transaction replays it backwards onto the same objects.
    """

    def __init__(self, clock: Callable[[], date] = date.today):
        self.clock = clock
        self.assets: dict[str, Asset] = {}
        self.persons: dict[str, Person] = {}
        self.storage_locations: dict[str, StorageLocation] = {}
        self.work_sites: dict[str, WorkSite] = {}
        self.collections: dict[RecordKind, dict] = {kind: {} for kind in RECORD_TYPES}
        self.ledger: list[AccountingEntry] = []
        self._asset_index: dict[str, tuple[RecordKind, str]] = {}
        self._lock = threading.RLock()
        self._journal: list[Callable[[], None]] | None = None

    def today(self) -> date:
        return self.clock()

    # -- journaled primitives -------------------------------------------------

    def _log_undo(self, undo: Callable[[], None]) -> None:
        if self._journal is not None:
            self._journal.append(undo)

    def _put(self, collection: dict, key: str, value) -> None:
        collection[key] = value
        self._log_undo(lambda: collection.pop(key, None))

    def _drop(self, collection: dict, key: str):
        value = collection.pop(key)
        self._log_undo(lambda: collection.__setitem__(key, value))
        return value

    def update(self, entity, **changes):
        for field, value in changes.items():
            previous = getattr(entity, field)
            setattr(entity, field, value)
            self._log_undo(lambda field=field, previous=previous: setattr(entity, field, previous))
        return entity

    def post(self, entry: AccountingEntry) -> AccountingEntry:
        self.ledger.append(entry)
        self._log_undo(self.ledger.pop)
        return entry

    # -- assets, persons, places ----------------------------------------------

    def add_asset(self, asset: Asset) -> Asset:
        self._put(self.assets, asset.id, asset)
        return asset

    def get_asset(self, asset_id: str | None) -> Asset | None:
        if asset_id is None:
            return None
        return self.assets.get(asset_id)

    def require_asset(self, asset_id: str) -> Asset:
        asset = self.assets.get(asset_id)
        if asset is None:
            raise NotFound(f"Asset {asset_id} not found.", asset_id)
        return asset

    def remove_asset(self, asset_id: str) -> Asset:
        return self._drop(self.assets, asset_id)

    def add_person(self, person: Person) -> Person:
        self._put(self.persons, person.id, person)
        return person

    def get_person(self, person_id: str | None) -> Person | None:
        if person_id is None:
            return None
        return self.persons.get(person_id)

    def require_person(self, person_id: str) -> Person:
        person = self.persons.get(person_id)
        if person is None:
            raise NotFound(f"Person {person_id} not found.", person_id)
        return person

    def remove_person(self, person_id: str) -> Person:
        return self._drop(self.persons, person_id)

    def add_storage_location(self, location: StorageLocation) -> StorageLocation:
        self._put(self.storage_locations, location.id, location)
        return location

    def require_storage_location(self, location_id: str) -> StorageLocation:
        location = self.storage_locations.get(location_id)
        if location is None:
            raise NotFound(f"Storage location {location_id} not found.", location_id)
        return location

    def remove_storage_location(self, location_id: str) -> StorageLocation:
        return self._drop(self.storage_locations, location_id)

    def add_work_site(self, site: WorkSite) -> WorkSite:
        self._put(self.work_sites, site.id, site)
        return site

    def require_work_site(self, site_id: str) -> WorkSite:
        site = self.work_sites.get(site_id)
        if site is None:
            raise NotFound(f"Work site {site_id} not found.", site_id)
        return site

    def remove_work_site(self, site_id: str) -> WorkSite:
        return self._drop(self.work_sites, site_id)

    # -- relationship records -----------------------------------------------

    def add(self, kind: RecordKind, record):
        if _claims_asset(kind, record):
            self.claim_asset(record.source.item_id, kind, record.id)
        self._put(self.collections[kind], record.id, record)
        return record

    def get(self, kind: RecordKind, record_id: str | None):
        if record_id is None:
            return None
        return self.collections[kind].get(record_id)

    def require(self, kind: RecordKind, record_id: str):
        record = self.collections[kind].get(record_id)
        if record is None:
            raise NotFound(f"{kind.value} {record_id} not found.", record_id)
        return record

    def find(self, record_id: str):
        for kind, collection in self.collections.items():
            record = collection.get(record_id)
            if record is not None:
                return kind, record
        raise NotFound(f"Record {record_id} not found.", record_id)

    def remove(self, kind: RecordKind, record_id: str) -> None:
        record = self.collections[kind].get(record_id)
        if record is None:
            return
        if kind in CLAIMING_KINDS and record.source.kind == "asset":
            self.release_asset(record.source.item_id, record_id)
        self._drop(self.collections[kind], record_id)

    def records(self, kind: RecordKind) -> list:
        return list(self.collections[kind].values())

    # -- asset index ----------------------------------------------------------

    def asset_claim(self, asset_id: str) -> tuple[RecordKind, str] | None:
        return self._asset_index.get(asset_id)

    def asset_claims(self) -> dict[str, tuple[RecordKind, str]]:
        return dict(self._asset_index)

    def claim_asset(self, asset_id: str, kind: RecordKind, record_id: str) -> None:
        current = self._asset_index.get(asset_id)
        if current == (kind, record_id):
            return
        if current is not None:
            LOGGER.error("Double booking asset_id=%s held_by=%s:%s new=%s:%s", asset_id, current[0].value, current[1], kind.value, record_id)
            raise InvariantViolation(f"Asset {asset_id} is already claimed by {current[0].value} {current[1]}.", asset_id)
        self._put(self._asset_index, asset_id, (kind, record_id))

    def release_asset(self, asset_id: str, record_id: str) -> None:
        current = self._asset_index.get(asset_id)
        if current is not None and current[1] == record_id:
            self._drop(self._asset_index, asset_id)

    def rebuild_index(self) -> None:
        index: dict[str, tuple[RecordKind, str]] = {}
        for kind in CLAIMING_KINDS:
            for record in self.collections[kind].values():
                if not _claims_asset(kind, record):
                    continue
                asset_id = record.source.item_id
                if asset_id in index:
                    held_kind, held_id = index[asset_id]
                    LOGGER.error("Double booking found on rebuild asset_id=%s records=%s,%s", asset_id, held_id, record.id)
                    raise InvariantViolation(
                        f"Asset {asset_id} has two active relationships: {held_kind.value} {held_id} and {kind.value} {record.id}.",
                        asset_id,
                    )
                index[asset_id] = (kind, record.id)
        self._asset_index = index

    # -- atomicity ------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["EntityStore"]:
        with self._lock:
            outermost = self._journal is None
            if outermost:
                self._journal = []
            mark = len(self._journal)
            try:
                yield self
            except BaseException:
                self._undo_to(mark)
                raise
            finally:
                if outermost:
                    self._journal = None

    def _undo_to(self, mark: int) -> None:
        while len(self._journal) > mark:
            self._journal.pop()()

    @contextmanager
    def read(self) -> Iterator["EntityStore"]:
        with self._lock:
            yield self

    # -- collaborator load/save hooks -----------------------------------------

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            payload = {
                "assets": [asset.model_copy(deep=True) for asset in self.assets.values()],
                "persons": [person.model_copy(deep=True) for person in self.persons.values()],
                "storage_locations": [location.model_copy(deep=True) for location in self.storage_locations.values()],
                "work_sites": [site.model_copy(deep=True) for site in self.work_sites.values()],
                "ledger": list(self.ledger),
            }
            for kind, field in _SNAPSHOT_FIELDS.items():
                payload[field] = [record.model_copy(deep=True) for record in self.collections[kind].values()]
            return StoreSnapshot(**payload)

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot, clock: Callable[[], date] = date.today) -> "EntityStore":
        store = cls(clock=clock)
        for asset in snapshot.assets:
            store.add_asset(asset.model_copy(deep=True))
        for person in snapshot.persons:
            store.add_person(person.model_copy(deep=True))
        for location in snapshot.storage_locations:
            store.add_storage_location(location.model_copy(deep=True))
        for site in snapshot.work_sites:
            store.add_work_site(site.model_copy(deep=True))
        for kind, field in _SNAPSHOT_FIELDS.items():
            for record in getattr(snapshot, field):
                store.collections[kind][record.id] = record.model_copy(deep=True)
        store.ledger = list(snapshot.ledger)
        store.rebuild_index()
        LOGGER.info(
            "Store loaded assets=%s persons=%s records=%s ledger=%s",
            len(store.assets),
            len(store.persons),
            sum(len(collection) for collection in store.collections.values()),
            len(store.ledger),
        )
        return store
