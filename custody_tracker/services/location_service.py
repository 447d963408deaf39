from __future__ import annotations

import logging

from db.store import EntityStore
from models.entities import Asset, Person, PersonRole, StorageLocation, WorkSite
from services.errors import InvalidRequest

LOGGER = logging.getLogger("custody_tracker.locations")


# -- storage locations ------------------------------------------------------------


def list_storage_locations(store: EntityStore) -> list[StorageLocation]:
    return sorted(store.storage_locations.values(), key=lambda location: location.name.lower())


def add_storage_location(store: EntityStore, name: str, **fields) -> StorageLocation:
    location = StorageLocation(name=name, **fields)
    with store.transaction():
        store.add_storage_location(location)
    LOGGER.info("Storage location added location_id=%s name=%s", location.id, location.name)
    return location


def update_storage_location(store: EntityStore, location_id: str, **changes) -> StorageLocation:
    with store.transaction():
        location = store.require_storage_location(location_id)
        store.update(location, **changes)
    return location


def assets_at_location(store: EntityStore, location_id: str) -> list[Asset]:
    store.require_storage_location(location_id)
    return [asset for asset in store.assets.values() if asset.storage_location_id == location_id]


def delete_storage_location(store: EntityStore, location_id: str) -> int:
    """Delete a location; assets stored there keep existing with no location."""
    with store.transaction():
        stored = assets_at_location(store, location_id)
        for asset in stored:
            store.update(asset, storage_location_id=None)
        store.remove_storage_location(location_id)
    LOGGER.info("Storage location deleted location_id=%s assets_cleared=%s", location_id, len(stored))
    return len(stored)


# -- work sites ---------------------------------------------------------------------


def list_work_sites(store: EntityStore, active_only: bool = False) -> list[WorkSite]:
    sites = [site for site in store.work_sites.values() if site.active or not active_only]
    return sorted(sites, key=lambda site: site.name.lower())


def add_work_site(store: EntityStore, name: str, **fields) -> WorkSite:
    site = WorkSite(name=name, **fields)
    with store.transaction():
        if site.contact_id:
            store.require_person(site.contact_id)
        store.add_work_site(site)
    LOGGER.info("Work site added site_id=%s name=%s", site.id, site.name)
    return site


def update_work_site(store: EntityStore, site_id: str, **changes) -> WorkSite:
    with store.transaction():
        site = store.require_work_site(site_id)
        if changes.get("contact_id"):
            store.require_person(changes["contact_id"])
        store.update(site, **changes)
    return site


def delete_work_site(store: EntityStore, site_id: str) -> int:
    with store.transaction():
        store.require_work_site(site_id)
        assigned = [person for person in store.persons.values() if person.work_site_id == site_id]
        for person in assigned:
            store.update(person, work_site_id=None)
        store.remove_work_site(site_id)
    LOGGER.info("Work site deleted site_id=%s persons_cleared=%s", site_id, len(assigned))
    return len(assigned)


def assign_to_work_site(store: EntityStore, person_id: str, site_id: str) -> Person:
    with store.transaction():
        person = store.require_person(person_id)
        store.require_work_site(site_id)
        store.update(person, work_site_id=site_id)
    LOGGER.info("Person assigned person_id=%s site_id=%s", person_id, site_id)
    return person


def remove_from_work_site(store: EntityStore, person_id: str) -> Person:
    with store.transaction():
        person = store.require_person(person_id)
        store.update(person, work_site_id=None)
    LOGGER.info("Person unassigned person_id=%s", person_id)
    return person


def employees_on_site(store: EntityStore, site_id: str) -> list[Person]:
    store.require_work_site(site_id)
    return [
        person
        for person in store.persons.values()
        if person.role == PersonRole.EMPLOYEE and person.work_site_id == site_id
    ]


def unassigned_employees(store: EntityStore) -> list[Person]:
    return [
        person
        for person in store.persons.values()
        if person.role == PersonRole.EMPLOYEE and person.work_site_id is None
    ]


# -- asset categories -----------------------------------------------------------------


def _same_category(left: str, right: str) -> bool:
    return left.strip().casefold() == right.strip().casefold()


def categories(store: EntityStore) -> list[str]:
    seen: dict[str, str] = {}
    for asset in store.assets.values():
        name = asset.category.strip()
        if name:
            seen.setdefault(name.casefold(), name)
    return sorted(seen.values(), key=str.casefold)


def rename_category(store: EntityStore, old_name: str, new_name: str) -> int:
    target = new_name.strip()
    if not target:
        raise InvalidRequest("A category name cannot be empty.")
    with store.transaction():
        matching = [asset for asset in store.assets.values() if _same_category(asset.category, old_name)]
        for asset in matching:
            store.update(asset, category=target)
    LOGGER.info("Category renamed old=%s new=%s assets=%s", old_name, target, len(matching))
    return len(matching)


def delete_category(store: EntityStore, name: str) -> int:
    with store.transaction():
        matching = [asset for asset in store.assets.values() if _same_category(asset.category, name)]
        for asset in matching:
            store.update(asset, category="")
    LOGGER.info("Category deleted name=%s assets=%s", name, len(matching))
    return len(matching)
