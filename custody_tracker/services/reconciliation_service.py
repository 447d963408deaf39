from __future__ import annotations

import logging
import unicodedata

from db.store import EntityStore
from models.entities import Person, RecordKind
from services.errors import InvalidRequest, NotFound

LOGGER = logging.getLogger("custody_tracker.reconciliation")

_CONTACT_FIELDS = ("email", "phone", "organisation")


def rewrite_person_reference(store: EntityStore, record, new_person_id: str) -> None:
    store.update(record, person_id=new_person_id)


def orphans(store: EntityStore) -> list[tuple[RecordKind, object]]:
    rows = []
    for kind in RecordKind:
        for record in store.records(kind):
            if store.get_person(record.person_id) is None:
                rows.append((kind, record))
    return rows


def person_references(store: EntityStore, person_id: str) -> list[tuple[RecordKind, object]]:
    return [
        (kind, record)
        for kind in RecordKind
        for record in store.records(kind)
        if record.person_id == person_id
    ]


def reassign_references(store: EntityStore, old_person_id: str, new_person_id: str) -> int:
    moved = 0
    for _, record in person_references(store, old_person_id):
        rewrite_person_reference(store, record, new_person_id)
        moved += 1
    return moved


def normalize_text(value: str | None) -> str:
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.casefold().split())


def duplicate_key(person: Person, match_email: bool = False) -> str:
    key = f"{normalize_text(person.last_name)}_{normalize_text(person.first_name)}"
    if match_email:
        key = f"{key}_{normalize_text(person.email)}"
    return key


def duplicates(store: EntityStore, match_email: bool = False) -> list[list[Person]]:
    groups: dict[str, list[Person]] = {}
    for person in store.persons.values():
        groups.setdefault(duplicate_key(person, match_email), []).append(person)
    found = [group for group in groups.values() if len(group) > 1]
    found.sort(key=lambda group: normalize_text(group[0].last_name))
    return found


def _contact_score(person: Person) -> int:
    score = 0
    if person.email:
        score += 2
    if person.phone:
        score += 2
    if person.organisation:
        score += 1
    return score


def merge_persons(store: EntityStore, person_ids: list[str], keep_id: str | None = None) -> Person:
    """Fold duplicate people into one surviving record.

    The survivor is ``keep_id`` when given, otherwise whoever has the most
    contact details. Every record pointing at a merged-away person is
    repointed before those people are deleted.
    """
    unique_ids = list(dict.fromkeys(person_ids))
    if len(unique_ids) < 2:
        raise InvalidRequest("At least two distinct people are needed for a merge.")

    with store.transaction():
        people = [store.require_person(person_id) for person_id in unique_ids]
        if keep_id is not None:
            if keep_id not in unique_ids:
                raise NotFound(f"Person {keep_id} is not part of the merge.", keep_id)
            survivor = store.require_person(keep_id)
        else:
            survivor = sorted(people, key=_contact_score, reverse=True)[0]

        others = [person for person in people if person.id != survivor.id]
        for other in others:
            for field in _CONTACT_FIELDS:
                if not getattr(survivor, field) and getattr(other, field):
                    store.update(survivor, **{field: getattr(other, field)})
            if survivor.role is None and other.role is not None:
                store.update(survivor, role=other.role)
            if survivor.work_site_id is None and other.work_site_id is not None:
                store.update(survivor, work_site_id=other.work_site_id)

        moved = 0
        for other in others:
            moved += reassign_references(store, other.id, survivor.id)
            store.remove_person(other.id)

    LOGGER.info("Persons merged survivor_id=%s merged=%s references_moved=%s", survivor.id, len(others), moved)
    return survivor
