import sys
import unittest
from datetime import date
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.store import EntityStore
from models.entities import PersonRole
from services import lifecycle_service as lifecycle
from services import location_service as locations
from services.errors import InvalidRequest, NotFound
from services.status_service import verify_integrity

DAY0 = date(2026, 3, 2)


class LocationTestCase(unittest.TestCase):
    def setUp(self):
        self.store = EntityStore(clock=lambda: DAY0)

    def tearDown(self):
        verify_integrity(self.store)


class StorageLocationTests(LocationTestCase):
    def test_deleting_a_location_clears_asset_references(self):
        shed = locations.add_storage_location(self.store, "Shed", building="B2", room="12")
        attic = locations.add_storage_location(self.store, "Attic")
        drill = lifecycle.add_asset(self.store, "Drill", storage_location_id=shed.id)
        saw = lifecycle.add_asset(self.store, "Saw", storage_location_id=attic.id)

        self.assertEqual(shed.full_address, "B2, 12")
        self.assertEqual(locations.assets_at_location(self.store, shed.id), [drill])

        cleared = locations.delete_storage_location(self.store, shed.id)
        self.assertEqual(cleared, 1)
        self.assertIsNone(drill.storage_location_id)
        self.assertEqual(saw.storage_location_id, attic.id)
        self.assertEqual([location.name for location in locations.list_storage_locations(self.store)], ["Attic"])

    def test_unknown_location_is_refused_on_assets(self):
        with self.assertRaises(NotFound):
            lifecycle.add_asset(self.store, "Drill", storage_location_id="nowhere")
        self.assertEqual(self.store.assets, {})

        drill = lifecycle.add_asset(self.store, "Drill")
        with self.assertRaises(NotFound):
            lifecycle.update_asset(self.store, drill.id, name="Big drill", storage_location_id="nowhere")
        self.assertEqual(drill.name, "Drill")

    def test_update_location(self):
        shed = locations.add_storage_location(self.store, "Shed")
        locations.update_storage_location(self.store, shed.id, floor="2", address="1 Quay Street")
        self.assertEqual(shed.full_address, "Floor 2, 1 Quay Street")
        with self.assertRaises(NotFound):
            locations.delete_storage_location(self.store, "missing")


class WorkSiteTests(LocationTestCase):
    def setUp(self):
        super().setUp()
        self.site = locations.add_work_site(self.store, "Riverside", start_date=DAY0)
        self.worker = lifecycle.add_person(self.store, "Martin", role=PersonRole.EMPLOYEE)
        self.other = lifecycle.add_person(self.store, "Bernard", role=PersonRole.EMPLOYEE)
        self.customer = lifecycle.add_person(self.store, "Client", role=PersonRole.CUSTOMER, work_site_id=self.site.id)

    def test_assign_and_remove_employee(self):
        locations.assign_to_work_site(self.store, self.worker.id, self.site.id)
        self.assertEqual(locations.employees_on_site(self.store, self.site.id), [self.worker])
        self.assertEqual(locations.unassigned_employees(self.store), [self.other])

        locations.remove_from_work_site(self.store, self.worker.id)
        self.assertIsNone(self.worker.work_site_id)
        self.assertEqual(locations.employees_on_site(self.store, self.site.id), [])

    def test_deleting_a_site_clears_person_references(self):
        locations.assign_to_work_site(self.store, self.worker.id, self.site.id)
        self.assertEqual(locations.delete_work_site(self.store, self.site.id), 2)
        self.assertIsNone(self.worker.work_site_id)
        self.assertIsNone(self.customer.work_site_id)
        self.assertEqual(locations.list_work_sites(self.store), [])

    def test_unknown_site_or_contact_is_refused(self):
        with self.assertRaises(NotFound):
            locations.assign_to_work_site(self.store, self.worker.id, "missing")
        with self.assertRaises(NotFound):
            lifecycle.update_person(self.store, self.other.id, work_site_id="missing")
        with self.assertRaises(NotFound):
            locations.add_work_site(self.store, "Harbour", contact_id="nobody")
        self.assertIsNone(self.worker.work_site_id)
        self.assertEqual(len(self.store.work_sites), 1)

    def test_active_only_listing(self):
        harbour = locations.add_work_site(self.store, "Harbour", contact_id=self.customer.id)
        locations.update_work_site(self.store, self.site.id, active=False)
        self.assertEqual(locations.list_work_sites(self.store), [harbour, self.site])
        self.assertEqual(locations.list_work_sites(self.store, active_only=True), [harbour])


class CategoryTests(LocationTestCase):
    def setUp(self):
        super().setUp()
        self.drill = lifecycle.add_asset(self.store, "Drill", category="Tools")
        self.saw = lifecycle.add_asset(self.store, "Saw", category="  tools")
        self.van = lifecycle.add_asset(self.store, "Van", category="vehicles")
        self.crate = lifecycle.add_asset(self.store, "Crate")

    def test_categories_are_unique_and_sorted_without_case(self):
        self.assertEqual(locations.categories(self.store), ["Tools", "vehicles"])

    def test_rename_matches_any_case(self):
        self.assertEqual(locations.rename_category(self.store, "TOOLS", " Hand tools "), 2)
        self.assertEqual(self.drill.category, "Hand tools")
        self.assertEqual(self.saw.category, "Hand tools")
        self.assertEqual(self.van.category, "vehicles")

    def test_empty_new_name_is_refused(self):
        with self.assertRaises(InvalidRequest):
            locations.rename_category(self.store, "Tools", "   ")
        self.assertEqual(self.drill.category, "Tools")

    def test_delete_blanks_the_category(self):
        self.assertEqual(locations.delete_category(self.store, "Vehicles"), 1)
        self.assertEqual(self.van.category, "")
        self.assertEqual(locations.categories(self.store), ["Tools"])


if __name__ == "__main__":
    unittest.main()
