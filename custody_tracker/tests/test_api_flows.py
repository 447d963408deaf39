import os
import sys
import unittest
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

from fastapi.testclient import TestClient


os.environ.setdefault("CUSTODY_TRACKER_LOG_LEVEL", "WARNING")
os.environ.setdefault("DUPLICATE_MATCH_EMAIL", "false")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import CustodyTracker as app_module
from db.store import EntityStore

DAY0 = date(2026, 3, 2)


class FakeClock:
    def __init__(self, start: date):
        self.current = start

    def __call__(self) -> date:
        return self.current

    def advance(self, days: int) -> None:
        self.current += timedelta(days=days)


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(DAY0)
        self.store = EntityStore(clock=self.clock)
        app_module.app.dependency_overrides[app_module.get_store] = lambda: self.store
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()

    def _person(self, last_name: str, **extra) -> str:
        response = self.client.post("/api/persons", json={"lastName": last_name, **extra})
        self.assertEqual(response.status_code, 200)
        return response.json()["id"]

    def _asset(self, name: str) -> str:
        response = self.client.post("/api/assets", json={"name": name, "value": 150})
        self.assertEqual(response.status_code, 200)
        return response.json()["id"]

    def test_healthcheck(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_lend_conflict_and_return_flow(self):
        p1 = self._person("Martin")
        p2 = self._person("Bernard")
        drill = self._asset("Drill")

        loan = self.client.post(
            "/api/loans",
            json={"itemID": drill, "personID": p1, "dueDate": str(DAY0 + timedelta(days=7))},
        )
        self.assertEqual(loan.status_code, 200)
        loan_id = loan.json()["id"]
        self.assertEqual(loan.json()["source"], {"kind": "asset", "itemId": drill})

        self.clock.advance(1)
        conflict = self.client.post(
            "/api/rentals",
            json={"itemID": drill, "personID": p2, "dueDate": str(DAY0 + timedelta(days=4)), "unitPrice": 10},
        )
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["kind"], "NotAvailable")

        status = self.client.get(f"/api/items/{drill}/status").json()
        self.assertEqual(status["state"], "lent")
        self.assertEqual(status["record_id"], loan_id)

        self.clock.advance(2)
        returned = self.client.post(f"/api/records/{loan_id}/return", json={})
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["returnedOn"], str(DAY0 + timedelta(days=3)))

        again = self.client.post(f"/api/records/{loan_id}/return", json={})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["kind"], "AlreadyClosed")

        asset = self.client.get(f"/api/assets/{drill}").json()
        self.assertEqual(asset["status"]["state"], "available")
        self.assertEqual(self.client.get("/api/integrity").json(), {"status": "ok"})

    def test_rental_payment_reaches_ledger(self):
        customer = self._person("Martin", firstName="Alice")
        drill = self._asset("Drill")
        rental = self.client.post(
            "/api/rentals",
            json={
                "itemID": drill,
                "personID": customer,
                "dueDate": str(DAY0 + timedelta(days=4)),
                "tariff": "day",
                "unitPrice": 10,
                "deposit": 100,
            },
        )
        self.assertEqual(rental.status_code, 200)
        rental_id = rental.json()["id"]
        self.assertEqual(Decimal(rental.json()["totalPrice"]), Decimal("50"))

        self.clock.advance(2)
        self.assertEqual(self.client.post(f"/api/records/{rental_id}/return", json={}).status_code, 200)
        paid = self.client.post(f"/api/rentals/{rental_id}/payment", json={"paid": True})
        self.assertEqual(paid.status_code, 200)
        deposit = self.client.post(f"/api/records/{rental_id}/deposit", json={"recover": 70, "keep": 30})
        self.assertEqual(deposit.status_code, 200)
        self.assertEqual(Decimal(deposit.json()["depositKept"]), Decimal("30"))

        ledger = self.client.get("/api/ledger", params={"from": str(DAY0), "to": str(DAY0 + timedelta(days=2))}).json()
        self.assertEqual({entry["kind"] for entry in ledger}, {"rental_revenue", "deposit_kept"})
        self.assertEqual({entry["personName"] for entry in ledger}, {"Alice Martin"})

        summary = self.client.get("/api/ledger/summary", params={"year": DAY0.year, "month": DAY0.month}).json()
        self.assertEqual(Decimal(summary["revenue"]), Decimal("60"))
        self.assertEqual(summary["entry_count"], 2)

        periods = self.client.get("/api/ledger/periods").json()
        self.assertEqual(periods, [{"year": DAY0.year, "months": [DAY0.month]}])

    def test_error_mapping(self):
        person = self._person("Martin")
        drill = self._asset("Drill")

        missing = self.client.post("/api/records/nope/return", json={})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["kind"], "NotFound")

        negative = self.client.post(
            "/api/rentals",
            json={"itemID": drill, "personID": person, "dueDate": str(DAY0), "unitPrice": -5},
        )
        self.assertEqual(negative.status_code, 400)
        self.assertEqual(negative.json()["kind"], "InvalidAmount")

        self.client.post("/api/loans", json={"itemID": drill, "personID": person, "dueDate": str(DAY0)})
        still_active = self.client.delete(f"/api/assets/{drill}")
        self.assertEqual(still_active.status_code, 409)
        self.assertEqual(still_active.json()["kind"], "StillActive")

        self.assertEqual(self.client.get("/api/records/widgets/active").status_code, 404)

    def test_borrow_chain_blocks_return(self):
        lender = self._person("Martin")
        friend = self._person("Bernard")
        borrow = self.client.post(
            "/api/borrows",
            json={"name": "Generator", "lenderID": lender, "dueDate": str(DAY0 + timedelta(days=10))},
        ).json()
        self.client.post(
            "/api/loans",
            json={"itemID": borrow["id"], "personID": friend, "dueDate": str(DAY0 + timedelta(days=5))},
        )

        blocked = self.client.post(f"/api/records/{borrow['id']}/return", json={})
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["kind"], "Blocked")

        active = self.client.get("/api/records/loan/active").json()
        self.assertEqual(len(active), 1)
        self.clock.advance(6)
        overdue = self.client.get("/api/records/loan/overdue").json()
        self.assertEqual(overdue[0]["daysOverdue"], 1)

    def test_orphans_and_merge(self):
        alice = self._person("Martin", firstName="Alice", email="alice@example.org")
        twin = self._person("martin", firstName="alice", phone="0600", organisation="Atelier")
        bruno = self._person("Bernard")
        drill = self._asset("Drill")
        loan = self.client.post(
            "/api/loans",
            json={"itemID": drill, "personID": alice, "dueDate": str(DAY0 + timedelta(days=3))},
        ).json()

        duplicates = self.client.get("/api/persons/duplicates").json()
        self.assertEqual(len(duplicates), 1)

        merged = self.client.post("/api/persons/merge", json={"personIDs": [alice, twin]})
        self.assertEqual(merged.status_code, 200)
        self.assertEqual(merged.json()["id"], twin)
        self.assertEqual(merged.json()["email"], "alice@example.org")

        self.assertEqual(self.client.delete(f"/api/persons/{twin}").status_code, 200)
        orphans = self.client.get("/api/orphans").json()
        self.assertEqual([row["record"]["id"] for row in orphans], [loan["id"]])

        reassigned = self.client.post(f"/api/records/{loan['id']}/reassign", json={"personID": bruno})
        self.assertEqual(reassigned.json()["personId"], bruno)
        self.assertEqual(self.client.get("/api/orphans").json(), [])

        too_few = self.client.post("/api/persons/merge", json={"personIDs": [bruno]})
        self.assertEqual(too_few.status_code, 422)

        same_person = self.client.post("/api/persons/merge", json={"personIDs": [bruno, bruno]})
        self.assertEqual(same_person.status_code, 400)
        self.assertEqual(same_person.json()["kind"], "InvalidRequest")

    def test_listing_endpoints_reflect_transitions(self):
        person = self._person("Martin")
        drill = self._asset("Drill")
        self._asset("anvil")
        self.client.post("/api/loans", json={"itemID": drill, "personID": person, "dueDate": str(DAY0)})

        assets = self.client.get("/api/assets").json()
        self.assertEqual([asset["name"] for asset in assets], ["anvil", "Drill"])
        self.assertEqual([asset["status"]["state"] for asset in assets], ["available", "lent"])
        self.assertEqual([row["id"] for row in self.client.get("/api/persons").json()], [person])
        self.assertEqual(len(self.client.get(f"/api/persons/{person}/references").json()), 1)
        self.assertEqual(self.client.get("/api/integrity").json(), {"status": "ok"})

    def test_storage_locations_and_categories(self):
        shed = self.client.post("/api/storage-locations", json={"name": "Shed", "building": "B", "floor": "1"}).json()
        drill = self.client.post(
            "/api/assets",
            json={"name": "Drill", "category": "tools", "storageLocationID": shed["id"]},
        ).json()
        self.client.post("/api/assets", json={"name": "Saw", "category": "Tools "})
        self.client.post("/api/assets", json={"name": "Van", "category": "Vehicles"})

        unknown = self.client.post("/api/assets", json={"name": "Crate", "storageLocationID": "nowhere"})
        self.assertEqual(unknown.status_code, 404)

        locations = self.client.get("/api/storage-locations").json()
        self.assertEqual(locations[0]["fullAddress"], "B, Floor 1")
        stored = self.client.get(f"/api/storage-locations/{shed['id']}/assets").json()
        self.assertEqual([asset["id"] for asset in stored], [drill["id"]])

        self.assertEqual(self.client.get("/api/categories").json(), ["tools", "Vehicles"])
        renamed = self.client.put("/api/categories/TOOLS", json={"newName": "Hand tools"})
        self.assertEqual(renamed.json(), {"category": "Hand tools", "assets": 2})
        self.assertEqual(self.client.put("/api/categories/Vehicles", json={"newName": "  "}).status_code, 400)
        self.assertEqual(self.client.delete("/api/categories/vehicles").json()["assets"], 1)
        self.assertEqual(self.client.get("/api/categories").json(), ["Hand tools"])

        deleted = self.client.delete(f"/api/storage-locations/{shed['id']}")
        self.assertEqual(deleted.json(), {"deleted": shed["id"], "assetsCleared": 1})
        self.assertIsNone(self.client.get(f"/api/assets/{drill['id']}").json()["storageLocationId"])

    def test_work_site_assignment(self):
        site = self.client.post("/api/work-sites", json={"name": "Riverside", "startDate": str(DAY0)}).json()
        worker = self._person("Martin", role="employee")
        idle = self._person("Bernard", role="employee")

        assigned = self.client.post(f"/api/work-sites/{site['id']}/employees", json={"personID": worker})
        self.assertEqual(assigned.json()["workSiteId"], site["id"])
        on_site = self.client.get(f"/api/work-sites/{site['id']}/employees").json()
        self.assertEqual([person["id"] for person in on_site], [worker])
        self.assertEqual([person["id"] for person in self.client.get("/api/employees/unassigned").json()], [idle])

        wrong_site = self.client.delete(f"/api/work-sites/other/employees/{worker}")
        self.assertEqual(wrong_site.status_code, 404)

        closed = self.client.put(f"/api/work-sites/{site['id']}", json={"name": "Riverside", "active": False})
        self.assertFalse(closed.json()["active"])
        self.assertEqual(self.client.get("/api/work-sites", params={"activeOnly": "true"}).json(), [])

        deleted = self.client.delete(f"/api/work-sites/{site['id']}")
        self.assertEqual(deleted.json()["personsCleared"], 1)
        self.assertEqual(len(self.client.get("/api/employees/unassigned").json()), 2)

    def test_purge_returned_loans(self):
        person = self._person("Martin")
        drill = self._asset("Drill")
        loan = self.client.post("/api/loans", json={"itemID": drill, "personID": person, "dueDate": str(DAY0)}).json()
        self.assertEqual(self.client.post("/api/loans/purge-returned").json(), {"purged": 0})

        self.client.post(f"/api/records/{loan['id']}/return", json={})
        self.assertEqual(self.client.post("/api/loans/purge-returned").json(), {"purged": 1})
        self.assertEqual(self.client.delete(f"/api/records/{loan['id']}").status_code, 404)


if __name__ == "__main__":
    unittest.main()
