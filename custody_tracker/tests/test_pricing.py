import sys
import unittest
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.entities import Tariff
from services.errors import InvalidAmount
from services.pricing_service import (
    contracted_total,
    day_span,
    deposit_remaining,
    is_deposit_settled,
    is_partially_recovered,
    prorated_units,
    real_to_date_total,
    round_money,
    settle_deposit,
    total_price,
)

DAY0 = date(2026, 3, 2)


def _terms(tariff, unit_price, start, due, total=None, returned_on=None):
    unit = Decimal(str(unit_price))
    if total is None:
        total = total_price(tariff, unit, prorated_units(tariff, start, due))
    return SimpleNamespace(
        tariff=tariff,
        unit_price=unit,
        total_price=Decimal(str(total)),
        start_date=start,
        due_date=due,
        returned_on=returned_on,
    )


class ProrationTests(unittest.TestCase):
    def test_day_span_is_inclusive_with_floor_of_one(self):
        self.assertEqual(day_span(DAY0, DAY0), 1)
        self.assertEqual(day_span(DAY0, DAY0 + timedelta(days=4)), 5)
        self.assertEqual(day_span(DAY0, DAY0 - timedelta(days=3)), 1)

    def test_week_and_month_round_up(self):
        self.assertEqual(prorated_units(Tariff.WEEK, DAY0, DAY0 + timedelta(days=6)), 1)
        self.assertEqual(prorated_units(Tariff.WEEK, DAY0, DAY0 + timedelta(days=7)), 2)
        self.assertEqual(prorated_units(Tariff.MONTH, DAY0, DAY0 + timedelta(days=29)), 1)
        self.assertEqual(prorated_units(Tariff.MONTH, DAY0, DAY0 + timedelta(days=30)), 2)

    def test_flat_is_always_one_unit(self):
        self.assertEqual(prorated_units(Tariff.FLAT, DAY0, DAY0 + timedelta(days=90)), 1)
        self.assertEqual(total_price(Tariff.FLAT, Decimal("120"), 5), Decimal("120.00"))

    def test_total_rounds_half_up_to_cents(self):
        self.assertEqual(total_price(Tariff.DAY, Decimal("2.345"), 1), Decimal("2.35"))
        self.assertEqual(round_money("0.005"), Decimal("0.01"))


class RentalTotalTests(unittest.TestCase):
    def test_contracted_and_real_to_date_totals(self):
        terms = _terms(Tariff.DAY, 10, DAY0, DAY0 + timedelta(days=4))
        self.assertEqual(contracted_total(terms), Decimal("50.00"))

        terms.returned_on = DAY0 + timedelta(days=2)
        self.assertEqual(real_to_date_total(terms, DAY0 + timedelta(days=9)), Decimal("30.00"))

    def test_real_to_date_uses_today_while_active(self):
        terms = _terms(Tariff.DAY, 10, DAY0, DAY0 + timedelta(days=4))
        self.assertEqual(real_to_date_total(terms, DAY0), Decimal("10.00"))
        self.assertEqual(real_to_date_total(terms, DAY0 - timedelta(days=5)), Decimal("10.00"))
        self.assertEqual(real_to_date_total(terms, DAY0 + timedelta(days=6)), Decimal("70.00"))

    def test_real_to_date_is_stable_for_same_inputs(self):
        terms = _terms(Tariff.WEEK, 35, DAY0, DAY0 + timedelta(days=20))
        today = DAY0 + timedelta(days=8)
        first = real_to_date_total(terms, today)
        self.assertEqual(first, real_to_date_total(terms, today))
        self.assertEqual(first, Decimal("70.00"))

    def test_flat_and_free_rentals_keep_the_stored_total(self):
        flat = _terms(Tariff.FLAT, 99, DAY0, DAY0 + timedelta(days=30))
        self.assertEqual(real_to_date_total(flat, DAY0 + timedelta(days=2)), Decimal("99.00"))

        free = _terms(Tariff.DAY, 0, DAY0, DAY0 + timedelta(days=3), total="15")
        self.assertEqual(real_to_date_total(free, DAY0 + timedelta(days=2)), Decimal("15.00"))
        self.assertEqual(contracted_total(free), Decimal("15.00"))


class DepositTests(unittest.TestCase):
    def test_recovery_is_applied_before_keep(self):
        recovered, kept = settle_deposit(Decimal("100"), 0, 0, Decimal("40"), Decimal("80"))
        self.assertEqual(recovered, Decimal("40"))
        self.assertEqual(kept, Decimal("60"))

    def test_settled_deposit_absorbs_nothing_more(self):
        recovered, kept = settle_deposit(Decimal("100"), Decimal("40"), Decimal("60"), Decimal("10"), Decimal("10"))
        self.assertEqual((recovered, kept), (Decimal("40"), Decimal("60")))

    def test_incremental_settlement_never_exceeds_total(self):
        recovered, kept = Decimal("0"), Decimal("0")
        for recover, keep in [(30, 0), (0, 25), (50, 50)]:
            recovered, kept = settle_deposit(Decimal("100"), recovered, kept, Decimal(recover), Decimal(keep))
            self.assertLessEqual(recovered + kept, Decimal("100"))
        self.assertEqual((recovered, kept), (Decimal("75"), Decimal("25")))
        self.assertTrue(is_deposit_settled(100, recovered, kept))
        self.assertEqual(deposit_remaining(100, recovered, kept), Decimal("0"))

    def test_negative_amounts_are_rejected(self):
        with self.assertRaises(InvalidAmount):
            settle_deposit(Decimal("100"), 0, 0, Decimal("-1"), 0)
        with self.assertRaises(InvalidAmount):
            settle_deposit(Decimal("-5"), 0, 0, 0, 0)

    def test_partial_recovery_flag(self):
        self.assertTrue(is_partially_recovered(100, 40))
        self.assertFalse(is_partially_recovered(100, 100))
        self.assertFalse(is_partially_recovered(0, 0))


if __name__ == "__main__":
    unittest.main()
